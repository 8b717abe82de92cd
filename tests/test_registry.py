import pytest

from agent_router.errors import AgentNotFoundError, RegistryError
from agent_router.models import Agent
from agent_router.registry import DEFAULT_AGENTS, AgentRegistry


def _agent(id, default=False):
    return Agent(id=id, name=id.title(), description="d", when_to_use=("a",),
                 when_not_to_use=("b",), is_default=default)


def test_default_registry_has_three_agents_with_dojo_default(registry):
    agents = registry.list_agents()
    assert len(agents) == 3
    defaults = [a for a in agents if a.is_default]
    assert [a.id for a in defaults] == ["dojo"]
    assert registry.default_agent.id == "dojo"
    assert {a.id for a in agents} == {"dojo", "librarian", "debugger"}


def test_get_agent(registry):
    assert registry.get_agent("librarian").name == "Librarian Agent"
    with pytest.raises(AgentNotFoundError):
        registry.get_agent("invalid_agent")


def test_is_valid(registry):
    assert registry.is_valid("debugger")
    assert not registry.is_valid("Debugger")


@pytest.mark.parametrize("raw,expected", [
    ("librarian", "librarian"),
    ("Librarian", "librarian"),
    ("  DEBUGGER ", "debugger"),
    ("librarian_agent", None),
    ("", None),
    ("librarion", None),
])
def test_resolve(registry, raw, expected):
    agent = registry.resolve(raw)
    assert (agent.id if agent else None) == expected


def test_rejects_no_default():
    with pytest.raises(RegistryError, match="exactly one default"):
        AgentRegistry([_agent("a"), _agent("b")])


def test_rejects_two_defaults():
    with pytest.raises(RegistryError, match="found 2"):
        AgentRegistry([_agent("a", True), _agent("b", True)])


def test_rejects_duplicate_ids():
    with pytest.raises(RegistryError, match="Duplicate"):
        AgentRegistry([_agent("a", True), _agent("a")])


def test_rejects_empty():
    with pytest.raises(RegistryError):
        AgentRegistry([])


def test_agents_are_immutable(registry):
    with pytest.raises(Exception):
        registry.get_agent("dojo").is_default = False
    assert registry.list_agents() == DEFAULT_AGENTS
