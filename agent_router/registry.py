"""Agent registry: the static catalog of agents the supervisor can route to.

Populated once at startup and never mutated. ``resolve`` is the single place a
free-form agent id (e.g. from classifier output) is turned into a known agent.
"""

from __future__ import annotations

from typing import Iterable

from loguru import logger

from agent_router.errors import AgentNotFoundError, RegistryError
from agent_router.models import Agent, AgentId

# Registry order matters: it is the final heuristic tie-breaker.
DEFAULT_AGENTS: tuple[Agent, ...] = (
    Agent(
        id=AgentId.DOJO.value,
        name="Dojo Agent",
        description=(
            "Thinking partner for exploring perspectives, mapping options and "
            "deciding next moves."
        ),
        when_to_use=(
            "User wants to explore perspectives on a situation",
            "User is weighing tradeoffs or planning a decision",
            "User wants to brainstorm or organize their thoughts",
        ),
        when_not_to_use=(
            "User is searching for existing prompts or past work",
            "User reports contradictions or broken reasoning",
        ),
        is_default=True,
        keywords=(
            "brainstorm",
            "explore",
            "think through",
            "thinking through",
            "tradeoff",
            "trade-off",
            "next move",
            "prune",
            "map routes",
            "organize my thoughts",
            "decision",
        ),
    ),
    Agent(
        id=AgentId.LIBRARIAN.value,
        name="Librarian Agent",
        description="Finds saved prompts, similar work and past conversations.",
        when_to_use=(
            "User wants to find or search for prompts",
            "User asks for something similar to earlier work",
            "User wants to see what they built before",
        ),
        when_not_to_use=(
            "User wants to think through a new problem",
            "User wants help with conflicting ideas",
        ),
        keywords=(
            "find",
            "search",
            "look up",
            "lookup",
            "discover",
            "similar prompts",
            "show me",
            "previous",
            "built before",
            "library",
            "retrieve",
        ),
    ),
    Agent(
        id=AgentId.DEBUGGER.value,
        name="Debugger Agent",
        description="Untangles conflicting perspectives and flawed reasoning.",
        when_to_use=(
            "User has conflicting or contradictory perspectives",
            "User believes their reasoning is wrong or flawed",
        ),
        when_not_to_use=(
            "User wants open-ended exploration",
            "User is looking for saved prompts",
        ),
        keywords=(
            "conflict",
            "contradict",
            "wrong",
            "flawed",
            "inconsistent",
            "doesn't add up",
            "debug",
            "mistake",
        ),
    ),
)


def _normalize(s: str) -> str:
    """Lowercase and strip hyphens, underscores and spaces."""
    return s.strip().lower().replace("-", "").replace("_", "").replace(" ", "")


class AgentRegistry:
    """Immutable, validated collection of agents."""

    def __init__(self, agents: Iterable[Agent] = DEFAULT_AGENTS):
        self._agents: tuple[Agent, ...] = tuple(agents)
        problems = self.validate()
        if problems:
            raise RegistryError("Invalid agent registry: " + "; ".join(problems))

        self._by_id: dict[str, Agent] = {a.id: a for a in self._agents}
        self._normalized: dict[str, str] = {_normalize(a.id): a.id for a in self._agents}
        self._default = next(a for a in self._agents if a.is_default)
        logger.debug(
            f"Agent registry loaded: {[a.id for a in self._agents]} (default={self._default.id})"
        )

    def validate(self) -> list[str]:
        """Return a list of problems with the configured agents (empty when valid)."""
        errors: list[str] = []
        if not self._agents:
            return ["Registry has no agents"]

        defaults = [a for a in self._agents if a.is_default]
        if len(defaults) != 1:
            errors.append(f"Registry must have exactly one default agent, found {len(defaults)}")

        seen: set[str] = set()
        for agent in self._agents:
            if not agent.id:
                errors.append("Agent with empty id")
            if agent.id in seen:
                errors.append(f"Duplicate agent ID: {agent.id}")
            seen.add(agent.id)
            if not agent.when_to_use:
                errors.append(f'Agent {agent.id} has no "when_to_use" criteria')
            if not agent.when_not_to_use:
                errors.append(f'Agent {agent.id} has no "when_not_to_use" criteria')
        return errors

    def list_agents(self) -> tuple[Agent, ...]:
        return self._agents

    def get_agent(self, agent_id: str) -> Agent:
        try:
            return self._by_id[agent_id]
        except KeyError:
            raise AgentNotFoundError(agent_id) from None

    @property
    def default_agent(self) -> Agent:
        return self._default

    def is_valid(self, agent_id: str) -> bool:
        return agent_id in self._by_id

    def resolve(self, raw: str) -> Agent | None:
        """Resolve an agent id as written by a model.

        Exact match first, then a normalized match (case, spaces, hyphens,
        underscores). Anything else is not an agent.
        """
        if not raw:
            return None
        if raw in self._by_id:
            return self._by_id[raw]
        key = self._normalized.get(_normalize(raw))
        return self._by_id[key] if key else None

    def __len__(self) -> int:
        return len(self._agents)

    def __iter__(self):
        return iter(self._agents)
