"""Shared fixtures and fake providers."""

import asyncio
import json

import pytest

from agent_router import AgentRegistry, AgentRouter, LLMClassifier, LLMProvider, LLMResponse


def reply(agent_id: str, confidence: float = 0.9, tokens: int = 120, reasoning: str = "ok") -> LLMResponse:
    """A well-formed classifier reply."""
    return LLMResponse(
        content=json.dumps({"agent_id": agent_id, "confidence": confidence, "reasoning": reasoning}),
        usage={"prompt_tokens": tokens - 20, "completion_tokens": 20, "total_tokens": tokens},
    )


class ScriptedProvider(LLMProvider):
    """Returns (or raises) the scripted items in order, repeating the last one."""

    def __init__(self, *items):
        super().__init__()
        self.items = list(items)
        self.calls = 0
        self.messages: list = []

    async def chat(self, messages, model=None, max_tokens=256, temperature=0.0):
        self.messages.append(messages)
        item = self.items[min(self.calls, len(self.items) - 1)]
        self.calls += 1
        if isinstance(item, BaseException):
            raise item
        return item


class SlowProvider(LLMProvider):
    """Never answers within any reasonable timeout."""

    def __init__(self, delay: float = 5.0):
        super().__init__()
        self.delay = delay
        self.calls = 0
        self.cancelled = 0

    async def chat(self, messages, model=None, max_tokens=256, temperature=0.0):
        self.calls += 1
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        return reply("librarian")


@pytest.fixture
def registry() -> AgentRegistry:
    return AgentRegistry()


@pytest.fixture
def make_router(registry):
    """Build an AgentRouter around a fake provider (or none)."""

    def _make(provider: LLMProvider | None = None, **kwargs) -> AgentRouter:
        classifier = LLMClassifier(provider, registry, model="test-model") if provider else None
        return AgentRouter(registry, classifier, **kwargs)

    return _make
