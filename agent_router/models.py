"""Core data models for agent-router."""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class AgentId(str, Enum):
    """Agents known to the supervisor."""

    DOJO = "dojo"
    LIBRARIAN = "librarian"
    DEBUGGER = "debugger"


class FailureReason(str, Enum):
    """Closed set of reasons that can put a session into degraded mode."""

    CLASSIFIER_ERROR = "classifier_error"
    BUDGET_EXHAUSTED = "budget_exhausted"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    API_FAILURE = "api_failure"
    PARSING_ERROR = "parsing_error"
    AUTH_ERROR = "auth_error"
    CONFLICTING_PERSPECTIVES = "conflicting_perspectives"
    UNKNOWN_ERROR = "unknown_error"


class FallbackReason(str, Enum):
    """Why a decision came from the keyword heuristic."""

    LOW_CONFIDENCE = "low_confidence"
    NO_CLASSIFIER = "no_classifier"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTH_ERROR = "auth_error"
    API_ERROR = "api_error"
    PARSE_ERROR = "parse_error"
    BUDGET_EXHAUSTED = "budget_exhausted"
    UNKNOWN_ERROR = "unknown_error"


class EventType(str, Enum):
    """Trace event types."""

    SESSION_START = "SESSION_START"
    SESSION_END = "SESSION_END"
    AGENT_ROUTING = "AGENT_ROUTING"
    AGENT_HANDOFF = "AGENT_HANDOFF"
    COST_TRACKED = "COST_TRACKED"
    SAFETY_SWITCH = "SAFETY_SWITCH"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in (EventType.SESSION_END, EventType.ERROR)


@dataclass(frozen=True)
class Agent:
    """A backend handler the supervisor can route to."""
    id: str
    name: str
    description: str
    when_to_use: tuple[str, ...]
    when_not_to_use: tuple[str, ...]
    is_default: bool = False
    keywords: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "when_to_use": list(self.when_to_use),
            "when_not_to_use": list(self.when_not_to_use),
            "default": self.is_default,
        }


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported by the classifier."""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_provider(cls, usage: dict[str, int]) -> "TokenUsage":
        """Build from an OpenAI-style usage dict (prompt/completion/total)."""
        input_tokens = int(usage.get("prompt_tokens", 0) or 0)
        output_tokens = int(usage.get("completion_tokens", 0) or 0)
        total = int(usage.get("total_tokens", 0) or 0) or input_tokens + output_tokens
        return cls(input_tokens, output_tokens, total)


@dataclass
class RoutingRequest:
    """A single request to be routed."""
    query: str
    session_id: str
    conversation_context: list[str] = field(default_factory=list)
    available_agents: tuple[Agent, ...] = ()


@dataclass
class RoutingDecision:
    """Result of routing classification."""
    agent_id: str
    confidence: float
    reasoning: str
    fallback: bool = False
    usage: TokenUsage | None = None
    fallback_reason: FallbackReason | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "fallback": self.fallback,
            "fallback_reason": self.fallback_reason.value if self.fallback_reason else None,
            "usage": asdict(self.usage) if self.usage else None,
        }


@dataclass(frozen=True)
class CostBreakdown:
    """Dollar cost of one routing decision."""
    tokens_used: int = 0
    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"tokens_used": self.tokens_used, "cost_usd": self.cost_usd}


@dataclass(frozen=True)
class SafetyStatus:
    """Degraded-mode status for one session."""
    session_id: str
    active: bool = False
    reason: FailureReason | None = None
    activated_at: datetime | None = None
    recovery_path: str | None = None
    attempted_recoveries: int = 0
    last_recovery_attempt: datetime | None = None
    consecutive_failures: int = 0

    def to_dict(self) -> dict[str, Any]:
        if not self.active:
            return {"session_id": self.session_id, "active": False}
        return {
            "session_id": self.session_id,
            "active": True,
            "reason": self.reason.value if self.reason else None,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "recovery_path": self.recovery_path,
            "attempted_recoveries": self.attempted_recoveries,
            "last_recovery_attempt": (
                self.last_recovery_attempt.isoformat() if self.last_recovery_attempt else None
            ),
        }


@dataclass(frozen=True)
class TraceEvent:
    """One append-only record in a run's trace."""
    span_id: int
    parent_id: int | None
    event_type: EventType
    timestamp: str
    inputs: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "span_id": self.span_id,
            "parent_id": self.parent_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "inputs": self.inputs,
            "outputs": self.outputs,
            "metadata": self.metadata,
        }


@dataclass
class LLMResponse:
    """Response from an LLM provider."""
    content: str | None
    finish_reason: str = "stop"
    usage: dict[str, int] = field(default_factory=dict)
    model_used: str = ""


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    def __init__(self, api_key: str | None = None, api_base: str | None = None):
        self.api_key = api_key
        self.api_base = api_base

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        max_tokens: int = 256,
        temperature: float = 0.0,
    ) -> LLMResponse:
        """Send a chat completion request."""
        ...

    @property
    def name(self) -> str:
        return self.__class__.__name__
