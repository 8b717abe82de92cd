"""agent-router: supervisor routing with fallback, safety switch and live traces."""

from agent_router.models import (
    Agent,
    AgentId,
    CostBreakdown,
    EventType,
    FailureReason,
    FallbackReason,
    LLMProvider,
    LLMResponse,
    RoutingDecision,
    RoutingRequest,
    SafetyStatus,
    TokenUsage,
    TraceEvent,
)
from agent_router.registry import AgentRegistry
from agent_router.cost import CostTracker
from agent_router.classifier import LLMClassifier
from agent_router.failover import FallbackOutcome, FallbackPolicy
from agent_router.safety import SafetySwitch
from agent_router.trace import SpanCounter, TraceChannel, TraceEmitter, TraceRun
from agent_router.router import AgentRouter, RecoveryResult, RouteResult

__all__ = [
    "Agent",
    "AgentId",
    "AgentRegistry",
    "AgentRouter",
    "CostBreakdown",
    "CostTracker",
    "EventType",
    "FailureReason",
    "FallbackOutcome",
    "FallbackPolicy",
    "FallbackReason",
    "LLMClassifier",
    "LLMProvider",
    "LLMResponse",
    "RecoveryResult",
    "RouteResult",
    "RoutingDecision",
    "RoutingRequest",
    "SafetyStatus",
    "SafetySwitch",
    "SpanCounter",
    "TokenUsage",
    "TraceChannel",
    "TraceEmitter",
    "TraceEvent",
    "TraceRun",
]
