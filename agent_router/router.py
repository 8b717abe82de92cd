"""Supervisor routing with fallback, cost tracking and live traces."""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator

from loguru import logger

from agent_router.classifier import LLMClassifier
from agent_router.config import Settings
from agent_router.cost import CostTracker
from agent_router.errors import RoutingValidationError, failure_reason_for
from agent_router.failover import FallbackOutcome, FallbackPolicy
from agent_router.models import (
    Agent,
    CostBreakdown,
    EventType,
    FailureReason,
    FallbackReason,
    RoutingDecision,
    RoutingRequest,
    SafetyStatus,
    TraceEvent,
)
from agent_router.registry import AgentRegistry
from agent_router.safety import SafetySwitch
from agent_router.store import RoutingStore
from agent_router.trace import TraceEmitter, TraceRun

# Query used when a caller asks to recover a degraded session.
RECOVERY_CHECK_QUERY = "Help me think through a decision"


@dataclass
class RouteResult:
    """What ``route`` hands back to the caller."""

    decision: RoutingDecision
    agent_name: str
    routing_cost: CostBreakdown
    trace_id: str
    events: tuple[TraceEvent, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.decision.agent_id,
            "agent_name": self.agent_name,
            "confidence": self.decision.confidence,
            "reasoning": self.decision.reasoning,
            "fallback": self.decision.fallback,
            "fallback_reason": (
                self.decision.fallback_reason.value if self.decision.fallback_reason else None
            ),
            "routing_cost": self.routing_cost.to_dict(),
            "trace_id": self.trace_id,
        }


@dataclass
class RecoveryResult:
    success: bool
    reason: str
    status: SafetyStatus
    trace_id: str | None = None
    events: tuple[TraceEvent, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "reason": self.reason,
            "status": self.status.to_dict(),
            "trace_id": self.trace_id,
        }


class AgentRouter:
    """Routes each query to exactly one agent.

    Owns every piece of shared state: the span counter (via the trace emitter),
    the per-session safety map and the per-session routing spend. The
    classifier dependency failing never surfaces as an error from ``route``:
      1. Classifier (bounded by ``timeout_s``), if configured and within budget
      2. Keyword heuristic on failure or low confidence
      3. Safety switch updated from the failure class, if any
    """

    def __init__(
        self,
        registry: AgentRegistry | None = None,
        classifier: LLMClassifier | None = None,
        *,
        cost_tracker: CostTracker | None = None,
        safety: SafetySwitch | None = None,
        emitter: TraceEmitter | None = None,
        store: RoutingStore | None = None,
        confidence_threshold: float = 0.6,
        timeout_s: float = 5.0,
        session_budget_usd: float | None = None,
    ):
        self._registry = registry or AgentRegistry()
        self._classifier = classifier
        self._policy = FallbackPolicy(
            self._registry,
            classifier,
            confidence_threshold=confidence_threshold,
            timeout_s=timeout_s,
        )
        self._cost = cost_tracker or CostTracker()
        self._safety = safety or SafetySwitch()
        self._emitter = emitter or TraceEmitter()
        self._store = store
        self._session_budget_usd = session_budget_usd
        # Only sessions that have actually spent something get an entry.
        self._spend: dict[str, float] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "AgentRouter":
        registry = AgentRegistry()
        classifier = None
        if settings.classifier_enabled:
            from agent_router.litellm_provider import LiteLLMProvider

            provider = LiteLLMProvider(
                api_key=settings.api_key,
                api_base=settings.api_base,
                default_model=settings.model,
                request_timeout=settings.timeout_s,
            )
            classifier = LLMClassifier(provider, registry, model=settings.model)
        else:
            logger.warning("No classifier API key configured, routing will use keyword matching")

        return cls(
            registry,
            classifier,
            cost_tracker=CostTracker(settings.price_per_token),
            safety=SafetySwitch(settings.safety_failure_threshold),
            emitter=TraceEmitter(buffer_size=settings.trace_buffer_size),
            store=RoutingStore(settings.db_path) if settings.db_path else None,
            confidence_threshold=settings.confidence_threshold,
            timeout_s=settings.timeout_s,
            session_budget_usd=settings.session_budget_usd,
        )

    @property
    def registry(self) -> AgentRegistry:
        return self._registry

    @property
    def safety(self) -> SafetySwitch:
        return self._safety

    @property
    def store(self) -> RoutingStore | None:
        return self._store

    # --- Public operations ---

    def list_agents(self) -> tuple[Agent, ...]:
        return self._registry.list_agents()

    async def route(
        self,
        query: Any,
        session_id: Any,
        conversation_context: list[str] | None = None,
    ) -> RouteResult:
        request = self._build_request(query, session_id, conversation_context)
        run = self._emitter.start_run(request.session_id, self._run_inputs(request))
        return await self._run(request, run)

    def route_stream(
        self,
        query: Any,
        session_id: Any,
        conversation_context: list[str] | None = None,
    ) -> AsyncIterator[str]:
        """Validate now, then return an async iterator of NDJSON trace lines."""
        request = self._build_request(query, session_id, conversation_context)
        return self._stream(request)

    def get_safety_status(self, session_id: str) -> SafetyStatus:
        return self._safety.get_status(session_id)

    def report_failure(self, session_id: str, reason: FailureReason) -> SafetyStatus:
        """Let collaborators (e.g. an agent handler) degrade a session directly."""
        return self._safety.activate(session_id, reason)

    async def attempt_recovery(self, session_id: Any) -> RecoveryResult:
        """Manually try to bring a degraded session back to normal.

        Re-attempts the classifier once. Success clears the safety switch;
        failure leaves it active, updating the reason if it changed. The
        attempt is traced as its own run ending in a SAFETY_SWITCH event.
        """
        self._check_session_id(session_id)
        status = self._safety.get_status(session_id)
        if not status.active:
            return RecoveryResult(False, "Safety switch not active", status)

        run = self._emitter.start_run(
            session_id, {"session_id": session_id, "action": "recovery"}
        )
        start = time.monotonic()
        failure: FailureReason | None = None
        message = "Recovery successful"
        try:
            if self._budget_exhausted(session_id):
                failure = FailureReason.BUDGET_EXHAUSTED
                message = "Session routing budget is still exhausted"
            elif not self._policy.has_classifier:
                failure = FailureReason.CLASSIFIER_ERROR
                message = "No classifier configured"
            else:
                failure, message = await self._recheck_classifier(session_id, run)
        except asyncio.CancelledError:
            run.fail(
                "cancelled",
                "Recovery cancelled by caller",
                {"session_id": session_id},
                {"duration_ms": int((time.monotonic() - start) * 1000)},
            )
            raise

        new_status = self._safety.record_recovery_attempt(
            session_id, success=failure is None, reason=failure
        )
        run.log_event(
            EventType.SAFETY_SWITCH,
            {"action": "recovered" if failure is None else "recovery_failed",
             "session_id": session_id},
            {"status": "active" if new_status.active else "inactive",
             "reason": new_status.reason.value if new_status.reason else None,
             "recovery_path": new_status.recovery_path},
            {"error_message": None if failure is None else message,
             "attempted_recoveries": new_status.attempted_recoveries},
        )
        run.end(
            {"success": failure is None},
            {"duration_ms": int((time.monotonic() - start) * 1000)},
        )
        return RecoveryResult(failure is None, message, new_status, run.trace_id, run.events)

    def end_session(self, session_id: str) -> None:
        """Session teardown: forget safety state and in-memory spend."""
        if self._safety.is_active(session_id):
            run = self._emitter.start_run(session_id, {"session_id": session_id})
            run.log_event(
                EventType.SAFETY_SWITCH,
                {"action": "deactivated", "session_id": session_id},
                {"status": "inactive"},
            )
            run.end({"success": True})
        self._safety.clear(session_id)
        self._spend.pop(session_id, None)

    async def session_costs(self, session_id: str) -> dict[str, Any]:
        if self._store is not None:
            return await self._store.session_costs(session_id)
        return {
            "session_id": session_id,
            "total_tokens": None,
            "total_cost_usd": self._spend.get(session_id, 0.0),
            "routing_count": None,
        }

    async def routing_history(self, session_id: str, limit: int = 50) -> list[dict[str, Any]]:
        if self._store is None:
            return []
        return await self._store.history(session_id, limit)

    def record_handoff(
        self, session_id: str, from_agent: str, to_agent: str, reason: str
    ) -> tuple[TraceEvent, ...]:
        """Trace a handoff between two registered agents. Returns the run's events."""
        self._check_session_id(session_id)
        for agent_id in (from_agent, to_agent):
            self._registry.get_agent(agent_id)
        if from_agent == to_agent:
            raise RoutingValidationError(f"Cannot hand off from {from_agent} to itself")

        run = self._emitter.start_run(session_id, {"session_id": session_id})
        run.log_event(
            EventType.AGENT_HANDOFF,
            {"from_agent": from_agent, "to_agent": to_agent, "reason": reason},
            {"success": True, "invoked_agent": to_agent},
        )
        run.end({"success": True})
        logger.info(f"[HANDOFF] {session_id}: {from_agent} → {to_agent} ({reason})")
        return run.events

    # --- Internals ---

    @staticmethod
    def _check_session_id(session_id: Any) -> None:
        if not session_id or not isinstance(session_id, str):
            raise RoutingValidationError("session_id is required and must be a string")

    def _build_request(
        self, query: Any, session_id: Any, conversation_context: Any
    ) -> RoutingRequest:
        if not isinstance(query, str):
            raise RoutingValidationError("query is required and must be a string")
        if not query.strip():
            raise RoutingValidationError("query cannot be empty")
        self._check_session_id(session_id)

        context = conversation_context if isinstance(conversation_context, list) else []
        return RoutingRequest(
            query=query,
            session_id=session_id,
            conversation_context=[str(turn) for turn in context],
            available_agents=self._registry.list_agents(),
        )

    @staticmethod
    def _run_inputs(request: RoutingRequest) -> dict[str, Any]:
        return {
            "query": request.query,
            "session_id": request.session_id,
            "conversation_length": len(request.conversation_context),
        }

    async def _recheck_classifier(
        self, session_id: str, run: TraceRun
    ) -> tuple[FailureReason | None, str]:
        """One classification of a fixed query, traced as a nested span."""
        check = RoutingRequest(
            query=RECOVERY_CHECK_QUERY,
            session_id=session_id,
            available_agents=self._registry.list_agents(),
        )
        span = run.start_span(EventType.AGENT_ROUTING, {"query": check.query, "recovery": True})
        try:
            decision, latency_ms = await self._policy.try_classifier(check)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            failure = failure_reason_for(e)
            run.end_span(span.span_id, {"error_type": failure.value})
            return failure, f"Classifier still failing: {e}"

        cost = self._cost.cost(decision.usage)
        self._add_spend(session_id, cost.cost_usd)
        run.end_span(
            span.span_id,
            {"agent_id": decision.agent_id, "confidence": decision.confidence},
            {"cost_usd": cost.cost_usd, "token_count": cost.tokens_used},
        )
        logger.info(f"Recovery check for {session_id} succeeded in {latency_ms}ms")
        return None, "Recovery successful"

    def _add_spend(self, session_id: str, cost_usd: float) -> None:
        if cost_usd > 0:
            self._spend[session_id] = self._spend.get(session_id, 0.0) + cost_usd

    def _budget_exhausted(self, session_id: str) -> bool:
        if self._session_budget_usd is None:
            return False
        return self._spend.get(session_id, 0.0) >= self._session_budget_usd

    async def _stream(self, request: RoutingRequest) -> AsyncIterator[str]:
        channel = self._emitter.new_channel()
        run = self._emitter.start_run(request.session_id, self._run_inputs(request), channel)
        task = asyncio.create_task(self._run(request, run))
        try:
            async for line in channel.lines():
                yield line
        finally:
            if not task.done():
                # Consumer went away before the run finished.
                task.cancel()
            results = await asyncio.gather(task, return_exceptions=True)
            error = results[0]
            if isinstance(error, Exception):
                logger.error(f"Streaming route for {request.session_id} failed: {error}")
            # A task cancelled before its first step never reaches _run's handler.
            run.fail("cancelled", "Routing cancelled by caller", {"query": request.query})

    async def _run(self, request: RoutingRequest, run: TraceRun) -> RouteResult:
        start = time.monotonic()
        try:
            outcome = await self._policy.decide(
                request, budget_exhausted=self._budget_exhausted(request.session_id)
            )
            decision = outcome.decision
            agent = self._registry.get_agent(decision.agent_id)
            cost = self._cost.cost(outcome.billable_usage)
            self._add_spend(request.session_id, cost.cost_usd)

            run.log_event(
                EventType.AGENT_ROUTING,
                {"query": request.query, "conversation_length": len(request.conversation_context)},
                {
                    "agent_id": agent.id,
                    "agent_name": agent.name,
                    "confidence": decision.confidence,
                    "reasoning": decision.reasoning,
                    "fallback": decision.fallback,
                    "fallback_reason": (
                        decision.fallback_reason.value if decision.fallback_reason else None
                    ),
                },
                {
                    "cost_usd": cost.cost_usd,
                    "token_count": cost.tokens_used,
                    "confidence": decision.confidence,
                    "duration_ms": outcome.latency_ms,
                },
            )
            self._update_safety(request.session_id, outcome, run)
            await self._persist(request, decision, cost, run.trace_id)

            run.end(
                {"success": True, "agent_id": agent.id},
                {"duration_ms": int((time.monotonic() - start) * 1000)},
            )
            return RouteResult(decision, agent.name, cost, run.trace_id, run.events)

        except asyncio.CancelledError:
            run.fail(
                "cancelled",
                "Routing cancelled by caller",
                {"query": request.query},
                {"duration_ms": int((time.monotonic() - start) * 1000)},
            )
            raise
        except Exception as e:
            logger.exception(f"Routing failed for session {request.session_id}")
            run.fail(
                "routing_failure",
                str(e),
                {"query": request.query},
                {"duration_ms": int((time.monotonic() - start) * 1000)},
            )
            raise

    def _update_safety(self, session_id: str, outcome: FallbackOutcome, run: TraceRun) -> None:
        reason = outcome.decision.fallback_reason
        if outcome.failure is None:
            if reason is None or reason is FallbackReason.LOW_CONFIDENCE:
                self._safety.record_success(session_id)
            return

        before = self._safety.get_status(session_id)
        after = self._safety.record_failure(session_id, outcome.failure)
        if after.active and (not before.active or before.reason != after.reason):
            run.log_event(
                EventType.SAFETY_SWITCH,
                {"action": "activated" if not before.active else "reason_changed",
                 "session_id": session_id},
                {"status": "active", "reason": after.reason.value,
                 "recovery_path": after.recovery_path},
                {"error_message": outcome.error_message},
            )

    async def _persist(
        self,
        request: RoutingRequest,
        decision: RoutingDecision,
        cost: CostBreakdown,
        trace_id: str,
    ) -> None:
        if self._store is None:
            return
        try:
            await self._store.log_route(
                session_id=request.session_id,
                query=request.query,
                decision=decision,
                cost=cost,
                trace_id=trace_id,
                model=self._classifier.model if self._classifier and decision.usage else None,
            )
        except Exception as e:
            logger.warning(f"Failed to persist routing decision for {request.session_id}: {e}")
