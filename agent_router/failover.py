"""Fallback policy: classifier first, keyword heuristic when it can't be trusted."""

import asyncio
import time
from dataclasses import dataclass

from loguru import logger

from agent_router import heuristics
from agent_router.classifier import LLMClassifier
from agent_router.errors import BudgetExhaustedError, ClassifierTimeoutError, failure_reason_for
from agent_router.models import (
    FailureReason,
    FallbackReason,
    RoutingDecision,
    RoutingRequest,
    TokenUsage,
)
from agent_router.registry import AgentRegistry

_FALLBACK_FOR_FAILURE: dict[FailureReason, FallbackReason] = {
    FailureReason.TIMEOUT: FallbackReason.TIMEOUT,
    FailureReason.RATE_LIMIT: FallbackReason.RATE_LIMIT,
    FailureReason.AUTH_ERROR: FallbackReason.AUTH_ERROR,
    FailureReason.API_FAILURE: FallbackReason.API_ERROR,
    FailureReason.CLASSIFIER_ERROR: FallbackReason.API_ERROR,
    FailureReason.PARSING_ERROR: FallbackReason.PARSE_ERROR,
    FailureReason.BUDGET_EXHAUSTED: FallbackReason.BUDGET_EXHAUSTED,
    FailureReason.UNKNOWN_ERROR: FallbackReason.UNKNOWN_ERROR,
}


@dataclass
class FallbackOutcome:
    """A decision plus what happened on the way to it."""

    decision: RoutingDecision
    failure: FailureReason | None = None
    error_message: str | None = None
    latency_ms: int = 0
    # Tokens spent on a classifier call whose answer was discarded for low confidence.
    discarded_usage: TokenUsage | None = None

    @property
    def billable_usage(self) -> TokenUsage | None:
        return self.decision.usage or self.discarded_usage


class FallbackPolicy:
    """Always produces a decision. Classifier problems are never raised to the caller."""

    def __init__(
        self,
        registry: AgentRegistry,
        classifier: LLMClassifier | None = None,
        *,
        confidence_threshold: float = 0.6,
        timeout_s: float = 5.0,
    ):
        self._registry = registry
        self._classifier = classifier
        self.confidence_threshold = confidence_threshold
        self.timeout_s = timeout_s

    @property
    def has_classifier(self) -> bool:
        return self._classifier is not None

    async def try_classifier(self, request: RoutingRequest) -> tuple[RoutingDecision, int]:
        """Single bounded classifier attempt.

        Returns:
            Tuple of (decision, latency_ms).

        Raises:
            ClassifierError: on any classifier failure (timeouts included).
        """
        if self._classifier is None:
            raise RuntimeError("No classifier configured")
        start = time.monotonic()
        try:
            decision = await asyncio.wait_for(
                self._classifier.classify(request), timeout=self.timeout_s
            )
        except asyncio.TimeoutError as e:
            raise ClassifierTimeoutError(
                f"Routing timed out after {self.timeout_s:g} seconds"
            ) from e
        return decision, int((time.monotonic() - start) * 1000)

    async def decide(
        self, request: RoutingRequest, *, budget_exhausted: bool = False
    ) -> FallbackOutcome:
        if budget_exhausted:
            return self._fallback(
                request, FallbackReason.BUDGET_EXHAUSTED, 0,
                error=BudgetExhaustedError("Session routing budget exhausted"),
            )
        if self._classifier is None:
            return self._fallback(request, FallbackReason.NO_CLASSIFIER, 0)

        start = time.monotonic()
        try:
            decision, latency_ms = await self.try_classifier(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            latency_ms = int((time.monotonic() - start) * 1000)
            reason = failure_reason_for(e)
            logger.warning(
                f"Classifier failed in {latency_ms}ms ({reason.value}) "
                f"for session {request.session_id}: {e}"
            )
            return self._fallback(request, _FALLBACK_FOR_FAILURE[reason], latency_ms, error=e)

        if decision.confidence < self.confidence_threshold:
            outcome = self._fallback(
                request, FallbackReason.LOW_CONFIDENCE, latency_ms,
                original_confidence=decision.confidence,
            )
            outcome.discarded_usage = decision.usage
            return outcome

        return FallbackOutcome(decision=decision, latency_ms=latency_ms)

    def _fallback(
        self,
        request: RoutingRequest,
        reason: FallbackReason,
        latency_ms: int,
        *,
        error: BaseException | None = None,
        original_confidence: float | None = None,
    ) -> FallbackOutcome:
        agents = request.available_agents or self._registry.list_agents()
        decision = heuristics.classify(request.query, agents, request.conversation_context)
        decision.fallback = True
        decision.fallback_reason = reason

        if reason is FallbackReason.LOW_CONFIDENCE:
            decision.reasoning = (
                f"Low classifier confidence ({original_confidence:.2f}). {decision.reasoning}"
            )
        elif reason is FallbackReason.NO_CLASSIFIER:
            decision.reasoning = f"No classifier configured. {decision.reasoning}"
        elif error is not None:
            decision.reasoning = f"Classifier unavailable ({reason.value}). {decision.reasoning}"

        level = "INFO" if reason is FallbackReason.NO_CLASSIFIER else "WARNING"
        logger.log(
            level,
            f"[ROUTING_FALLBACK] reason={reason.value} session={request.session_id} "
            f"→ {decision.agent_id} (confidence={decision.confidence:.2f})",
        )
        return FallbackOutcome(
            decision=decision,
            failure=failure_reason_for(error) if error is not None else None,
            error_message=str(error) if error is not None else None,
            latency_ms=latency_ms,
        )
