"""Exception taxonomy for agent-router.

Validation errors reach the caller. Classifier errors never do: the fallback
policy absorbs them and reports their ``failure_reason`` to the safety switch.
"""

from agent_router.models import FailureReason


class AgentRouterError(Exception):
    """Base class for all agent-router errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class RoutingValidationError(AgentRouterError):
    """Raised when a route request is malformed (empty query, bad session id)."""


class RegistryError(AgentRouterError):
    """Raised when the agent registry configuration is invalid."""


class AgentNotFoundError(AgentRouterError):
    """Raised when an agent id is not in the registry."""

    def __init__(self, agent_id: str) -> None:
        self.agent_id = agent_id
        super().__init__(f"Agent not found: {agent_id}")


class TraceClosedError(AgentRouterError):
    """Raised when an event is emitted into a run that already ended."""


class ClassifierError(AgentRouterError):
    """The classifier dependency failed to produce a usable decision."""

    failure_reason = FailureReason.CLASSIFIER_ERROR


class ClassifierTimeoutError(ClassifierError):
    failure_reason = FailureReason.TIMEOUT


class ClassifierRateLimitError(ClassifierError):
    failure_reason = FailureReason.RATE_LIMIT


class ClassifierAuthError(ClassifierError):
    failure_reason = FailureReason.AUTH_ERROR


class ClassifierAPIError(ClassifierError):
    failure_reason = FailureReason.API_FAILURE


class ClassifierParseError(ClassifierError):
    """The classifier answered, but not with a valid decision."""

    failure_reason = FailureReason.PARSING_ERROR


class BudgetExhaustedError(ClassifierError):
    failure_reason = FailureReason.BUDGET_EXHAUSTED


def failure_reason_for(error: BaseException) -> FailureReason:
    """Map any exception raised by the classifier path onto the closed reason set."""
    if isinstance(error, ClassifierError):
        return error.failure_reason
    return FailureReason.UNKNOWN_ERROR
