"""Per-session safety switch.

Each session is either normal or degraded. A session degrades after
``failure_threshold`` consecutive classifier failures and stays degraded until
a caller explicitly recovers it. There is no time-based reset.
"""

import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Iterator

from loguru import logger

from agent_router.models import FailureReason, SafetyStatus

RECOVERY_PATHS: dict[FailureReason, str] = {
    FailureReason.CLASSIFIER_ERROR: "Retry the request; routing continues with keyword matching",
    FailureReason.BUDGET_EXHAUSTED: "Wait for budget reset or increase limit",
    FailureReason.RATE_LIMIT: "Wait a few minutes and try again",
    FailureReason.TIMEOUT: "Try again with a simpler query",
    FailureReason.API_FAILURE: "Check network connection and retry",
    FailureReason.PARSING_ERROR: "Retry recovery; the classifier returned an unusable answer",
    FailureReason.AUTH_ERROR: "Check API credentials",
    FailureReason.CONFLICTING_PERSPECTIVES: "Resolve the conflicting perspectives with the Debugger agent",
    FailureReason.UNKNOWN_ERROR: "Try again or contact support",
}


class SafetySwitch:
    """Owns the per-session status map. Each session has its own lock while in use."""

    def __init__(self, failure_threshold: int = 1):
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {failure_threshold}")
        self._failure_threshold = failure_threshold
        self._states: dict[str, SafetyStatus] = {}
        # session_id -> [lock, holders + waiters]; entries exist only while in use.
        self._locks: dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _lock(self, session_id: str) -> Iterator[None]:
        # The guard covers only the bookkeeping, never the session's critical section.
        with self._locks_guard:
            entry = self._locks.setdefault(session_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[session_id]

    def get_status(self, session_id: str) -> SafetyStatus:
        return self._states.get(session_id) or SafetyStatus(session_id=session_id)

    def is_active(self, session_id: str) -> bool:
        return self.get_status(session_id).active

    def record_failure(self, session_id: str, reason: FailureReason) -> SafetyStatus:
        """Count a failure; degrade the session once the threshold is reached."""
        reason = FailureReason(reason)
        with self._lock(session_id):
            status = self.get_status(session_id)
            failures = status.consecutive_failures + 1
            if status.active:
                status = replace(
                    status,
                    reason=reason,
                    recovery_path=RECOVERY_PATHS[reason],
                    consecutive_failures=failures,
                )
            elif failures >= self._failure_threshold:
                status = self._activated(status, reason, failures)
            else:
                status = replace(status, consecutive_failures=failures)
            self._states[session_id] = status
        return status

    def record_success(self, session_id: str) -> None:
        """Reset the consecutive-failure count. Does not leave degraded mode."""
        with self._lock(session_id):
            status = self._states.get(session_id)
            if status is None:
                return
            if status.active:
                self._states[session_id] = replace(status, consecutive_failures=0)
            else:
                del self._states[session_id]

    def activate(self, session_id: str, reason: FailureReason) -> SafetyStatus:
        """Degrade a session immediately, regardless of the failure count."""
        reason = FailureReason(reason)
        with self._lock(session_id):
            status = self.get_status(session_id)
            if status.active:
                status = replace(status, reason=reason, recovery_path=RECOVERY_PATHS[reason])
            else:
                status = self._activated(status, reason, status.consecutive_failures)
            self._states[session_id] = status
        return status

    def record_recovery_attempt(
        self, session_id: str, *, success: bool, reason: FailureReason | None = None
    ) -> SafetyStatus:
        """Apply the outcome of a manual recovery attempt."""
        with self._lock(session_id):
            status = self.get_status(session_id)
            if not status.active:
                return status
            if success:
                self._states.pop(session_id, None)
                logger.info(f"[SafetySwitch] Deactivated for session {session_id} (manual recovery)")
                return SafetyStatus(session_id=session_id)

            updates = {
                "attempted_recoveries": status.attempted_recoveries + 1,
                "last_recovery_attempt": datetime.now(timezone.utc),
            }
            if reason is not None and reason != status.reason:
                updates["reason"] = reason
                updates["recovery_path"] = RECOVERY_PATHS[reason]
            status = replace(status, **updates)
            self._states[session_id] = status
            logger.warning(
                f"[SafetySwitch] Recovery failed for session {session_id}: {status.reason.value}"
            )
            return status

    def clear(self, session_id: str) -> None:
        """Forget a session entirely (teardown)."""
        with self._lock(session_id):
            self._states.pop(session_id, None)

    def active_sessions(self) -> list[SafetyStatus]:
        return [s for s in list(self._states.values()) if s.active]

    @staticmethod
    def _activated(status: SafetyStatus, reason: FailureReason, failures: int) -> SafetyStatus:
        logger.warning(f"[SafetySwitch] Activated for session {status.session_id}: {reason.value}")
        return replace(
            status,
            active=True,
            reason=reason,
            activated_at=datetime.now(timezone.utc),
            recovery_path=RECOVERY_PATHS[reason],
            consecutive_failures=failures,
        )
