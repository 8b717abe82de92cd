import threading

import pytest

from agent_router.models import FailureReason
from agent_router.safety import RECOVERY_PATHS, SafetySwitch


def test_unseen_session_is_inactive():
    status = SafetySwitch().get_status("never-seen")
    assert status.active is False
    assert status.reason is None


def test_first_failure_activates_by_default():
    switch = SafetySwitch()
    status = switch.record_failure("s", FailureReason.RATE_LIMIT)
    assert status.active
    assert status.reason is FailureReason.RATE_LIMIT
    assert status.recovery_path == RECOVERY_PATHS[FailureReason.RATE_LIMIT]
    assert status.activated_at is not None


def test_threshold_counts_consecutive_failures():
    switch = SafetySwitch(failure_threshold=3)
    switch.record_failure("s", FailureReason.TIMEOUT)
    switch.record_failure("s", FailureReason.TIMEOUT)
    assert not switch.is_active("s")
    switch.record_success("s")
    switch.record_failure("s", FailureReason.TIMEOUT)
    switch.record_failure("s", FailureReason.TIMEOUT)
    assert not switch.is_active("s")
    assert switch.record_failure("s", FailureReason.TIMEOUT).active


def test_success_does_not_recover():
    switch = SafetySwitch()
    switch.record_failure("s", FailureReason.TIMEOUT)
    switch.record_success("s")
    assert switch.is_active("s")


def test_new_reason_while_degraded_updates_reason():
    switch = SafetySwitch()
    first = switch.record_failure("s", FailureReason.TIMEOUT)
    second = switch.record_failure("s", FailureReason.AUTH_ERROR)
    assert second.reason is FailureReason.AUTH_ERROR
    assert second.recovery_path == RECOVERY_PATHS[FailureReason.AUTH_ERROR]
    assert second.activated_at == first.activated_at


def test_recovery_paths_differ_by_reason():
    assert RECOVERY_PATHS[FailureReason.RATE_LIMIT] != RECOVERY_PATHS[FailureReason.BUDGET_EXHAUSTED]
    assert set(RECOVERY_PATHS) == set(FailureReason)


def test_activate_directly():
    switch = SafetySwitch(failure_threshold=5)
    status = switch.activate("s", FailureReason.CONFLICTING_PERSPECTIVES)
    assert status.active
    assert status.reason is FailureReason.CONFLICTING_PERSPECTIVES


def test_reason_must_be_in_closed_set():
    with pytest.raises(ValueError):
        SafetySwitch().record_failure("s", "made_up")


def test_recovery_attempt_outcomes():
    switch = SafetySwitch()
    switch.record_failure("s", FailureReason.TIMEOUT)

    failed = switch.record_recovery_attempt("s", success=False, reason=FailureReason.RATE_LIMIT)
    assert failed.active
    assert failed.reason is FailureReason.RATE_LIMIT
    assert failed.attempted_recoveries == 1
    assert failed.last_recovery_attempt is not None

    recovered = switch.record_recovery_attempt("s", success=True)
    assert not recovered.active
    assert not switch.is_active("s")


def test_clear_on_teardown():
    switch = SafetySwitch()
    switch.record_failure("s", FailureReason.TIMEOUT)
    switch.clear("s")
    assert not switch.is_active("s")
    assert switch.active_sessions() == []


def test_sessions_are_independent():
    switch = SafetySwitch()
    switch.record_failure("a", FailureReason.TIMEOUT)
    assert switch.is_active("a")
    assert not switch.is_active("b")


def test_concurrent_sessions():
    switch = SafetySwitch(failure_threshold=50)

    def hammer(session_id):
        for _ in range(50):
            switch.record_failure(session_id, FailureReason.API_FAILURE)

    threads = [threading.Thread(target=hammer, args=(f"s{i}",)) for i in range(8)]
    threads += [threading.Thread(target=hammer, args=("shared",)) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    for i in range(8):
        status = switch.get_status(f"s{i}")
        assert status.active
        assert status.consecutive_failures == 50
    assert switch.get_status("shared").consecutive_failures == 200


def test_locks_are_released_after_use():
    switch = SafetySwitch()
    for i in range(100):
        switch.record_success(f"s{i}")
        switch.record_failure(f"f{i}", FailureReason.TIMEOUT)
        switch.clear(f"f{i}")
    assert switch._locks == {}
    assert switch._states == {}


def test_clear_waits_for_current_holder():
    switch = SafetySwitch()
    switch.record_failure("s", FailureReason.TIMEOUT)

    with switch._lock("s"):
        held = switch._locks["s"][0]
        clearer = threading.Thread(target=switch.clear, args=("s",))
        clearer.start()
        clearer.join(timeout=0.05)
        assert clearer.is_alive()
        # A waiter keeps the same lock registered for the session.
        assert switch._locks["s"][0] is held
        assert switch.is_active("s")

    clearer.join()
    assert not switch.is_active("s")
    assert switch._locks == {}


def test_concurrent_clear_and_failures_stay_consistent():
    switch = SafetySwitch(failure_threshold=1000)

    def fail():
        for _ in range(300):
            switch.record_failure("s", FailureReason.API_FAILURE)

    def clear():
        for _ in range(300):
            switch.clear("s")

    threads = [threading.Thread(target=fail) for _ in range(3)] + [threading.Thread(target=clear)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert switch.get_status("s").consecutive_failures <= 900
    assert switch._locks == {}
