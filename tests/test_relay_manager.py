from __future__ import annotations

import threading
import time

import allure
import pytest

from llm_relay.relay.backend import BackendContext, ScriptedBackend
from llm_relay.relay.backend.scripted import failure, stuck, success
from llm_relay.relay.detector import LoopDetector, LoopDetectorConfig
from llm_relay.relay.errors import (
    BackendFailure,
    Cancelled,
    InvalidTransition,
    NoEligibleBackend,
    RelayError,
)
from llm_relay.relay.manager import RelayManager
from llm_relay.relay.models import (
    Attempt,
    AttemptOutcome,
    FailureReason,
    HandoverRecord,
    Task,
    TaskState,
    utc_now,
)
from llm_relay.relay.routing import RoutingTable, TaskRouter
from llm_relay.relay.signatures import (
    BACKEND_ERROR_SIGNATURE,
    BACKEND_UNRESPONSIVE_SIGNATURE,
    TIMEOUT_SIGNATURE,
)

pytestmark = [
    allure.epic("Relay"),
    allure.feature("Relay Manager"),
]


class RecordingRouter(TaskRouter):
    """Router spy capturing every exclusion set it was asked to honour."""

    def __init__(self, table: RoutingTable) -> None:
        super().__init__(table)
        self.exclusions: list[frozenset[str]] = []

    def route(self, task, excluded_backends=()):
        self.exclusions.append(frozenset(excluded_backends))
        return super().route(task, excluded_backends)


class RaisingBackend:
    backend_id = "B1"

    def submit(self, task: Task, context: BackendContext) -> Attempt:
        raise RuntimeError("adapter exploded")


class CancelIgnoringBackend:
    """Sleeps through every submit and tracks how many run at once."""

    def __init__(self, backend_id: str, sleep_seconds: float) -> None:
        self.backend_id = backend_id
        self.sleep_seconds = sleep_seconds
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def submit(self, task: Task, context: BackendContext) -> Attempt:
        with self._lock:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            started_at = utc_now()
            time.sleep(self.sleep_seconds)
            return Attempt(
                task_id=task.task_id,
                backend_id=self.backend_id,
                started_at=started_at,
                finished_at=utc_now(),
                outcome=AttemptOutcome.STUCK,
                failure_signatures=("slow",),
            )
        finally:
            with self._lock:
                self.active -= 1


class MisaddressedBackend:
    backend_id = "B1"

    def submit(self, task: Task, context: BackendContext) -> Attempt:
        now = utc_now()
        return Attempt(
            task_id="someone-else",
            backend_id=self.backend_id,
            started_at=now,
            finished_at=now,
            outcome=AttemptOutcome.SUCCESS,
            result="wrong task",
        )


def _task(category: str = "documentation-search") -> Task:
    return Task(task_id="t-1", category=category, payload="where is the retry policy documented?")


def _manager(task: Task, router: TaskRouter, backends, **kwargs) -> RelayManager:
    return RelayManager(
        task,
        router=router,
        backends={backend.backend_id: backend for backend in backends},
        **kwargs,
    )


def test_success_on_first_backend(router: TaskRouter) -> None:
    b1 = ScriptedBackend("B1", [success("found it")])
    b2 = ScriptedBackend("B2", [success("unused")])

    result = _manager(_task(), router, [b1, b2]).run()

    assert result.state == TaskState.SUCCEEDED
    assert result.reason is None
    assert result.result == "found it"
    assert len(result.attempts) == 1
    assert b2.calls == []
    assert [event.event_type for event in result.events] == [
        "submitted",
        "attempt_started",
        "attempt_finished",
        "succeeded",
    ]


def test_stuck_backend_relays_with_handover() -> None:
    table = RoutingTable.build({"documentation-search": ("B1", "B2")})
    spy = RecordingRouter(table)
    b1 = ScriptedBackend("B1", [stuck("X"), stuck("X")])
    b2 = ScriptedBackend("B2", [success("answer")])
    detector = LoopDetector(LoopDetectorConfig(max_repeated_failures=2))

    result = _manager(_task(), spy, [b1, b2], detector=detector).run()

    assert result.state == TaskState.SUCCEEDED
    assert result.result == "answer"
    assert len(b1.calls) == 2
    assert len(b2.calls) == 1
    handover = b2.handovers[0]
    assert isinstance(handover, HandoverRecord)
    assert "X" in handover.failure_signatures
    assert "X" in handover.summary
    assert handover.consumed
    assert result.excluded_backends == ("B1",)
    assert spy.exclusions == [frozenset(), frozenset({"B1"})]


def test_continuation_on_same_backend_carries_no_handover(router: TaskRouter) -> None:
    b1 = ScriptedBackend("B1", [stuck("X"), success("second try")])
    b2 = ScriptedBackend("B2", [success("unused")])

    result = _manager(_task(), router, [b1, b2]).run()

    assert result.state == TaskState.SUCCEEDED
    assert [context.attempt_no for _, context in b1.calls] == [1, 2]
    assert b1.handovers == [None, None]
    assert b2.calls == []


def test_history_length_matches_invocations(router: TaskRouter) -> None:
    b1 = ScriptedBackend("B1", [stuck("X"), stuck("Y"), stuck("Z")])
    b2 = ScriptedBackend("B2", [stuck("Q"), success("done")])

    result = _manager(_task(), router, [b1, b2]).run()

    assert len(result.attempts) == len(b1.calls) + len(b2.calls) == 5
    assert [attempt.backend_id for attempt in result.attempts] == ["B1"] * 3 + ["B2"] * 2


def test_all_backends_exhausted() -> None:
    table = RoutingTable.build({"documentation-search": ("B1", "B2")})
    spy = RecordingRouter(table)
    b1 = ScriptedBackend("B1", [stuck("X")])
    b2 = ScriptedBackend("B2", [stuck("Y")])
    detector = LoopDetector(LoopDetectorConfig(max_attempts_per_backend=1))

    result = _manager(_task(), spy, [b1, b2], detector=detector).run()

    assert result.state == TaskState.FAILED
    assert result.reason == FailureReason.BACKENDS_EXHAUSTED
    assert isinstance(result.error, NoEligibleBackend)
    assert result.excluded_backends == ("B1", "B2")
    assert spy.exclusions == [frozenset(), frozenset({"B1"}), frozenset({"B1", "B2"})]
    with pytest.raises(NoEligibleBackend):
        result.raise_for_failure()


def test_excluded_backend_is_never_reselected(router: TaskRouter) -> None:
    b1 = ScriptedBackend("B1", [stuck("X")])
    b2 = ScriptedBackend("B2", [stuck("X")])
    detector = LoopDetector(LoopDetectorConfig(max_attempts_per_backend=1))

    result = _manager(_task(), router, [b1, b2], detector=detector).run()

    backends = [attempt.backend_id for attempt in result.attempts]
    assert backends == ["B1", "B2"]
    assert len(b1.calls) == 1


def test_backend_failure_is_terminal_and_not_retried(router: TaskRouter) -> None:
    b1 = ScriptedBackend("B1", [failure("fatal", error_summary="unsupported request")])
    b2 = ScriptedBackend("B2", [success("unused")])

    result = _manager(_task(), router, [b1, b2]).run()

    assert result.state == TaskState.FAILED
    assert result.reason == FailureReason.BACKEND_FAILURE
    assert isinstance(result.error, BackendFailure)
    assert result.error.attempt.failure_signatures == ("fatal",)
    assert len(b1.calls) == 1
    assert b2.calls == []


def test_high_risk_signature_relays_immediately(router: TaskRouter) -> None:
    b1 = ScriptedBackend("B1", [stuck("risk:destructive-operation")])
    b2 = ScriptedBackend("B2", [success("safe path")])

    result = _manager(_task(), router, [b1, b2]).run()

    assert result.state == TaskState.SUCCEEDED
    assert len(b1.calls) == 1
    assert any("high-risk" in item for item in b2.handovers[0].hypotheses)


def test_elapsed_budget_relays(router: TaskRouter) -> None:
    b1 = ScriptedBackend(
        "B1",
        [stuck("X", duration_seconds=1_000), stuck("Y", duration_seconds=900)],
    )
    b2 = ScriptedBackend("B2", [success("done")])

    result = _manager(_task(), router, [b1, b2]).run()

    assert result.state == TaskState.SUCCEEDED
    assert len(b1.calls) == 2
    relayed = [event for event in result.events if event.event_type == "stuck_detected"]
    assert relayed[0].details["rule"] == "elapsed_budget"


def test_timeout_marks_attempt_stuck(router: TaskRouter) -> None:
    b1 = ScriptedBackend("B1", [stuck(sleep_seconds=5)])
    b2 = ScriptedBackend("B2", [success("fast")])
    detector = LoopDetector(LoopDetectorConfig(max_attempts_per_backend=1))

    started = time.monotonic()
    result = _manager(
        _task(),
        router,
        [b1, b2],
        detector=detector,
        per_attempt_timeout_seconds=0.2,
    ).run()

    assert time.monotonic() - started < 4
    assert result.state == TaskState.SUCCEEDED
    first = result.attempts[0]
    assert first.outcome == AttemptOutcome.STUCK
    assert first.failure_signatures == (TIMEOUT_SIGNATURE,)
    assert b1.calls[0][1].cancel_requested() is True


def test_adapter_exception_becomes_failure_attempt(router: TaskRouter) -> None:
    b2 = ScriptedBackend("B2", [success("unused")])

    result = _manager(_task(), router, [RaisingBackend(), b2]).run()

    assert result.reason == FailureReason.BACKEND_FAILURE
    assert result.attempts[0].failure_signatures == (BACKEND_ERROR_SIGNATURE,)
    assert "adapter exploded" in (result.attempts[0].error_summary or "")


def test_cancel_in_flight_attempt(router: TaskRouter) -> None:
    b1 = ScriptedBackend("B1", [stuck(sleep_seconds=5)])
    b2 = ScriptedBackend("B2", [success("unused")])
    manager = _manager(_task(), router, [b1, b2])

    timer = threading.Timer(0.2, manager.cancel)
    timer.start()
    try:
        result = manager.run()
    finally:
        timer.cancel()

    assert result.state == TaskState.FAILED
    assert result.reason == FailureReason.CANCELLED
    assert isinstance(result.error, Cancelled)
    assert result.attempts == ()
    assert manager.history.in_flight is None
    assert b2.calls == []


def test_cancel_before_run(router: TaskRouter) -> None:
    b1 = ScriptedBackend("B1", [success("unused")])
    b2 = ScriptedBackend("B2", [success("unused")])
    manager = _manager(_task(), router, [b1, b2])
    manager.cancel()

    result = manager.run()

    assert result.reason == FailureReason.CANCELLED
    assert b1.calls == []


def test_cancel_after_completion_is_noop(router: TaskRouter) -> None:
    b1 = ScriptedBackend("B1", [success("ok")])
    b2 = ScriptedBackend("B2", [success("unused")])
    manager = _manager(_task(), router, [b1, b2])
    manager.run()
    manager.cancel()
    assert manager.state == TaskState.SUCCEEDED


def test_state_walk_through_relay(router: TaskRouter) -> None:
    b1 = ScriptedBackend("B1", [stuck("X")])
    b2 = ScriptedBackend("B2", [success("ok")])
    detector = LoopDetector(LoopDetectorConfig(max_attempts_per_backend=1))

    result = _manager(_task(), router, [b1, b2], detector=detector).run()

    transitions = [
        (event.state_from, event.state_to) for event in result.events if event.state_to is not None
    ]
    assert transitions == [
        (None, TaskState.RUNNING),
        (TaskState.RUNNING, TaskState.STUCK),
        (TaskState.STUCK, TaskState.RELAYED),
        (TaskState.RELAYED, TaskState.RUNNING),
        (TaskState.RUNNING, TaskState.SUCCEEDED),
    ]


def test_invalid_transition_is_rejected(router: TaskRouter) -> None:
    b1 = ScriptedBackend("B1", [success("ok")])
    b2 = ScriptedBackend("B2", [success("unused")])
    manager = _manager(_task(), router, [b1, b2])
    manager.run()

    assert manager.can_transition(TaskState.SUCCEEDED, TaskState.RUNNING) is False
    with pytest.raises(InvalidTransition):
        manager._transition(TaskState.RUNNING, event_type="resumed")


def test_manager_runs_once(router: TaskRouter) -> None:
    b1 = ScriptedBackend("B1", [success("ok")])
    b2 = ScriptedBackend("B2", [success("unused")])
    manager = _manager(_task(), router, [b1, b2])
    manager.run()
    with pytest.raises(RelayError, match="already run"):
        manager.run()


def test_missing_adapter_is_rejected(router: TaskRouter) -> None:
    with pytest.raises(ValueError, match="No adapter registered for backends: B2"):
        _manager(_task(), router, [ScriptedBackend("B1", [success()])])


def test_new_backend_gets_continuation_after_relay(router: TaskRouter) -> None:
    b1 = ScriptedBackend("B1", [stuck("X")])
    b2 = ScriptedBackend("B2", [stuck("Y"), success("fixed on B2")])

    result = _manager(_task(), router, [b1, b2]).run()

    assert result.state == TaskState.SUCCEEDED
    assert result.result == "fixed on B2"
    assert len(b1.calls) == 3
    assert len(b2.calls) == 2
    assert b2.handovers[1] is None


def test_timed_out_attempt_is_joined_before_the_next_one() -> None:
    router = TaskRouter(RoutingTable.build({"debugging": ("B1",)}))
    b1 = CancelIgnoringBackend("B1", sleep_seconds=0.4)
    detector = LoopDetector(LoopDetectorConfig(max_attempts_per_backend=2))

    result = _manager(
        _task("debugging"),
        router,
        [b1],
        detector=detector,
        per_attempt_timeout_seconds=0.2,
    ).run()

    assert b1.max_active == 1
    assert b1.calls == 2
    assert result.reason == FailureReason.BACKENDS_EXHAUSTED
    assert [attempt.failure_signatures for attempt in result.attempts] == [
        (TIMEOUT_SIGNATURE,),
        (TIMEOUT_SIGNATURE,),
    ]


def test_backend_ignoring_abort_fails_the_task() -> None:
    router = TaskRouter(RoutingTable.build({"debugging": ("B1",)}))
    b1 = CancelIgnoringBackend("B1", sleep_seconds=0.6)

    result = _manager(
        _task("debugging"),
        router,
        [b1],
        per_attempt_timeout_seconds=0.2,
        abort_grace_seconds=0.1,
    ).run()

    assert result.state == TaskState.FAILED
    assert result.reason == FailureReason.BACKEND_FAILURE
    assert b1.calls == 1
    assert b1.max_active == 1
    assert result.attempts[0].outcome == AttemptOutcome.FAILURE
    assert result.attempts[0].failure_signatures == (
        TIMEOUT_SIGNATURE,
        BACKEND_UNRESPONSIVE_SIGNATURE,
    )


def test_misaddressed_attempt_becomes_failure(router: TaskRouter) -> None:
    b2 = ScriptedBackend("B2", [success("unused")])
    manager = _manager(_task(), router, [MisaddressedBackend(), b2])

    result = manager.run()

    assert result.state == TaskState.FAILED
    assert result.reason == FailureReason.BACKEND_FAILURE
    assert result.attempts[0].task_id == "t-1"
    assert result.attempts[0].failure_signatures == (BACKEND_ERROR_SIGNATURE,)
    assert manager.history.in_flight is None
    assert b2.calls == []
