"""Relay manager driving one task across backends until a terminal state.

Tasks flow: RUNNING -> SUCCEEDED, RUNNING -> FAILED, or
RUNNING -> STUCK -> RELAYED -> RUNNING on the next eligible backend.
A backend excluded by a relay is never selected again for the same task.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from llm_relay.relay.backend.base import BackendAdapter, BackendContext
from llm_relay.relay.detector import LoopDetector
from llm_relay.relay.errors import (
    BackendFailure,
    Cancelled,
    InvalidTransition,
    NoEligibleBackend,
    RelayError,
    StuckDetected,
)
from llm_relay.relay.handover import build_handover
from llm_relay.relay.models import (
    TERMINAL_STATES,
    Attempt,
    AttemptHistory,
    AttemptOutcome,
    FailureReason,
    HandoverRecord,
    Task,
    TaskEvent,
    TaskResult,
    TaskState,
    utc_now,
)
from llm_relay.relay.routing import TaskRouter
from llm_relay.relay.sanitization import sanitize_summary
from llm_relay.relay.signatures import (
    BACKEND_ERROR_SIGNATURE,
    BACKEND_UNRESPONSIVE_SIGNATURE,
    TIMEOUT_SIGNATURE,
)

logger = logging.getLogger(__name__)

# Legal state transitions. Cancellation may fail any non-terminal state.
VALID_TRANSITIONS: dict[TaskState, set[TaskState]] = {
    TaskState.RUNNING: {TaskState.STUCK, TaskState.SUCCEEDED, TaskState.FAILED},
    TaskState.STUCK: {TaskState.RELAYED, TaskState.FAILED},
    TaskState.RELAYED: {TaskState.RUNNING, TaskState.FAILED},
    TaskState.SUCCEEDED: set(),
    TaskState.FAILED: set(),
}

_WAIT_SLICE_SECONDS = 0.05


class RelayManager:
    """Runs one task: route, attempt, detect, relay.

    Injected dependencies:
        router: Category routing with exclusion support.
        backends: Adapters keyed by backend id.
        detector: Stuck policy evaluated after every attempt.
    """

    def __init__(
        self,
        task: Task,
        *,
        router: TaskRouter,
        backends: Mapping[str, BackendAdapter],
        detector: LoopDetector | None = None,
        per_attempt_timeout_seconds: float | None = None,
        abort_grace_seconds: float = 2.0,
    ) -> None:
        missing = [
            backend_id
            for backend_id in router.table.candidates(task.category)
            if backend_id not in backends
        ]
        if missing:
            raise ValueError(
                f"No adapter registered for backends: {', '.join(missing)} "
                f"(category {task.category!r})",
            )
        if per_attempt_timeout_seconds is not None and per_attempt_timeout_seconds <= 0:
            raise ValueError("per_attempt_timeout_seconds must be > 0 when set.")
        if abort_grace_seconds < 0:
            raise ValueError("abort_grace_seconds must be >= 0.")
        self.task = task
        self.router = router
        self.backends = backends
        self.detector = detector or LoopDetector()
        self.per_attempt_timeout_seconds = per_attempt_timeout_seconds
        self.abort_grace_seconds = abort_grace_seconds
        self.history = AttemptHistory(task.task_id)
        self.events: list[TaskEvent] = []
        self._excluded: list[str] = []
        self._state: TaskState | None = None
        self._cancel = threading.Event()
        self._started = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> TaskState | None:
        return self._state

    @property
    def excluded_backends(self) -> tuple[str, ...]:
        return tuple(self._excluded)

    def cancel(self) -> None:
        """Request best-effort cancellation of the task."""

        if self._state in TERMINAL_STATES:
            return
        logger.info("Cancellation requested for task %s", self.task.task_id)
        self._cancel.set()

    def run(self) -> TaskResult:
        """Drive the task to a terminal state and report it."""

        if self._started:
            raise RelayError(f"Task {self.task.task_id} was already run by this manager")
        self._started = True
        self._transition(TaskState.RUNNING, event_type="submitted")

        try:
            backend_id = self.router.route(self.task, self._excluded)
        except NoEligibleBackend as error:
            return self._fail(FailureReason.BACKENDS_EXHAUSTED, error)

        handover: HandoverRecord | None = None
        while True:
            if self._cancel.is_set():
                return self._fail(FailureReason.CANCELLED, Cancelled(self.task.task_id))

            attempt = self._run_attempt(backend_id, handover)
            handover = None
            if attempt is None:
                return self._fail(FailureReason.CANCELLED, Cancelled(self.task.task_id))

            if attempt.outcome == AttemptOutcome.SUCCESS:
                return self._succeed(attempt)
            if attempt.outcome == AttemptOutcome.FAILURE:
                return self._fail(FailureReason.BACKEND_FAILURE, BackendFailure(attempt))

            try:
                self._raise_if_stuck(backend_id)
            except StuckDetected as signal:
                try:
                    backend_id, handover = self._relay(signal)
                except NoEligibleBackend as error:
                    return self._fail(FailureReason.BACKENDS_EXHAUSTED, error)

    # ------------------------------------------------------------------
    # Attempt execution
    # ------------------------------------------------------------------

    def _run_attempt(
        self,
        backend_id: str,
        handover: HandoverRecord | None,
    ) -> Attempt | None:
        abort = threading.Event()
        context = BackendContext(
            attempt_no=len(self.history.for_backend(backend_id)) + 1,
            handover=handover.consume() if handover is not None else None,
            timeout_seconds=self.per_attempt_timeout_seconds,
            cancel_requested=lambda: self._cancel.is_set() or abort.is_set(),
        )
        self.history.begin(backend_id)
        self._record(
            "attempt_started",
            details={"backend_id": backend_id, "attempt_no": context.attempt_no},
        )

        attempt = self._invoke(self.backends[backend_id], context, abort)
        if attempt is None:
            self.history.abandon()
            return None

        self.history.append(attempt)
        self._record("attempt_finished", details=attempt.to_details())
        logger.info(
            "Task %s attempt %d on backend %r: %s",
            self.task.task_id,
            len(self.history),
            backend_id,
            attempt.outcome.value,
        )
        return attempt

    def _invoke(
        self,
        adapter: BackendAdapter,
        context: BackendContext,
        abort: threading.Event,
    ) -> Attempt | None:
        """Call the adapter in a helper thread so timeout and cancel stay responsive."""

        done = threading.Event()
        holder: dict[str, Any] = {}
        started_at = utc_now()

        def _target() -> None:
            try:
                holder["attempt"] = adapter.submit(self.task, context)
            except Exception as error:  # noqa: BLE001
                holder["error"] = error
            finally:
                done.set()

        thread = threading.Thread(
            target=_target,
            name=f"relay-{self.task.task_id}-{adapter.backend_id}",
            daemon=True,
        )
        thread.start()

        deadline = (
            time.monotonic() + self.per_attempt_timeout_seconds
            if self.per_attempt_timeout_seconds is not None
            else None
        )
        while not done.wait(_WAIT_SLICE_SECONDS):
            if self._cancel.is_set():
                abort.set()
                self._reap(thread)
                return None
            if deadline is not None and time.monotonic() >= deadline:
                abort.set()
                logger.warning(
                    "Task %s attempt on backend %r timed out after %ss",
                    self.task.task_id,
                    adapter.backend_id,
                    self.per_attempt_timeout_seconds,
                )
                if not self._reap(thread):
                    # The next attempt must not overlap a submit that is still running.
                    return self._synthetic_attempt(
                        adapter.backend_id,
                        started_at,
                        outcome=AttemptOutcome.FAILURE,
                        signatures=(TIMEOUT_SIGNATURE, BACKEND_UNRESPONSIVE_SIGNATURE),
                        summary=(
                            f"attempt exceeded {self.per_attempt_timeout_seconds}s timeout "
                            "and ignored cancellation"
                        ),
                    )
                return self._synthetic_attempt(
                    adapter.backend_id,
                    started_at,
                    outcome=AttemptOutcome.STUCK,
                    signatures=(TIMEOUT_SIGNATURE,),
                    summary=f"attempt exceeded {self.per_attempt_timeout_seconds}s timeout",
                )

        if self._cancel.is_set():
            return None
        if "error" in holder:
            error = holder["error"]
            logger.warning(
                "Backend %r raised while handling task %s: %s",
                adapter.backend_id,
                self.task.task_id,
                error,
            )
            return self._synthetic_attempt(
                adapter.backend_id,
                started_at,
                outcome=AttemptOutcome.FAILURE,
                signatures=(BACKEND_ERROR_SIGNATURE,),
                summary=f"{type(error).__name__}: {error}",
            )
        attempt: Attempt = holder["attempt"]
        if attempt.task_id != self.task.task_id or attempt.backend_id != adapter.backend_id:
            logger.warning(
                "Backend %r returned an attempt for %s/%r while handling task %s",
                adapter.backend_id,
                attempt.task_id,
                attempt.backend_id,
                self.task.task_id,
            )
            return self._synthetic_attempt(
                adapter.backend_id,
                started_at,
                outcome=AttemptOutcome.FAILURE,
                signatures=(BACKEND_ERROR_SIGNATURE,),
                summary=(
                    f"backend returned an attempt for {attempt.task_id}/{attempt.backend_id}"
                ),
            )
        return attempt

    def _reap(self, thread: threading.Thread) -> bool:
        """Wait up to the grace period for an aborted submit; False if it is still running."""

        thread.join(self.abort_grace_seconds)
        if thread.is_alive():
            logger.warning(
                "Task %s: backend thread %s ignored abort for %ss",
                self.task.task_id,
                thread.name,
                self.abort_grace_seconds,
            )
            return False
        return True

    def _synthetic_attempt(
        self,
        backend_id: str,
        started_at: datetime,
        *,
        outcome: AttemptOutcome,
        signatures: tuple[str, ...],
        summary: str,
    ) -> Attempt:
        return Attempt(
            task_id=self.task.task_id,
            backend_id=backend_id,
            started_at=started_at,
            finished_at=utc_now(),
            outcome=outcome,
            failure_signatures=signatures,
            error_summary=sanitize_summary(summary),
        )

    # ------------------------------------------------------------------
    # Stuck handling and relay
    # ------------------------------------------------------------------

    def _raise_if_stuck(self, backend_id: str) -> None:
        verdict = self.detector.explain(self.history)
        if verdict.is_stuck:
            raise StuckDetected(self.task.task_id, backend_id, verdict)

    def _relay(self, signal: StuckDetected) -> tuple[str, HandoverRecord]:
        """Exclude the stuck backend and pick the next one.

        Raises:
            NoEligibleBackend: If every backend for the category is excluded.
        """

        self._transition(
            TaskState.STUCK,
            event_type="stuck_detected",
            details={
                "backend_id": signal.backend_id,
                "rule": signal.verdict.rule,
                "reason": signal.verdict.reason,
            },
        )
        handover = build_handover(self.history, signal.verdict)
        self._excluded.append(signal.backend_id)

        next_backend = self.router.route(self.task, self._excluded)
        logger.warning(
            "Relaying task %s from backend %r to %r (%s)",
            self.task.task_id,
            signal.backend_id,
            next_backend,
            signal.verdict.reason,
        )
        self._transition(
            TaskState.RELAYED,
            event_type="relayed",
            details={
                "from_backend": signal.backend_id,
                "to_backend": next_backend,
                "excluded": list(self._excluded),
                "failure_signatures": list(handover.failure_signatures),
            },
        )
        self._transition(
            TaskState.RUNNING,
            event_type="resumed",
            details={"backend_id": next_backend},
        )
        return next_backend, handover

    # ------------------------------------------------------------------
    # Terminal states
    # ------------------------------------------------------------------

    def _succeed(self, attempt: Attempt) -> TaskResult:
        self._transition(
            TaskState.SUCCEEDED,
            event_type="succeeded",
            details={"backend_id": attempt.backend_id},
        )
        logger.info("Task %s succeeded on backend %r", self.task.task_id, attempt.backend_id)
        return self._build_result(
            TaskState.SUCCEEDED,
            reason=None,
            result=attempt.result,
            error=None,
        )

    def _fail(self, reason: FailureReason, error: RelayError) -> TaskResult:
        self._transition(
            TaskState.FAILED,
            event_type="failed",
            details={"reason": reason.value, "error": str(error)},
        )
        logger.warning("Task %s failed: %s (%s)", self.task.task_id, reason.value, error)
        return self._build_result(TaskState.FAILED, reason=reason, result=None, error=error)

    def _build_result(
        self,
        state: TaskState,
        *,
        reason: FailureReason | None,
        result: Any,
        error: RelayError | None,
    ) -> TaskResult:
        return TaskResult(
            task_id=self.task.task_id,
            state=state,
            reason=reason,
            result=result,
            attempts=self.history.attempts,
            excluded_backends=tuple(self._excluded),
            events=list(self.events),
            error=error,
        )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def can_transition(self, from_status: TaskState | None, to_status: TaskState) -> bool:
        if from_status is None:
            return to_status == TaskState.RUNNING
        return to_status in VALID_TRANSITIONS.get(from_status, set())

    def _transition(
        self,
        new_state: TaskState,
        *,
        event_type: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        if not self.can_transition(self._state, new_state):
            old = self._state.value if self._state is not None else "-"
            raise InvalidTransition(
                f"Invalid transition: {old} -> {new_state.value} for task {self.task.task_id}",
            )
        old_state = self._state
        self._state = new_state
        self._record(event_type, state_from=old_state, state_to=new_state, details=details)

    def _record(
        self,
        event_type: str,
        *,
        state_from: TaskState | None = None,
        state_to: TaskState | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.events.append(
            TaskEvent(
                task_id=self.task.task_id,
                event_type=event_type,
                state_from=state_from,
                state_to=state_to,
                created_at=utc_now(),
                details=details or {},
            ),
        )
