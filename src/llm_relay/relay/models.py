"""Domain models for tasks, attempts and handovers."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from llm_relay.relay.errors import (
    AttemptInFlight,
    BackendFailure,
    Cancelled,
    HandoverConsumed,
    NoEligibleBackend,
)


def utc_now() -> datetime:
    """Return timezone-aware current UTC time."""

    return datetime.now(UTC)


class AttemptOutcome(str, Enum):
    """Result kinds an adapter may report for one invocation."""

    SUCCESS = "success"
    FAILURE = "failure"
    STUCK = "stuck"


class TaskState(str, Enum):
    """Relay lifecycle states."""

    RUNNING = "running"
    STUCK = "stuck"
    RELAYED = "relayed"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Why a task ended in the failed state."""

    BACKEND_FAILURE = "backend_failure"
    BACKENDS_EXHAUSTED = "backends_exhausted"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({TaskState.SUCCEEDED, TaskState.FAILED})


@dataclass(frozen=True, slots=True)
class Task:
    """Immutable unit of work submitted to the relay."""

    task_id: str
    category: str
    payload: Any
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class Attempt:
    """One completed backend invocation against a task."""

    task_id: str
    backend_id: str
    started_at: datetime
    finished_at: datetime
    outcome: AttemptOutcome
    failure_signatures: tuple[str, ...] = ()
    result: Any = None
    error_summary: str | None = None

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.finished_at - self.started_at).total_seconds())

    def to_details(self) -> dict[str, object]:
        """Serialize attempt diagnostics for task events and CLI output."""

        return {
            "backend_id": self.backend_id,
            "outcome": self.outcome.value,
            "failure_signatures": list(self.failure_signatures),
            "duration_seconds": round(self.duration_seconds, 3),
            "error_summary": self.error_summary,
        }


class AttemptHistory:
    """Append-only attempt log for a single task.

    At most one attempt may be in flight: ``begin`` opens the slot and
    ``append`` closes it.
    """

    def __init__(self, task_id: str, attempts: Iterable[Attempt] = ()) -> None:
        self.task_id = task_id
        self._attempts: list[Attempt] = []
        self._in_flight: str | None = None
        for attempt in attempts:
            self.append(attempt)

    def begin(self, backend_id: str) -> None:
        if self._in_flight is not None:
            raise AttemptInFlight(
                f"Task {self.task_id} already has an attempt in flight on "
                f"backend {self._in_flight!r}",
            )
        self._in_flight = backend_id

    def abandon(self) -> None:
        """Drop the in-flight slot without recording an attempt (cancellation)."""

        self._in_flight = None

    def append(self, attempt: Attempt) -> None:
        if attempt.task_id != self.task_id:
            raise ValueError(
                f"Attempt for task {attempt.task_id} cannot join history of {self.task_id}",
            )
        if self._in_flight is not None and attempt.backend_id != self._in_flight:
            raise AttemptInFlight(
                f"Attempt from backend {attempt.backend_id!r} does not match "
                f"in-flight backend {self._in_flight!r}",
            )
        self._attempts.append(attempt)
        self._in_flight = None

    @property
    def in_flight(self) -> str | None:
        return self._in_flight

    @property
    def attempts(self) -> tuple[Attempt, ...]:
        return tuple(self._attempts)

    @property
    def last(self) -> Attempt | None:
        return self._attempts[-1] if self._attempts else None

    @property
    def elapsed_seconds(self) -> float:
        return sum(attempt.duration_seconds for attempt in self._attempts)

    def for_backend(self, backend_id: str) -> tuple[Attempt, ...]:
        return tuple(attempt for attempt in self._attempts if attempt.backend_id == backend_id)

    def backends_tried(self) -> tuple[str, ...]:
        ordered: list[str] = []
        for attempt in self._attempts:
            if attempt.backend_id not in ordered:
                ordered.append(attempt.backend_id)
        return tuple(ordered)

    def __len__(self) -> int:
        return len(self._attempts)

    def __iter__(self) -> Iterator[Attempt]:
        return iter(tuple(self._attempts))


@dataclass(slots=True)
class HandoverRecord:
    """Summary of prior attempts passed once to the next backend."""

    task_id: str
    attempts: tuple[Attempt, ...]
    summary: str
    hypotheses: tuple[str, ...]
    backends_tried: tuple[str, ...]
    _consumed: bool = field(default=False, init=False, repr=False, compare=False)

    @property
    def failure_signatures(self) -> tuple[str, ...]:
        ordered: list[str] = []
        for attempt in self.attempts:
            for signature in attempt.failure_signatures:
                if signature not in ordered:
                    ordered.append(signature)
        return tuple(ordered)

    @property
    def consumed(self) -> bool:
        return self._consumed

    def consume(self) -> HandoverRecord:
        """Mark the record as delivered; a second delivery is an error."""

        if self._consumed:
            raise HandoverConsumed(f"Handover for task {self.task_id} was already consumed")
        self._consumed = True
        return self

    def render(self) -> str:
        """Plain-text form appended to a backend prompt."""

        lines = ["Handover from previous backends:", self.summary]
        if self.hypotheses:
            lines.append("Hypotheses:")
            lines.extend(f"- {hypothesis}" for hypothesis in self.hypotheses)
        return "\n".join(lines)


@dataclass(frozen=True, slots=True)
class TaskEvent:
    """Task event entry for the in-memory audit trail."""

    task_id: str
    event_type: str
    state_from: TaskState | None
    state_to: TaskState | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskResult:
    """Terminal outcome reported to the caller of the relay."""

    task_id: str
    state: TaskState
    reason: FailureReason | None
    result: Any
    attempts: tuple[Attempt, ...]
    excluded_backends: tuple[str, ...]
    events: list[TaskEvent]
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == TaskState.SUCCEEDED

    def raise_for_failure(self) -> None:
        """Re-raise the surfaced error for failed tasks."""

        if self.state != TaskState.FAILED:
            return
        if isinstance(self.error, (BackendFailure, NoEligibleBackend, Cancelled)):
            raise self.error
        raise RuntimeError(f"Task {self.task_id} failed: {self.reason}")
