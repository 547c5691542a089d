"""Deterministic in-memory backend for tests and embedding callers."""

from __future__ import annotations

import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from llm_relay.relay.backend.base import BackendContext
from llm_relay.relay.models import Attempt, AttemptOutcome, Task, utc_now


@dataclass(frozen=True, slots=True)
class ScriptStep:
    """One scripted attempt result."""

    outcome: AttemptOutcome
    signatures: tuple[str, ...] = ()
    result: Any = None
    error_summary: str | None = None
    sleep_seconds: float = 0.0
    # Reported duration; lets tests exercise elapsed budgets without sleeping.
    duration_seconds: float | None = None


def success(result: Any = "ok", **kwargs: Any) -> ScriptStep:
    return ScriptStep(outcome=AttemptOutcome.SUCCESS, result=result, **kwargs)


def failure(*signatures: str, **kwargs: Any) -> ScriptStep:
    return ScriptStep(outcome=AttemptOutcome.FAILURE, signatures=signatures, **kwargs)


def stuck(*signatures: str, **kwargs: Any) -> ScriptStep:
    return ScriptStep(outcome=AttemptOutcome.STUCK, signatures=signatures, **kwargs)


class ScriptedBackend:
    """Replays scripted steps in order; the last step repeats once exhausted."""

    def __init__(self, backend_id: str, steps: Iterable[ScriptStep]) -> None:
        self.backend_id = backend_id
        self.steps = tuple(steps)
        if not self.steps:
            raise ValueError(f"Scripted backend {backend_id!r} needs at least one step.")
        self.calls: list[tuple[Task, BackendContext]] = []
        self._lock = threading.Lock()

    def submit(self, task: Task, context: BackendContext) -> Attempt:
        with self._lock:
            index = min(len(self.calls), len(self.steps) - 1)
            self.calls.append((task, context))
        step = self.steps[index]

        started_at = utc_now()
        _sleep_unless_cancelled(step.sleep_seconds, context)
        finished_at = (
            started_at + timedelta(seconds=step.duration_seconds)
            if step.duration_seconds is not None
            else utc_now()
        )
        return Attempt(
            task_id=task.task_id,
            backend_id=self.backend_id,
            started_at=started_at,
            finished_at=finished_at,
            outcome=step.outcome,
            failure_signatures=step.signatures,
            result=step.result if step.outcome == AttemptOutcome.SUCCESS else None,
            error_summary=step.error_summary,
        )

    @property
    def handovers(self) -> list[Any]:
        return [context.handover for _, context in self.calls]


def _sleep_unless_cancelled(seconds: float, context: BackendContext) -> None:
    deadline = time.monotonic() + seconds
    while time.monotonic() < deadline:
        if context.cancel_requested():
            return
        time.sleep(min(0.01, max(0.0, deadline - time.monotonic())))
