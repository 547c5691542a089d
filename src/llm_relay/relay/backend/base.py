"""Backend adapter interface for task attempts."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from llm_relay.relay.models import Attempt, HandoverRecord, Task


def _never_cancelled() -> bool:
    return False


@dataclass(slots=True)
class BackendContext:
    """Inputs available to one backend invocation besides the task itself."""

    attempt_no: int = 1
    handover: HandoverRecord | None = None
    timeout_seconds: float | None = None
    cancel_requested: Callable[[], bool] = _never_cancelled


@runtime_checkable
class BackendAdapter(Protocol):
    """Protocol implemented by solver backends."""

    backend_id: str

    def submit(self, task: Task, context: BackendContext) -> Attempt:
        """Run one attempt and return its envelope; never touches task history."""
