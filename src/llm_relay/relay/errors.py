"""Exception hierarchy for the task relay.

All exceptions inherit from RelayError so callers can catch broadly
or narrowly as needed. Only StuckDetected is handled inside the relay
manager; the terminal kinds are surfaced through ``TaskResult``.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from llm_relay.relay.detector import StuckVerdict
    from llm_relay.relay.models import Attempt


class RelayError(Exception):
    """Base exception for all relay errors."""


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


class NoEligibleBackend(RelayError):
    """Every backend configured for the category is excluded."""

    def __init__(self, category: str, excluded: Iterable[str]) -> None:
        self.category = category
        self.excluded = frozenset(excluded)
        super().__init__(
            f"No eligible backend for category {category!r}; "
            f"excluded: {', '.join(sorted(self.excluded)) or '-'}",
        )


class UnknownCategory(RelayError, ValueError):
    """Task category is not part of the configured category table."""

    def __init__(self, category: str, known: Iterable[str]) -> None:
        self.category = category
        self.known = tuple(sorted(known))
        super().__init__(
            f"Unknown task category {category!r}. Use one of: {', '.join(self.known)}.",
        )


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class BackendFailure(RelayError):
    """Adapter reported a terminal, non-retryable failure."""

    def __init__(self, attempt: Attempt) -> None:
        self.attempt = attempt
        detail = attempt.error_summary or ", ".join(attempt.failure_signatures) or "no details"
        super().__init__(f"Backend {attempt.backend_id!r} failed task {attempt.task_id}: {detail}")


class StuckDetected(RelayError):
    """Internal signal: the current backend is not converging."""

    def __init__(self, task_id: str, backend_id: str, verdict: StuckVerdict) -> None:
        self.task_id = task_id
        self.backend_id = backend_id
        self.verdict = verdict
        super().__init__(
            f"Task {task_id} stuck on backend {backend_id!r}: {verdict.reason}",
        )


class Cancelled(RelayError):
    """Caller cancelled the task."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} was cancelled")


# ---------------------------------------------------------------------------
# Invariants
# ---------------------------------------------------------------------------


class InvalidTransition(RelayError):
    """Task state machine rejected a transition."""


class AttemptInFlight(RelayError):
    """A second attempt was started while another one is unresolved."""


class HandoverConsumed(RelayError):
    """Handover record was already delivered to a backend."""
