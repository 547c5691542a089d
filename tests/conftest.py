"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from llm_relay.relay.models import Attempt, AttemptHistory, AttemptOutcome
from llm_relay.relay.routing import RoutingTable, TaskRouter

_DEMO_AGENT_COMMAND = (
    f"{sys.executable} -m llm_relay.relay.backend.demo_agent --prompt-file {{prompt_file}}"
)

_BASE_TIME = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


@pytest.fixture()
def demo_agent_command() -> str:
    """Command template running the bundled demo solver with this interpreter."""

    return _DEMO_AGENT_COMMAND


@pytest.fixture()
def router() -> TaskRouter:
    return TaskRouter(
        RoutingTable.build(
            {
                "documentation-search": ("B1", "B2"),
                "debugging": ("B2",),
            },
        ),
    )


@pytest.fixture()
def make_history() -> Callable[..., AttemptHistory]:
    """Build a history from (backend, outcome, signatures, seconds) tuples."""

    def _make(
        *specs: tuple[str, AttemptOutcome, tuple[str, ...], float],
        task_id: str = "t-1",
    ) -> AttemptHistory:
        history = AttemptHistory(task_id)
        cursor = _BASE_TIME
        for backend_id, outcome, signatures, seconds in specs:
            finished = cursor + timedelta(seconds=seconds)
            history.append(
                Attempt(
                    task_id=task_id,
                    backend_id=backend_id,
                    started_at=cursor,
                    finished_at=finished,
                    outcome=outcome,
                    failure_signatures=signatures,
                ),
            )
            cursor = finished
        return history

    return _make
