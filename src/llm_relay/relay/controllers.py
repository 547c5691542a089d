"""Controllers for relay CLI commands."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from uuid import uuid4

from llm_relay.config import Settings
from llm_relay.relay.backend import BackendAdapter, CommandBackend
from llm_relay.relay.detector import LoopDetector, LoopDetectorConfig
from llm_relay.relay.errors import NoEligibleBackend
from llm_relay.relay.manager import RelayManager
from llm_relay.relay.models import Task, TaskResult
from llm_relay.relay.routing import RoutingTable, TaskRouter


@dataclass(slots=True)
class RelayRouteCommand:
    """CLI input for a dry routing decision."""

    category: str
    excluded: tuple[str, ...] = ()


@dataclass(slots=True)
class RelayRunCommand:
    """CLI input for running one task through the relay."""

    category: str
    payload: str
    task_id: str | None = None
    timeout_seconds: int | None = None
    output_format: str = "table"


@dataclass(slots=True)
class RelayRunResult:
    """Run report to render in CLI."""

    lines: list[str]
    success: bool


class RelayCliController:
    """Coordinates routing inspection and task runs for the CLI."""

    def routes(self) -> list[str]:
        settings = _load_settings()
        table = RoutingTable.from_settings(settings)
        lines = ["Category routes (first eligible backend wins):"]
        for category, backends in table.routes.items():
            lines.append(f"  {category}: {' -> '.join(backends)}")
        configured = sorted(settings.backends.commands)
        lines.append(f"Backends with commands: {', '.join(configured) or '-'}")
        return lines

    def route(self, command: RelayRouteCommand) -> list[str]:
        settings = _load_settings()
        router = TaskRouter(RoutingTable.from_settings(settings))
        task = Task(task_id="dry-run", category=command.category, payload=None)
        try:
            backend_id = router.route(task, command.excluded)
        except NoEligibleBackend as error:
            return [f"No eligible backend: {error}"]
        return [f"{command.category} -> {backend_id}"]

    def run(self, command: RelayRunCommand) -> RelayRunResult:
        settings = _load_settings()
        settings.validate_commands()
        router = TaskRouter(RoutingTable.from_settings(settings))
        backends: dict[str, BackendAdapter] = {
            backend_id: CommandBackend(
                backend_id,
                template,
                workdir_root=settings.backends.workdir,
                stuck_exit_codes=settings.backends.stuck_exit_codes,
            )
            for backend_id, template in settings.backends.commands.items()
        }
        task = Task(
            task_id=command.task_id or str(uuid4()),
            category=command.category,
            payload=command.payload,
        )
        manager = RelayManager(
            task,
            router=router,
            backends=backends,
            detector=LoopDetector(LoopDetectorConfig.from_settings(settings.stuck)),
            per_attempt_timeout_seconds=(
                command.timeout_seconds
                if command.timeout_seconds is not None
                else settings.per_attempt_timeout_seconds
            ),
        )
        result = manager.run()
        if command.output_format == "json":
            return RelayRunResult(
                lines=[json.dumps(result_to_dict(result), indent=2, default=str)],
                success=result.succeeded,
            )
        return RelayRunResult(lines=render_result_lines(result), success=result.succeeded)


def result_to_dict(result: TaskResult) -> dict[str, object]:
    return {
        "task_id": result.task_id,
        "state": result.state.value,
        "reason": result.reason.value if result.reason is not None else None,
        "result": result.result,
        "excluded_backends": list(result.excluded_backends),
        "attempts": [attempt.to_details() for attempt in result.attempts],
        "events": [
            {
                "event_type": event.event_type,
                "state_from": event.state_from.value if event.state_from else None,
                "state_to": event.state_to.value if event.state_to else None,
                "created_at": event.created_at.isoformat(),
                "details": event.details,
            }
            for event in result.events
        ],
    }


def render_result_lines(result: TaskResult) -> list[str]:
    lines = [f"Task {result.task_id}"]
    for index, attempt in enumerate(result.attempts, start=1):
        lines.append(
            f"  attempt {index}: backend={attempt.backend_id} "
            f"outcome={attempt.outcome.value} "
            f"duration={attempt.duration_seconds:.2f}s "
            f"signatures={','.join(attempt.failure_signatures) or '-'}",
        )
    for event in result.events:
        if event.event_type == "relayed":
            lines.append(
                f"  relayed: {event.details['from_backend']} -> {event.details['to_backend']}",
            )
    status = result.state.value
    if result.reason is not None:
        status += f" ({result.reason.value})"
    lines.append(f"Status: {status}")
    if result.succeeded and result.result is not None:
        lines.append("Result:")
        lines.extend(f"  {line}" for line in str(result.result).splitlines())
    elif result.error is not None:
        lines.append(f"Error: {result.error}")
    return lines


def _load_settings() -> Settings:
    settings = Settings.from_env()
    settings.validate()
    logging.basicConfig(level=settings.log_level)
    return settings
