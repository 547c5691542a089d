"""CLI entrypoint for llm-relay."""

import rich_click as click

from llm_relay import __version__
from llm_relay.relay.controllers import RelayCliController, RelayRouteCommand, RelayRunCommand

click.rich_click.USE_MARKDOWN = True
RELAY_CONTROLLER = RelayCliController()


@click.group()
@click.version_option(version=__version__, prog_name="llm-relay")
def llm_relay() -> None:
    """Route tasks to solver backends and relay them when a backend gets stuck.

    Configuration comes from `LLM_RELAY_*` environment variables.
    """


@llm_relay.command("routes")
def relay_routes() -> None:
    """Show the category routing table."""

    try:
        _emit_lines(RELAY_CONTROLLER.routes())
    except ValueError as error:
        raise click.ClickException(str(error)) from error


@llm_relay.command("route")
@click.argument("category")
@click.option(
    "--exclude",
    "excluded",
    multiple=True,
    help="Backend id to treat as exhausted. Can be repeated.",
)
def relay_route(category: str, excluded: tuple[str, ...]) -> None:
    """Show which backend a task category would be routed to."""

    try:
        _emit_lines(RELAY_CONTROLLER.route(RelayRouteCommand(category=category, excluded=excluded)))
    except ValueError as error:
        raise click.ClickException(str(error)) from error


@llm_relay.command("run")
@click.argument("category")
@click.argument("payload")
@click.option("--task-id", default=None, help="Task identifier. Defaults to a random UUID.")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Per-attempt timeout in seconds. Defaults to LLM_RELAY_PER_ATTEMPT_TIMEOUT_SECONDS.",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
    help="Output format.",
)
def relay_run(
    category: str,
    payload: str,
    task_id: str | None,
    timeout_seconds: int | None,
    output_format: str,
) -> None:
    """Run one task through the configured command backends."""

    try:
        result = RELAY_CONTROLLER.run(
            RelayRunCommand(
                category=category,
                payload=payload,
                task_id=task_id,
                timeout_seconds=timeout_seconds,
                output_format=output_format,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Task did not succeed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    llm_relay()
