"""Subprocess-based backend adapter for external solver commands."""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
import subprocess
import time
from datetime import datetime
from pathlib import Path
from typing import IO

from llm_relay.relay.backend.base import BackendContext
from llm_relay.relay.models import Attempt, AttemptOutcome, Task, utc_now
from llm_relay.relay.sanitization import sanitize_summary
from llm_relay.relay.signatures import (
    BACKEND_ERROR_SIGNATURE,
    BACKEND_NOT_FOUND_SIGNATURE,
    TIMEOUT_SIGNATURE,
    extract_signatures,
)

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_SUPPORTED_PLACEHOLDERS = ("prompt", "prompt_file", "backend")
_UNSAFE_SEGMENT_CHARS = re.compile(r"[^A-Za-z0-9._\-]")


class CommandTemplateError(ValueError):
    """Command template cannot be rendered into an argv."""


class CommandBackend:
    """Run one attempt as an external command rendered from a template.

    Exit code ``0`` is success with stdout as the result; codes listed in
    ``stuck_exit_codes`` report a stuck attempt; anything else is a terminal
    failure. Failure signatures are derived from stderr.
    """

    def __init__(
        self,
        backend_id: str,
        command_template: str,
        *,
        workdir_root: Path,
        stuck_exit_codes: tuple[int, ...] = (3, TIMEOUT_EXIT_CODE),
        poll_interval_seconds: float = 0.1,
    ) -> None:
        validate_command_template(command_template)
        self.backend_id = backend_id
        self.command_template = command_template.strip()
        self.workdir_root = workdir_root
        self.stuck_exit_codes = stuck_exit_codes
        self.poll_interval_seconds = poll_interval_seconds

    def submit(self, task: Task, context: BackendContext) -> Attempt:
        started_at = utc_now()
        attempt_dir = self._attempt_dir(task=task, attempt_no=context.attempt_no)
        attempt_dir.mkdir(parents=True, exist_ok=True)
        prompt = build_prompt(task=task, context=context)
        prompt_file = attempt_dir / "prompt.txt"
        prompt_file.write_text(prompt, "utf-8")
        stdout_path = attempt_dir / "stdout.txt"
        stderr_path = attempt_dir / "stderr.txt"

        run_args = render_command(
            self.command_template,
            prompt=prompt,
            prompt_file=prompt_file,
            backend=self.backend_id,
        )
        env = os.environ.copy()
        env["LLM_RELAY_TASK_ID"] = task.task_id
        env["LLM_RELAY_BACKEND_ID"] = self.backend_id
        env["LLM_RELAY_ATTEMPT_NO"] = str(context.attempt_no)
        env["LLM_RELAY_HANDOVER"] = "1" if context.handover is not None else "0"

        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out = _run_subprocess(
                    run_args=run_args,
                    env=env,
                    timeout_seconds=context.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    context=context,
                    poll_interval_seconds=self.poll_interval_seconds,
                )
        except FileNotFoundError:
            return self._error_attempt(
                task=task,
                started_at=started_at,
                signature=BACKEND_NOT_FOUND_SIGNATURE,
                summary=f"Backend command not found: {run_args[0]}",
            )
        except OSError as error:
            return self._error_attempt(
                task=task,
                started_at=started_at,
                signature=BACKEND_ERROR_SIGNATURE,
                summary=f"Backend command failed to start: {error}",
            )

        stdout = stdout_path.read_text("utf-8", errors="replace")
        stderr = stderr_path.read_text("utf-8", errors="replace")
        finished_at = utc_now()
        logger.debug(
            "Backend %r finished task %s attempt %d with exit code %d",
            self.backend_id,
            task.task_id,
            context.attempt_no,
            exit_code,
        )

        if exit_code == 0 and not timed_out:
            return Attempt(
                task_id=task.task_id,
                backend_id=self.backend_id,
                started_at=started_at,
                finished_at=finished_at,
                outcome=AttemptOutcome.SUCCESS,
                result=stdout.strip(),
            )

        signatures = list(extract_signatures(stderr))
        if timed_out:
            signatures.insert(0, TIMEOUT_SIGNATURE)
        elif not signatures:
            signatures.append(f"exit:{exit_code}")
        outcome = (
            AttemptOutcome.STUCK
            if timed_out or exit_code in self.stuck_exit_codes
            else AttemptOutcome.FAILURE
        )
        return Attempt(
            task_id=task.task_id,
            backend_id=self.backend_id,
            started_at=started_at,
            finished_at=finished_at,
            outcome=outcome,
            failure_signatures=tuple(dict.fromkeys(signatures)),
            error_summary=sanitize_summary(
                _tail(stderr) or f"exit code {exit_code}",
                workdir=self.workdir_root,
            ),
        )

    def _attempt_dir(self, *, task: Task, attempt_no: int) -> Path:
        return (
            self.workdir_root
            / safe_path_segment(task.task_id)
            / safe_path_segment(self.backend_id)
            / f"attempt-{attempt_no}"
        )

    def _error_attempt(
        self,
        *,
        task: Task,
        started_at: datetime,
        signature: str,
        summary: str,
    ) -> Attempt:
        return Attempt(
            task_id=task.task_id,
            backend_id=self.backend_id,
            started_at=started_at,
            finished_at=utc_now(),
            outcome=AttemptOutcome.FAILURE,
            failure_signatures=(signature,),
            error_summary=sanitize_summary(summary, workdir=self.workdir_root),
        )


def safe_path_segment(value: str) -> str:
    """Map a caller-supplied id to one directory name inside the work root."""

    segment = _UNSAFE_SEGMENT_CHARS.sub("_", value.strip())
    if segment.strip(".") == "":
        return "_" * max(len(segment), 1)
    return segment


def build_prompt(*, task: Task, context: BackendContext) -> str:
    """Render task payload plus optional handover into one prompt text."""

    payload = task.payload
    body = payload if isinstance(payload, str) else json.dumps(payload, indent=2, default=str)
    parts = [
        f"Task {task.task_id} ({task.category})",
        "",
        body.strip(),
    ]
    if context.handover is not None:
        parts.extend(["", context.handover.render()])
    return "\n".join(parts) + "\n"


def validate_command_template(command_template: str) -> None:
    stripped = command_template.strip()
    if not stripped:
        raise CommandTemplateError("Backend command template is empty.")
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise CommandTemplateError(
            "Backend command template must include {prompt} or {prompt_file}.",
        )


def render_command(
    command_template: str,
    *,
    prompt: str,
    prompt_file: Path,
    backend: str,
) -> list[str]:
    """Render a POSIX command template into argv with quoted placeholders."""

    try:
        rendered = command_template.strip().format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            backend=shlex.quote(backend),
        )
    except (KeyError, IndexError) as error:
        raise CommandTemplateError(
            f"Unsupported command template placeholder: {error}. "
            f"Use {', '.join('{' + name + '}' for name in _SUPPORTED_PLACEHOLDERS)}.",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise CommandTemplateError("Backend command template rendered empty command.")
    return argv


def _run_subprocess(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    timeout_seconds: float | None,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    context: BackendContext,
    poll_interval_seconds: float,
) -> tuple[int, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False

        if timeout_seconds is not None and time.monotonic() - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True

        if context.cancel_requested():
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True

        time.sleep(poll_interval_seconds)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _tail(text: str, *, lines: int = 5) -> str:
    kept = [line for line in text.splitlines() if line.strip()]
    return "\n".join(kept[-lines:])
