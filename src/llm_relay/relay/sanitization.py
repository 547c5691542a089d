"""Redaction of backend error output before it enters attempts and handovers.

Error summaries travel to the next backend inside a handover prompt, so they
must not leak relay configuration, credentials passed to solver commands or
host-specific paths.
"""

from __future__ import annotations

import re
from pathlib import Path

# Fits on one handover line while keeping the final error intact.
MAX_SUMMARY_CHARS = 300
_ELLIPSIS = "..."
_LINE_JOINER = " | "

_RELAY_SETTING = re.compile(r"\b(LLM_RELAY_[A-Z0-9_]+)\s*=\s*(?:'[^']*'|\"[^\"]*\"|\S+)")
_CREDENTIAL_ASSIGNMENT = re.compile(
    r"(?i)\b([a-z0-9_\-]*(?:api[_-]?key|token|secret|password))\b(\s*[:=]\s*)"
    r"(?:'[^']*'|\"[^\"]*\"|\S+)",
)
_CREDENTIAL_FLAG = re.compile(
    r"(?i)(--[a-z0-9\-]*(?:api-key|token|secret|password))(\s+|=)(?:'[^']*'|\"[^\"]*\"|\S+)",
)
_AUTH_HEADER = re.compile(r"(?i)\b(authorization)\s*:\s*(?:bearer\s+|basic\s+)?\S+")


def sanitize_summary(
    text: str,
    *,
    workdir: Path | None = None,
    max_chars: int = MAX_SUMMARY_CHARS,
) -> str:
    """Redact secrets and local paths, fold lines, keep the tail within ``max_chars``."""

    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if not lines:
        return ""
    summary = _LINE_JOINER.join(lines)

    summary = _RELAY_SETTING.sub(r"\1=[redacted]", summary)
    summary = _CREDENTIAL_FLAG.sub(r"\1\2[redacted]", summary)
    summary = _CREDENTIAL_ASSIGNMENT.sub(r"\1\2[redacted]", summary)
    summary = _AUTH_HEADER.sub(r"\1: [redacted]", summary)
    summary = _shorten_paths(summary, workdir=workdir)

    if len(summary) <= max_chars:
        return summary
    return _ELLIPSIS + summary[-(max_chars - len(_ELLIPSIS)) :]


def _shorten_paths(summary: str, *, workdir: Path | None) -> str:
    if workdir is not None:
        root = str(workdir.resolve())
        summary = summary.replace(root, "<workdir>")
        summary = summary.replace(str(workdir), "<workdir>")
    home = str(Path.home())
    if len(home) > 1:
        summary = summary.replace(home, "~")
    return summary
