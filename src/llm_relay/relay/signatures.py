"""Deterministic failure signatures derived from backend error output."""

from __future__ import annotations

import hashlib
import re

TIMEOUT_SIGNATURE = "timeout"
BACKEND_ERROR_SIGNATURE = "backend:error"
BACKEND_NOT_FOUND_SIGNATURE = "backend:not-found"
BACKEND_UNRESPONSIVE_SIGNATURE = "backend:unresponsive"
PRIVILEGE_ESCALATION_SIGNATURE = "risk:privilege-escalation"
DESTRUCTIVE_OPERATION_SIGNATURE = "risk:destructive-operation"

DEFAULT_HIGH_RISK_SIGNATURES = frozenset(
    {PRIVILEGE_ESCALATION_SIGNATURE, DESTRUCTIVE_OPERATION_SIGNATURE},
)

_PRIVILEGE_ESCALATION_PATTERNS: tuple[str, ...] = (
    "sudo ",
    "chmod 777",
    "chmod -r 777",
    "chown root",
    "setuid",
    "--privileged",
    "disable selinux",
    "setenforce 0",
)
_DESTRUCTIVE_OPERATION_PATTERNS: tuple[str, ...] = (
    "rm -rf",
    "drop table",
    "drop database",
    "truncate table",
    "git push --force",
    "git push -f",
    "git reset --hard",
    "mkfs",
    "dd if=",
)

# Volatile fragments that would otherwise make identical errors look distinct.
_VOLATILE: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"0x[0-9a-f]+"), "<hex>"),
    (re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b"), "<uuid>"),
    (re.compile(r"(?:[a-z]:)?(?:[/\\][\w.\-]+){2,}"), "<path>"),
    (re.compile(r"\d+(?:\.\d+)?"), "<n>"),
    (re.compile(r"\s+"), " "),
)


def normalize_error_line(line: str) -> str:
    """Lowercase and strip volatile fragments (numbers, paths, ids)."""

    normalized = line.strip().lower()
    for pattern, replacement in _VOLATILE:
        normalized = pattern.sub(replacement, normalized)
    return normalized.strip()


def fingerprint(text: str) -> str:
    """Stable short signature for one error line."""

    normalized = normalize_error_line(text)
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:12]
    return f"err:{digest}"


def classify_risks(text: str) -> tuple[str, ...]:
    """Return risk tags whose patterns appear in ``text``."""

    haystack = text.lower()
    tags: list[str] = []
    if _matches_any(haystack, _PRIVILEGE_ESCALATION_PATTERNS):
        tags.append(PRIVILEGE_ESCALATION_SIGNATURE)
    if _matches_any(haystack, _DESTRUCTIVE_OPERATION_PATTERNS):
        tags.append(DESTRUCTIVE_OPERATION_SIGNATURE)
    return tuple(tags)


def extract_signatures(text: str, *, max_lines: int = 20) -> tuple[str, ...]:
    """Fingerprint each non-empty error line, then append risk tags.

    Order is preserved and duplicates are dropped so one noisy attempt
    cannot satisfy the repeated-signature rule on its own.
    """

    signatures: list[str] = []
    lines = [line for line in text.splitlines() if line.strip()]
    for line in lines[-max_lines:]:
        signature = fingerprint(line)
        if signature not in signatures:
            signatures.append(signature)
    for tag in classify_risks(text):
        if tag not in signatures:
            signatures.append(tag)
    return tuple(signatures)


def _matches_any(haystack: str, patterns: tuple[str, ...]) -> bool:
    return any(pattern in haystack for pattern in patterns)
