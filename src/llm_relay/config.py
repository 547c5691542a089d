"""Runtime configuration for routing, loop detection and backend commands."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from llm_relay.relay.signatures import DEFAULT_HIGH_RISK_SIGNATURES

DEFAULT_ROUTES: dict[str, tuple[str, ...]] = {
    "documentation-search": ("b1", "b2"),
    "debugging": ("b2", "b1"),
}


@dataclass(slots=True)
class StuckSettings:
    """Loop detector thresholds."""

    max_repeated_failures: int = 3
    max_elapsed_seconds: int = 1_800
    high_risk_signatures: frozenset[str] = DEFAULT_HIGH_RISK_SIGNATURES
    max_attempts_per_backend: int = 3


@dataclass(slots=True)
class BackendSettings:
    """Command templates and exit code mapping for command backends."""

    commands: dict[str, str] = field(default_factory=dict)
    stuck_exit_codes: tuple[int, ...] = (3, 124)
    workdir: Path = Path(".llm_relay")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    routes: dict[str, tuple[str, ...]] = field(default_factory=lambda: dict(DEFAULT_ROUTES))
    stuck: StuckSettings = field(default_factory=StuckSettings)
    backends: BackendSettings = field(default_factory=BackendSettings)
    per_attempt_timeout_seconds: int | None = None
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults for local use."""

        raw_routes = os.getenv("LLM_RELAY_ROUTES", "").strip()
        raw_high_risk = os.getenv("LLM_RELAY_STUCK_HIGH_RISK_SIGNATURES")
        raw_timeout = os.getenv("LLM_RELAY_PER_ATTEMPT_TIMEOUT_SECONDS", "").strip()
        return cls(
            routes=parse_routes(raw_routes) if raw_routes else dict(DEFAULT_ROUTES),
            stuck=StuckSettings(
                max_repeated_failures=_env_int("LLM_RELAY_STUCK_MAX_REPEATED_FAILURES", 3),
                max_elapsed_seconds=_env_int("LLM_RELAY_STUCK_MAX_ELAPSED_SECONDS", 1_800),
                high_risk_signatures=(
                    DEFAULT_HIGH_RISK_SIGNATURES
                    if raw_high_risk is None
                    else frozenset(_split_csv(raw_high_risk))
                ),
                max_attempts_per_backend=_env_int(
                    "LLM_RELAY_STUCK_MAX_ATTEMPTS_PER_BACKEND",
                    3,
                ),
            ),
            backends=BackendSettings(
                commands=parse_backend_commands(os.getenv("LLM_RELAY_BACKEND_COMMANDS", "")),
                stuck_exit_codes=_parse_exit_codes(
                    os.getenv("LLM_RELAY_STUCK_EXIT_CODES", "3,124"),
                ),
                workdir=Path(os.getenv("LLM_RELAY_WORKDIR", ".llm_relay")),
            ),
            per_attempt_timeout_seconds=(
                _parse_int("LLM_RELAY_PER_ATTEMPT_TIMEOUT_SECONDS", raw_timeout)
                if raw_timeout
                else None
            ),
            log_level=os.getenv("LLM_RELAY_LOG_LEVEL", "WARNING").strip().upper() or "WARNING",
        )

    def validate(self) -> None:
        """Raise configuration error if thresholds or tables are unusable."""

        if not self.routes:
            raise ValueError("LLM_RELAY_ROUTES must define at least one category.")
        for category, backends in self.routes.items():
            if not backends:
                raise ValueError(
                    f"LLM_RELAY_ROUTES category {category!r} has no backends.",
                )
        if self.stuck.max_repeated_failures <= 0:
            raise ValueError("LLM_RELAY_STUCK_MAX_REPEATED_FAILURES must be > 0.")
        if self.stuck.max_elapsed_seconds <= 0:
            raise ValueError("LLM_RELAY_STUCK_MAX_ELAPSED_SECONDS must be > 0.")
        if self.stuck.max_attempts_per_backend <= 0:
            raise ValueError("LLM_RELAY_STUCK_MAX_ATTEMPTS_PER_BACKEND must be > 0.")
        if self.per_attempt_timeout_seconds is not None and self.per_attempt_timeout_seconds <= 0:
            raise ValueError("LLM_RELAY_PER_ATTEMPT_TIMEOUT_SECONDS must be > 0 when set.")

    def validate_commands(self) -> None:
        """Raise configuration error if a routed backend has no command template."""

        routed = {backend for backends in self.routes.values() for backend in backends}
        missing = sorted(routed - set(self.backends.commands))
        if missing:
            raise ValueError(
                "Missing command template for backends: "
                f"{', '.join(missing)}. Set LLM_RELAY_BACKEND_COMMANDS.",
            )


def parse_routes(raw: str) -> dict[str, tuple[str, ...]]:
    """Parse ``category=b1,b2;category2=b3`` into an ordered category table."""

    routes: dict[str, tuple[str, ...]] = {}
    for part in raw.split(";"):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                "Invalid LLM_RELAY_ROUTES entry: "
                f"{token!r}. Expected format '<category>=<backend>[,<backend>...]'.",
            )
        category, backends_raw = token.split("=", 1)
        category = category.strip().lower()
        if not category:
            raise ValueError(f"Invalid LLM_RELAY_ROUTES entry: {token!r} (empty category).")
        if category in routes:
            raise ValueError(f"Duplicate LLM_RELAY_ROUTES category: {category!r}")
        backends = _dedupe(_split_csv(backends_raw))
        if not backends:
            raise ValueError(f"LLM_RELAY_ROUTES category {category!r} has no backends.")
        routes[category] = backends
    return routes


def parse_backend_commands(raw: str) -> dict[str, str]:
    """Parse ``backend=<template>`` entries separated by newlines or ``;;``."""

    commands: dict[str, str] = {}
    for part in raw.replace(";;", "\n").splitlines():
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                "Invalid LLM_RELAY_BACKEND_COMMANDS entry: "
                f"{token!r}. Expected format '<backend>=<command template>'.",
            )
        backend, template = token.split("=", 1)
        backend = backend.strip()
        template = template.strip()
        if not backend or not template:
            raise ValueError(f"Invalid LLM_RELAY_BACKEND_COMMANDS entry: {token!r}")
        commands[backend] = template
    return commands


def _parse_exit_codes(raw: str) -> tuple[int, ...]:
    return tuple(_parse_int("LLM_RELAY_STUCK_EXIT_CODES", value) for value in _split_csv(raw))


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _dedupe(values: tuple[str, ...]) -> tuple[str, ...]:
    deduped: list[str] = []
    seen: set[str] = set()
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        deduped.append(value)
    return tuple(deduped)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return _parse_int(name, value)


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error
