"""Category routing with per-task backend exclusion."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from llm_relay.config import Settings
from llm_relay.relay.errors import NoEligibleBackend, UnknownCategory
from llm_relay.relay.models import Task

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RoutingTable:
    """Read-only category -> ordered backend candidates mapping."""

    routes: Mapping[str, tuple[str, ...]]

    @classmethod
    def build(cls, routes: Mapping[str, Iterable[str]]) -> RoutingTable:
        """Validate and freeze a category table."""

        frozen: dict[str, tuple[str, ...]] = {}
        for category, backends in routes.items():
            key = _normalize_category(category)
            if not key:
                raise ValueError("Routing table contains an empty category.")
            if key in frozen:
                raise ValueError(f"Duplicate routing category: {key!r}")
            candidates = tuple(backend.strip() for backend in backends)
            if not candidates or any(not backend for backend in candidates):
                raise ValueError(f"Category {key!r} needs at least one non-empty backend id.")
            if len(set(candidates)) != len(candidates):
                raise ValueError(f"Category {key!r} lists a backend more than once.")
            frozen[key] = candidates
        if not frozen:
            raise ValueError("Routing table must define at least one category.")
        return cls(routes=MappingProxyType(frozen))

    @classmethod
    def from_settings(cls, settings: Settings) -> RoutingTable:
        return cls.build(settings.routes)

    @property
    def categories(self) -> tuple[str, ...]:
        return tuple(self.routes)

    @property
    def backends(self) -> tuple[str, ...]:
        ordered: list[str] = []
        for candidates in self.routes.values():
            for backend in candidates:
                if backend not in ordered:
                    ordered.append(backend)
        return tuple(ordered)

    def candidates(self, category: str) -> tuple[str, ...]:
        key = _normalize_category(category)
        try:
            return self.routes[key]
        except KeyError:
            raise UnknownCategory(category, self.routes) from None


class TaskRouter:
    """Selects the first non-excluded backend for a task category.

    Routing has no side effects; the caller owns the exclusion set.
    """

    def __init__(self, table: RoutingTable) -> None:
        self.table = table

    def route(self, task: Task, excluded_backends: Iterable[str] = ()) -> str:
        excluded = frozenset(excluded_backends)
        for backend_id in self.table.candidates(task.category):
            if backend_id not in excluded:
                logger.debug(
                    "Task %s (%s) routed to backend %r",
                    task.task_id,
                    task.category,
                    backend_id,
                )
                return backend_id
        raise NoEligibleBackend(task.category, excluded)


def _normalize_category(value: str) -> str:
    return value.strip().lower()
