"""Concurrent execution of independent tasks, one relay manager per task."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor

from llm_relay.relay.backend.base import BackendAdapter
from llm_relay.relay.detector import LoopDetector, LoopDetectorConfig
from llm_relay.relay.errors import AttemptInFlight
from llm_relay.relay.manager import RelayManager
from llm_relay.relay.models import Task, TaskResult
from llm_relay.relay.routing import TaskRouter

logger = logging.getLogger(__name__)


class RelayPool:
    """Runs many tasks concurrently.

    Tasks share only the read-only routing table and the adapters; every
    task gets its own manager, history and exclusion set. A task id may be
    in flight only once.
    """

    def __init__(
        self,
        *,
        router: TaskRouter,
        backends: Mapping[str, BackendAdapter],
        detector_config: LoopDetectorConfig | None = None,
        per_attempt_timeout_seconds: float | None = None,
        max_workers: int = 4,
    ) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be > 0.")
        self.router = router
        self.backends = backends
        self.detector_config = detector_config or LoopDetectorConfig()
        self.per_attempt_timeout_seconds = per_attempt_timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="relay")
        self._managers: dict[str, RelayManager] = {}
        self._lock = threading.Lock()

    def submit(self, task: Task) -> Future[TaskResult]:
        manager = RelayManager(
            task,
            router=self.router,
            backends=self.backends,
            detector=LoopDetector(self.detector_config),
            per_attempt_timeout_seconds=self.per_attempt_timeout_seconds,
        )
        with self._lock:
            if task.task_id in self._managers:
                raise AttemptInFlight(f"Task {task.task_id} is already being processed")
            self._managers[task.task_id] = manager
        future = self._executor.submit(manager.run)
        future.add_done_callback(lambda _: self._forget(task.task_id))
        return future

    def run_all(self, tasks: Iterable[Task]) -> list[TaskResult]:
        """Submit every task and wait for all results in submission order."""

        futures = [self.submit(task) for task in tasks]
        return [future.result() for future in futures]

    def cancel(self, task_id: str) -> bool:
        """Cancel an in-flight task; returns False if the id is unknown."""

        with self._lock:
            manager = self._managers.get(task_id)
        if manager is None:
            return False
        manager.cancel()
        return True

    @property
    def in_flight(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._managers)

    def shutdown(self, *, cancel_running: bool = False) -> None:
        if cancel_running:
            for task_id in self.in_flight:
                self.cancel(task_id)
        self._executor.shutdown(wait=True)
        logger.debug("Relay pool shut down")

    def __enter__(self) -> RelayPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown(cancel_running=exc_info[0] is not None)

    def _forget(self, task_id: str) -> None:
        with self._lock:
            self._managers.pop(task_id, None)
