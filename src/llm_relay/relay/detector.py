"""Loop detector deciding when a task has stopped converging.

Rules are evaluated independently against the task's attempt history; any
single match is a stuck verdict:

1. Repeated signature: one failure signature seen N times across attempts.
2. Elapsed budget: cumulative attempt time above the configured ceiling.
3. High-risk signature: the latest attempt carries a high-risk tag.
4. Backend budget: the current backend used up its attempts without success.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field

from llm_relay.config import StuckSettings
from llm_relay.relay.models import AttemptHistory, AttemptOutcome
from llm_relay.relay.signatures import DEFAULT_HIGH_RISK_SIGNATURES

logger = logging.getLogger(__name__)

RULE_REPEATED_SIGNATURE = "repeated_signature"
RULE_ELAPSED_BUDGET = "elapsed_budget"
RULE_HIGH_RISK_SIGNATURE = "high_risk_signature"
RULE_BACKEND_BUDGET = "backend_budget"


@dataclass(slots=True)
class LoopDetectorConfig:
    max_repeated_failures: int = 3
    max_elapsed_seconds: float = 1_800
    high_risk_signatures: frozenset[str] = DEFAULT_HIGH_RISK_SIGNATURES
    max_attempts_per_backend: int | None = 3

    @classmethod
    def from_settings(cls, settings: StuckSettings) -> LoopDetectorConfig:
        return cls(
            max_repeated_failures=settings.max_repeated_failures,
            max_elapsed_seconds=settings.max_elapsed_seconds,
            high_risk_signatures=frozenset(settings.high_risk_signatures),
            max_attempts_per_backend=settings.max_attempts_per_backend,
        )


@dataclass(frozen=True, slots=True)
class StuckVerdict:
    """Detector decision with the rule that produced it."""

    is_stuck: bool
    rule: str | None = None
    reason: str = ""
    signatures: tuple[str, ...] = field(default=())

    def __bool__(self) -> bool:
        return self.is_stuck


NOT_STUCK = StuckVerdict(is_stuck=False, reason="converging")


class LoopDetector:
    """Stateless stuck policy over an attempt history."""

    def __init__(self, config: LoopDetectorConfig | None = None) -> None:
        self.config = config or LoopDetectorConfig()

    def evaluate(self, history: AttemptHistory) -> bool:
        """Return True when further attempts on the current backend are pointless."""

        return self.explain(history).is_stuck

    def explain(self, history: AttemptHistory) -> StuckVerdict:
        last = history.last
        if last is None or last.outcome == AttemptOutcome.SUCCESS:
            return NOT_STUCK

        for check in (
            self._check_repeated_signature,
            self._check_elapsed_budget,
            self._check_high_risk,
            self._check_backend_budget,
        ):
            verdict = check(history)
            if verdict.is_stuck:
                logger.warning(
                    "Task %s stuck on backend %r: %s",
                    history.task_id,
                    last.backend_id,
                    verdict.reason,
                )
                return verdict
        return NOT_STUCK

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _check_repeated_signature(self, history: AttemptHistory) -> StuckVerdict:
        last = history.last
        if last is None:
            return NOT_STUCK
        counts: Counter[str] = Counter()
        for attempt in history:
            # Count each signature once per attempt.
            counts.update(set(attempt.failure_signatures))
        # Only signatures carried by the latest attempt count toward a verdict.
        repeated = sorted(
            signature
            for signature in set(last.failure_signatures)
            if counts[signature] >= self.config.max_repeated_failures
        )
        if not repeated:
            return NOT_STUCK
        return StuckVerdict(
            is_stuck=True,
            rule=RULE_REPEATED_SIGNATURE,
            reason=(
                f"signature {repeated[0]!r} seen {counts[repeated[0]]} times "
                f"(limit {self.config.max_repeated_failures})"
            ),
            signatures=tuple(repeated),
        )

    def _check_elapsed_budget(self, history: AttemptHistory) -> StuckVerdict:
        elapsed = history.elapsed_seconds
        if elapsed <= self.config.max_elapsed_seconds:
            return NOT_STUCK
        return StuckVerdict(
            is_stuck=True,
            rule=RULE_ELAPSED_BUDGET,
            reason=(
                f"cumulative attempt time {elapsed:.1f}s exceeds "
                f"{self.config.max_elapsed_seconds}s"
            ),
        )

    def _check_high_risk(self, history: AttemptHistory) -> StuckVerdict:
        last = history.last
        if last is None:
            return NOT_STUCK
        flagged = tuple(
            signature
            for signature in last.failure_signatures
            if signature in self.config.high_risk_signatures
        )
        if not flagged:
            return NOT_STUCK
        return StuckVerdict(
            is_stuck=True,
            rule=RULE_HIGH_RISK_SIGNATURE,
            reason=f"high-risk signature {flagged[0]!r} in latest attempt",
            signatures=flagged,
        )

    def _check_backend_budget(self, history: AttemptHistory) -> StuckVerdict:
        limit = self.config.max_attempts_per_backend
        last = history.last
        if limit is None or last is None:
            return NOT_STUCK
        used = len(history.for_backend(last.backend_id))
        if used < limit:
            return NOT_STUCK
        return StuckVerdict(
            is_stuck=True,
            rule=RULE_BACKEND_BUDGET,
            reason=f"backend {last.backend_id!r} used {used} of {limit} attempts",
        )
