"""Handover record synthesis for relays between backends."""

from __future__ import annotations

from collections import Counter

from llm_relay.relay.detector import RULE_HIGH_RISK_SIGNATURE, StuckVerdict
from llm_relay.relay.models import AttemptHistory, HandoverRecord
from llm_relay.relay.signatures import TIMEOUT_SIGNATURE


def build_handover(
    history: AttemptHistory,
    verdict: StuckVerdict | None = None,
) -> HandoverRecord:
    """Summarize the attempt history for the next backend.

    The summary lists the backends tried and every failure signature in the
    order first seen; hypotheses are derived from how attempts failed.
    """

    attempts = history.attempts
    backends = history.backends_tried()
    signatures: list[str] = []
    for attempt in attempts:
        for signature in attempt.failure_signatures:
            if signature not in signatures:
                signatures.append(signature)

    summary_lines = [
        f"Backends tried: {', '.join(backends) or '-'}",
        f"Failure signatures: {', '.join(signatures) or '-'}",
        f"Attempts: {len(attempts)}, elapsed: {history.elapsed_seconds:.1f}s",
    ]
    if verdict is not None and verdict.is_stuck:
        summary_lines.append(f"Stuck because: {verdict.reason}")
    last = history.last
    if last is not None and last.error_summary:
        summary_lines.append(f"Last error: {last.error_summary}")

    return HandoverRecord(
        task_id=history.task_id,
        attempts=attempts,
        summary="\n".join(summary_lines),
        hypotheses=_hypotheses(history, verdict),
        backends_tried=backends,
    )


def _hypotheses(history: AttemptHistory, verdict: StuckVerdict | None) -> tuple[str, ...]:
    hypotheses: list[str] = []
    counts: Counter[str] = Counter()
    for attempt in history:
        counts.update(set(attempt.failure_signatures))

    for signature, count in counts.most_common():
        if count < 2 or signature == TIMEOUT_SIGNATURE:
            continue
        hypotheses.append(
            f"Signature {signature} recurred in {count} attempts; "
            "the approach that produced it is a dead end.",
        )
    if counts.get(TIMEOUT_SIGNATURE):
        hypotheses.append(
            "Attempts timed out; the task may need to be narrowed before solving.",
        )
    if verdict is not None and verdict.signatures and verdict.rule == RULE_HIGH_RISK_SIGNATURE:
        hypotheses.append(
            "Previous backend reached for a high-risk operation "
            f"({', '.join(verdict.signatures)}); find a path that avoids it.",
        )
    return tuple(hypotheses)
