from __future__ import annotations

import allure

from llm_relay.relay.detector import LoopDetector, LoopDetectorConfig
from llm_relay.relay.handover import build_handover
from llm_relay.relay.models import AttemptOutcome
from llm_relay.relay.signatures import PRIVILEGE_ESCALATION_SIGNATURE, TIMEOUT_SIGNATURE

pytestmark = [
    allure.epic("Relay"),
    allure.feature("Handover"),
]

STUCK = AttemptOutcome.STUCK


def test_summary_lists_backends_and_signatures(make_history) -> None:
    history = make_history(
        ("B1", STUCK, ("X",), 10),
        ("B1", STUCK, ("X", "Y"), 5),
        ("B2", STUCK, ("Z",), 5),
    )
    record = build_handover(history)

    assert record.task_id == "t-1"
    assert record.attempts == history.attempts
    assert record.backends_tried == ("B1", "B2")
    assert record.failure_signatures == ("X", "Y", "Z")
    assert "Backends tried: B1, B2" in record.summary
    assert "Failure signatures: X, Y, Z" in record.summary
    assert "Attempts: 3, elapsed: 20.0s" in record.summary
    assert not record.consumed


def test_hypotheses_flag_recurring_signatures_and_timeouts(make_history) -> None:
    history = make_history(
        ("B1", STUCK, ("X", TIMEOUT_SIGNATURE), 1),
        ("B1", STUCK, ("X", TIMEOUT_SIGNATURE), 1),
    )
    record = build_handover(history)

    assert any("Signature X recurred in 2 attempts" in item for item in record.hypotheses)
    assert any("timed out" in item for item in record.hypotheses)
    assert not any(f"Signature {TIMEOUT_SIGNATURE}" in item for item in record.hypotheses)


def test_verdict_reason_and_high_risk_hypothesis(make_history) -> None:
    history = make_history(("B1", STUCK, (PRIVILEGE_ESCALATION_SIGNATURE,), 1))
    verdict = LoopDetector(LoopDetectorConfig()).explain(history)
    record = build_handover(history, verdict)

    assert f"Stuck because: {verdict.reason}" in record.summary
    assert any(PRIVILEGE_ESCALATION_SIGNATURE in item for item in record.hypotheses)
