from __future__ import annotations

from datetime import datetime, timezone

import pytest

from autoreply_web.decision_engine import IntelligentDecision
from autoreply_web.decision_history import DecisionHistory


def _decision(
    *,
    should_respond: bool = True,
    confidence: float = 0.7,
    reasoning: tuple[str, ...] = ("Standard message: a response is warranted",),
    urgency_level: str = "medium",
    recommended_action: str = "respond_normally",
) -> IntelligentDecision:
    return IntelligentDecision(
        should_respond=should_respond,
        confidence=confidence,
        reasoning=reasoning,
        recommended_action=recommended_action,  # type: ignore[arg-type]
        urgency_level=urgency_level,  # type: ignore[arg-type]
    )


def _history(capacity: int = 100) -> DecisionHistory:
    return DecisionHistory(capacity=capacity, clock=lambda: datetime(2026, 3, 3, 14, 0, tzinfo=timezone.utc))


def test_ring_buffer_evicts_oldest_first() -> None:
    history = _history()
    for index in range(101):
        history.record(_decision(confidence=index / 100), None)

    entries = history.entries()
    assert len(entries) == 100
    assert entries[0].decision_id == "dec_000002"
    assert entries[-1].decision_id == "dec_000101"
    assert history.get("dec_000001") is None


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        DecisionHistory(capacity=0)


def test_empty_history_insights() -> None:
    insights = _history().insights()

    assert insights.total_decisions == 0
    assert insights.average_confidence == 0.0
    assert insights.top_reasoning == ()
    assert insights.success_rate is None


def test_insights_aggregate_counts_and_reasons() -> None:
    history = _history()
    history.record(_decision(confidence=0.8, reasoning=("A", "B")), None)
    history.record(
        _decision(
            confidence=0.4,
            should_respond=False,
            reasoning=("C", "B"),
            urgency_level="low",
            recommended_action="schedule_response",
        ),
        None,
    )
    history.record(_decision(confidence=0.6, reasoning=("A", "D")), None)

    insights = history.insights()

    assert insights.total_decisions == 3
    assert insights.respond_count == 2
    assert insights.wait_count == 1
    assert insights.average_confidence == pytest.approx(0.6)
    assert insights.top_reasoning[:2] == (("A", 2), ("B", 2))
    assert insights.top_reasoning[2:] == (("C", 1), ("D", 1))
    assert insights.urgency_distribution == {"medium": 2, "low": 1}
    assert insights.action_distribution == {"respond_normally": 2, "schedule_response": 1}


def test_top_reasoning_keeps_five_and_breaks_ties_by_first_seen() -> None:
    history = _history()
    history.record(_decision(reasoning=("r1", "r2", "r3", "r4", "r5", "r6")), None)
    history.record(_decision(reasoning=("r6",)), None)

    top = history.insights().top_reasoning

    assert top == (("r6", 2), ("r1", 1), ("r2", 1), ("r3", 1), ("r4", 1))


def test_success_rate_only_counts_recorded_outcomes() -> None:
    history = _history()
    first = history.record(_decision(), None)
    second = history.record(_decision(), None)
    history.record(_decision(), None)

    assert history.insights().success_rate is None

    assert history.record_outcome(first.decision_id, "success") is True
    assert history.record_outcome(second.decision_id, "failure") is True
    assert history.record_outcome("dec_404404", "success") is False

    insights = history.insights()
    assert insights.outcomes_recorded == 2
    assert insights.success_rate == 0.5
    stored = history.get(first.decision_id)
    assert stored is not None
    assert stored.outcome == "success"


def test_reset_restarts_ids() -> None:
    history = _history()
    history.record(_decision(), None)
    history.reset()

    assert len(history) == 0
    assert history.record(_decision(), None).decision_id == "dec_000001"
