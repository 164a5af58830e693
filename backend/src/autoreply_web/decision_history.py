from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import TYPE_CHECKING, Callable

from .decision_context import DecisionContext
from .models import DecisionOutcome

if TYPE_CHECKING:
    from .decision_engine import IntelligentDecision

DEFAULT_HISTORY_CAPACITY = 100
TOP_REASONING_LIMIT = 5


@dataclass(frozen=True)
class DecisionHistoryEntry:
    decision_id: str
    decision: IntelligentDecision
    context: DecisionContext | None
    recorded_at: datetime
    outcome: DecisionOutcome | None = None


@dataclass(frozen=True)
class DecisionInsights:
    total_decisions: int
    respond_count: int
    wait_count: int
    average_confidence: float
    top_reasoning: tuple[tuple[str, int], ...]
    urgency_distribution: dict[str, int] = field(default_factory=dict)
    action_distribution: dict[str, int] = field(default_factory=dict)
    outcomes_recorded: int = 0
    # None means no outcomes have been attached yet.
    success_rate: float | None = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class DecisionHistory:
    """Bounded FIFO log of recent decisions, safe to share between tasks and threads."""

    def __init__(
        self,
        *,
        capacity: int = DEFAULT_HISTORY_CAPACITY,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._clock = clock
        self._lock = Lock()
        self._counter = count(1)
        self._entries: deque[DecisionHistoryEntry] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._entries.clear()

    def entries(self) -> list[DecisionHistoryEntry]:
        with self._lock:
            return list(self._entries)

    def get(self, decision_id: str) -> DecisionHistoryEntry | None:
        with self._lock:
            for entry in self._entries:
                if entry.decision_id == decision_id:
                    return entry
        return None

    def record(self, decision: IntelligentDecision, context: DecisionContext | None) -> DecisionHistoryEntry:
        with self._lock:
            entry = DecisionHistoryEntry(
                decision_id=f"dec_{next(self._counter):06d}",
                decision=decision,
                context=context,
                recorded_at=self._clock(),
            )
            self._entries.append(entry)
            return entry

    def record_outcome(self, decision_id: str, outcome: DecisionOutcome) -> bool:
        with self._lock:
            for index, entry in enumerate(self._entries):
                if entry.decision_id == decision_id:
                    self._entries[index] = replace(entry, outcome=outcome)
                    return True
        return False

    def insights(self) -> DecisionInsights:
        entries = self.entries()
        total = len(entries)
        respond_count = sum(1 for entry in entries if entry.decision.should_respond)
        average_confidence = (
            round(sum(entry.decision.confidence for entry in entries) / total, 4) if total else 0.0
        )

        reasoning_counts: Counter[str] = Counter()
        for entry in entries:
            reasoning_counts.update(entry.decision.reasoning)
        # sorted() is stable, so equal counts keep first-seen order
        top_reasoning = tuple(
            sorted(reasoning_counts.items(), key=lambda item: -item[1])[:TOP_REASONING_LIMIT]
        )

        urgency_distribution: Counter[str] = Counter(entry.decision.urgency_level for entry in entries)
        action_distribution: Counter[str] = Counter(entry.decision.recommended_action for entry in entries)

        outcomes = [entry.outcome for entry in entries if entry.outcome is not None]
        success_rate = (
            round(sum(1 for outcome in outcomes if outcome == "success") / len(outcomes), 4)
            if outcomes
            else None
        )

        return DecisionInsights(
            total_decisions=total,
            respond_count=respond_count,
            wait_count=total - respond_count,
            average_confidence=average_confidence,
            top_reasoning=top_reasoning,
            urgency_distribution=dict(urgency_distribution),
            action_distribution=dict(action_distribution),
            outcomes_recorded=len(outcomes),
            success_rate=success_rate,
        )
