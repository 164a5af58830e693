from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Iterable, Mapping

from .decision_context import DecisionContext, LeadProfile, build_decision_context
from .decision_history import DecisionHistory, DecisionInsights
from .factors import (
    ANALYZERS,
    BUSINESS_PRIORITY,
    ENGAGEMENT,
    MOMENTUM,
    RESPONSE_EXPECTATION,
    TIME_APPROPRIATENESS,
    URGENCY,
    Analyzer,
    FactorScore,
    indicator_phrase,
)
from .models import DecisionOutcome, RecommendedAction, UrgencyLevel

logger = logging.getLogger(__name__)

DECISION_WEIGHTS: dict[str, float] = {
    URGENCY: 0.25,
    RESPONSE_EXPECTATION: 0.25,
    MOMENTUM: 0.15,
    ENGAGEMENT: 0.15,
    BUSINESS_PRIORITY: 0.10,
    TIME_APPROPRIATENESS: 0.10,
}

if not math.isclose(math.fsum(DECISION_WEIGHTS.values()), 1.0, abs_tol=1e-12):
    raise RuntimeError("decision weights must sum to 1.0")

RESPOND_THRESHOLD = 0.6
LOW_URGENCY_THRESHOLD = 0.5
HIGH_URGENCY_FACTOR_THRESHOLD = 0.7
HIGH_PRIORITY_THRESHOLD = 0.8
BUSINESS_HOURS_DELAY_MINUTES = 30
AFTER_HOURS_DELAY_MINUTES = 480
MAX_REASONING_INDICATORS = 3

FALLBACK_REASON = "Fallback decision due to decision engine error"


@dataclass(frozen=True)
class IntelligentDecision:
    should_respond: bool
    confidence: float
    reasoning: tuple[str, ...]
    recommended_action: RecommendedAction
    urgency_level: UrgencyLevel
    suggested_delay_minutes: int | None = None
    factor_scores: Mapping[str, float] = field(default_factory=dict)
    used_fallback: bool = False
    decision_id: str | None = None


def fallback_decision() -> IntelligentDecision:
    return IntelligentDecision(
        should_respond=True,
        confidence=0.5,
        reasoning=(FALLBACK_REASON,),
        recommended_action="respond_normally",
        urgency_level="medium",
        used_fallback=True,
    )


def _tier_statement(total_score: float) -> str:
    if total_score > HIGH_PRIORITY_THRESHOLD:
        return "High-priority message: respond promptly"
    if total_score > RESPOND_THRESHOLD:
        return "Standard message: a response is warranted"
    return "Low-priority message: a response can wait"


def _reasoning(total_score: float, factor_scores: Mapping[str, FactorScore]) -> tuple[str, ...]:
    phrases: list[str] = []
    for name in DECISION_WEIGHTS:
        for indicator in factor_scores[name].indicators:
            phrase = indicator_phrase(indicator)
            if phrase not in phrases:
                phrases.append(phrase)
    return (_tier_statement(total_score), *phrases[:MAX_REASONING_INDICATORS])


def _valid_scores(factor_scores: Mapping[str, FactorScore]) -> bool:
    for name in DECISION_WEIGHTS:
        score = getattr(factor_scores.get(name), "score", None)
        if not isinstance(score, (int, float)) or not math.isfinite(score):
            return False
        if not 0.0 <= score <= 1.0:
            return False
    return True


def calculate_decision(
    factor_scores: Mapping[str, FactorScore],
    context: DecisionContext,
) -> IntelligentDecision:
    """Combine factor scores into a respond/wait verdict.

    Incomplete or out-of-range factor scores yield :func:`fallback_decision`
    instead of an exception.
    """
    if not _valid_scores(factor_scores):
        return fallback_decision()

    total_score = round(
        math.fsum(weight * factor_scores[name].score for name, weight in DECISION_WEIGHTS.items()),
        6,
    )
    should_respond = total_score > RESPOND_THRESHOLD
    business_hours = context.time_context.is_business_hours

    urgency_level: UrgencyLevel
    if factor_scores[URGENCY].score > HIGH_URGENCY_FACTOR_THRESHOLD:
        urgency_level = "high"
    elif total_score < LOW_URGENCY_THRESHOLD:
        urgency_level = "low"
    else:
        urgency_level = "medium"

    recommended_action: RecommendedAction
    if urgency_level == "high":
        recommended_action = "respond_immediately"
    elif urgency_level == "low" or not business_hours:
        recommended_action = "schedule_response"
    else:
        recommended_action = "respond_normally"

    suggested_delay_minutes: int | None = None
    if not should_respond or recommended_action == "schedule_response":
        suggested_delay_minutes = BUSINESS_HOURS_DELAY_MINUTES if business_hours else AFTER_HOURS_DELAY_MINUTES

    return IntelligentDecision(
        should_respond=should_respond,
        confidence=total_score,
        reasoning=_reasoning(total_score, factor_scores),
        recommended_action=recommended_action,
        urgency_level=urgency_level,
        suggested_delay_minutes=suggested_delay_minutes,
        factor_scores={name: factor_scores[name].score for name in DECISION_WEIGHTS},
    )


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class DecisionEngine:
    def __init__(
        self,
        *,
        history: DecisionHistory | None = None,
        business_zone: tzinfo = timezone.utc,
        analyzers: Mapping[str, Analyzer] | None = None,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self.history = history if history is not None else DecisionHistory()
        self._business_zone = business_zone
        self._analyzers = dict(analyzers) if analyzers is not None else dict(ANALYZERS)
        self._clock = clock

    def decide(
        self,
        conversation_key: str,
        message_text: str,
        *,
        history: Iterable[Any] = (),
        lead_profile: LeadProfile | None = None,
        now: datetime | None = None,
    ) -> IntelligentDecision:
        context: DecisionContext | None = None
        try:
            context = build_decision_context(
                message_text,
                now=now or self._clock(),
                conversation_key=conversation_key,
                history=history,
                lead_profile=lead_profile,
                business_zone=self._business_zone,
            )
            factor_scores = {name: analyzer(context) for name, analyzer in self._analyzers.items()}
            decision = calculate_decision(factor_scores, context)
        except Exception as exc:
            logger.warning(
                "decision fallback for %s: %s",
                conversation_key,
                exc,
                exc_info=True,
                extra={"decision_context": context.summary() if context is not None else None},
            )
            decision = fallback_decision()
        else:
            if decision.used_fallback:
                logger.warning(
                    "decision fallback for %s: incomplete factor scores %s",
                    conversation_key,
                    {name: getattr(score, "score", None) for name, score in factor_scores.items()},
                    extra={"decision_context": context.summary()},
                )
        entry = self.history.record(decision, context)
        logger.info(
            "decision %s for %s: respond=%s action=%s urgency=%s confidence=%.2f",
            entry.decision_id,
            conversation_key,
            decision.should_respond,
            decision.recommended_action,
            decision.urgency_level,
            decision.confidence,
        )
        return replace(decision, decision_id=entry.decision_id)

    def record_outcome(self, decision_id: str, outcome: DecisionOutcome) -> bool:
        return self.history.record_outcome(decision_id, outcome)

    def insights(self) -> DecisionInsights:
        return self.history.insights()
