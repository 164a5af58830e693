from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from .decision_context import DecisionContext

URGENCY = "urgency"
RESPONSE_EXPECTATION = "response_expectation"
MOMENTUM = "momentum"
ENGAGEMENT = "engagement"
BUSINESS_PRIORITY = "business_priority"
TIME_APPROPRIATENESS = "time_appropriateness"

URGENCY_KEYWORDS: tuple[str, ...] = (
    "urgent",
    "asap",
    "emergency",
    "immediately",
    "right now",
    "today",
    "tonight",
    "this morning",
    "this afternoon",
    "quickly",
)

QUESTION_MARKERS: tuple[str, ...] = (
    "?",
    "what",
    "how",
    "when",
    "where",
    "why",
    "who",
    "can you",
    "could you",
    "would you",
    "do you",
    "are you",
    "is there",
)

REQUEST_PHRASES: tuple[str, ...] = (
    "can you",
    "could you",
    "please",
    "need",
    "want",
    "looking for",
    "interested",
    "let me know",
    "tell me",
    "send me",
)

LONG_MESSAGE_CHARS = 100


@dataclass(frozen=True)
class FactorScore:
    score: float
    indicators: tuple[str, ...] = ()


def _clamp(value: float) -> float:
    return round(min(max(value, 0.0), 1.0), 6)


def analyze_urgency(context: DecisionContext) -> FactorScore:
    text = context.message_text.lower()
    score = 0.0
    indicators: list[str] = []

    keyword_hits = sum(1 for keyword in URGENCY_KEYWORDS if keyword in text)
    if keyword_hits:
        score += 0.3 * keyword_hits
        indicators.append("urgent_language")

    if any(marker in text for marker in QUESTION_MARKERS):
        score += 0.2
        indicators.append("question_asked")

    if len(context.message_text) > LONG_MESSAGE_CHARS:
        score += 0.1
        indicators.append("detailed_message")

    return FactorScore(score=_clamp(score), indicators=tuple(indicators))


def analyze_momentum(context: DecisionContext) -> FactorScore:
    score = 0.5
    indicators: list[str] = []
    if context.history:
        score += 0.2
        indicators.append("active_conversation")

    tier = context.conversation_context.engagement_tier
    if tier == "high":
        score += 0.3
        indicators.append("high_engagement")
    elif tier == "medium":
        score += 0.1
        indicators.append("moderate_engagement")

    return FactorScore(score=_clamp(score), indicators=tuple(indicators))


def analyze_time_appropriateness(context: DecisionContext) -> FactorScore:
    time_context = context.time_context
    score = 0.5
    indicators: list[str] = []
    if time_context.is_business_hours:
        score += 0.3
        indicators.append("business_hours")
    else:
        score -= 0.2
        indicators.append("after_hours")
    if time_context.is_weekend:
        score -= 0.1
        indicators.append("weekend")
    return FactorScore(score=_clamp(score), indicators=tuple(indicators))


def analyze_engagement(context: DecisionContext) -> FactorScore:
    conversation = context.conversation_context
    score = 0.5
    indicators: list[str] = []
    if conversation.message_count > 3:
        score += 0.2
        indicators.append("multiple_exchanges")
    if conversation.engagement_tier == "high":
        score += 0.3
        indicators.append("high_engagement")
    return FactorScore(score=_clamp(score), indicators=tuple(indicators))


def analyze_business_priority(context: DecisionContext) -> FactorScore:
    score = 0.5
    indicators: list[str] = []
    vehicle_interest = context.lead_profile.vehicle_interest or ""
    if len(vehicle_interest) > 10:
        score += 0.2
        indicators.append("specific_vehicle_interest")
    if context.conversation_context.message_count > 2:
        score += 0.2
        indicators.append("established_lead")
    return FactorScore(score=_clamp(score), indicators=tuple(indicators))


def analyze_response_expectation(context: DecisionContext) -> FactorScore:
    text = context.message_text.lower()
    score = 0.5
    indicators: list[str] = []
    if "?" in text:
        score += 0.4
        indicators.append("direct_question")
    if any(phrase in text for phrase in REQUEST_PHRASES):
        score += 0.2
        indicators.append("explicit_request")
    return FactorScore(score=_clamp(score), indicators=tuple(indicators))


Analyzer = Callable[[DecisionContext], FactorScore]

# Order here is the order indicators appear in decision reasoning.
ANALYZERS: dict[str, Analyzer] = {
    URGENCY: analyze_urgency,
    RESPONSE_EXPECTATION: analyze_response_expectation,
    MOMENTUM: analyze_momentum,
    ENGAGEMENT: analyze_engagement,
    BUSINESS_PRIORITY: analyze_business_priority,
    TIME_APPROPRIATENESS: analyze_time_appropriateness,
}

INDICATOR_PHRASES: dict[str, str] = {
    "urgent_language": "Urgent language detected",
    "question_asked": "Customer asked a question",
    "detailed_message": "Detailed message from customer",
    "active_conversation": "Conversation is active",
    "high_engagement": "Highly engaged customer",
    "moderate_engagement": "Moderately engaged customer",
    "business_hours": "Within business hours",
    "after_hours": "Outside business hours",
    "weekend": "Weekend timing",
    "multiple_exchanges": "Multiple prior exchanges",
    "specific_vehicle_interest": "Specific vehicle interest",
    "established_lead": "Established lead",
    "direct_question": "Direct question expects an answer",
    "explicit_request": "Explicit request from customer",
}


def indicator_phrase(indicator: str) -> str:
    phrase = INDICATOR_PHRASES.get(indicator)
    if phrase is not None:
        return phrase
    return indicator.replace("_", " ").capitalize()


def analyze_all(context: DecisionContext) -> dict[str, FactorScore]:
    return {name: analyzer(context) for name, analyzer in ANALYZERS.items()}
