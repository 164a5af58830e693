from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Iterable, Protocol

from .models import EngagementTier, MessageDirection

BUSINESS_DAYS = frozenset({0, 1, 2, 3, 4})
BUSINESS_HOUR_START = 8
BUSINESS_HOUR_END = 18
WEEKEND_DAYS = frozenset({5, 6})


class _HistoryLike(Protocol):
    body_text: str
    direction: MessageDirection
    sent_at: datetime | None


@dataclass(frozen=True)
class HistoryEntry:
    body_text: str
    direction: MessageDirection
    sent_at: datetime | None = None


@dataclass(frozen=True)
class LeadProfile:
    display_name: str | None = None
    vehicle_interest: str | None = None


@dataclass(frozen=True)
class TimeContext:
    hour: int
    day_of_week: int
    is_business_hours: bool
    is_weekend: bool


@dataclass(frozen=True)
class ConversationContext:
    message_count: int
    engagement_tier: EngagementTier


@dataclass(frozen=True)
class DecisionContext:
    conversation_key: str
    message_text: str
    history: tuple[HistoryEntry, ...]
    lead_profile: LeadProfile
    time_context: TimeContext
    conversation_context: ConversationContext

    def summary(self) -> dict[str, object]:
        return {
            "conversation_key": self.conversation_key,
            "message_preview": self.message_text[:200],
            "message_count": self.conversation_context.message_count,
            "engagement_tier": self.conversation_context.engagement_tier,
            "hour": self.time_context.hour,
            "day_of_week": self.time_context.day_of_week,
            "is_business_hours": self.time_context.is_business_hours,
        }


def engagement_tier_for(history_length: int) -> EngagementTier:
    if history_length > 5:
        return "high"
    if history_length > 2:
        return "medium"
    return "low"


def is_business_hours(*, day_of_week: int, hour: int) -> bool:
    return day_of_week in BUSINESS_DAYS and BUSINESS_HOUR_START <= hour < BUSINESS_HOUR_END


def build_time_context(now: datetime, business_zone: tzinfo = timezone.utc) -> TimeContext:
    local = _as_aware(now).astimezone(business_zone)  # type: ignore[union-attr]
    day_of_week = local.weekday()
    return TimeContext(
        hour=local.hour,
        day_of_week=day_of_week,
        is_business_hours=is_business_hours(day_of_week=day_of_week, hour=local.hour),
        is_weekend=day_of_week in WEEKEND_DAYS,
    )


def _as_aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _normalize_history(history: Iterable[_HistoryLike]) -> tuple[HistoryEntry, ...]:
    entries = tuple(
        HistoryEntry(body_text=item.body_text, direction=item.direction, sent_at=_as_aware(item.sent_at))
        for item in history
    )
    if entries and all(entry.sent_at is not None for entry in entries):
        return tuple(sorted(entries, key=lambda entry: entry.sent_at))  # type: ignore[arg-type, return-value]
    return entries


def build_decision_context(
    message_text: str,
    *,
    now: datetime,
    conversation_key: str = "",
    history: Iterable[_HistoryLike] = (),
    lead_profile: LeadProfile | None = None,
    business_zone: tzinfo = timezone.utc,
) -> DecisionContext:
    entries = _normalize_history(history)
    return DecisionContext(
        conversation_key=conversation_key,
        message_text=message_text or "",
        history=entries,
        lead_profile=lead_profile or LeadProfile(),
        time_context=build_time_context(now, business_zone),
        conversation_context=ConversationContext(
            message_count=len(entries),
            engagement_tier=engagement_tier_for(len(entries)),
        ),
    )
