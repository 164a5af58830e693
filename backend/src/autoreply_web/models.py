from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

MessageDirection = Literal["inbound", "outbound"]
DeliveryStatus = Literal["queued", "sent", "delivered", "failed", "received"]
EngagementTier = Literal["high", "medium", "low"]
UrgencyLevel = Literal["low", "medium", "high"]
RecommendedAction = Literal["respond_immediately", "respond_normally", "schedule_response"]
DecisionOutcome = Literal["success", "failure"]
AutoReplyStatus = Literal["sent", "scheduled", "skipped", "disabled"]


def _strip_optional(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


class LeadProfileIn(BaseModel):
    display_name: str | None = Field(default=None, max_length=256)
    vehicle_interest: str | None = Field(default=None, max_length=512)

    @field_validator("display_name", "vehicle_interest")
    @classmethod
    def _normalize_text(cls, value: str | None) -> str | None:
        return _strip_optional(value)


class HistoryMessageIn(BaseModel):
    body_text: str = Field(max_length=4000)
    direction: MessageDirection
    sent_at: datetime | None = None


class DecisionRequest(BaseModel):
    conversation_key: str = Field(min_length=1, max_length=128)
    message_text: str = Field(max_length=4000)
    history: list[HistoryMessageIn] | None = None
    lead_profile: LeadProfileIn = Field(default_factory=LeadProfileIn)
    now: datetime | None = None

    @field_validator("conversation_key")
    @classmethod
    def _normalize_key(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("conversation_key cannot be blank")
        return normalized


class DecisionResponse(BaseModel):
    decision_id: str
    should_respond: bool
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: list[str]
    recommended_action: RecommendedAction
    urgency_level: UrgencyLevel
    suggested_delay_minutes: int | None = None
    factor_scores: dict[str, float] = Field(default_factory=dict)
    used_fallback: bool = False


class ReasoningCount(BaseModel):
    reason: str
    count: int


class InsightsResponse(BaseModel):
    total_decisions: int
    respond_count: int
    wait_count: int
    average_confidence: float
    top_reasoning: list[ReasoningCount]
    urgency_distribution: dict[str, int]
    action_distribution: dict[str, int]
    outcomes_recorded: int
    success_rate: float | None = None


class DecisionOutcomeRequest(BaseModel):
    outcome: DecisionOutcome


class DecisionOutcomeResponse(BaseModel):
    decision_id: str
    recorded: bool


class MessageItem(BaseModel):
    message_id: str
    conversation_key: str
    body_text: str
    direction: MessageDirection
    sent_at: datetime
    status: DeliveryStatus
    auto_generated: bool
    read_at: datetime | None = None


class MessageListResponse(BaseModel):
    conversation_key: str
    items: list[MessageItem]


class CacheClearResponse(BaseModel):
    cleared: str


class InboundMessageRequest(BaseModel):
    body_text: str = Field(min_length=1, max_length=4000)
    lead_profile: LeadProfileIn = Field(default_factory=LeadProfileIn)
    now: datetime | None = None

    @field_validator("body_text")
    @classmethod
    def _normalize_body(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("body_text cannot be blank")
        return normalized


class InboundMessageResponse(BaseModel):
    conversation_key: str
    message_id: str
    status: AutoReplyStatus
    decision: DecisionResponse
    reply_text: str | None = None
    reply_message_id: str | None = None
