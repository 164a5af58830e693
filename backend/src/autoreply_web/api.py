from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, status

from .autoreply import AutoReplyOutcome, AutoReplyService
from .config import Settings, get_settings
from .decision_context import HistoryEntry, LeadProfile
from .decision_engine import DecisionEngine, IntelligentDecision
from .decision_history import DecisionHistory
from .loader import LoadCancelledError, LoaderPool, LoadValidationError, TerminalLoadError
from .messages import MessageRecord, MessageStore, create_message_store
from .models import (
    CacheClearResponse,
    DecisionOutcomeRequest,
    DecisionOutcomeResponse,
    DecisionRequest,
    DecisionResponse,
    InboundMessageRequest,
    InboundMessageResponse,
    InsightsResponse,
    LeadProfileIn,
    MessageItem,
    MessageListResponse,
    ReasoningCount,
)
from .read_state import ReadStateUpdater
from .responder import ReplyGenerator, create_reply_generator

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/autoreply", tags=["autoreply"])


def _create_loader_pool(settings: Settings, store: MessageStore) -> LoaderPool:
    return LoaderPool(
        store,
        read_state=ReadStateUpdater(store),
        cache_ttl_seconds=settings.message_cache_ttl_seconds,
        max_retries=settings.message_load_max_retries,
        timeout_ms=settings.message_load_timeout_ms,
        backoff_base_ms=settings.message_load_backoff_base_ms,
        backoff_cap_ms=settings.message_load_backoff_cap_ms,
    )


message_store: MessageStore = create_message_store(
    backend=_settings.message_store_backend,
    database_url=_settings.database_url,
)
loader_pool = _create_loader_pool(_settings, message_store)
decision_engine = DecisionEngine(
    history=DecisionHistory(capacity=_settings.decision_history_capacity),
    business_zone=_settings.business_zone(),
)
reply_generator: ReplyGenerator = create_reply_generator(
    generator_type=_settings.reply_generator_type,
    base_url=_settings.reply_generator_base_url,
    api_key=_settings.reply_generator_api_key,
    timeout_seconds=_settings.reply_generator_timeout_seconds,
)
autoreply_enabled = _settings.autoreply_enabled


def reset_runtime_state_for_tests() -> None:
    loader_pool.reset()
    message_store.reset()
    decision_engine.history.reset()


def _autoreply_service() -> AutoReplyService:
    # Built per request so tests can swap the module-level collaborators.
    return AutoReplyService(
        store=message_store,
        loaders=loader_pool,
        engine=decision_engine,
        generator=reply_generator,
        autoreply_enabled=autoreply_enabled,
    )


def _lead_profile(payload: LeadProfileIn) -> LeadProfile:
    return LeadProfile(display_name=payload.display_name, vehicle_interest=payload.vehicle_interest)


def _decision_response(decision: IntelligentDecision) -> DecisionResponse:
    return DecisionResponse(
        decision_id=decision.decision_id or "",
        should_respond=decision.should_respond,
        confidence=decision.confidence,
        reasoning=list(decision.reasoning),
        recommended_action=decision.recommended_action,
        urgency_level=decision.urgency_level,
        suggested_delay_minutes=decision.suggested_delay_minutes,
        factor_scores=dict(decision.factor_scores),
        used_fallback=decision.used_fallback,
    )


def _message_item(record: MessageRecord) -> MessageItem:
    return MessageItem(
        message_id=record.message_id,
        conversation_key=record.conversation_key,
        body_text=record.body_text,
        direction=record.direction,
        sent_at=record.sent_at,
        status=record.status,
        auto_generated=record.auto_generated,
        read_at=record.read_at,
    )


def _inbound_response(outcome: AutoReplyOutcome) -> InboundMessageResponse:
    return InboundMessageResponse(
        conversation_key=outcome.conversation_key,
        message_id=outcome.inbound_message_id or "",
        status=outcome.status,
        decision=_decision_response(outcome.decision),
        reply_text=outcome.reply_text,
        reply_message_id=outcome.reply_message_id,
    )


def _cancelled_error(exc: LoadCancelledError) -> HTTPException:
    if exc.reason.startswith("superseded"):
        return HTTPException(status_code=409, detail=f"message load cancelled: {exc.reason}")
    return HTTPException(status_code=504, detail=f"message load cancelled: {exc.reason}")


def _without_trigger(history: list[MessageRecord], message_text: str) -> list[MessageRecord]:
    """Drop the newest inbound message when it is the one being decided on."""
    for index in range(len(history) - 1, -1, -1):
        if history[index].direction != "inbound":
            continue
        if history[index].body_text.strip() == message_text.strip():
            return history[:index] + history[index + 1 :]
        break
    return history


async def _load_messages(conversation_key: str, *, force: bool) -> MessageListResponse:
    try:
        loader = loader_pool.get(conversation_key)
        if force:
            records = await loader.force_reload(conversation_key)
        else:
            records = await loader.load(conversation_key)
    except LoadValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except LoadCancelledError as exc:
        raise _cancelled_error(exc) from exc
    except TerminalLoadError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return MessageListResponse(
        conversation_key=conversation_key.strip(),
        items=[_message_item(record) for record in records],
    )


@router.get("/health")
def health() -> dict[str, object]:
    return {
        "status": "ok",
        "message_store_backend": _settings.message_store_backend,
        "autoreply_enabled": autoreply_enabled,
        "reply_generator": _settings.reply_generator_type,
    }


@router.post("/decisions", response_model=DecisionResponse)
async def create_decision(payload: DecisionRequest) -> DecisionResponse:
    if payload.history is not None:
        history: list[HistoryEntry] | list[MessageRecord] = [
            HistoryEntry(body_text=item.body_text, direction=item.direction, sent_at=item.sent_at)
            for item in payload.history
        ]
    else:
        # stored history may already hold the message being decided on
        try:
            stored = await loader_pool.get(payload.conversation_key).load(payload.conversation_key)
        except LoadCancelledError as exc:
            raise _cancelled_error(exc) from exc
        except TerminalLoadError:
            stored = []
        history = _without_trigger(stored, payload.message_text)
    decision = decision_engine.decide(
        payload.conversation_key,
        payload.message_text,
        history=history,
        lead_profile=_lead_profile(payload.lead_profile),
        now=payload.now,
    )
    return _decision_response(decision)


@router.get("/decisions/insights", response_model=InsightsResponse)
def get_insights() -> InsightsResponse:
    insights = decision_engine.insights()
    return InsightsResponse(
        total_decisions=insights.total_decisions,
        respond_count=insights.respond_count,
        wait_count=insights.wait_count,
        average_confidence=insights.average_confidence,
        top_reasoning=[ReasoningCount(reason=reason, count=count) for reason, count in insights.top_reasoning],
        urgency_distribution=insights.urgency_distribution,
        action_distribution=insights.action_distribution,
        outcomes_recorded=insights.outcomes_recorded,
        success_rate=insights.success_rate,
    )


@router.post("/decisions/{decision_id}/outcome", response_model=DecisionOutcomeResponse)
def record_decision_outcome(decision_id: str, payload: DecisionOutcomeRequest) -> DecisionOutcomeResponse:
    if not decision_engine.record_outcome(decision_id, payload.outcome):
        raise HTTPException(status_code=404, detail=f"decision not found: {decision_id}")
    return DecisionOutcomeResponse(decision_id=decision_id, recorded=True)


@router.get("/conversations/{conversation_key}/messages", response_model=MessageListResponse)
async def list_messages(conversation_key: str) -> MessageListResponse:
    return await _load_messages(conversation_key, force=False)


@router.post("/conversations/{conversation_key}/messages/reload", response_model=MessageListResponse)
async def reload_messages(conversation_key: str) -> MessageListResponse:
    return await _load_messages(conversation_key, force=True)


@router.delete("/conversations/cache", response_model=CacheClearResponse)
def clear_conversation_cache(conversation_key: str | None = Query(default=None)) -> CacheClearResponse:
    key = (conversation_key or "").strip()
    if key:
        loader_pool.clear_cache(key)
        return CacheClearResponse(cleared=key)
    loader_pool.clear_cache()
    return CacheClearResponse(cleared="all")


@router.post(
    "/conversations/{conversation_key}/inbound",
    response_model=InboundMessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def ingest_inbound_message(conversation_key: str, payload: InboundMessageRequest) -> InboundMessageResponse:
    try:
        outcome = await _autoreply_service().ingest_inbound(
            conversation_key,
            payload.body_text,
            lead_profile=_lead_profile(payload.lead_profile),
            now=payload.now,
        )
    except LoadValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except LoadCancelledError as exc:
        raise _cancelled_error(exc) from exc
    return _inbound_response(outcome)


@router.post("/conversations/{conversation_key}/evaluate", response_model=InboundMessageResponse)
async def evaluate_conversation(conversation_key: str, payload: LeadProfileIn | None = None) -> InboundMessageResponse:
    try:
        outcome = await _autoreply_service().evaluate_latest(
            conversation_key,
            lead_profile=_lead_profile(payload or LeadProfileIn()),
        )
    except LoadValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except LoadCancelledError as exc:
        raise _cancelled_error(exc) from exc
    if outcome is None:
        raise HTTPException(status_code=404, detail=f"no inbound messages for conversation: {conversation_key}")
    return _inbound_response(outcome)
