from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

from .decision_context import LeadProfile
from .decision_engine import DecisionEngine, IntelligentDecision
from .loader import LoadCancelledError, LoaderPool, LoadValidationError, TerminalLoadError
from .messages import MessageRecord, MessageStore
from .models import AutoReplyStatus
from .responder import ReplyGenerator, ReplyRequest, approved_flags

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AutoReplyOutcome:
    conversation_key: str
    decision: IntelligentDecision
    status: AutoReplyStatus
    inbound_message_id: str | None = None
    reply_text: str | None = None
    reply_message_id: str | None = None


class AutoReplyService:
    def __init__(
        self,
        *,
        store: MessageStore,
        loaders: LoaderPool,
        engine: DecisionEngine,
        generator: ReplyGenerator,
        autoreply_enabled: bool,
    ) -> None:
        self._store = store
        self._loaders = loaders
        self._engine = engine
        self._generator = generator
        self._autoreply_enabled = autoreply_enabled

    async def ingest_inbound(
        self,
        conversation_key: str,
        body_text: str,
        *,
        lead_profile: LeadProfile | None = None,
        now: datetime | None = None,
    ) -> AutoReplyOutcome:
        key = _require_key(conversation_key)
        inbound = await self._store.append_message(
            conversation_key=key,
            body_text=body_text,
            direction="inbound",
            status="received",
            auto_generated=False,
            sent_at=now,
        )
        self._loaders.clear_cache(key)
        return await self.evaluate(
            key,
            body_text,
            lead_profile=lead_profile,
            now=now,
            inbound_message_id=inbound.message_id,
        )

    async def evaluate_latest(
        self,
        conversation_key: str,
        *,
        lead_profile: LeadProfile | None = None,
        now: datetime | None = None,
    ) -> AutoReplyOutcome | None:
        """Re-run the decision for the newest inbound message, e.g. on a follow-up tick."""
        key = _require_key(conversation_key)
        history = await self._load_history(key)
        latest = next((message for message in reversed(history) if message.direction == "inbound"), None)
        if latest is None:
            return None
        return await self.evaluate(
            key,
            latest.body_text,
            lead_profile=lead_profile,
            now=now,
            inbound_message_id=latest.message_id,
        )

    async def evaluate(
        self,
        conversation_key: str,
        message_text: str,
        *,
        lead_profile: LeadProfile | None = None,
        now: datetime | None = None,
        inbound_message_id: str | None = None,
    ) -> AutoReplyOutcome:
        key = _require_key(conversation_key)
        profile = lead_profile or LeadProfile()
        history = [
            message
            for message in await self._load_history(key)
            if message.message_id != inbound_message_id
        ]
        decision = self._engine.decide(key, message_text, history=history, lead_profile=profile, now=now)

        if not self._autoreply_enabled:
            return AutoReplyOutcome(key, decision, "disabled", inbound_message_id=inbound_message_id)
        if not decision.should_respond:
            return AutoReplyOutcome(key, decision, "skipped", inbound_message_id=inbound_message_id)
        if decision.recommended_action == "schedule_response":
            logger.info(
                "reply for %s scheduled in %s minutes",
                key,
                decision.suggested_delay_minutes,
            )
            return AutoReplyOutcome(key, decision, "scheduled", inbound_message_id=inbound_message_id)

        request = ReplyRequest(
            conversation_key=key,
            inbound_text=message_text,
            lead_profile=profile,
            flags=approved_flags(decision, profile),
        )
        result = await asyncio.to_thread(self._generator.generate, request)
        if result.used_fallback:
            logger.warning("reply generation fell back for %s: %s", key, result.error_code)

        outbound = await self._store.append_message(
            conversation_key=key,
            body_text=result.message,
            direction="outbound",
            status="sent",
            auto_generated=True,
        )
        logger.info("auto-reply %s sent for %s (decision %s)", outbound.message_id, key, decision.decision_id)

        try:
            await self._loaders.get(key).force_reload(key)
        except (LoadCancelledError, TerminalLoadError) as exc:
            logger.warning("conversation refresh after reply failed for %s: %s", key, exc)

        return AutoReplyOutcome(
            key,
            decision,
            "sent",
            inbound_message_id=inbound_message_id,
            reply_text=result.message,
            reply_message_id=outbound.message_id,
        )

    async def _load_history(self, conversation_key: str) -> list[MessageRecord]:
        # LoadCancelledError propagates; only a terminal failure degrades to no history
        try:
            return await self._loaders.get(conversation_key).load(conversation_key)
        except TerminalLoadError as exc:
            logger.warning("history unavailable for %s, deciding without it: %s", conversation_key, exc)
        return []


def _require_key(conversation_key: str | None) -> str:
    key = (conversation_key or "").strip()
    if not key:
        raise LoadValidationError("conversation key is required")
    return key
