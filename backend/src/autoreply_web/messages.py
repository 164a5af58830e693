from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count
from typing import Iterable, Protocol

from sqlalchemy import Boolean, DateTime, String, Text, create_engine, select, update
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import DeliveryStatus, MessageDirection


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    conversation_key: str
    body_text: str
    direction: MessageDirection
    sent_at: datetime
    status: DeliveryStatus
    auto_generated: bool
    read_at: datetime | None = None


class MessageStore(Protocol):
    async def fetch_messages(self, conversation_key: str) -> list[MessageRecord]: ...

    async def mark_read(self, message_ids: Iterable[str]) -> int: ...

    async def append_message(
        self,
        *,
        conversation_key: str,
        body_text: str,
        direction: MessageDirection,
        status: DeliveryStatus,
        auto_generated: bool,
        sent_at: datetime | None = None,
    ) -> MessageRecord: ...

    def reset(self) -> None: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class InMemoryMessageStore:
    def __init__(self) -> None:
        self._message_counter = count(1)
        self._messages_by_key: dict[str, list[MessageRecord]] = defaultdict(list)
        self._key_by_message_id: dict[str, str] = {}

    def reset(self) -> None:
        self._message_counter = count(1)
        self._messages_by_key.clear()
        self._key_by_message_id.clear()

    async def fetch_messages(self, conversation_key: str) -> list[MessageRecord]:
        messages = self._messages_by_key.get(conversation_key, [])
        return sorted(messages, key=lambda value: value.sent_at)

    async def mark_read(self, message_ids: Iterable[str]) -> int:
        read_at = _now_utc()
        marked = 0
        for message_id in set(message_ids):
            key = self._key_by_message_id.get(message_id)
            if key is None:
                continue
            messages = self._messages_by_key[key]
            for index, item in enumerate(messages):
                if item.message_id == message_id and item.read_at is None:
                    messages[index] = replace(item, read_at=read_at)
                    marked += 1
        return marked

    async def append_message(
        self,
        *,
        conversation_key: str,
        body_text: str,
        direction: MessageDirection,
        status: DeliveryStatus,
        auto_generated: bool,
        sent_at: datetime | None = None,
    ) -> MessageRecord:
        message = MessageRecord(
            message_id=f"msg_{next(self._message_counter):06d}",
            conversation_key=conversation_key,
            body_text=body_text,
            direction=direction,
            sent_at=_as_utc(sent_at) if sent_at is not None else _now_utc(),
            status=status,
            auto_generated=auto_generated,
        )
        self._messages_by_key[conversation_key].append(message)
        self._key_by_message_id[message.message_id] = conversation_key
        return message


class MessagesBase(DeclarativeBase):
    pass


class _LeadMessageRow(MessagesBase):
    __tablename__ = "lead_messages"

    message_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    conversation_key: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    body_text: Mapped[str] = mapped_column(Text, nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="delivered")
    auto_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SqlAlchemyMessageStore:
    """Message store backed by the ``lead_messages`` table.

    Queries run on a worker thread so the event loop can keep serving other
    conversations while a slow database round-trip is in flight.
    """

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for MESSAGE_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        self._id_counter = count(1)
        if database_url.startswith("sqlite"):
            MessagesBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_LeadMessageRow).delete()

    async def fetch_messages(self, conversation_key: str) -> list[MessageRecord]:
        return await asyncio.to_thread(self._fetch_messages, conversation_key)

    async def mark_read(self, message_ids: Iterable[str]) -> int:
        return await asyncio.to_thread(self._mark_read, sorted(set(message_ids)))

    async def append_message(
        self,
        *,
        conversation_key: str,
        body_text: str,
        direction: MessageDirection,
        status: DeliveryStatus,
        auto_generated: bool,
        sent_at: datetime | None = None,
    ) -> MessageRecord:
        return await asyncio.to_thread(
            self._append_message,
            conversation_key,
            body_text,
            direction,
            status,
            auto_generated,
            sent_at,
        )

    def _fetch_messages(self, conversation_key: str) -> list[MessageRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_LeadMessageRow)
                .where(_LeadMessageRow.conversation_key == conversation_key)
                .order_by(_LeadMessageRow.sent_at.asc())
            ).all()
            return [self._message_record(row) for row in rows]

    def _mark_read(self, message_ids: list[str]) -> int:
        if not message_ids:
            return 0
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_LeadMessageRow)
                    .where(_LeadMessageRow.message_id.in_(message_ids))
                    .where(_LeadMessageRow.read_at.is_(None))
                    .values(read_at=_now_utc())
                )
                return int(result.rowcount or 0)

    def _append_message(
        self,
        conversation_key: str,
        body_text: str,
        direction: MessageDirection,
        status: DeliveryStatus,
        auto_generated: bool,
        sent_at: datetime | None,
    ) -> MessageRecord:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                row = _LeadMessageRow(
                    message_id=f"msg_{int(now.timestamp() * 1000000)}_{next(self._id_counter)}",
                    conversation_key=conversation_key,
                    body_text=body_text,
                    direction=direction,
                    sent_at=_as_utc(sent_at) if sent_at is not None else now,
                    status=status,
                    auto_generated=auto_generated,
                    read_at=None,
                )
                session.add(row)
                session.flush()
                return self._message_record(row)

    @staticmethod
    def _message_record(row: _LeadMessageRow) -> MessageRecord:
        return MessageRecord(
            message_id=row.message_id,
            conversation_key=row.conversation_key,
            body_text=row.body_text,
            direction=row.direction,  # type: ignore[arg-type]
            sent_at=_as_utc(row.sent_at),
            status=(row.status or "delivered"),  # type: ignore[arg-type]
            auto_generated=bool(row.auto_generated),
            read_at=_as_utc(row.read_at) if row.read_at is not None else None,
        )


def create_message_store(*, backend: str, database_url: str) -> MessageStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyMessageStore(database_url)
    if normalized == "inmemory":
        return InMemoryMessageStore()
    raise RuntimeError(f"unsupported MESSAGE_STORE_BACKEND: {backend}")
