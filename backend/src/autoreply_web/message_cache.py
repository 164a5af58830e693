from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from .messages import MessageRecord

DEFAULT_CACHE_TTL_SECONDS = 10.0


@dataclass(frozen=True)
class CacheEntry:
    messages: tuple[MessageRecord, ...]
    captured_at: float


class MessageCache:
    """Short-lived snapshot of loaded conversations, private to one loader."""

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, conversation_key: object) -> bool:
        return conversation_key in self._entries

    def get(self, conversation_key: str) -> tuple[MessageRecord, ...] | None:
        entry = self._entries.get(conversation_key)
        if entry is None:
            return None
        if self._clock() - entry.captured_at >= self._ttl_seconds:
            # stale entries are dropped on read
            del self._entries[conversation_key]
            return None
        return entry.messages

    def put(self, conversation_key: str, messages: list[MessageRecord] | tuple[MessageRecord, ...]) -> None:
        self._entries[conversation_key] = CacheEntry(messages=tuple(messages), captured_at=self._clock())

    def invalidate(self, conversation_key: str) -> None:
        self._entries.pop(conversation_key, None)

    def clear(self) -> None:
        self._entries.clear()
