from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from .messages import MessageRecord, MessageStore

logger = logging.getLogger(__name__)


def unread_inbound_ids(messages: Iterable[MessageRecord]) -> list[str]:
    return [
        message.message_id
        for message in messages
        if message.direction == "inbound" and message.read_at is None
    ]


class ReadStateUpdater:
    """Marks freshly loaded inbound messages as read in a detached task.

    Failures are logged and kept in ``last_error``; they never reach the
    caller that triggered the load.
    """

    def __init__(self, store: MessageStore) -> None:
        self._store = store
        self._pending: set[asyncio.Task[int]] = set()
        self.last_error: str | None = None
        self.marked_total = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def schedule(self, messages: Iterable[MessageRecord]) -> asyncio.Task[int] | None:
        message_ids = unread_inbound_ids(messages)
        if not message_ids:
            return None
        logger.info("marking %d inbound messages as read", len(message_ids))
        task = asyncio.get_running_loop().create_task(self._mark(message_ids))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _mark(self, message_ids: list[str]) -> int:
        try:
            marked = await self._store.mark_read(message_ids)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.last_error = str(exc) or exc.__class__.__name__
            logger.warning("failed to mark %d messages as read: %s", len(message_ids), self.last_error)
            return 0
        self.marked_total += marked
        return marked
