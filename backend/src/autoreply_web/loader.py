"""Resilient conversation history loading.

A :class:`ResilientMessageLoader` wraps a :class:`~.messages.MessageStore` with
a short-lived cache, a per-attempt timeout, retry with capped exponential
backoff, and supersede-on-new-call cancellation. One loader serves one
conversation view; different conversations get independent loaders from a
:class:`LoaderPool` and may load concurrently.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable

from .message_cache import DEFAULT_CACHE_TTL_SECONDS, MessageCache
from .messages import MessageRecord, MessageStore
from .read_state import ReadStateUpdater

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_TIMEOUT_MS = 10_000
DEFAULT_BACKOFF_BASE_MS = 1_000
DEFAULT_BACKOFF_CAP_MS = 5_000


class LoadError(Exception):
    """Base class for conversation load failures."""


class LoadValidationError(LoadError, ValueError):
    """Raised before any I/O when the conversation key is missing."""


class TransientLoadError(LoadError):
    """A single attempt failed in a way that is worth retrying."""


class LoadCancelledError(LoadError):
    """The load was superseded, timed out, or cancelled by the caller."""

    def __init__(self, conversation_key: str, reason: str) -> None:
        super().__init__(f"load cancelled for {conversation_key}: {reason}")
        self.conversation_key = conversation_key
        self.reason = reason


class TerminalLoadError(LoadError):
    """All attempts failed; ``last_error`` is the final underlying failure."""

    def __init__(self, conversation_key: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"failed to load {conversation_key} after {attempts} attempts: {last_error}")
        self.conversation_key = conversation_key
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class LoadingState:
    is_loading: bool = False
    error: str | None = None
    last_load_time: datetime | None = None
    retry_count: int = 0


def backoff_delay_ms(
    attempt: int,
    *,
    base_ms: int = DEFAULT_BACKOFF_BASE_MS,
    cap_ms: int = DEFAULT_BACKOFF_CAP_MS,
) -> int:
    return min(base_ms * (2 ** attempt), cap_ms)


class CancellationToken:
    """Cancellation scope for one load call.

    An optional ``parent`` event lets callers fold their own cancellation
    scope into the load: setting it cancels the load the same way a newer
    call or a timeout does.
    """

    def __init__(self, parent: asyncio.Event | None = None) -> None:
        self._event = asyncio.Event()
        self._parent = parent
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or (self._parent is not None and self._parent.is_set())

    @property
    def reason(self) -> str:
        if self._reason is not None:
            return self._reason
        return "cancelled by caller"

    def cancel(self, reason: str) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> None:
        waiters = [asyncio.ensure_future(self._event.wait())]
        if self._parent is not None:
            waiters.append(asyncio.ensure_future(self._parent.wait()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds`` unless cancelled first. Returns True if cancelled."""
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_record(record: MessageRecord) -> MessageRecord:
    status = record.status or "delivered"
    auto_generated = bool(record.auto_generated)
    if status == record.status and auto_generated is record.auto_generated:
        return record
    return replace(record, status=status, auto_generated=auto_generated)


class ResilientMessageLoader:
    def __init__(
        self,
        store: MessageStore,
        *,
        cache: MessageCache | None = None,
        read_state: ReadStateUpdater | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS,
        backoff_cap_ms: int = DEFAULT_BACKOFF_CAP_MS,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._store = store
        self._cache = cache if cache is not None else MessageCache()
        self._read_state = read_state
        self._max_retries = max_retries
        self._timeout_ms = timeout_ms
        self._backoff_base_ms = backoff_base_ms
        self._backoff_cap_ms = backoff_cap_ms
        self._clock = clock
        self._active: CancellationToken | None = None
        self.state = LoadingState()
        self.messages: tuple[MessageRecord, ...] = ()

    @property
    def in_flight(self) -> bool:
        return self._active is not None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if self._active is not None:
            self._active.cancel(reason)

    def clear_cache(self, conversation_key: str | None = None) -> None:
        if conversation_key is None:
            self._cache.clear()
        else:
            self._cache.invalidate(conversation_key)

    async def force_reload(self, conversation_key: str) -> list[MessageRecord]:
        key = self._validate_key(conversation_key)
        self._cache.invalidate(key)
        return await self.load(key, use_cache=False)

    async def load(
        self,
        conversation_key: str,
        *,
        use_cache: bool = True,
        max_retries: int | None = None,
        timeout_ms: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> list[MessageRecord]:
        key = self._validate_key(conversation_key)
        retries = max(0, self._max_retries if max_retries is None else max_retries)
        timeout = self._timeout_ms if timeout_ms is None else timeout_ms

        if self._active is not None:
            self._active.cancel("superseded by a newer load")
        token = CancellationToken(parent=cancel_event)
        self._active = token

        try:
            if use_cache:
                cached = self._cache.get(key)
                if cached is not None:
                    logger.debug("using cached messages for %s", key)
                    # a superseded call can no longer clear its own loading flag
                    self.state = replace(self.state, is_loading=False, error=None)
                    self.messages = cached
                    return list(cached)

            self.state = replace(self.state, is_loading=True, error=None)
            try:
                records = await self._load_with_retry(key, token, retries=retries, timeout_ms=timeout)
            except LoadCancelledError as exc:
                logger.info("load cancelled for %s: %s", key, exc.reason)
                if self._active is token:
                    self.state = replace(self.state, is_loading=False, error=exc.reason)
                raise
            except TerminalLoadError as exc:
                if self._active is token:
                    self.state = replace(
                        self.state,
                        is_loading=False,
                        error=str(exc.last_error) or exc.last_error.__class__.__name__,
                        retry_count=self.state.retry_count + 1,
                    )
                raise
            except asyncio.CancelledError:
                token.cancel("caller task cancelled")
                if self._active is token:
                    self.state = replace(self.state, is_loading=False)
                raise

            self._cache.put(key, records)
            self.messages = tuple(records)
            self.state = LoadingState(
                is_loading=False,
                error=None,
                last_load_time=self._clock(),
                retry_count=0,
            )
            logger.info("loaded %d messages for %s", len(records), key)
            if self._read_state is not None:
                self._read_state.schedule(records)
            return list(records)
        finally:
            if self._active is token:
                self._active = None

    async def _load_with_retry(
        self,
        key: str,
        token: CancellationToken,
        *,
        retries: int,
        timeout_ms: int,
    ) -> list[MessageRecord]:
        last_error: BaseException = TransientLoadError("no attempts made")
        attempts = 0
        for attempt in range(retries + 1):
            attempts = attempt + 1
            logger.debug("loading messages for %s (attempt %d/%d)", key, attempts, retries + 1)
            try:
                return await self._attempt(key, token, timeout_ms=timeout_ms)
            except TransientLoadError as exc:
                last_error = exc.__cause__ or exc
                logger.warning(
                    "load attempt %d/%d failed for %s: %s",
                    attempts,
                    retries + 1,
                    key,
                    last_error,
                )
            if attempt >= retries:
                break
            delay_ms = backoff_delay_ms(attempt, base_ms=self._backoff_base_ms, cap_ms=self._backoff_cap_ms)
            logger.info("retrying load for %s in %dms", key, delay_ms)
            if await token.sleep(delay_ms / 1000):
                raise LoadCancelledError(key, token.reason)

        raise TerminalLoadError(key, attempts, last_error) from last_error

    async def _attempt(self, key: str, token: CancellationToken, *, timeout_ms: int) -> list[MessageRecord]:
        if token.cancelled:
            raise LoadCancelledError(key, token.reason)

        fetch = asyncio.ensure_future(self._store.fetch_messages(key))
        cancelled = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {fetch, cancelled},
                timeout=timeout_ms / 1000,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancelled.cancel()
            if not fetch.done():
                fetch.cancel()

        if not done:
            token.cancel(f"timed out after {timeout_ms}ms")
        if token.cancelled or fetch.cancelled():
            if fetch.done() and not fetch.cancelled():
                fetch.exception()
            raise LoadCancelledError(key, token.reason)

        error = fetch.exception()
        if error is not None:
            raise TransientLoadError(str(error)) from error
        return [_normalize_record(record) for record in fetch.result()]

    @staticmethod
    def _validate_key(conversation_key: str | None) -> str:
        key = (conversation_key or "").strip()
        if not key:
            raise LoadValidationError("conversation key is required")
        return key


class LoaderPool:
    """One loader per conversation key, sharing a store and read-state updater."""

    def __init__(
        self,
        store: MessageStore,
        *,
        read_state: ReadStateUpdater | None = None,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS,
        backoff_cap_ms: int = DEFAULT_BACKOFF_CAP_MS,
    ) -> None:
        self._store = store
        self.read_state = read_state if read_state is not None else ReadStateUpdater(store)
        self._cache_ttl_seconds = cache_ttl_seconds
        self._max_retries = max_retries
        self._timeout_ms = timeout_ms
        self._backoff_base_ms = backoff_base_ms
        self._backoff_cap_ms = backoff_cap_ms
        self._loaders: dict[str, ResilientMessageLoader] = {}

    def __len__(self) -> int:
        return len(self._loaders)

    def get(self, conversation_key: str) -> ResilientMessageLoader:
        key = ResilientMessageLoader._validate_key(conversation_key)
        loader = self._loaders.get(key)
        if loader is None:
            loader = ResilientMessageLoader(
                self._store,
                cache=MessageCache(ttl_seconds=self._cache_ttl_seconds),
                read_state=self.read_state,
                max_retries=self._max_retries,
                timeout_ms=self._timeout_ms,
                backoff_base_ms=self._backoff_base_ms,
                backoff_cap_ms=self._backoff_cap_ms,
            )
            self._loaders[key] = loader
        return loader

    def clear_cache(self, conversation_key: str | None = None) -> None:
        if conversation_key is None:
            for loader in self._loaders.values():
                loader.clear_cache()
            return
        loader = self._loaders.get(conversation_key.strip())
        if loader is not None:
            loader.clear_cache(conversation_key.strip())

    def reset(self) -> None:
        for loader in self._loaders.values():
            loader.cancel("loader pool reset")
        self._loaders.clear()
