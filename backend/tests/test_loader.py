from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Iterable

import pytest

from autoreply_web.loader import (
    LoadCancelledError,
    LoaderPool,
    LoadValidationError,
    ResilientMessageLoader,
    TerminalLoadError,
    backoff_delay_ms,
)
from autoreply_web.messages import MessageRecord
from autoreply_web.read_state import ReadStateUpdater

_LOADED_AT = datetime(2026, 3, 2, 15, 30, tzinfo=timezone.utc)


def _record(
    message_id: str,
    *,
    conversation_key: str = "lead-1",
    direction: str = "inbound",
    minutes: int = 0,
    read_at: datetime | None = None,
) -> MessageRecord:
    return MessageRecord(
        message_id=message_id,
        conversation_key=conversation_key,
        body_text=f"body of {message_id}",
        direction=direction,  # type: ignore[arg-type]
        sent_at=datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes),
        status="received" if direction == "inbound" else "sent",
        auto_generated=direction == "outbound",
        read_at=read_at,
    )


class _FakeStore:
    def __init__(
        self,
        messages: Iterable[MessageRecord] = (),
        *,
        failures: int = 0,
        delays: Iterable[float] = (),
    ) -> None:
        self.messages = list(messages)
        self.failures = failures
        self.delays = list(delays)
        self.fetch_calls = 0
        self.marked: list[list[str]] = []

    async def fetch_messages(self, conversation_key: str) -> list[MessageRecord]:
        self.fetch_calls += 1
        if self.delays:
            await asyncio.sleep(self.delays.pop(0))
        if self.failures:
            self.failures -= 1
            raise RuntimeError("db down")
        return [item for item in self.messages if item.conversation_key == conversation_key]

    async def mark_read(self, message_ids: Iterable[str]) -> int:
        ids = list(message_ids)
        self.marked.append(ids)
        return len(ids)

    async def append_message(self, **kwargs: object) -> MessageRecord:
        raise NotImplementedError

    def reset(self) -> None:
        self.messages.clear()


def _loader(store: _FakeStore, **overrides: object) -> ResilientMessageLoader:
    options: dict[str, object] = {
        "max_retries": 3,
        "timeout_ms": 1_000,
        "backoff_base_ms": 1,
        "backoff_cap_ms": 2,
        "clock": lambda: _LOADED_AT,
    }
    options.update(overrides)
    return ResilientMessageLoader(store, **options)  # type: ignore[arg-type]


def test_backoff_delay_doubles_and_caps() -> None:
    assert [backoff_delay_ms(attempt) for attempt in range(5)] == [1000, 2000, 4000, 5000, 5000]
    assert backoff_delay_ms(3, base_ms=10, cap_ms=1000) == 80


@pytest.mark.asyncio
async def test_load_returns_messages_and_records_success_state() -> None:
    store = _FakeStore([_record("m1"), _record("m2", direction="outbound", minutes=1)])
    loader = _loader(store)

    messages = await loader.load("lead-1")

    assert [item.message_id for item in messages] == ["m1", "m2"]
    assert [item.message_id for item in loader.messages] == ["m1", "m2"]
    assert loader.state.is_loading is False
    assert loader.state.error is None
    assert loader.state.last_load_time == _LOADED_AT
    assert loader.state.retry_count == 0
    assert loader.in_flight is False


@pytest.mark.asyncio
async def test_cache_hit_skips_the_store() -> None:
    store = _FakeStore([_record("m1")])
    loader = _loader(store)

    await loader.load("lead-1")
    cached = await loader.load("lead-1")

    assert [item.message_id for item in cached] == ["m1"]
    assert store.fetch_calls == 1

    await loader.load("lead-1", use_cache=False)
    assert store.fetch_calls == 2


@pytest.mark.asyncio
async def test_retry_is_bounded_and_surfaces_terminal_failure() -> None:
    store = _FakeStore(failures=10)
    loader = _loader(store)

    with pytest.raises(TerminalLoadError) as exc_info:
        await loader.load("lead-1")

    assert exc_info.value.attempts == 4
    assert isinstance(exc_info.value.last_error, RuntimeError)
    assert store.fetch_calls == 4
    assert loader.state.is_loading is False
    assert loader.state.error == "db down"
    assert loader.state.retry_count == 1


@pytest.mark.asyncio
async def test_zero_retries_means_a_single_attempt() -> None:
    store = _FakeStore(failures=10)
    loader = _loader(store)

    with pytest.raises(TerminalLoadError):
        await loader.load("lead-1", max_retries=0)

    assert store.fetch_calls == 1


@pytest.mark.asyncio
async def test_transient_failures_recover_and_reset_retry_count() -> None:
    store = _FakeStore([_record("m1")], failures=10)
    loader = _loader(store)
    with pytest.raises(TerminalLoadError):
        await loader.load("lead-1", max_retries=0)
    assert loader.state.retry_count == 1

    store.failures = 2
    messages = await loader.load("lead-1")

    assert [item.message_id for item in messages] == ["m1"]
    assert store.fetch_calls == 4
    assert loader.state.retry_count == 0
    assert loader.state.error is None


@pytest.mark.asyncio
async def test_timeout_cancels_without_retrying() -> None:
    store = _FakeStore([_record("m1")], delays=[1.0])
    loader = _loader(store, timeout_ms=20)

    with pytest.raises(LoadCancelledError) as exc_info:
        await loader.load("lead-1")

    assert "timed out after 20ms" in exc_info.value.reason
    assert store.fetch_calls == 1
    assert loader.state.is_loading is False
    assert "timed out" in (loader.state.error or "")
    assert loader.state.retry_count == 0


@pytest.mark.asyncio
async def test_newer_load_supersedes_in_flight_load() -> None:
    store = _FakeStore([_record("m1")], delays=[0.5, 0.0])
    loader = _loader(store)

    first = asyncio.create_task(loader.load("lead-1"))
    await asyncio.sleep(0.01)
    second = await loader.load("lead-1", use_cache=False)

    with pytest.raises(LoadCancelledError) as exc_info:
        await first

    assert exc_info.value.reason == "superseded by a newer load"
    assert [item.message_id for item in second] == ["m1"]
    assert loader.state.error is None
    assert loader.state.is_loading is False
    assert loader.in_flight is False


@pytest.mark.asyncio
async def test_cache_hit_superseding_slow_load_clears_loading_flag() -> None:
    store = _FakeStore(
        [_record("f1", conversation_key="lead-fast"), _record("s1", conversation_key="lead-slow")],
        delays=[0.0, 0.5],
    )
    loader = _loader(store)
    await loader.load("lead-fast")

    slow = asyncio.create_task(loader.load("lead-slow"))
    await asyncio.sleep(0.01)
    assert loader.state.is_loading is True

    cached = await loader.load("lead-fast")

    with pytest.raises(LoadCancelledError):
        await slow

    assert [item.message_id for item in cached] == ["f1"]
    assert loader.state.is_loading is False
    assert loader.state.error is None
    assert loader.in_flight is False
    assert store.fetch_calls == 2


@pytest.mark.asyncio
async def test_cancel_during_backoff_stops_retrying() -> None:
    store = _FakeStore(failures=10)
    loader = _loader(store, backoff_base_ms=5_000, backoff_cap_ms=5_000)

    task = asyncio.create_task(loader.load("lead-1"))
    await asyncio.sleep(0.05)
    assert loader.in_flight is True
    loader.cancel("lead view closed")

    with pytest.raises(LoadCancelledError) as exc_info:
        await task

    assert exc_info.value.reason == "lead view closed"
    assert store.fetch_calls == 1
    assert loader.state.error == "lead view closed"


@pytest.mark.asyncio
async def test_caller_cancel_event_aborts_the_load() -> None:
    store = _FakeStore([_record("m1")], delays=[1.0])
    loader = _loader(store)
    cancel_event = asyncio.Event()

    task = asyncio.create_task(loader.load("lead-1", cancel_event=cancel_event))
    await asyncio.sleep(0.01)
    cancel_event.set()

    with pytest.raises(LoadCancelledError) as exc_info:
        await task
    assert exc_info.value.reason == "cancelled by caller"


@pytest.mark.asyncio
async def test_task_cancellation_propagates_and_clears_loading_flag() -> None:
    store = _FakeStore([_record("m1")], delays=[1.0])
    loader = _loader(store)

    task = asyncio.create_task(loader.load("lead-1"))
    await asyncio.sleep(0.01)
    assert loader.state.is_loading is True
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert loader.state.is_loading is False
    assert loader.in_flight is False


@pytest.mark.asyncio
async def test_force_reload_bypasses_fresh_cache() -> None:
    store = _FakeStore([_record("m1")])
    loader = _loader(store)
    await loader.load("lead-1")

    store.messages.append(_record("m2", minutes=2))
    cached = await loader.load("lead-1")
    reloaded = await loader.force_reload("lead-1")

    assert [item.message_id for item in cached] == ["m1"]
    assert [item.message_id for item in reloaded] == ["m1", "m2"]
    assert store.fetch_calls == 2


@pytest.mark.asyncio
async def test_clear_cache_forces_next_load_to_fetch() -> None:
    store = _FakeStore([_record("m1")])
    loader = _loader(store)

    await loader.load("lead-1")
    loader.clear_cache("lead-1")
    await loader.load("lead-1")
    loader.clear_cache()
    await loader.load("lead-1")

    assert store.fetch_calls == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("conversation_key", ["", "   "])
async def test_blank_key_is_rejected_before_any_io(conversation_key: str) -> None:
    store = _FakeStore()
    loader = _loader(store)

    with pytest.raises(LoadValidationError):
        await loader.load(conversation_key)
    assert store.fetch_calls == 0
    assert loader.state.is_loading is False


@pytest.mark.asyncio
async def test_missing_status_and_flag_get_defaults() -> None:
    raw = MessageRecord(
        message_id="m1",
        conversation_key="lead-1",
        body_text="hello",
        direction="inbound",
        sent_at=datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc),
        status=None,  # type: ignore[arg-type]
        auto_generated=None,  # type: ignore[arg-type]
    )
    loader = _loader(_FakeStore([raw]))

    (message,) = await loader.load("lead-1")

    assert message.status == "delivered"
    assert message.auto_generated is False


@pytest.mark.asyncio
async def test_successful_load_marks_unread_inbound_messages_once() -> None:
    store = _FakeStore(
        [
            _record("m1"),
            _record("m2", direction="outbound", minutes=1),
            _record("m3", minutes=2, read_at=_LOADED_AT),
        ]
    )
    read_state = ReadStateUpdater(store)  # type: ignore[arg-type]
    loader = _loader(store, read_state=read_state)

    await loader.load("lead-1")
    await read_state.drain()
    await loader.load("lead-1")
    await read_state.drain()

    assert store.marked == [["m1"]]
    assert read_state.marked_total == 1


@pytest.mark.asyncio
async def test_loader_pool_keeps_conversations_independent() -> None:
    store = _FakeStore(
        [
            _record("a1", conversation_key="lead-a"),
            _record("b1", conversation_key="lead-b"),
        ],
        delays=[0.05, 0.05],
    )
    pool = LoaderPool(store, backoff_base_ms=1, backoff_cap_ms=2)  # type: ignore[arg-type]

    assert pool.get("lead-a") is pool.get(" lead-a ")
    assert pool.get("lead-a") is not pool.get("lead-b")

    loaded_a, loaded_b = await asyncio.gather(
        pool.get("lead-a").load("lead-a"),
        pool.get("lead-b").load("lead-b"),
    )

    assert [item.message_id for item in loaded_a] == ["a1"]
    assert [item.message_id for item in loaded_b] == ["b1"]
    assert len(pool) == 2

    pool.clear_cache()
    await pool.get("lead-a").load("lead-a")
    assert store.fetch_calls == 3

    pool.reset()
    assert len(pool) == 0
