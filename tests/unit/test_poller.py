"""Unit tests for ChangePoller cycles, ordering and lifecycle."""

from __future__ import annotations

import asyncio
import json

import pytest
from sqlalchemy import text

from changewire.bus import InMemoryBus
from changewire.bus.topics import ENTITY_CHANGE
from changewire.capture import ChangeLogStore, Operation, TriggerChangeRecorder
from changewire.config import PollerConfig
from changewire.errors import StorageReadError
from changewire.observability import MemorySink
from changewire.pipeline import ChangePoller, ChangePublisher, PollerState


async def _append(session_factory, rows: list[tuple[str, str]]) -> list[int]:
    ids = []
    async with session_factory() as session:
        async with session.begin():
            for table, record_id in rows:
                entry = await ChangeLogStore.append(
                    session, table=table, operation=Operation.INSERT, record_id=record_id, after={"id": record_id}
                )
                ids.append(entry.id)
    return ids


def _poller(store, bus, *, batch_size: int = 100, interval: float = 0.01) -> ChangePoller:
    publisher = ChangePublisher(bus, sink=MemorySink())
    return ChangePoller(store, publisher, config=PollerConfig(interval_seconds=interval, batch_size=batch_size))


@pytest.mark.asyncio
async def test_empty_cycle_has_no_side_effects(store, bus: InMemoryBus) -> None:
    poller = _poller(store, bus)
    result = await poller.run_cycle()
    assert result.fetched == 0
    assert result.published == 0
    assert poller.state is PollerState.IDLE
    assert bus.messages() == []
    assert await store.load_cursor("changewire-poller") == 0


@pytest.mark.asyncio
async def test_cycle_publishes_in_id_order_and_advances(store, session_factory, bus: InMemoryBus) -> None:
    ids = await _append(session_factory, [("users", "1"), ("users", "2"), ("user_tokens", "1")])
    poller = _poller(store, bus)

    result = await poller.run_cycle()

    assert result.published == 3
    assert result.published_ids == ids
    assert result.cursor_after == ids[-1]
    assert [json.loads(m.value)["changeId"] for m in bus.messages(ENTITY_CHANGE)] == ids
    assert await store.count_pending() == 0
    assert await store.load_cursor("changewire-poller") == ids[-1]
    assert poller.cursor == ids[-1]


@pytest.mark.asyncio
async def test_batch_size_bounds_each_cycle(store, session_factory, bus: InMemoryBus) -> None:
    ids = await _append(session_factory, [("users", str(n)) for n in range(5)])
    poller = _poller(store, bus, batch_size=2)

    first = await poller.run_cycle()
    second = await poller.run_cycle()
    third = await poller.run_cycle()

    assert [first.published, second.published, third.published] == [2, 2, 1]
    assert first.published_ids + second.published_ids + third.published_ids == ids


@pytest.mark.asyncio
async def test_publish_failure_aborts_batch_and_holds_cursor(store, session_factory, bus: InMemoryBus) -> None:
    ids = await _append(session_factory, [("users", "1"), ("users", "2"), ("users", "3")])
    poller = _poller(store, bus)
    original_publish = bus.publish
    calls = {"n": 0}

    async def flaky_publish(topic, value, *, key, headers=None):
        calls["n"] += 1
        if calls["n"] == 2:
            raise ConnectionError("broker down")
        return await original_publish(topic, value, key=key, headers=headers)

    bus.publish = flaky_publish  # type: ignore[method-assign]
    result = await poller.run_cycle()

    assert result.failed_change_id == ids[1]
    assert result.aborted is True
    assert result.published_ids == [ids[0]]
    assert calls["n"] == 2
    assert len(bus.messages()) == 1
    assert await store.load_cursor("changewire-poller") == ids[0]
    pending = await store.fetch_unprocessed(ids[0], 10)
    assert [r.id for r in pending] == ids[1:]


@pytest.mark.asyncio
async def test_all_failed_batch_is_retried_unchanged(store, session_factory, bus: InMemoryBus) -> None:
    ids = await _append(session_factory, [("users", "1"), ("users", "2")])
    poller = _poller(store, bus)

    bus.fail_next(1)
    failed = await poller.run_cycle()
    assert failed.published == 0
    assert failed.failed_change_id == ids[0]
    assert await store.load_cursor("changewire-poller") == 0
    assert bus.messages() == []

    retried = await poller.run_cycle()
    assert retried.published_ids == ids
    assert [m.key for m in bus.messages(ENTITY_CHANGE)] == ["users:1", "users:2"]


@pytest.mark.asyncio
async def test_per_entity_order_preserved_across_failures(store, session_factory, bus: InMemoryBus) -> None:
    await _append(session_factory, [("users", "7")] * 4)
    poller = _poller(store, bus, batch_size=3)

    bus.fail_next(1)
    await poller.run_cycle()
    for _ in range(3):
        await poller.run_cycle()

    partition = bus.partition_for("users:7")
    change_ids = [json.loads(m.value)["changeId"] for m in bus.partition_log(ENTITY_CHANGE, partition)]
    assert change_ids == sorted(change_ids)
    assert len(change_ids) == 4


@pytest.mark.asyncio
async def test_storage_read_error_propagates_from_cycle(bus: InMemoryBus) -> None:
    class _Store:
        async def load_cursor(self, consumer_group: str) -> int:
            return 0

        async def fetch_unprocessed(self, after_id: int, limit: int):
            raise StorageReadError("database unavailable")

    poller = ChangePoller(_Store(), ChangePublisher(bus, sink=MemorySink()))  # type: ignore[arg-type]
    with pytest.raises(StorageReadError):
        await poller.run_cycle()
    assert poller.state is PollerState.IDLE


@pytest.mark.asyncio
async def test_start_fails_when_cursor_cannot_be_loaded(bus: InMemoryBus) -> None:
    class _Store:
        async def load_cursor(self, consumer_group: str) -> int:
            raise StorageReadError("no storage")

    poller = ChangePoller(_Store(), ChangePublisher(bus, sink=MemorySink()))  # type: ignore[arg-type]
    with pytest.raises(StorageReadError):
        await poller.start()
    assert poller.running is False


@pytest.mark.asyncio
async def test_loop_counts_publish_aborted_cycles_as_failed(store, session_factory, bus: InMemoryBus) -> None:
    await _append(session_factory, [("users", "1")])
    bus.fail_next(1000, topic=ENTITY_CHANGE)
    poller = _poller(store, bus, interval=0.01)
    await poller.start()
    try:
        for _ in range(200):
            if poller.status()["failed_cycles"] >= 2:
                break
            await asyncio.sleep(0.01)
    finally:
        await poller.stop()

    status = poller.status()
    assert status["failed_cycles"] >= 2
    assert "broker unavailable" in status["last_error"]
    assert status["changes_processed"] == 0
    assert await store.count_pending() == 1


@pytest.mark.asyncio
async def test_loop_publishes_captured_changes_and_stops_cleanly(
    engine, store, session_factory, bus: InMemoryBus, watched_tables
) -> None:
    recorder = TriggerChangeRecorder(watched_tables)
    await recorder.install(engine)
    poller = ChangePoller(
        store,
        ChangePublisher(bus, sink=MemorySink()),
        config=PollerConfig(interval_seconds=0.01),
        recorder=recorder,
    )
    await poller.start()
    with pytest.raises(RuntimeError):
        await poller.start()
    try:
        async with engine.begin() as conn:
            await conn.execute(text("INSERT INTO users (id, email, password) VALUES (42, 'a@example.com', 'h')"))
        for _ in range(200):
            if bus.messages(ENTITY_CHANGE):
                break
            await asyncio.sleep(0.01)
    finally:
        await poller.stop()

    (message,) = bus.messages(ENTITY_CHANGE)
    assert message.key == "users:42"
    status = poller.status()
    assert status["running"] is False
    assert status["changes_processed"] == 1
    assert status["capture_mode"] == "trigger"
    assert status["degraded"] is False
    assert status["state"] == "IDLE"
    assert status["batch_size"] == 100


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_batch(store, session_factory, bus: InMemoryBus) -> None:
    ids = await _append(session_factory, [("users", "1"), ("users", "2")])
    release = asyncio.Event()
    original_publish = bus.publish

    async def slow_publish(topic, value, *, key, headers=None):
        await release.wait()
        return await original_publish(topic, value, key=key, headers=headers)

    bus.publish = slow_publish  # type: ignore[method-assign]
    poller = _poller(store, bus, interval=60)
    await poller.start()
    for _ in range(200):
        if poller.state is PollerState.PUBLISHING:
            break
        await asyncio.sleep(0.01)
    assert poller.state is PollerState.PUBLISHING

    stopper = asyncio.create_task(poller.stop())
    await asyncio.sleep(0.01)
    assert not stopper.done()
    release.set()
    await stopper

    assert await store.load_cursor("changewire-poller") == ids[-1]
    assert await store.count_pending() == 0
