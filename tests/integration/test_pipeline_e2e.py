"""End-to-end: trigger capture -> poller -> in-memory bus -> dispatcher, on SQLite."""

from __future__ import annotations

import json

import pytest
from sqlalchemy import text

from changewire.bus import InMemoryBus
from changewire.capture import select_recorder
from changewire.config import PollerConfig
from changewire.consumer import Dispatcher
from changewire.observability import MemorySink
from changewire.pipeline import ChangePoller, ChangePublisher, ClassificationRules


async def _drain(dispatcher: Dispatcher, consumer) -> list:
    results = []
    for batch in await consumer.fetch_batches(timeout_ms=1):
        results.extend(await dispatcher.process_batch(batch))
    return results


@pytest.fixture
def rules(watched_tables) -> ClassificationRules:
    return ClassificationRules.from_tables(watched_tables)


@pytest.mark.asyncio
async def test_insert_flows_to_dispatcher_without_escalation(engine, store, bus: InMemoryBus, rules, watched_tables) -> None:
    recorder = await select_recorder(engine, watched_tables, mode="trigger")
    publisher_sink, consumer_sink = MemorySink(), MemorySink()
    poller = ChangePoller(
        store,
        ChangePublisher(bus, rules=rules, sink=publisher_sink),
        config=PollerConfig(interval_seconds=0.05),
        recorder=recorder,
    )
    dispatcher = Dispatcher(bus.consumer(["entity-change"]), sink=consumer_sink, rules=rules)

    async with engine.begin() as conn:
        await conn.execute(text("INSERT INTO users (id, email, password) VALUES (42, 'a@x.io', 'h1')"))

    record = await store.get(1)
    assert record is not None
    assert (record.operation.value, record.entity_table, record.record_id) == ("INSERT", "users", "42")

    result = await poller.run_cycle()
    assert result.published_ids == [1]
    assert await store.load_cursor("changewire-poller") == 1

    [message] = bus.messages("entity-change")
    envelope = json.loads(message.value)
    assert envelope["partitionKey"] == "users:42"
    assert envelope["category"] == "USER_DATA_CHANGE"
    assert bus.messages("critical-entity-change") == []

    results = await _drain(dispatcher, bus.consumer(["entity-change"]))
    assert [r.status for r in results] == ["processed"]
    [dispatched] = consumer_sink.by_event("CHANGE_DISPATCHED")
    assert dispatched["recordId"] == "42"
    assert dispatched["critical"] is False
    assert consumer_sink.by_event("CRITICAL_CHANGE_ALERT") == []


@pytest.mark.asyncio
async def test_credential_update_escalates_once(engine, store, bus: InMemoryBus, rules, watched_tables) -> None:
    recorder = await select_recorder(engine, watched_tables, mode="trigger")
    poller = ChangePoller(store, ChangePublisher(bus, rules=rules, sink=MemorySink()), recorder=recorder)
    consumer_sink = MemorySink()
    dispatcher = Dispatcher(bus.consumer(["entity-change"]), sink=consumer_sink, rules=rules)

    async with engine.begin() as conn:
        await conn.execute(text("INSERT INTO users (id, email, password) VALUES (42, 'a@x.io', 'h1')"))
        await conn.execute(text("UPDATE users SET password = 'h2' WHERE id = 42"))

    result = await poller.run_cycle()
    assert result.published == 2
    assert result.escalated == 1

    entity = [json.loads(m.value) for m in bus.messages("entity-change")]
    assert [e["type"] for e in entity] == ["INSERT", "UPDATE"]
    assert entity[1]["before"]["password"] == "h1"
    assert entity[1]["after"]["password"] == "h2"

    [critical_message] = bus.messages("critical-entity-change")
    critical = json.loads(critical_message.value)
    assert critical["category"] == "CRITICAL_DATABASE_CHANGE"
    assert critical["alertLevel"] == "HIGH"
    assert critical["requiresAttention"] is True
    assert critical["partitionKey"] == "users:42"

    # Both deliveries of the same change (e.g. republished after a crash) raise one alert.
    consumer = bus.consumer(["entity-change"])
    first = await _drain(dispatcher, consumer)
    replay = bus.consumer(["entity-change"])
    second = await _drain(dispatcher, replay)
    assert [r.status for r in first + second] == ["processed"] * 4
    assert len(consumer_sink.by_event("CRITICAL_CHANGE_ALERT")) == 1
    assert dispatcher.status()["duplicate_alerts"] == 1


@pytest.mark.asyncio
async def test_changes_written_while_poller_down_are_delivered(engine, store, bus: InMemoryBus, rules, watched_tables) -> None:
    await select_recorder(engine, watched_tables, mode="trigger")

    async with engine.begin() as conn:
        for user_id in (1, 2, 3):
            await conn.execute(
                text("INSERT INTO users (id, email, password) VALUES (:id, :email, 'p')"),
                {"id": user_id, "email": f"u{user_id}@x.io"},
            )

    bus.fail_next(1, topic="entity-change")
    first = ChangePoller(store, ChangePublisher(bus, rules=rules, sink=MemorySink()))
    aborted = await first.run_cycle()
    assert aborted.aborted
    assert aborted.failed_change_id == 1
    assert await store.count_pending() == 3

    # A fresh process resumes from the persisted cursor.
    second = ChangePoller(store, ChangePublisher(bus, rules=rules, sink=MemorySink()))
    resumed = await second.run_cycle()
    assert resumed.published_ids == [1, 2, 3]
    assert [json.loads(m.value)["recordId"] for m in bus.messages("entity-change")] == ["1", "2", "3"]
    assert await store.count_pending() == 0
