"""Unit tests for ChangePublisher."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from changewire.bus import InMemoryBus
from changewire.bus.topics import CRITICAL_ENTITY_CHANGE, ENTITY_CHANGE
from changewire.capture import ChangeRecord, Operation
from changewire.errors import PublishError
from changewire.observability import MemorySink
from changewire.pipeline import ChangePublisher

CAPTURED = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _record(operation: Operation, before=None, after=None, *, table: str = "users", change_id: int = 1) -> ChangeRecord:
    return ChangeRecord(
        id=change_id,
        entity_table=table,
        operation=operation,
        record_id="42",
        before=before,
        after=after,
        actor_id="42",
        occurred_at=CAPTURED,
    )


@pytest.mark.asyncio
async def test_routine_change_goes_only_to_entity_topic(bus: InMemoryBus, sink: MemorySink) -> None:
    publisher = ChangePublisher(bus, sink=sink)
    outcome = await publisher.publish_change(_record(Operation.INSERT, after={"id": 42, "password": "h"}))

    assert outcome.escalated is False
    (message,) = bus.messages(ENTITY_CHANGE)
    assert message.key == "users:42"
    assert message.headers["change-id"] == "1"
    payload = json.loads(message.value)
    assert payload["type"] == "INSERT"
    assert payload["recordId"] == "42"
    assert payload["publishTimestamp"] is not None
    assert bus.messages(CRITICAL_ENTITY_CHANGE) == []

    (record,) = sink.by_event("CHANGE_PUBLISHED")
    assert record["category"] == "DATABASE_CHANGE"
    assert record["table"] == "users"
    assert record["topic"] == ENTITY_CHANGE
    assert record["offset"] == message.offset
    assert record["processingDelayMs"] >= 0


@pytest.mark.asyncio
async def test_credential_update_is_escalated_in_addition(bus: InMemoryBus, sink: MemorySink) -> None:
    publisher = ChangePublisher(bus, sink=sink)
    outcome = await publisher.publish_change(
        _record(Operation.UPDATE, before={"id": 42, "password": "h1"}, after={"id": 42, "password": "h2"})
    )

    assert outcome.escalated is True
    assert len(bus.messages(ENTITY_CHANGE)) == 1
    (critical,) = bus.messages(CRITICAL_ENTITY_CHANGE)
    assert critical.key == "users:42"
    payload = json.loads(critical.value)
    assert payload["alertLevel"] == "HIGH"
    assert payload["requiresAttention"] is True
    assert payload["securityImplications"] == "USER_DATA_MODIFIED"
    assert payload["category"] == "CRITICAL_DATABASE_CHANGE"
    assert sink.by_event("CRITICAL_CHANGE_ESCALATED")


@pytest.mark.asyncio
async def test_identity_delete_is_escalated(bus: InMemoryBus) -> None:
    publisher = ChangePublisher(bus)
    await publisher.publish_change(_record(Operation.DELETE, before={"id": 42}))
    (critical,) = bus.messages(CRITICAL_ENTITY_CHANGE)
    assert json.loads(critical.value)["securityImplications"] == "USER_ACCOUNT_DELETED"


@pytest.mark.asyncio
async def test_non_identity_delete_is_not_escalated(bus: InMemoryBus) -> None:
    publisher = ChangePublisher(bus)
    await publisher.publish_change(_record(Operation.DELETE, before={"id": 42}, table="user_tokens"))
    assert bus.messages(CRITICAL_ENTITY_CHANGE) == []


@pytest.mark.asyncio
async def test_delivery_failure_surfaces_as_publish_error(bus: InMemoryBus, sink: MemorySink) -> None:
    publisher = ChangePublisher(bus, sink=sink)
    bus.fail_next(1)
    with pytest.raises(PublishError) as exc_info:
        await publisher.publish_change(_record(Operation.INSERT, after={"id": 42}))
    assert exc_info.value.topic == ENTITY_CHANGE
    assert exc_info.value.partition_key == "users:42"
    assert bus.messages() == []
    assert sink.records == []


@pytest.mark.asyncio
async def test_escalation_failure_is_reported(bus: InMemoryBus) -> None:
    publisher = ChangePublisher(bus)
    bus.fail_next(1, topic=CRITICAL_ENTITY_CHANGE)
    with pytest.raises(PublishError) as exc_info:
        await publisher.publish_change(_record(Operation.DELETE, before={"id": 42}))
    assert exc_info.value.topic == CRITICAL_ENTITY_CHANGE
