"""Producer -> broker -> dispatcher roundtrip against a real Kafka broker."""

from __future__ import annotations

import asyncio
import os
import uuid

import pytest

from changewire.bus import KafkaEventConsumer, KafkaEventProducer
from changewire.config import TopicsConfig
from changewire.consumer import Dispatcher
from changewire.observability import MemorySink
from changewire.pipeline import ActivityReporter, ChangePublisher

pytestmark = pytest.mark.requires_kafka

BOOTSTRAP = os.getenv("CHANGEWIRE_TEST_KAFKA", "localhost:9092")


@pytest.mark.asyncio
async def test_activity_event_roundtrip_through_kafka() -> None:
    pytest.importorskip("aiokafka")
    suffix = uuid.uuid4().hex[:8]
    topics = TopicsConfig(
        entity_change=f"it-entity-{suffix}",
        critical_entity_change=f"it-critical-{suffix}",
        user_activity=f"it-activity-{suffix}",
        system_log=f"it-system-{suffix}",
    )
    producer = KafkaEventProducer(bootstrap_servers=BOOTSTRAP, max_retries=3)
    consumer = KafkaEventConsumer(
        topics=[topics.user_activity],
        bootstrap_servers=BOOTSTRAP,
        group_id=f"changewire-it-{suffix}",
        auto_offset_reset="earliest",
    )
    sink = MemorySink()
    dispatcher = Dispatcher(consumer, sink=sink, topics=topics)

    await producer.connect()
    try:
        reporter = ActivityReporter(ChangePublisher(producer, topics=topics, sink=MemorySink()))
        receipt = await reporter.report_login(42, origin_address="127.0.0.1", client="pytest")
        assert receipt.topic == topics.user_activity

        await dispatcher.start()
        try:
            for _ in range(300):
                if sink.by_category("SECURITY_MONITORING"):
                    break
                await asyncio.sleep(0.1)
        finally:
            await dispatcher.stop()
    finally:
        await producer.close()

    [security] = sink.by_category("SECURITY_MONITORING")
    assert security["actorId"] == "42"
    assert security["riskLevel"] == "LOW"
    [dispatched] = sink.by_event("ACTIVITY_DISPATCHED")
    assert dispatched["userAgent"] == "pytest"
