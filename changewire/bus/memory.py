"""In-memory bus for local runs, tests and CI."""

from __future__ import annotations

import asyncio
import zlib
from collections.abc import Iterable
from datetime import datetime, timezone

from changewire.bus.models import BusMessage, DeliveryReceipt, MessageBatch


class InMemoryBus:
    """Partitioned in-process log with Kafka-like keyed partitioning.

    Messages with the same key always land in the same partition and keep
    their publish order there.
    """

    def __init__(self, partitions: int = 3) -> None:
        if partitions < 1:
            raise ValueError("partitions must be positive")
        self.partitions = partitions
        self._logs: dict[str, list[list[BusMessage]]] = {}
        self._published: list[BusMessage] = []
        self._fail_remaining = 0
        self._fail_topic: str | None = None
        self._connected = False
        self._closed = False

    async def connect(self) -> None:
        self._connected = True
        self._closed = False

    async def close(self) -> None:
        self._closed = True
        self._connected = False

    async def health_check(self) -> bool:
        return self._connected and not self._closed

    def partition_for(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % self.partitions

    def fail_next(self, count: int = 1, *, topic: str | None = None) -> None:
        """Make the next ``count`` publishes (optionally only to ``topic``) raise."""
        self._fail_remaining = count
        self._fail_topic = topic

    async def publish(
        self,
        topic: str,
        value: bytes,
        *,
        key: str,
        headers: dict[str, str] | None = None,
    ) -> DeliveryReceipt:
        if self._fail_remaining > 0 and (self._fail_topic is None or self._fail_topic == topic):
            self._fail_remaining -= 1
            raise ConnectionError(f"broker unavailable for {topic}")
        partitions = self._logs.setdefault(topic, [[] for _ in range(self.partitions)])
        partition = self.partition_for(key)
        log = partitions[partition]
        message = BusMessage(
            topic=topic,
            partition=partition,
            offset=len(log),
            key=key,
            value=value,
            headers=dict(headers or {}),
            timestamp=datetime.now(timezone.utc),
        )
        log.append(message)
        self._published.append(message)
        return DeliveryReceipt(topic=topic, partition=partition, offset=message.offset)

    def messages(self, topic: str | None = None) -> list[BusMessage]:
        """Return published messages in publish order, optionally for one topic."""
        return [m for m in self._published if topic is None or m.topic == topic]

    def partition_log(self, topic: str, partition: int) -> list[BusMessage]:
        partitions = self._logs.get(topic)
        if partitions is None:
            return []
        return list(partitions[partition])

    def consumer(self, topics: Iterable[str]) -> InMemoryConsumer:
        return InMemoryConsumer(self, topics)


class InMemoryConsumer:
    """Consumer over an InMemoryBus that reads every partition from offset 0."""

    def __init__(self, bus: InMemoryBus, topics: Iterable[str]) -> None:
        self._bus = bus
        self.topics = list(dict.fromkeys(topics))
        self._positions: dict[tuple[str, int], int] = {}
        self._committed: dict[tuple[str, int], int] = {}
        self._connected = False
        self._closed = False

    async def connect(self) -> None:
        self._connected = True
        self._closed = False

    async def fetch_batches(self, timeout_ms: int = 1000, max_records: int | None = None) -> list[MessageBatch]:
        batches: list[MessageBatch] = []
        budget = max_records if max_records is not None else None
        for topic in self.topics:
            for partition in range(self._bus.partitions):
                log = self._bus.partition_log(topic, partition)
                position = self._positions.get((topic, partition), 0)
                pending = log[position:]
                if budget is not None:
                    pending = pending[: max(0, budget)]
                    budget -= len(pending)
                if not pending:
                    continue
                self._positions[(topic, partition)] = position + len(pending)
                batches.append(MessageBatch(topic=topic, partition=partition, messages=pending))
        if not batches:
            await asyncio.sleep(min(timeout_ms / 1000.0, 0.01))
        return batches

    async def commit(self, message: BusMessage) -> None:
        self._committed[(message.topic, message.partition)] = message.offset + 1

    async def close(self) -> None:
        self._closed = True
        self._connected = False

    async def health_check(self) -> bool:
        return self._connected and not self._closed

    def committed(self, topic: str, partition: int) -> int | None:
        return self._committed.get((topic, partition))
