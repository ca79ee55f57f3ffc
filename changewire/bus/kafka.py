"""Kafka producer and consumer adapters (aiokafka)."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from changewire.bus.models import BusMessage, DeliveryReceipt, MessageBatch

logger = logging.getLogger(__name__)


def _import_aiokafka() -> tuple[type[Any], type[Any], type[Any]]:
    """Import aiokafka lazily so the client is only needed at runtime."""
    try:
        from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition  # type: ignore[import-not-found]
    except ImportError as exc:
        raise RuntimeError("Kafka adapter requires aiokafka. Install with: pip install aiokafka") from exc
    return AIOKafkaConsumer, AIOKafkaProducer, TopicPartition


def _encode_headers(headers: dict[str, str]) -> list[tuple[str, bytes]]:
    return [(key, value.encode("utf-8")) for key, value in headers.items()]


def _decode_headers(headers: Any) -> dict[str, str]:
    if not headers:
        return {}
    decoded: dict[str, str] = {}
    for key, value in headers:
        decoded[key] = value.decode("utf-8", errors="replace") if isinstance(value, bytes) else str(value)
    return decoded


class KafkaEventProducer:
    """Idempotent Kafka producer with bounded retries and exponential backoff."""

    def __init__(
        self,
        *,
        bootstrap_servers: str | list[str],
        client_id: str = "changewire",
        max_retries: int = 8,
        initial_retry_ms: int = 100,
        retry_multiplier: float = 2.0,
        producer: Any | None = None,
    ) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.max_retries = max_retries
        self.initial_retry_ms = initial_retry_ms
        self.retry_multiplier = retry_multiplier
        self._producer = producer
        self._connected = False

    async def connect(self) -> None:
        created = self._producer is None
        if created:
            _, producer_cls, _ = _import_aiokafka()
            self._producer = producer_cls(
                bootstrap_servers=self.bootstrap_servers,
                client_id=self.client_id,
                acks="all",
                enable_idempotence=True,
                retry_backoff_ms=self.initial_retry_ms,
            )
        try:
            await self._producer.start()
        except Exception:
            # A client that failed to bootstrap is rebuilt on the next attempt.
            if created:
                self._producer = None
            raise
        self._connected = True

    async def publish(
        self,
        topic: str,
        value: bytes,
        *,
        key: str,
        headers: dict[str, str] | None = None,
    ) -> DeliveryReceipt:
        if self._producer is None or not self._connected:
            await self.connect()
        delay = self.initial_retry_ms / 1000.0
        attempt = 0
        while True:
            try:
                metadata = await self._producer.send_and_wait(
                    topic,
                    value,
                    key=key.encode("utf-8"),
                    headers=_encode_headers(headers or {}),
                )
                return DeliveryReceipt(
                    topic=getattr(metadata, "topic", topic),
                    partition=int(getattr(metadata, "partition", -1)),
                    offset=int(getattr(metadata, "offset", -1)),
                )
            except Exception as exc:
                if attempt >= self.max_retries:
                    raise
                attempt += 1
                logger.warning(
                    "Kafka send to %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    topic,
                    attempt,
                    self.max_retries,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
                delay *= self.retry_multiplier

    async def close(self) -> None:
        if self._producer is not None and self._connected:
            await self._producer.stop()
        self._connected = False

    async def health_check(self) -> bool:
        return self._connected and self._producer is not None


class KafkaEventConsumer:
    """Kafka consumer group member delivering per-partition batches with manual commits."""

    def __init__(
        self,
        *,
        topics: Iterable[str],
        bootstrap_servers: str | list[str],
        group_id: str,
        client_id: str = "changewire",
        session_timeout_ms: int = 30000,
        heartbeat_interval_ms: int = 3000,
        auto_offset_reset: str = "latest",
        consumer: Any | None = None,
    ) -> None:
        self.topics = list(dict.fromkeys(topics))
        self.bootstrap_servers = bootstrap_servers
        self.group_id = group_id
        self.client_id = client_id
        self.session_timeout_ms = session_timeout_ms
        self.heartbeat_interval_ms = heartbeat_interval_ms
        self.auto_offset_reset = auto_offset_reset
        self._consumer = consumer
        self._topic_partition_type: type[Any] | None = None
        self._connected = False
        self._closed = False

    async def connect(self) -> None:
        created = self._consumer is None
        if created or self._topic_partition_type is None:
            consumer_cls, _, topic_partition_cls = _import_aiokafka()
            self._topic_partition_type = topic_partition_cls
            if created:
                self._consumer = consumer_cls(
                    *self.topics,
                    bootstrap_servers=self.bootstrap_servers,
                    group_id=self.group_id,
                    client_id=self.client_id,
                    enable_auto_commit=False,
                    auto_offset_reset=self.auto_offset_reset,
                    session_timeout_ms=self.session_timeout_ms,
                    heartbeat_interval_ms=self.heartbeat_interval_ms,
                )
        try:
            await self._consumer.start()
        except Exception:
            if created:
                self._consumer = None
            raise
        self._connected = True
        self._closed = False

    async def fetch_batches(self, timeout_ms: int = 1000, max_records: int | None = None) -> list[MessageBatch]:
        if self._consumer is None or not self._connected:
            return []
        fetched = await self._consumer.getmany(timeout_ms=timeout_ms, max_records=max_records)
        batches: list[MessageBatch] = []
        for topic_partition, records in fetched.items():
            if not records:
                continue
            messages = sorted((self._record_to_message(record) for record in records), key=lambda m: m.offset)
            batches.append(
                MessageBatch(topic=topic_partition.topic, partition=topic_partition.partition, messages=messages)
            )
        return batches

    async def commit(self, message: BusMessage) -> None:
        if self._consumer is None or self._topic_partition_type is None:
            return
        topic_partition = self._topic_partition_type(message.topic, message.partition)
        await self._consumer.commit({topic_partition: message.offset + 1})

    async def close(self) -> None:
        if self._consumer is not None and self._connected:
            await self._consumer.stop()
        self._connected = False
        self._closed = True

    async def health_check(self) -> bool:
        return self._connected and not self._closed and self._consumer is not None

    @staticmethod
    def _record_to_message(record: Any) -> BusMessage:
        key = getattr(record, "key", None)
        key_text = key.decode("utf-8", errors="replace") if isinstance(key, bytes) else key
        timestamp_ms = getattr(record, "timestamp", 0) or 0
        return BusMessage(
            topic=record.topic,
            partition=record.partition,
            offset=record.offset,
            key=key_text,
            value=record.value if record.value is not None else b"",
            headers=_decode_headers(getattr(record, "headers", None)),
            timestamp=datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc),
        )
