"""Dispatcher: subscribe, demultiplex by topic, and route to handlers.

Partitions are processed concurrently, one worker per partition; messages
within a partition are handled strictly in offset order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from changewire.bus.models import BusMessage, MessageBatch
from changewire.bus.protocols import EventConsumer
from changewire.config.models import DispatcherConfig, TopicsConfig
from changewire.consumer.handlers import (
    EntityChangeHandler,
    HandlerOutcome,
    SystemLogHandler,
    TopicHandler,
    UserActivityHandler,
)
from changewire.consumer.idempotency import IdempotencyStore
from changewire.consumer.parsers import EnvelopeParser, MessageParser
from changewire.errors import ParseError, UnknownTopic
from changewire.observability import LoggingSink, ObservabilitySink, isoformat, structured_record
from changewire.pipeline.classifier import DEFAULT_RULES, ClassificationRules

logger = logging.getLogger(__name__)

_PartitionKey = tuple[str, int]


@dataclass(slots=True)
class DispatchResult:
    """Outcome of dispatching one bus message."""

    topic: str
    partition: int
    offset: int
    status: str
    outcome: HandlerOutcome | None = None
    detail: str | None = None


def default_handlers(
    sink: ObservabilitySink,
    *,
    topics: TopicsConfig | None = None,
    rules: ClassificationRules = DEFAULT_RULES,
    idempotency_store: IdempotencyStore | None = None,
    idempotency_window: int = 3600,
) -> dict[str, TopicHandler]:
    topics = topics or TopicsConfig()
    return {
        topics.entity_change: EntityChangeHandler(
            sink,
            rules=rules,
            idempotency_store=idempotency_store,
            idempotency_window=idempotency_window,
        ),
        topics.user_activity: UserActivityHandler(sink),
        topics.system_log: SystemLogHandler(sink),
    }


class Dispatcher:
    """Consumes batches from the bus and routes each message by topic."""

    def __init__(
        self,
        consumer: EventConsumer,
        *,
        handlers: dict[str, TopicHandler] | None = None,
        sink: ObservabilitySink | None = None,
        config: DispatcherConfig | None = None,
        topics: TopicsConfig | None = None,
        rules: ClassificationRules = DEFAULT_RULES,
        idempotency_store: IdempotencyStore | None = None,
        parser: MessageParser | None = None,
    ) -> None:
        self.consumer = consumer
        self.config = config or DispatcherConfig()
        self.sink = sink or LoggingSink()
        self.handlers: dict[str, TopicHandler] = (
            dict(handlers)
            if handlers is not None
            else default_handlers(
                self.sink,
                topics=topics,
                rules=rules,
                idempotency_store=idempotency_store,
                idempotency_window=self.config.idempotency_window,
            )
        )
        self._parser = parser or EnvelopeParser()

        self._running = False
        self._loop_task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._connected = False
        self._connect_failures = 0
        self._queues: dict[_PartitionKey, asyncio.Queue[BusMessage]] = {}
        self._workers: dict[_PartitionKey, asyncio.Task[None]] = {}
        self._started_at: float | None = None
        self._processed_messages = 0
        self._handled = 0
        self._parse_errors = 0
        self._unknown_topics = 0
        self._handler_errors = 0
        self._critical_alerts = 0
        self._duplicates = 0
        self._batches = 0

    def register(self, topic: str, handler: TopicHandler) -> None:
        self.handlers[topic] = handler

    @property
    def running(self) -> bool:
        return self._running

    def _uptime(self) -> float:
        return 0.0 if self._started_at is None else time.time() - self._started_at

    async def process_message(self, message: BusMessage) -> DispatchResult:
        """Parse and route one message. Parse failures and unknown topics are skipped."""
        if self._started_at is None:
            self._started_at = time.time()
        started = time.perf_counter()
        self._processed_messages += 1
        result = DispatchResult(topic=message.topic, partition=message.partition, offset=message.offset, status="processed")
        try:
            handler = self.handlers.get(message.topic)
            if handler is None:
                raise UnknownTopic(message.topic)
            envelope = self._parser.parse(message.value)
            outcome = await handler(envelope, message)
        except UnknownTopic as exc:
            self._unknown_topics += 1
            result.status = "unknown_topic"
            result.detail = str(exc)
            logger.warning("Skipping message %s/%d@%d: %s", message.topic, message.partition, message.offset, exc)
        except ParseError as exc:
            self._parse_errors += 1
            result.status = "parse_error"
            result.detail = str(exc)
            logger.warning(
                "Skipping unparsable message %s/%d@%d: %s", message.topic, message.partition, message.offset, exc
            )
        except Exception as exc:
            self._handler_errors += 1
            result.status = "handler_error"
            result.detail = str(exc)
            logger.exception("Handler failed for message %s/%d@%d", message.topic, message.partition, message.offset)
        else:
            self._handled += 1
            if outcome.critical and not outcome.duplicate:
                self._critical_alerts += 1
            if outcome.duplicate:
                self._duplicates += 1
            result.outcome = outcome

        self.sink.emit(
            structured_record(
                "REALTIME_DATA_PROCESSING",
                event="MESSAGE_PROCESSED",
                status=result.status,
                topic=message.topic,
                partition=message.partition,
                offset=message.offset,
                key=message.key,
                processingTimeMs=round((time.perf_counter() - started) * 1000, 3),
                totalProcessed=self._processed_messages,
                uptimeSeconds=round(self._uptime(), 3),
                messageSize=message.size,
            )
        )
        return result

    def _emit_batch_summary(self, batch: MessageBatch) -> None:
        self._batches += 1
        self.sink.emit(
            structured_record(
                "BATCH_PROCESSING",
                event="BATCH_RECEIVED",
                topic=batch.topic,
                partition=batch.partition,
                size=len(batch.messages),
                firstOffset=batch.first_offset,
                lastOffset=batch.last_offset,
            )
        )

    async def process_batch(self, batch: MessageBatch) -> list[DispatchResult]:
        """Summarize a batch, then handle and commit its messages in offset order."""
        self._emit_batch_summary(batch)
        results = []
        for message in batch.messages:
            results.append(await self.process_message(message))
            await self.consumer.commit(message)
        return results

    async def start(self) -> None:
        """Start the fetch loop; the consumer connects inside it, retrying with backoff."""
        if self._running:
            raise RuntimeError("Dispatcher already running")
        self._stop_event = asyncio.Event()
        self._running = True
        self._started_at = time.time()
        self._loop_task = asyncio.create_task(self._consume_loop(), name="changewire-dispatcher")
        logger.info("Dispatcher started for topics %s", sorted(self.handlers))

    async def stop(self) -> None:
        """Stop fetching, let queued messages finish, then disconnect."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._loop_task is not None:
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        for queue in self._queues.values():
            await queue.join()
        for task in self._workers.values():
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers.values(), return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
        await self.consumer.close()
        self._connected = False
        logger.info("Dispatcher stopped after %d message(s)", self._processed_messages)

    async def _connect_with_backoff(self) -> bool:
        delay = self.config.reconnect_backoff_seconds
        while self._running:
            try:
                await self.consumer.connect()
            except Exception as exc:
                self._connect_failures += 1
                logger.warning("Bus consumer connect failed, retrying in %.1fs: %s", delay, exc)
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
                delay = min(delay * 2, self.config.reconnect_backoff_max_seconds)
                continue
            self._connected = True
            logger.info("Bus consumer connected")
            return True
        return False

    async def _consume_loop(self) -> None:
        if not await self._connect_with_backoff():
            return
        while self._running:
            try:
                batches = await self.consumer.fetch_batches(
                    timeout_ms=self.config.poll_timeout_ms,
                    max_records=self.config.max_batch_records,
                )
            except Exception:
                logger.exception("Fetching from the bus failed")
                await asyncio.sleep(self.config.poll_timeout_ms / 1000)
                continue
            for batch in batches:
                if not batch.messages:
                    continue
                self._emit_batch_summary(batch)
                queue = self._partition_queue(batch.topic, batch.partition)
                for message in batch.messages:
                    await queue.put(message)
            await asyncio.sleep(0)

    def _partition_queue(self, topic: str, partition: int) -> asyncio.Queue[BusMessage]:
        key = (topic, partition)
        queue = self._queues.get(key)
        if queue is None:
            queue = asyncio.Queue(maxsize=self.config.partition_queue_size)
            self._queues[key] = queue
            self._workers[key] = asyncio.create_task(
                self._partition_worker(queue), name=f"changewire-dispatch-{topic}-{partition}"
            )
        return queue

    async def _partition_worker(self, queue: asyncio.Queue[BusMessage]) -> None:
        while True:
            message = await queue.get()
            try:
                await self.process_message(message)
                await self.consumer.commit(message)
            except Exception:
                logger.exception("Commit failed for %s/%d@%d", message.topic, message.partition, message.offset)
            finally:
                queue.task_done()

    def status(self) -> dict[str, Any]:
        """Snapshot of dispatcher counters."""
        uptime = self._uptime()
        started_at = (
            None
            if self._started_at is None
            else isoformat(datetime.fromtimestamp(self._started_at, tz=timezone.utc))
        )
        return {
            "running": self._running,
            "connected": self._connected,
            "connect_failures": self._connect_failures,
            "processed_messages": self._processed_messages,
            "handled_messages": self._handled,
            "parse_errors": self._parse_errors,
            "unknown_topics": self._unknown_topics,
            "handler_errors": self._handler_errors,
            "critical_alerts": self._critical_alerts,
            "duplicate_alerts": self._duplicates,
            "batches": self._batches,
            "partitions": len(self._workers),
            "uptime_seconds": round(uptime, 3),
            "throughput_per_second": round(self._processed_messages / uptime, 3) if uptime > 0 else 0.0,
            "start_time": started_at,
        }
