"""Process-level wiring of the capture (poller) and dispatch (consumer) sides."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Iterable
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncEngine

from changewire.bus.kafka import KafkaEventConsumer, KafkaEventProducer
from changewire.bus.protocols import EventConsumer, EventProducer
from changewire.capture.recorder import ChangeRecorder, select_recorder
from changewire.capture.store import ChangeLogStore, create_schema
from changewire.config.models import ChangewireConfig
from changewire.consumer.dispatcher import Dispatcher
from changewire.consumer.idempotency import IdempotencyStore, InMemoryIdempotencyStore, RedisIdempotencyStore
from changewire.db import create_engine, create_session_factory
from changewire.observability import LoggingSink, ObservabilitySink
from changewire.pipeline.classifier import ClassificationRules
from changewire.pipeline.poller import ChangePoller
from changewire.pipeline.publisher import ChangePublisher
from changewire.pipeline.reporters import ActivityReporter, SystemEventReporter

logger = logging.getLogger(__name__)


def build_engine(config: ChangewireConfig) -> AsyncEngine:
    return create_engine(
        config.database.url or None,
        pool_size=config.database.pool_size,
        max_overflow=config.database.max_overflow,
        echo=config.database.echo,
    )


def build_producer(config: ChangewireConfig) -> KafkaEventProducer:
    return KafkaEventProducer(
        bootstrap_servers=config.kafka.bootstrap_servers,
        client_id=f"{config.kafka.client_id}-producer",
        max_retries=config.kafka.max_retries,
        initial_retry_ms=config.kafka.initial_retry_ms,
        retry_multiplier=config.kafka.retry_multiplier,
    )


def build_consumer(config: ChangewireConfig) -> KafkaEventConsumer:
    return KafkaEventConsumer(
        topics=config.dispatcher.topics,
        bootstrap_servers=config.kafka.bootstrap_servers,
        group_id=config.kafka.consumer_group,
        client_id=f"{config.kafka.client_id}-consumer",
        session_timeout_ms=config.kafka.session_timeout_ms,
        heartbeat_interval_ms=config.kafka.heartbeat_interval_ms,
        auto_offset_reset=config.kafka.auto_offset_reset,
    )


def build_idempotency_store(config: ChangewireConfig) -> IdempotencyStore:
    if config.dispatcher.idempotency == "redis":
        return RedisIdempotencyStore.from_url(config.dispatcher.redis_url)
    return InMemoryIdempotencyStore()


async def prepare_capture(
    engine: AsyncEngine,
    config: ChangewireConfig,
    *,
    models: Iterable[type] = (),
) -> ChangeRecorder:
    """Create the change log schema and install the configured recorder."""
    await create_schema(engine)
    recorder = await select_recorder(engine, config.capture.tables, mode=config.capture.mode, models=models)
    logger.info("Change capture installed: %s", recorder.describe())
    return recorder


class CaptureService:
    """Owns the engine, recorder, producer and poller of one capture process."""

    def __init__(
        self,
        config: ChangewireConfig,
        *,
        engine: AsyncEngine | None = None,
        producer: EventProducer | None = None,
        sink: ObservabilitySink | None = None,
        models: Iterable[type] = (),
    ) -> None:
        self.config = config
        self.engine = engine or build_engine(config)
        self.producer = producer or build_producer(config)
        self.sink = sink or LoggingSink()
        self.models = list(models)
        self.rules = ClassificationRules.from_tables(config.capture.tables)
        self.store = ChangeLogStore(create_session_factory(self.engine))
        self.publisher = ChangePublisher(
            self.producer,
            topics=config.topics,
            rules=self.rules,
            sink=self.sink,
            environment=config.environment,
        )
        self.recorder: ChangeRecorder | None = None
        self.poller = ChangePoller(self.store, self.publisher, config=config.poller)

    @property
    def activity(self) -> ActivityReporter:
        return ActivityReporter(self.publisher)

    @property
    def system_events(self) -> SystemEventReporter:
        return SystemEventReporter(self.publisher)

    async def start(self) -> None:
        self.recorder = await prepare_capture(self.engine, self.config, models=self.models)
        self.poller.recorder = self.recorder
        # The producer connects lazily on first publish.
        await self.poller.start()

    async def stop(self) -> None:
        await self.poller.stop()
        await self.producer.close()
        # Database triggers stay installed so writes made while stopped are still captured.
        if self.recorder is not None and self.recorder.mode == "hook":
            await self.recorder.uninstall(self.engine)
        await self.engine.dispose()

    def status(self) -> dict[str, Any]:
        return self.poller.status()


class DispatchService:
    """Owns the consumer and dispatcher of one dispatch process."""

    def __init__(
        self,
        config: ChangewireConfig,
        *,
        consumer: EventConsumer | None = None,
        sink: ObservabilitySink | None = None,
        idempotency_store: IdempotencyStore | None = None,
    ) -> None:
        self.config = config
        self.consumer = consumer or build_consumer(config)
        if idempotency_store is None:
            idempotency_store = build_idempotency_store(config)
        self.idempotency_store = idempotency_store
        self.dispatcher = Dispatcher(
            self.consumer,
            sink=sink,
            config=config.dispatcher,
            topics=config.topics,
            rules=ClassificationRules.from_tables(config.capture.tables),
            idempotency_store=self.idempotency_store,
        )

    async def start(self) -> None:
        await self.dispatcher.start()

    async def stop(self) -> None:
        await self.dispatcher.stop()
        await self.idempotency_store.close()

    def status(self) -> dict[str, Any]:
        return self.dispatcher.status()


class _Service(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...


async def run_until_signalled(service: _Service, stop_event: asyncio.Event | None = None) -> None:
    """Start ``service``, wait for SIGINT/SIGTERM (or ``stop_event``), then stop it."""
    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler for %s not supported on this platform", sig.name)
    try:
        await service.start()
        await stop_event.wait()
    finally:
        logger.info("Shutdown requested, stopping %s", type(service).__name__)
        await service.stop()
        for sig in installed:
            loop.remove_signal_handler(sig)
