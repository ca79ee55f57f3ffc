"""Producer and consumer protocols shared by the pipeline and bus adapters."""

from __future__ import annotations

from typing import Protocol

from changewire.bus.models import BusMessage, DeliveryReceipt, MessageBatch


class EventProducer(Protocol):
    """Publishing side of the message bus."""

    async def connect(self) -> None:
        """Connect to the broker."""

    async def publish(
        self,
        topic: str,
        value: bytes,
        *,
        key: str,
        headers: dict[str, str] | None = None,
    ) -> DeliveryReceipt:
        """Deliver one message; raise on failure after bounded retries."""

    async def close(self) -> None:
        """Release producer resources."""


class EventConsumer(Protocol):
    """Subscribing side of the message bus."""

    async def connect(self) -> None:
        """Connect and subscribe to the configured topics."""

    async def fetch_batches(self, timeout_ms: int = 1000, max_records: int | None = None) -> list[MessageBatch]:
        """Return the next group of messages, one batch per topic partition."""

    async def commit(self, message: BusMessage) -> None:
        """Commit the consumer position past ``message``."""

    async def close(self) -> None:
        """Leave the group and release consumer resources."""

    async def health_check(self) -> bool:
        """Return whether the consumer connection is healthy."""
