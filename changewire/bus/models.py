"""Bus message data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class BusMessage:
    """One record received from (or written to) a bus partition."""

    topic: str
    partition: int
    offset: int
    key: str | None
    value: bytes
    headers: dict[str, str]
    timestamp: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.value or b"")


@dataclass(slots=True)
class MessageBatch:
    """Messages fetched together from one topic partition, in offset order."""

    topic: str
    partition: int
    messages: list[BusMessage]

    @property
    def first_offset(self) -> int | None:
        return self.messages[0].offset if self.messages else None

    @property
    def last_offset(self) -> int | None:
        return self.messages[-1].offset if self.messages else None


@dataclass(frozen=True, slots=True)
class DeliveryReceipt:
    """Broker acknowledgement of one produced message."""

    topic: str
    partition: int
    offset: int
