"""Error taxonomy for the change-capture pipeline.

Only a total loss of storage access during poller start-up is fatal; every
other error is handled per cycle or per message by its owner.
"""

from __future__ import annotations


class ChangewireError(Exception):
    """Base exception for pipeline errors."""


class CaptureUnavailable(ChangewireError):
    """Database-side capture could not be installed; capture runs degraded."""


class StorageError(ChangewireError):
    """Base error for change log and cursor storage failures."""


class StorageReadError(StorageError):
    """Reading change records or cursors failed; the cycle is aborted."""


class StorageWriteError(StorageError):
    """Writing change records, processed flags or cursors failed."""


class PublishError(ChangewireError):
    """Delivery to the bus failed after the client's bounded retries."""

    def __init__(self, topic: str, partition_key: str, message: str) -> None:
        self.topic = topic
        self.partition_key = partition_key
        super().__init__(f"Publish to {topic} (key={partition_key}) failed: {message}")


class ParseError(ChangewireError, ValueError):
    """A bus message could not be decoded into an envelope; never retried."""


class UnknownTopic(ChangewireError):
    """A message arrived on a topic with no registered handler."""

    def __init__(self, topic: str) -> None:
        self.topic = topic
        super().__init__(f"No handler registered for topic {topic}")
