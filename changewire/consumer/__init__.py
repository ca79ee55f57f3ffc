"""Consumer side: parsing, per-topic handlers and the partition-ordered dispatcher."""

from changewire.consumer.dispatcher import DispatchResult, Dispatcher, default_handlers
from changewire.consumer.handlers import (
    EntityChangeHandler,
    HandlerOutcome,
    SystemLogHandler,
    TopicHandler,
    UserActivityHandler,
)
from changewire.consumer.idempotency import IdempotencyStore, InMemoryIdempotencyStore, RedisIdempotencyStore
from changewire.consumer.parsers import EnvelopeParser, JSONParser, MessageParser

__all__ = [
    "DispatchResult",
    "Dispatcher",
    "EntityChangeHandler",
    "EnvelopeParser",
    "HandlerOutcome",
    "IdempotencyStore",
    "InMemoryIdempotencyStore",
    "JSONParser",
    "MessageParser",
    "RedisIdempotencyStore",
    "SystemLogHandler",
    "TopicHandler",
    "UserActivityHandler",
    "default_handlers",
]
