"""Message bus adapters and models."""

from changewire.bus.dependencies import ensure_bus_dependency
from changewire.bus.kafka import KafkaEventConsumer, KafkaEventProducer
from changewire.bus.memory import InMemoryBus, InMemoryConsumer
from changewire.bus.models import BusMessage, DeliveryReceipt, MessageBatch
from changewire.bus.protocols import EventConsumer, EventProducer

__all__ = [
    "BusMessage",
    "DeliveryReceipt",
    "EventConsumer",
    "EventProducer",
    "InMemoryBus",
    "InMemoryConsumer",
    "KafkaEventConsumer",
    "KafkaEventProducer",
    "MessageBatch",
    "ensure_bus_dependency",
]
