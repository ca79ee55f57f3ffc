"""Publisher: envelope delivery to the entity topic with critical escalation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from changewire.bus.models import DeliveryReceipt
from changewire.bus.protocols import EventProducer
from changewire.capture.models import ChangeRecord
from changewire.config.models import TopicsConfig
from changewire.errors import PublishError
from changewire.observability import LoggingSink, ObservabilitySink, structured_record, utc_now
from changewire.pipeline.classifier import (
    DEFAULT_RULES,
    ClassificationRules,
    is_critical,
    security_implications,
)
from changewire.pipeline.envelope import EventEnvelope

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PublishOutcome:
    """Receipts for one published change."""

    envelope: EventEnvelope
    receipt: DeliveryReceipt
    critical_envelope: EventEnvelope | None = None
    critical_receipt: DeliveryReceipt | None = None

    @property
    def escalated(self) -> bool:
        return self.critical_receipt is not None


class ChangePublisher:
    """Turns change records into envelopes and hands them to the bus.

    Failures are never swallowed: any producer error surfaces as PublishError
    so the caller leaves the record unprocessed.
    """

    def __init__(
        self,
        producer: EventProducer,
        *,
        topics: TopicsConfig | None = None,
        rules: ClassificationRules = DEFAULT_RULES,
        sink: ObservabilitySink | None = None,
        environment: str = "development",
    ) -> None:
        self.producer = producer
        self.topics = topics or TopicsConfig()
        self.rules = rules
        self.sink = sink or LoggingSink()
        self.environment = environment

    async def publish_event(self, topic: str, envelope: EventEnvelope) -> DeliveryReceipt:
        """Deliver one envelope keyed by its partition key."""
        headers = {"category": envelope.category, "event-type": envelope.event_type}
        if envelope.change_id is not None:
            headers["change-id"] = str(envelope.change_id)
        try:
            return await self.producer.publish(
                topic,
                envelope.to_json(),
                key=envelope.partition_key,
                headers=headers,
            )
        except PublishError:
            raise
        except Exception as exc:
            logger.error("Publish to %s failed for key %s: %s", topic, envelope.partition_key, exc)
            raise PublishError(topic, envelope.partition_key, str(exc)) from exc

    async def publish_change(self, record: ChangeRecord) -> PublishOutcome:
        """Publish one change to the entity topic and escalate it when critical."""
        envelope = EventEnvelope.from_change(record, rules=self.rules, published_at=utc_now())
        receipt = await self.publish_event(self.topics.entity_change, envelope)
        self.sink.emit(self._record("DATABASE_CHANGE", "CHANGE_PUBLISHED", envelope, receipt))

        if not is_critical(record.operation, record.entity_table, record.before, record.after, self.rules):
            return PublishOutcome(envelope=envelope, receipt=receipt)

        implication = security_implications(record.operation, record.entity_table, self.rules)
        critical = envelope.escalate(implication)
        critical_receipt = await self.publish_event(self.topics.critical_entity_change, critical)
        logger.warning(
            "Critical change escalated: %s %s:%s (%s)",
            record.operation.value,
            record.entity_table,
            record.record_id,
            implication.value,
        )
        self.sink.emit(
            self._record(
                critical.category,
                "CRITICAL_CHANGE_ESCALATED",
                critical,
                critical_receipt,
                alertLevel=critical.alert_level,
                requiresAttention=critical.requires_attention,
                securityImplications=critical.security_implications,
            )
        )
        return PublishOutcome(
            envelope=envelope,
            receipt=receipt,
            critical_envelope=critical,
            critical_receipt=critical_receipt,
        )

    def _record(
        self,
        category: str,
        event: str,
        envelope: EventEnvelope,
        receipt: DeliveryReceipt,
        **extra: Any,
    ) -> dict[str, Any]:
        return structured_record(
            category,
            event=event,
            environment=self.environment,
            changeId=envelope.change_id,
            table=envelope.origin,
            operation=envelope.event_type,
            recordId=envelope.record_id,
            actorId=envelope.actor_id,
            topic=receipt.topic,
            partition=receipt.partition,
            offset=receipt.offset,
            partitionKey=envelope.partition_key,
            captureTimestamp=envelope.to_dict()["captureTimestamp"],
            processingDelayMs=envelope.processing_delay_ms,
            **extra,
        )
