"""Per-topic handlers: entity changes, user activity and system log events.

Handlers keep no per-message state; the only state they touch is the
idempotency store that suppresses repeated critical alerts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from changewire.bus.models import BusMessage
from changewire.consumer.idempotency import IdempotencyStore, InMemoryIdempotencyStore
from changewire.observability import ObservabilitySink, structured_record
from changewire.pipeline.classifier import (
    ALERT_LEVEL_HIGH,
    DEFAULT_RULES,
    ClassificationRules,
    RiskLevel,
    assess_risk,
    classify,
    is_critical,
    security_implications,
)
from changewire.pipeline.envelope import CRITICAL_CATEGORY, EventEnvelope
from changewire.pipeline.reporters import USER_LOGIN, USER_LOGOUT, USER_REGISTERED

logger = logging.getLogger(__name__)

_FOLLOW_UPS = {
    USER_LOGIN: "SECURITY_MONITORING",
    USER_LOGOUT: "SESSION_MONITORING",
    USER_REGISTERED: "USER_GROWTH_MONITORING",
}

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


@dataclass(slots=True)
class HandlerOutcome:
    """What a handler concluded about one envelope."""

    category: str
    critical: bool = False
    duplicate: bool = False
    risk_level: RiskLevel | None = None
    records: list[dict[str, Any]] = field(default_factory=list)


class TopicHandler(Protocol):
    async def __call__(self, envelope: EventEnvelope, message: BusMessage) -> HandlerOutcome:
        """Handle one parsed envelope."""


def _message_keys(message: BusMessage) -> dict[str, Any]:
    return {"topic": message.topic, "partition": message.partition, "offset": message.offset}


class EntityChangeHandler:
    """Classifies database changes and raises de-duplicated critical alerts."""

    def __init__(
        self,
        sink: ObservabilitySink,
        *,
        rules: ClassificationRules = DEFAULT_RULES,
        idempotency_store: IdempotencyStore | None = None,
        idempotency_window: int = 3600,
    ) -> None:
        self.sink = sink
        self.rules = rules
        self.idempotency_store = idempotency_store if idempotency_store is not None else InMemoryIdempotencyStore()
        self.idempotency_window = idempotency_window

    async def __call__(self, envelope: EventEnvelope, message: BusMessage) -> HandlerOutcome:
        category = classify(envelope.origin, self.rules)
        critical = is_critical(envelope.event_type, envelope.origin, envelope.before, envelope.after, self.rules)
        outcome = HandlerOutcome(category=category.value, critical=critical)

        record = structured_record(
            "DATABASE_CHANGE",
            event="CHANGE_DISPATCHED",
            changeType=category.value,
            table=envelope.origin,
            operation=envelope.event_type,
            recordId=envelope.record_id,
            actorId=envelope.actor_id,
            changeId=envelope.change_id,
            critical=critical,
            captureTimestamp=envelope.to_dict()["captureTimestamp"],
            **_message_keys(message),
        )
        self.sink.emit(record)
        outcome.records.append(record)

        if critical:
            await self._alert(envelope, message, outcome)
        return outcome

    async def _alert(self, envelope: EventEnvelope, message: BusMessage, outcome: HandlerOutcome) -> None:
        key = envelope.idempotency_key
        try:
            seen = await self.idempotency_store.exists(key)
        except Exception:
            seen = False
            logger.exception("Idempotency check failed for key %s", key)
        if seen:
            outcome.duplicate = True
            logger.info("Suppressed duplicate critical alert for %s", key)
            return

        implication = security_implications(envelope.event_type, envelope.origin, self.rules)
        alert = structured_record(
            CRITICAL_CATEGORY,
            event="CRITICAL_CHANGE_ALERT",
            alertLevel=ALERT_LEVEL_HIGH,
            requiresAttention=True,
            securityImplications=implication.value,
            table=envelope.origin,
            operation=envelope.event_type,
            recordId=envelope.record_id,
            actorId=envelope.actor_id,
            idempotencyKey=key,
            **_message_keys(message),
        )
        self.sink.emit(alert)
        outcome.records.append(alert)
        logger.warning(
            "Critical change on %s:%s (%s, %s)",
            envelope.origin,
            envelope.record_id,
            envelope.event_type,
            implication.value,
        )
        try:
            await self.idempotency_store.set(key, {"status": "alerted"}, ttl=self.idempotency_window)
        except Exception:
            logger.exception("Idempotency write failed for key %s", key)


class UserActivityHandler:
    """Scores login risk and emits per-event-type monitoring records."""

    def __init__(self, sink: ObservabilitySink) -> None:
        self.sink = sink

    async def __call__(self, envelope: EventEnvelope, message: BusMessage) -> HandlerOutcome:
        data = envelope.data
        origin_address = data.get("ipAddress")
        risk = assess_risk(origin_address if isinstance(origin_address, str) else None)
        outcome = HandlerOutcome(category=envelope.category, risk_level=risk)

        record = structured_record(
            "USER_ACTIVITY",
            event="ACTIVITY_DISPATCHED",
            type=envelope.event_type,
            actorId=envelope.actor_id,
            ipAddress=origin_address,
            userAgent=data.get("userAgent"),
            success=data.get("success"),
            durationMs=data.get("durationMs"),
            **_message_keys(message),
        )
        self.sink.emit(record)
        outcome.records.append(record)

        follow_up = _FOLLOW_UPS.get(envelope.event_type)
        if follow_up is None:
            logger.debug("No follow-up for activity type %s", envelope.event_type)
            return outcome
        fields: dict[str, Any] = {"type": envelope.event_type, "actorId": envelope.actor_id}
        if envelope.event_type == USER_LOGIN:
            fields.update(ipAddress=origin_address, riskLevel=risk.value, success=data.get("success"))
        elif envelope.event_type == USER_REGISTERED:
            fields.update(email=data.get("email"))
        monitoring = structured_record(follow_up, event=follow_up, **fields)
        self.sink.emit(monitoring)
        outcome.records.append(monitoring)
        return outcome


class SystemLogHandler:
    """Mirrors system events onto the diagnostic log at their own level."""

    def __init__(self, sink: ObservabilitySink) -> None:
        self.sink = sink

    async def __call__(self, envelope: EventEnvelope, message: BusMessage) -> HandlerOutcome:
        data = envelope.data
        level_name = str(data.get("level", "info")).lower()
        logger.log(
            _LOG_LEVELS.get(level_name, logging.INFO),
            "System event %s from %s: %s",
            envelope.event_type,
            envelope.origin,
            data.get("message", ""),
        )
        record = structured_record(
            "SYSTEM_EVENT",
            event=envelope.event_type,
            source=envelope.origin,
            level=level_name,
            message=data.get("message"),
            **_message_keys(message),
        )
        self.sink.emit(record)
        return HandlerOutcome(category=envelope.category, records=[record])
