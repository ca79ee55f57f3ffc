"""Canonical event envelope placed on the bus."""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from changewire.capture.models import ChangeRecord
from changewire.errors import ParseError
from changewire.observability import isoformat
from changewire.pipeline.classifier import (
    ALERT_LEVEL_HIGH,
    DEFAULT_RULES,
    ClassificationRules,
    SecurityImplication,
    classify,
)

CRITICAL_CATEGORY = "CRITICAL_DATABASE_CHANGE"

_REQUIRED_FIELDS = ("category", "type", "origin", "partitionKey", "captureTimestamp")


def partition_key(kind: str, identifier: Any) -> str:
    """Routing key for one entity: ``kind:identifier``."""
    return f"{kind}:{'' if identifier is None else identifier}"


def _parse_timestamp(raw: Any, name: str) -> datetime:
    if not isinstance(raw, str) or not raw:
        raise ParseError(f"{name} must be an ISO-8601 string")
    try:
        value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ParseError(f"{name} is not a valid timestamp: {raw!r}") from exc
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _optional_mapping(payload: dict[str, Any], name: str) -> dict[str, Any] | None:
    value = payload.get(name)
    if value is None or isinstance(value, dict):
        return value
    raise ParseError(f"{name} must be an object or null")


@dataclass(frozen=True, slots=True)
class EventEnvelope:
    """Wire representation of a change, activity or system event."""

    category: str
    event_type: str
    origin: str
    record_id: str
    partition_key: str
    captured_at: datetime
    published_at: datetime | None = None
    actor_id: str | None = None
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    change_id: int | None = None
    data: dict[str, Any] = field(default_factory=dict)
    alert_level: str | None = None
    requires_attention: bool = False
    security_implications: str | None = None

    @classmethod
    def from_change(
        cls,
        record: ChangeRecord,
        *,
        rules: ClassificationRules = DEFAULT_RULES,
        published_at: datetime | None = None,
    ) -> EventEnvelope:
        """Build the envelope for one change record; the partition key is ``table:recordId``."""
        return cls(
            category=classify(record.entity_table, rules).value,
            event_type=record.operation.value,
            origin=record.entity_table,
            record_id=record.record_id,
            partition_key=partition_key(record.entity_table, record.record_id),
            captured_at=record.occurred_at,
            published_at=published_at,
            actor_id=record.actor_id,
            before=record.before,
            after=record.after,
            change_id=record.id,
        )

    @property
    def is_critical(self) -> bool:
        return self.alert_level is not None

    @property
    def idempotency_key(self) -> str:
        """Identity of the underlying fact; equal for republished copies."""
        return f"{self.origin}:{self.record_id}:{self.event_type}:{isoformat(self.captured_at)}"

    @property
    def processing_delay_ms(self) -> int | None:
        if self.published_at is None:
            return None
        return int((self.published_at - self.captured_at).total_seconds() * 1000)

    def stamped(self, published_at: datetime) -> EventEnvelope:
        return dataclasses.replace(self, published_at=published_at)

    def escalate(self, implication: SecurityImplication | str) -> EventEnvelope:
        """Copy annotated for the high-priority topic."""
        return dataclasses.replace(
            self,
            category=CRITICAL_CATEGORY,
            alert_level=ALERT_LEVEL_HIGH,
            requires_attention=True,
            security_implications=implication.value
            if isinstance(implication, SecurityImplication)
            else str(implication),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "category": self.category,
            "type": self.event_type,
            "origin": self.origin,
            "recordId": self.record_id,
            "actorId": self.actor_id,
            "before": self.before,
            "after": self.after,
            "captureTimestamp": isoformat(self.captured_at),
            "publishTimestamp": None if self.published_at is None else isoformat(self.published_at),
            "partitionKey": self.partition_key,
            "changeId": self.change_id,
            "data": self.data,
        }
        if self.alert_level is not None:
            payload["alertLevel"] = self.alert_level
            payload["requiresAttention"] = self.requires_attention
            payload["securityImplications"] = self.security_implications
        return payload

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), default=str, ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_dict(cls, payload: Any) -> EventEnvelope:
        if not isinstance(payload, dict):
            raise ParseError("Envelope must be a JSON object")
        missing = [name for name in _REQUIRED_FIELDS if payload.get(name) in (None, "")]
        if missing:
            raise ParseError(f"Envelope is missing required fields: {', '.join(missing)}")
        for name in ("category", "type", "origin", "partitionKey"):
            if not isinstance(payload[name], str):
                raise ParseError(f"{name} must be a string")
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise ParseError("data must be an object")
        change_id = payload.get("changeId")
        if change_id is not None and (isinstance(change_id, bool) or not isinstance(change_id, int)):
            raise ParseError("changeId must be an integer")
        published_raw = payload.get("publishTimestamp")
        actor_id = payload.get("actorId")
        return cls(
            category=payload["category"],
            event_type=payload["type"],
            origin=payload["origin"],
            record_id="" if payload.get("recordId") is None else str(payload["recordId"]),
            partition_key=payload["partitionKey"],
            captured_at=_parse_timestamp(payload["captureTimestamp"], "captureTimestamp"),
            published_at=None if published_raw is None else _parse_timestamp(published_raw, "publishTimestamp"),
            actor_id=None if actor_id is None else str(actor_id),
            before=_optional_mapping(payload, "before"),
            after=_optional_mapping(payload, "after"),
            change_id=change_id,
            data=data,
            alert_level=payload.get("alertLevel"),
            requires_attention=bool(payload.get("requiresAttention", False)),
            security_implications=payload.get("securityImplications"),
        )

