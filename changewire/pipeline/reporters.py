"""Boundary producers for user-activity and system-log events.

The auth layer calls these after login, logout and registration; they are
the only way that layer feeds the pipeline directly.
"""

from __future__ import annotations

import logging
from typing import Any

from changewire.bus.models import DeliveryReceipt
from changewire.observability import structured_record, utc_now
from changewire.pipeline.envelope import EventEnvelope, partition_key
from changewire.pipeline.publisher import ChangePublisher

logger = logging.getLogger(__name__)

USER_LOGIN = "USER_LOGIN"
USER_LOGOUT = "USER_LOGOUT"
USER_REGISTERED = "USER_REGISTERED"

ACTIVITY_CATEGORY = "USER_ACTIVITY"
SYSTEM_CATEGORY = "SYSTEM_EVENT"


class ActivityReporter:
    """Publishes authentication outcomes to the user-activity topic."""

    def __init__(self, publisher: ChangePublisher, *, origin: str = "auth") -> None:
        self.publisher = publisher
        self.origin = origin

    async def report(
        self,
        event_type: str,
        actor_id: Any,
        *,
        origin_address: str | None = None,
        client: str | None = None,
        success: bool = True,
        duration_ms: float | None = None,
        details: dict[str, Any] | None = None,
    ) -> DeliveryReceipt:
        now = utc_now()
        actor = None if actor_id is None else str(actor_id)
        data: dict[str, Any] = {
            "ipAddress": origin_address,
            "userAgent": client,
            "success": success,
            "durationMs": duration_ms,
        }
        if details:
            data.update(details)
        envelope = EventEnvelope(
            category=ACTIVITY_CATEGORY,
            event_type=event_type,
            origin=self.origin,
            record_id=actor or "",
            partition_key=partition_key("user", actor),
            captured_at=now,
            published_at=now,
            actor_id=actor,
            data=data,
        )
        receipt = await self.publisher.publish_event(self.publisher.topics.user_activity, envelope)
        self.publisher.sink.emit(
            structured_record(
                ACTIVITY_CATEGORY,
                event="ACTIVITY_PUBLISHED",
                type=event_type,
                actorId=actor,
                success=success,
                topic=receipt.topic,
                partition=receipt.partition,
                offset=receipt.offset,
            )
        )
        return receipt

    async def report_login(self, actor_id: Any, **kwargs: Any) -> DeliveryReceipt:
        return await self.report(USER_LOGIN, actor_id, **kwargs)

    async def report_logout(self, actor_id: Any, **kwargs: Any) -> DeliveryReceipt:
        return await self.report(USER_LOGOUT, actor_id, **kwargs)

    async def report_registration(self, actor_id: Any, **kwargs: Any) -> DeliveryReceipt:
        return await self.report(USER_REGISTERED, actor_id, **kwargs)


class SystemEventReporter:
    """Publishes operational events to the system-log topic."""

    def __init__(self, publisher: ChangePublisher, *, source: str = "changewire") -> None:
        self.publisher = publisher
        self.source = source

    async def report(
        self,
        event: str,
        *,
        level: str = "info",
        message: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> DeliveryReceipt:
        now = utc_now()
        payload: dict[str, Any] = {"level": level.lower(), "message": message or event}
        if data:
            payload.update(data)
        envelope = EventEnvelope(
            category=SYSTEM_CATEGORY,
            event_type=event,
            origin=self.source,
            record_id=event,
            partition_key=partition_key("system", self.source),
            captured_at=now,
            published_at=now,
            data=payload,
        )
        logger.debug("Reporting system event %s (%s)", event, level)
        return await self.publisher.publish_event(self.publisher.topics.system_log, envelope)
