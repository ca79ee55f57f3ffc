"""Structured observability records: the pipeline's audit trail.

Every significant step (capture, publish, dispatch, classify) emits one
dict with at least ``timestamp`` and ``category`` to a sink.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Protocol

AUDIT_LOGGER = "changewire.audit"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def structured_record(category: str, **fields: Any) -> dict[str, Any]:
    """Build one record stamped with the current UTC time."""
    record: dict[str, Any] = {"timestamp": isoformat(utc_now()), "category": category}
    record.update(fields)
    return record


class ObservabilitySink(Protocol):
    def emit(self, record: dict[str, Any]) -> None:
        """Accept one structured record."""


class LoggingSink:
    """Writes each record as a single JSON line on the audit logger."""

    def __init__(self, logger_name: str = AUDIT_LOGGER) -> None:
        self._logger = logging.getLogger(logger_name)

    def emit(self, record: dict[str, Any]) -> None:
        self._logger.info(json.dumps(record, default=str, ensure_ascii=False, sort_keys=True))


class MemorySink:
    """Keeps records in memory, newest last."""

    def __init__(self, max_records: int = 10_000) -> None:
        self._max_records = max_records
        self.records: list[dict[str, Any]] = []

    def emit(self, record: dict[str, Any]) -> None:
        self.records.append(dict(record))
        if len(self.records) > self._max_records:
            del self.records[: len(self.records) - self._max_records]

    def by_category(self, category: str) -> list[dict[str, Any]]:
        return [record for record in self.records if record.get("category") == category]

    def by_event(self, event: str) -> list[dict[str, Any]]:
        return [record for record in self.records if record.get("event") == event]

    def clear(self) -> None:
        self.records.clear()
