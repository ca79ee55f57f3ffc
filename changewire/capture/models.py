"""Change log and cursor tables, plus the immutable ChangeRecord snapshot."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Index, Integer, String, false, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from changewire.db import Base

CHANGE_LOG_TABLE = "cdc_change_log"
CURSOR_TABLE = "cdc_cursors"

_JSON = JSON().with_variant(JSONB(), "postgresql")
_ID = BigInteger().with_variant(Integer(), "sqlite")


class Operation(str, enum.Enum):
    """Row mutation kinds captured by the recorder."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeLogEntry(Base):
    """One captured mutation; append-only except for the processed flag."""

    __tablename__ = CHANGE_LOG_TABLE
    __table_args__ = (
        Index("idx_cdc_table_op", "table_name", "operation_type"),
        Index("idx_cdc_processed_id", "processed", "id"),
        Index("idx_cdc_timestamp", "change_timestamp"),
        {"comment": "Captured row mutations awaiting or past publication"},
    )

    id: Mapped[int] = mapped_column(_ID, primary_key=True, autoincrement=True)
    table_name: Mapped[str] = mapped_column(String(100), nullable=False)
    operation_type: Mapped[str] = mapped_column(String(10), nullable=False)
    record_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    old_data: Mapped[dict[str, Any] | None] = mapped_column(_JSON, nullable=True)
    new_data: Mapped[dict[str, Any] | None] = mapped_column(_JSON, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    change_timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    processed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
    )


class ChangeCursor(Base):
    """Per consumer-group/stream high-water mark of published change ids."""

    __tablename__ = CURSOR_TABLE

    consumer_group: Mapped[str] = mapped_column(String(128), primary_key=True)
    stream: Mapped[str] = mapped_column(String(100), primary_key=True)
    last_id: Mapped[int] = mapped_column(_ID, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True, slots=True)
class ChangeRecord:
    """Detached, read-only view of one change log row."""

    id: int
    entity_table: str
    operation: Operation
    record_id: str
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    actor_id: str | None
    occurred_at: datetime
    processed: bool = False

    @classmethod
    def from_entry(cls, entry: ChangeLogEntry) -> ChangeRecord:
        return cls(
            id=int(entry.id),
            entity_table=entry.table_name,
            operation=Operation(entry.operation_type.upper()),
            record_id="" if entry.record_id is None else str(entry.record_id),
            before=entry.old_data,
            after=entry.new_data,
            actor_id=None if entry.user_id is None else str(entry.user_id),
            occurred_at=_as_utc(entry.change_timestamp),
            processed=bool(entry.processed),
        )
