"""Change Log Store: append, batch reads after a cursor, and cursor advancement."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from changewire.capture.models import CHANGE_LOG_TABLE, ChangeCursor, ChangeLogEntry, ChangeRecord, Operation
from changewire.db import Base
from changewire.errors import StorageReadError, StorageWriteError

logger = logging.getLogger(__name__)


async def create_schema(engine: AsyncEngine) -> None:
    """Create the change log and cursor tables when they do not exist."""
    try:
        async with engine.begin() as conn:
            await conn.run_sync(
                Base.metadata.create_all,
                tables=[ChangeLogEntry.__table__, ChangeCursor.__table__],
            )
    except SQLAlchemyError as exc:
        raise StorageWriteError(f"Failed to create change log schema: {exc}") from exc


class ChangeLogStore:
    """Repository over the change log and cursor tables.

    Reads never return rows at or below the caller's cursor; advancement marks
    rows processed and moves the cursor in a single transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        stream: str = CHANGE_LOG_TABLE,
    ) -> None:
        self._session_factory = session_factory
        self.stream = stream

    @staticmethod
    async def append(
        session: AsyncSession,
        *,
        table: str,
        operation: Operation | str,
        record_id: Any,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
        actor_id: Any | None = None,
    ) -> ChangeLogEntry:
        """Append one change inside the caller's transaction and return it with its id."""
        op = Operation(operation.upper() if isinstance(operation, str) else operation)
        entry = ChangeLogEntry(
            table_name=table,
            operation_type=op.value,
            record_id=None if record_id is None else str(record_id),
            old_data=None if op is Operation.INSERT else before,
            new_data=None if op is Operation.DELETE else after,
            user_id=None if actor_id is None else str(actor_id),
            processed=False,
        )
        session.add(entry)
        try:
            await session.flush()
        except SQLAlchemyError as exc:
            raise StorageWriteError(f"Failed to append change for {table}: {exc}") from exc
        return entry

    async def fetch_unprocessed(self, after_id: int, limit: int) -> list[ChangeRecord]:
        """Return up to ``limit`` unprocessed records with id > after_id, ascending."""
        stmt = (
            select(ChangeLogEntry)
            .where(ChangeLogEntry.id > after_id, ChangeLogEntry.processed.is_(False))
            .order_by(ChangeLogEntry.id.asc())
            .limit(max(1, limit))
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [ChangeRecord.from_entry(entry) for entry in result.scalars().all()]
        except SQLAlchemyError as exc:
            raise StorageReadError(f"Failed to read change log after id {after_id}: {exc}") from exc

    async def advance(self, consumer_group: str, *, after_id: int, through_id: int) -> int:
        """Mark (after_id, through_id] processed and persist the cursor atomically.

        Returns the number of rows whose processed flag flipped.
        """
        if through_id <= after_id:
            return 0
        mark = (
            update(ChangeLogEntry)
            .where(
                ChangeLogEntry.id > after_id,
                ChangeLogEntry.id <= through_id,
                ChangeLogEntry.processed.is_(False),
            )
            .values(processed=True)
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(mark)
                    cursor = await session.get(ChangeCursor, (consumer_group, self.stream))
                    if cursor is None:
                        session.add(ChangeCursor(consumer_group=consumer_group, stream=self.stream, last_id=through_id))
                    elif through_id > cursor.last_id:
                        cursor.last_id = through_id
            return int(result.rowcount or 0)
        except SQLAlchemyError as exc:
            raise StorageWriteError(f"Failed to advance cursor to {through_id}: {exc}") from exc

    async def load_cursor(self, consumer_group: str) -> int:
        """Return the persisted cursor, or the highest processed id when none is stored."""
        try:
            async with self._session_factory() as session:
                cursor = await session.get(ChangeCursor, (consumer_group, self.stream))
                if cursor is not None:
                    return int(cursor.last_id)
                max_processed = await session.scalar(
                    select(func.max(ChangeLogEntry.id)).where(ChangeLogEntry.processed.is_(True))
                )
        except SQLAlchemyError as exc:
            raise StorageReadError(f"Failed to load cursor for {consumer_group}: {exc}") from exc
        initial = int(max_processed or 0)
        logger.info("No persisted cursor for %s/%s, starting after id %d", consumer_group, self.stream, initial)
        return initial

    async def count_pending(self) -> int:
        """Return how many records still await publication."""
        try:
            async with self._session_factory() as session:
                count = await session.scalar(
                    select(func.count()).select_from(ChangeLogEntry).where(ChangeLogEntry.processed.is_(False))
                )
        except SQLAlchemyError as exc:
            raise StorageReadError(f"Failed to count pending changes: {exc}") from exc
        return int(count or 0)

    async def get(self, change_id: int) -> ChangeRecord | None:
        """Return one change record by id."""
        try:
            async with self._session_factory() as session:
                entry = await session.get(ChangeLogEntry, change_id)
        except SQLAlchemyError as exc:
            raise StorageReadError(f"Failed to read change {change_id}: {exc}") from exc
        return None if entry is None else ChangeRecord.from_entry(entry)
