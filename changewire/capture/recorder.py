"""Change Recorder capabilities: database triggers and ORM mapper hooks.

Both capabilities write one ``cdc_change_log`` row per mutation on the same
connection as the mutation itself. ``select_recorder`` picks one at start-up.
"""

from __future__ import annotations

import datetime as dt
import decimal
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from typing import Any

from sqlalchemy import event, insert, inspect, text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from changewire.capture.models import CHANGE_LOG_TABLE, ChangeLogEntry, Operation
from changewire.config.models import WatchedTable
from changewire.errors import CaptureUnavailable

logger = logging.getLogger(__name__)

PG_CAPTURE_FUNCTION = "changewire_capture_change"


class ChangeRecorder(ABC):
    """One way of appending change rows for watched tables."""

    mode: str = "absent"

    def __init__(self, tables: Sequence[WatchedTable]) -> None:
        self.tables = list(tables)
        self.degraded = False

    @abstractmethod
    async def install(self, engine: AsyncEngine) -> None:
        """Activate capture; raise CaptureUnavailable when impossible."""

    @abstractmethod
    async def uninstall(self, engine: AsyncEngine) -> None:
        """Deactivate capture."""

    def describe(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "degraded": self.degraded,
            "tables": [table.name for table in self.tables],
        }


def _postgres_function_ddl() -> str:
    return f"""
CREATE OR REPLACE FUNCTION {PG_CAPTURE_FUNCTION}() RETURNS trigger AS $body$
DECLARE
    old_row jsonb := NULL;
    new_row jsonb := NULL;
    src jsonb;
BEGIN
    IF TG_OP <> 'INSERT' THEN
        old_row := to_jsonb(OLD);
    END IF;
    IF TG_OP <> 'DELETE' THEN
        new_row := to_jsonb(NEW);
    END IF;
    src := COALESCE(new_row, old_row);
    INSERT INTO {CHANGE_LOG_TABLE} (table_name, operation_type, record_id, old_data, new_data, user_id)
    VALUES (
        TG_TABLE_NAME,
        TG_OP,
        src ->> TG_ARGV[0],
        old_row,
        new_row,
        NULLIF(src ->> TG_ARGV[1], '')
    );
    RETURN NULL;
END;
$body$ LANGUAGE plpgsql
"""


def _postgres_trigger_ddl(table: WatchedTable) -> list[str]:
    trigger = f"{table.name}_cdc_change"
    actor = table.actor_column or ""
    return [
        f"DROP TRIGGER IF EXISTS {trigger} ON {table.name}",
        (
            f"CREATE TRIGGER {trigger} AFTER INSERT OR UPDATE OR DELETE ON {table.name} "
            f"FOR EACH ROW EXECUTE FUNCTION {PG_CAPTURE_FUNCTION}('{table.id_column}', '{actor}')"
        ),
    ]


def _sqlite_trigger_ddl(table: WatchedTable, columns: Sequence[str]) -> list[str]:
    def _snapshot(alias: str) -> str:
        pairs = ", ".join(f"'{column}', {alias}.{column}" for column in columns)
        return f"json_object({pairs})"

    def _actor(alias: str) -> str:
        if table.actor_column is None:
            return "NULL"
        return f"CAST({alias}.{table.actor_column} AS TEXT)"

    statements: list[str] = []
    for op, alias, old_expr, new_expr in (
        (Operation.INSERT, "NEW", "NULL", _snapshot("NEW")),
        (Operation.UPDATE, "NEW", _snapshot("OLD"), _snapshot("NEW")),
        (Operation.DELETE, "OLD", _snapshot("OLD"), "NULL"),
    ):
        trigger = f"{table.name}_cdc_{op.value.lower()}"
        statements.append(f"DROP TRIGGER IF EXISTS {trigger}")
        statements.append(
            f"CREATE TRIGGER {trigger} AFTER {op.value} ON {table.name} FOR EACH ROW BEGIN "
            f"INSERT INTO {CHANGE_LOG_TABLE} (table_name, operation_type, record_id, old_data, new_data, user_id) "
            f"VALUES ('{table.name}', '{op.value}', CAST({alias}.{table.id_column} AS TEXT), "
            f"{old_expr}, {new_expr}, {_actor(alias)}); END"
        )
    return statements


def _table_columns(sync_conn: Connection, table_name: str) -> list[str]:
    inspector = inspect(sync_conn)
    if not inspector.has_table(table_name):
        return []
    return [column["name"] for column in inspector.get_columns(table_name)]


class TriggerChangeRecorder(ChangeRecorder):
    """Row-level database triggers writing change rows inside the mutating transaction."""

    mode = "trigger"

    async def install(self, engine: AsyncEngine) -> None:
        dialect = engine.dialect.name
        try:
            async with engine.begin() as conn:
                if dialect == "postgresql":
                    await conn.execute(text(_postgres_function_ddl()))
                    for table in self.tables:
                        for statement in _postgres_trigger_ddl(table):
                            await conn.execute(text(statement))
                elif dialect == "sqlite":
                    # SQLite DDL is not rolled back with the connection, so check every table first.
                    columns_by_table = {}
                    for table in self.tables:
                        columns = await conn.run_sync(_table_columns, table.name)
                        if not columns:
                            raise CaptureUnavailable(f"Watched table {table.name} does not exist")
                        columns_by_table[table.name] = columns
                    for table in self.tables:
                        for statement in _sqlite_trigger_ddl(table, columns_by_table[table.name]):
                            await conn.execute(text(statement))
                else:
                    raise CaptureUnavailable(f"Row-level capture triggers are not supported on {dialect}")
        except SQLAlchemyError as exc:
            raise CaptureUnavailable(f"Failed to install capture triggers: {exc}") from exc
        logger.info("Capture triggers installed on %s for %s", dialect, [t.name for t in self.tables])

    async def uninstall(self, engine: AsyncEngine) -> None:
        dialect = engine.dialect.name
        async with engine.begin() as conn:
            for table in self.tables:
                if dialect == "postgresql":
                    await conn.execute(text(f"DROP TRIGGER IF EXISTS {table.name}_cdc_change ON {table.name}"))
                elif dialect == "sqlite":
                    for op in Operation:
                        await conn.execute(text(f"DROP TRIGGER IF EXISTS {table.name}_cdc_{op.value.lower()}"))


def _json_safe(value: Any) -> Any:
    if isinstance(value, dt.datetime | dt.date | dt.time):
        return value.isoformat()
    if isinstance(value, decimal.Decimal | uuid.UUID):
        return str(value)
    if isinstance(value, bytes):
        return value.hex()
    return value


def _current_snapshot(target: Any) -> dict[str, Any]:
    state = inspect(target)
    return {attr.key: _json_safe(getattr(target, attr.key)) for attr in state.mapper.column_attrs}


def _previous_snapshot(target: Any) -> tuple[dict[str, Any], bool]:
    state = inspect(target)
    snapshot: dict[str, Any] = {}
    changed = False
    for attr in state.mapper.column_attrs:
        history = state.attrs[attr.key].history
        if history.deleted:
            snapshot[attr.key] = _json_safe(history.deleted[0])
            changed = True
        else:
            snapshot[attr.key] = _json_safe(getattr(target, attr.key))
    return snapshot, changed


class HookChangeRecorder(ChangeRecorder):
    """Application-level capture through SQLAlchemy mapper events.

    Covers writes made through the given ORM models only; raw SQL issued by
    other writers is not captured.
    """

    mode = "hook"

    def __init__(self, tables: Sequence[WatchedTable], models: Iterable[type] = ()) -> None:
        super().__init__(tables)
        by_name = {table.name: table for table in self.tables}
        self._models: dict[type, WatchedTable] = {}
        for model in models:
            watched = by_name.get(getattr(model, "__tablename__", ""))
            if watched is not None:
                self._models[model] = watched
        self._installed = False

    async def install(self, engine: AsyncEngine) -> None:  # noqa: ARG002
        if self._installed:
            return
        if not self._models:
            logger.warning("Hook capture has no mapped models for %s; nothing will be captured",
                           [t.name for t in self.tables])
        for model in self._models:
            event.listen(model, "after_insert", self._after_insert)
            event.listen(model, "after_update", self._after_update)
            event.listen(model, "after_delete", self._after_delete)
        self._installed = True

    async def uninstall(self, engine: AsyncEngine) -> None:  # noqa: ARG002
        if not self._installed:
            return
        for model in self._models:
            event.remove(model, "after_insert", self._after_insert)
            event.remove(model, "after_update", self._after_update)
            event.remove(model, "after_delete", self._after_delete)
        self._installed = False

    def _watched(self, target: Any) -> WatchedTable | None:
        for model, watched in self._models.items():
            if isinstance(target, model):
                return watched
        return None

    def _write(
        self,
        connection: Connection,
        target: Any,
        operation: Operation,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        watched = self._watched(target)
        if watched is None:
            return
        source = after if after is not None else before or {}
        actor = source.get(watched.actor_column) if watched.actor_column else None
        record_id = source.get(watched.id_column)
        connection.execute(
            insert(ChangeLogEntry.__table__).values(
                table_name=watched.name,
                operation_type=operation.value,
                record_id=None if record_id is None else str(record_id),
                old_data=before,
                new_data=after,
                user_id=None if actor is None else str(actor),
                processed=False,
            )
        )

    def _after_insert(self, mapper: Any, connection: Connection, target: Any) -> None:  # noqa: ARG002
        self._write(connection, target, Operation.INSERT, None, _current_snapshot(target))

    def _after_update(self, mapper: Any, connection: Connection, target: Any) -> None:  # noqa: ARG002
        before, changed = _previous_snapshot(target)
        if not changed:
            return
        self._write(connection, target, Operation.UPDATE, before, _current_snapshot(target))

    def _after_delete(self, mapper: Any, connection: Connection, target: Any) -> None:  # noqa: ARG002
        self._write(connection, target, Operation.DELETE, _current_snapshot(target), None)


async def select_recorder(
    engine: AsyncEngine,
    tables: Sequence[WatchedTable],
    *,
    mode: str = "auto",
    models: Iterable[type] = (),
) -> ChangeRecorder:
    """Install the configured capture capability and return it.

    ``auto`` prefers triggers and falls back to mapper hooks, flagging the
    recorder as degraded and logging a warning. An explicit ``trigger`` mode
    propagates CaptureUnavailable.
    """
    models = list(models)
    if mode == "hook":
        recorder: ChangeRecorder = HookChangeRecorder(tables, models)
        await recorder.install(engine)
        return recorder

    trigger_recorder = TriggerChangeRecorder(tables)
    try:
        await trigger_recorder.install(engine)
        return trigger_recorder
    except CaptureUnavailable as exc:
        if mode == "trigger":
            raise
        logger.warning(
            "Change capture degraded: database triggers unavailable (%s); using application hooks. "
            "Writes that bypass the ORM will not be captured.",
            exc,
        )
    recorder = HookChangeRecorder(tables, models)
    recorder.degraded = True
    await recorder.install(engine)
    return recorder
