"""Change capture: recorder capabilities and the change log store."""

from changewire.capture.models import (
    CHANGE_LOG_TABLE,
    CURSOR_TABLE,
    ChangeCursor,
    ChangeLogEntry,
    ChangeRecord,
    Operation,
)
from changewire.capture.recorder import (
    ChangeRecorder,
    HookChangeRecorder,
    TriggerChangeRecorder,
    select_recorder,
)
from changewire.capture.store import ChangeLogStore, create_schema

__all__ = [
    "CHANGE_LOG_TABLE",
    "CURSOR_TABLE",
    "ChangeCursor",
    "ChangeLogEntry",
    "ChangeLogStore",
    "ChangeRecord",
    "ChangeRecorder",
    "HookChangeRecorder",
    "Operation",
    "TriggerChangeRecorder",
    "create_schema",
    "select_recorder",
]
