"""Canonical bus topic names."""

from __future__ import annotations

ENTITY_CHANGE = "entity-change"
CRITICAL_ENTITY_CHANGE = "critical-entity-change"
USER_ACTIVITY = "user-activity"
SYSTEM_LOG = "system-log"

DISPATCH_TOPICS: tuple[str, ...] = (ENTITY_CHANGE, USER_ACTIVITY, SYSTEM_LOG)
