"""Pure classification functions shared by producer and consumer.

No function here performs I/O or mutates its inputs, so both sides compute
identical labels for the same change without a round trip.
"""

from __future__ import annotations

import enum
import ipaddress
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from changewire.capture.models import Operation
from changewire.config.models import WatchedTable


class ChangeCategory(str, enum.Enum):
    """Coarse category of a watched table."""

    IDENTITY = "USER_DATA_CHANGE"
    CREDENTIAL = "AUTH_TOKEN_CHANGE"
    GENERAL = "GENERAL_DATA_CHANGE"


class RiskLevel(str, enum.Enum):
    """Login risk tiers. Independent of the alert level used for critical changes."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"


class SecurityImplication(str, enum.Enum):
    USER_ACCOUNT_DELETED = "USER_ACCOUNT_DELETED"
    USER_DATA_MODIFIED = "USER_DATA_MODIFIED"
    UNKNOWN = "UNKNOWN"


ALERT_LEVEL_HIGH = "HIGH"


@dataclass(frozen=True, slots=True)
class ClassificationRules:
    """Which tables hold identities or credentials, and which fields are credentials."""

    identity_tables: frozenset[str] = frozenset({"users"})
    credential_tables: frozenset[str] = frozenset({"user_tokens"})
    credential_fields: frozenset[str] = frozenset({"password"})

    @classmethod
    def from_tables(cls, tables: Iterable[WatchedTable]) -> ClassificationRules:
        tables = list(tables)
        fields = {name for table in tables if table.identity for name in table.credential_fields}
        return cls(
            identity_tables=frozenset(table.name for table in tables if table.identity),
            credential_tables=frozenset(table.name for table in tables if table.credential_data),
            credential_fields=frozenset(fields or {"password"}),
        )


DEFAULT_RULES = ClassificationRules()


def _operation(value: Operation | str) -> Operation | None:
    try:
        return value if isinstance(value, Operation) else Operation(str(value).upper())
    except ValueError:
        return None


def classify(table: str, rules: ClassificationRules = DEFAULT_RULES) -> ChangeCategory:
    """Map an entity table to its category; unknown tables are GENERAL."""
    if table in rules.identity_tables:
        return ChangeCategory.IDENTITY
    if table in rules.credential_tables:
        return ChangeCategory.CREDENTIAL
    return ChangeCategory.GENERAL


def is_critical(
    operation: Operation | str,
    table: str,
    before: Mapping[str, Any] | None,
    after: Mapping[str, Any] | None,
    rules: ClassificationRules = DEFAULT_RULES,
) -> bool:
    """True for identity deletions and identity updates that change a credential field."""
    if table not in rules.identity_tables:
        return False
    op = _operation(operation)
    if op is Operation.DELETE:
        return True
    if op is Operation.UPDATE:
        old = before or {}
        new = after or {}
        return any(old.get(name) != new.get(name) for name in rules.credential_fields)
    return False


def security_implications(
    operation: Operation | str,
    table: str,
    rules: ClassificationRules = DEFAULT_RULES,
) -> SecurityImplication:
    if table in rules.identity_tables:
        op = _operation(operation)
        if op is Operation.DELETE:
            return SecurityImplication.USER_ACCOUNT_DELETED
        if op is Operation.UPDATE:
            return SecurityImplication.USER_DATA_MODIFIED
    return SecurityImplication.UNKNOWN


def assess_risk(origin_address: str | None) -> RiskLevel:
    """Loopback origins are LOW risk; every other or unparsable origin is MEDIUM.

    There is deliberately no HIGH tier; an extension would add it here.
    """
    if not origin_address:
        return RiskLevel.MEDIUM
    candidate = origin_address.strip()
    if candidate.lower() == "localhost":
        return RiskLevel.LOW
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return RiskLevel.MEDIUM
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return RiskLevel.LOW if address.is_loopback else RiskLevel.MEDIUM
