"""
Change event value objects.

A ChangeEvent is built once from the raw push payload
{schema, table, eventType, new, old, version} and is immutable afterwards.
"""

from __future__ import annotations

import copy
import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Self

from shared.config.logging import get_logger

logger = get_logger(__name__)


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ConnectionState(str, Enum):
    """Health of the router's subscriptions."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    DEGRADED = "degraded"


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


# Record flags that mark bulk or housekeeping writes
SILENT_FLAGS: frozenset[str] = frozenset({"bulk", "internal"})

DedupKey = tuple[str, str, str]


def _record_version(record: dict[str, Any] | None, kind: ChangeKind) -> str | None:
    if not record:
        return None
    # created_at never moves, so it only identifies the insert itself
    keys = ("version", "updated_at", "created_at") if kind == ChangeKind.INSERT else ("version", "updated_at")
    for key in keys:
        value = record.get(key)
        if value is not None:
            return str(value)
    return None


def _digest(record: dict[str, Any] | None) -> str:
    payload = json.dumps(record or {}, sort_keys=True, default=str)
    return hashlib.sha1(payload.encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """
    One row change pushed by the store.

    Attributes:
        entity_type: collection the row belongs to
        change_kind: insert, update or delete
        entity_id: id of the row (from after, else before)
        version: delivery-independent version of the row
        before: row before the change (update/delete)
        after: row after the change (insert/update)
        branch_id: branch partition the event was delivered on
    """

    entity_type: str
    change_kind: ChangeKind
    entity_id: str
    version: str
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    branch_id: str | None = None
    flags: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_payload(cls, payload: dict[str, Any], branch_id: str | None = None) -> Self:
        """
        Normalize a raw push payload.

        The version comes from the payload, then the row's own version or
        updated_at (created_at for inserts only). A row carrying none of them
        is versioned by a digest of its content, so an identical redelivery
        still deduplicates while a real update never collides with the last.

        Raises:
            ValueError: payload is not a dict, or table/eventType/row id missing
        """
        if not isinstance(payload, dict):
            raise ValueError("Change payload must be a dictionary")

        table = payload.get("table")
        if not table:
            raise ValueError("Change payload has no table")

        raw_kind = str(payload.get("eventType") or payload.get("change_kind") or "").lower()
        try:
            kind = ChangeKind(raw_kind)
        except ValueError:
            raise ValueError(f"Unknown change kind: {raw_kind!r}") from None

        after = copy.deepcopy(payload.get("new")) or None
        before = copy.deepcopy(payload.get("old")) or None
        source = after or before or {}
        entity_id = source.get("id")
        if entity_id is None:
            raise ValueError(f"Change payload for {table} has no row id")

        version = payload.get("version")
        if version is None:
            version = _record_version(after, kind) if kind != ChangeKind.DELETE else None
        if version is None:
            version = f"{kind.value}:{_digest(after or before)}"

        flags = frozenset(
            flag for flag in SILENT_FLAGS
            if payload.get(flag) or (after or {}).get(flag)
        )

        return cls(
            entity_type=table,
            change_kind=kind,
            entity_id=str(entity_id),
            version=str(version),
            before=before,
            after=after,
            branch_id=branch_id or source.get("branch_id"),
            flags=flags,
        )

    @property
    def dedup_key(self) -> DedupKey:
        return (self.entity_type, self.entity_id, self.version)

    @property
    def is_silent(self) -> bool:
        """Bulk or internal housekeeping writes never notify."""
        return bool(self.flags)

    def field_changed(self, name: str) -> bool:
        before = (self.before or {}).get(name)
        after = (self.after or {}).get(name)
        return before != after

    def get(self, name: str, default: Any = None) -> Any:
        """Field from the row after the change, else before."""
        if self.after and name in self.after:
            return self.after[name]
        if self.before and name in self.before:
            return self.before[name]
        return default


@dataclass(frozen=True, slots=True)
class Notification:
    """A user-facing message produced by the router."""

    kind: str
    title: str
    entity_type: str
    entity_id: str
    severity: Severity = Severity.INFO
