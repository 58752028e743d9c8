"""Bounded, append-only audit trail of plugin actions."""

from __future__ import annotations

from collections import deque
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_AUDIT_CAPACITY = 1000


class AuditEntry(BaseModel):
    """One audited action."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    plugin_id: str
    action: str
    details: dict[str, Any] | None = None


class AuditLog:
    """Fixed-capacity FIFO ring of audit entries.

    Once full, each append evicts the oldest entry. Entries are never
    modified or removed individually.
    """

    def __init__(self, capacity: int = DEFAULT_AUDIT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._entries: deque[AuditEntry] = deque(maxlen=capacity)

    def append(self, entry: AuditEntry) -> None:
        self._entries.append(entry)

    def record(
        self, plugin_id: str, action: str, details: dict[str, Any] | None = None
    ) -> AuditEntry:
        """Create and append an entry."""
        entry = AuditEntry(plugin_id=plugin_id, action=action, details=details)
        self.append(entry)
        return entry

    def query(self, plugin_id: str | None = None) -> list[AuditEntry]:
        """Return entries oldest first, optionally for a single plugin."""
        if plugin_id is None:
            return list(self._entries)
        return [entry for entry in self._entries if entry.plugin_id == plugin_id]

    def __len__(self) -> int:
        return len(self._entries)
