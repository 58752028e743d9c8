"""Per-plugin key/value storage with size quotas."""

from __future__ import annotations

import json
import logging
from typing import Any

from warden.plugins.errors import StorageQuotaExceeded

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_LIMIT = 1024 * 1024  # 1 MiB


class StorageQuotaManager:
    """Bounded key/value stores, one per plugin.

    Values are kept in their serialized form so the stored copy can't be
    mutated through a reference the caller still holds.
    """

    def __init__(self, default_limit: int = DEFAULT_STORAGE_LIMIT):
        self.default_limit = default_limit
        self._stores: dict[str, dict[str, str]] = {}

    def get(self, plugin_id: str, key: str) -> Any:
        """Return the stored value, or None."""
        raw = self._stores.get(plugin_id, {}).get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, plugin_id: str, key: str, value: Any, limit: int | None = None) -> None:
        """Store a value, rejecting the write if it would exceed the quota.

        Args:
            plugin_id: Owning plugin
            key: Storage key
            value: JSON-serialisable value
            limit: Quota in bytes (defaults to ``default_limit``)

        Raises:
            StorageQuotaExceeded: If the write would exceed the quota. The
                store is left untouched.
            TypeError: If the value is not JSON-serialisable
        """
        limit = self.default_limit if limit is None else limit
        raw = json.dumps(value, separators=(",", ":"), ensure_ascii=False)

        used = self.usage(plugin_id)
        if used + len(raw) > limit:
            logger.warning(
                "Storage write rejected for plugin '%s': %d + %d > %d bytes",
                plugin_id,
                used,
                len(raw),
                limit,
            )
            raise StorageQuotaExceeded(plugin_id, used=used, requested=len(raw), limit=limit)

        self._stores.setdefault(plugin_id, {})[key] = raw

    def delete(self, plugin_id: str, key: str) -> None:
        store = self._stores.get(plugin_id)
        if store is not None:
            store.pop(key, None)

    def clear(self, plugin_id: str) -> None:
        store = self._stores.get(plugin_id)
        if store is not None:
            store.clear()

    def keys(self, plugin_id: str) -> list[str]:
        return list(self._stores.get(plugin_id, {}))

    def usage(self, plugin_id: str) -> int:
        """Total accounted bytes currently stored for a plugin."""
        return sum(len(v) for v in self._stores.get(plugin_id, {}).values())

    def drop(self, plugin_id: str) -> None:
        """Discard a plugin's whole store."""
        self._stores.pop(plugin_id, None)
