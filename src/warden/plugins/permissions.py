"""Permission evaluation for mediated plugin calls.

Decisions are a pure function of the plugin's manifest and the requested
capability, so they are cached per ``(plugin_id, capability)`` until the
plugin is unloaded or its manifest is replaced.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from urllib.parse import urlsplit

from warden.plugins.capabilities import (
    Capability,
    FilesystemAccess,
    NetworkAccess,
    PluginAccess,
    StorageAccess,
    SystemAccess,
    UIAccess,
    normalize_path,
    parse_capability,
)
from warden.plugins.errors import PermissionDenied
from warden.plugins.manifest import PluginManifest, PluginPermissions

logger = logging.getLogger(__name__)

ManifestResolver = Callable[[str], PluginManifest | None]


def _host_of(resource: str) -> str:
    """Extract the lower-cased host from a URL or bare ``host/path`` string."""
    parts = urlsplit(resource if "//" in resource else f"//{resource}")
    return (parts.hostname or "").lower()


def domain_allowed(resource: str, domains: list[str]) -> bool:
    """Return True if the resource's host is one of ``domains`` or a subdomain."""
    host = _host_of(resource)
    if not host:
        return False
    for domain in domains:
        domain = domain.lower().lstrip(".")
        if host == domain or host.endswith(f".{domain}"):
            return True
    return False


def path_allowed(resource: str, prefixes: list[str]) -> bool:
    """Return True if the normalised path starts with one of ``prefixes``."""
    path = normalize_path(resource)
    return any(path.startswith(prefix) for prefix in prefixes)


def grants(permissions: PluginPermissions, capability: Capability) -> bool:
    """Decide whether declared permissions cover a capability."""
    match capability:
        case NetworkAccess(url=url):
            if permissions.network is True:
                return True
            if isinstance(permissions.network, list) and url:
                return domain_allowed(url, permissions.network)
            return False
        case FilesystemAccess(path=path):
            if permissions.filesystem is True:
                return True
            if isinstance(permissions.filesystem, list) and path:
                return path_allowed(path, permissions.filesystem)
            return False
        case SystemAccess(action=action):
            return action in permissions.system
        case PluginAccess(peer_id=peer_id):
            return peer_id in permissions.plugins
        case UIAccess():
            return permissions.ui is True
        case StorageAccess(action=action):
            if action != "local" or permissions.storage is None:
                return False
            return permissions.storage.local is True
    return False


class PermissionEvaluator:
    """Caching permission checker.

    Args:
        resolve_manifest: Returns the manifest registered under a plugin id
        default_allow: Decision for plugins whose manifest has no
            ``permissions`` block
    """

    def __init__(self, resolve_manifest: ManifestResolver, default_allow: bool = False):
        self._resolve_manifest = resolve_manifest
        self._default_allow = default_allow
        self._cache: dict[tuple[str, Capability], bool] = {}

    @property
    def default_allow(self) -> bool:
        return self._default_allow

    @default_allow.setter
    def default_allow(self, value: bool) -> None:
        if value != self._default_allow:
            self._default_allow = value
            # Cached decisions of permission-less manifests depend on this flag
            self._cache.clear()

    def evaluate(self, plugin_id: str, capability: Capability) -> bool:
        """Return whether the plugin holds the capability."""
        key = (plugin_id, capability)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        manifest = self._resolve_manifest(plugin_id)
        if manifest is None:
            return False

        if manifest.permissions is None:
            allowed = self._default_allow
        else:
            allowed = grants(manifest.permissions, capability)

        self._cache[key] = allowed
        return allowed

    def check(self, plugin_id: str, permission: str, resource: str | None = None) -> bool:
        """Check a dotted permission string such as ``"network.fetch"``.

        Unknown categories are denied.
        """
        try:
            capability = parse_capability(permission, resource)
        except ValueError:
            return False
        return self.evaluate(plugin_id, capability)

    def require(self, plugin_id: str, capability: Capability) -> None:
        """Raise PermissionDenied unless the plugin holds the capability."""
        if not self.evaluate(plugin_id, capability):
            logger.warning(
                "Denied %s for plugin '%s' (resource=%s)",
                capability.permission,
                plugin_id,
                capability.resource,
            )
            raise PermissionDenied(
                capability.permission, plugin_id=plugin_id, resource=capability.resource
            )

    def invalidate(self, plugin_id: str | None = None) -> None:
        """Drop cached decisions for one plugin, or for all plugins."""
        if plugin_id is None:
            self._cache.clear()
            return
        for key in [key for key in self._cache if key[0] == plugin_id]:
            del self._cache[key]

    def cached_decisions(self, plugin_id: str) -> int:
        """Number of cached decisions held for a plugin."""
        return sum(1 for key in self._cache if key[0] == plugin_id)
