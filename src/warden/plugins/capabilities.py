"""Typed capability descriptors.

A capability names one kind of side effect a plugin wants to perform together
with the resource it targets. The permission evaluator matches each variant
exhaustively against the manifest's grants; the dotted ``"category.action"``
strings used on the wire are parsed into these types by
:func:`parse_capability`.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from enum import StrEnum
from typing import ClassVar


class CapabilityKind(StrEnum):
    """Permission categories."""

    NETWORK = "network"
    FILESYSTEM = "filesystem"
    SYSTEM = "system"
    PLUGINS = "plugins"
    UI = "ui"
    STORAGE = "storage"


@dataclass(frozen=True)
class NetworkAccess:
    """Outbound request to ``url``."""

    kind: ClassVar[CapabilityKind] = CapabilityKind.NETWORK

    url: str
    action: str = "fetch"

    @property
    def permission(self) -> str:
        return f"{self.kind}.{self.action}"

    @property
    def resource(self) -> str:
        return self.url


@dataclass(frozen=True)
class FilesystemAccess:
    """Read or write of ``path``.

    The path is normalised on construction so ``..`` segments can't climb
    out of a granted prefix.
    """

    kind: ClassVar[CapabilityKind] = CapabilityKind.FILESYSTEM

    path: str
    action: str = "read"

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", normalize_path(self.path))

    @property
    def permission(self) -> str:
        return f"{self.kind}.{self.action}"

    @property
    def resource(self) -> str:
        return self.path


@dataclass(frozen=True)
class SystemAccess:
    """Use of a named system API (``emit``, ``on``, ...)."""

    kind: ClassVar[CapabilityKind] = CapabilityKind.SYSTEM

    action: str

    @property
    def permission(self) -> str:
        return f"{self.kind}.{self.action}"

    @property
    def resource(self) -> str | None:
        return None


@dataclass(frozen=True)
class PluginAccess:
    """Interaction with the peer plugin ``peer_id``."""

    kind: ClassVar[CapabilityKind] = CapabilityKind.PLUGINS

    peer_id: str
    action: str = "call"

    @property
    def permission(self) -> str:
        return f"{self.kind}.{self.action}"

    @property
    def resource(self) -> str:
        return self.peer_id


@dataclass(frozen=True)
class UIAccess:
    """Rendering notifications, dialogs or components."""

    kind: ClassVar[CapabilityKind] = CapabilityKind.UI

    action: str = "render"

    @property
    def permission(self) -> str:
        return f"{self.kind}.{self.action}"

    @property
    def resource(self) -> str | None:
        return None


@dataclass(frozen=True)
class StorageAccess:
    """Use of the plugin's key/value store."""

    kind: ClassVar[CapabilityKind] = CapabilityKind.STORAGE

    action: str = "local"

    @property
    def permission(self) -> str:
        return f"{self.kind}.{self.action}"

    @property
    def resource(self) -> str | None:
        return None


Capability = (
    NetworkAccess | FilesystemAccess | SystemAccess | PluginAccess | UIAccess | StorageAccess
)


def normalize_path(path: str) -> str:
    """Collapse ``.``/``..`` segments and duplicate separators."""
    if not path:
        return path
    return posixpath.normpath(path.replace("\\", "/"))


def parse_capability(permission: str, resource: str | None = None) -> Capability:
    """Parse a ``"category.action"`` string into a capability.

    Args:
        permission: Dotted permission string, e.g. ``"network.fetch"``
        resource: Optional resource (URL, path, peer id)

    Returns:
        The matching capability variant

    Raises:
        ValueError: If the category is unknown
    """
    category, _, action = permission.partition(".")
    try:
        kind = CapabilityKind(category)
    except ValueError as e:
        raise ValueError(f"Unknown permission category: {category!r}") from e

    match kind:
        case CapabilityKind.NETWORK:
            return NetworkAccess(url=resource or "", action=action or "fetch")
        case CapabilityKind.FILESYSTEM:
            return FilesystemAccess(path=resource or "", action=action or "read")
        case CapabilityKind.SYSTEM:
            return SystemAccess(action=action)
        case CapabilityKind.PLUGINS:
            return PluginAccess(peer_id=resource or "", action=action or "call")
        case CapabilityKind.UI:
            return UIAccess(action=action or "render")
        case CapabilityKind.STORAGE:
            return StorageAccess(action=action or "local")
