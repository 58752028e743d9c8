"""Sandboxed plugin runtime.

Plugins declare what they need in a manifest; their code runs in a separate
worker process and reaches the host only through a mediated, permission
checked context API.
"""

from warden.plugins.audit import AuditEntry, AuditLog
from warden.plugins.capabilities import (
    Capability,
    FilesystemAccess,
    NetworkAccess,
    PluginAccess,
    StorageAccess,
    SystemAccess,
    UIAccess,
    parse_capability,
)
from warden.plugins.errors import (
    DependencyError,
    ManifestNotFound,
    ManifestSignatureError,
    PermissionDenied,
    PluginAlreadyLoaded,
    PluginCallTimeout,
    PluginConfigError,
    PluginError,
    PluginLoadTimeout,
    PluginMethodNotFound,
    PluginNotLoaded,
    PluginTimeout,
    RepositoryFetchError,
    SandboxExecutionError,
    StorageQuotaExceeded,
)
from warden.plugins.events import Event, EventBus, EventKind
from warden.plugins.manifest import (
    CodeType,
    ConfigSchema,
    HookName,
    PluginManifest,
    PluginPermissions,
    StoragePermission,
)
from warden.plugins.permissions import PermissionEvaluator
from warden.plugins.registry import PluginInstance, PluginMetrics, PluginRegistry, PluginStatus
from warden.plugins.sandbox import IsolationLevel, SandboxManager, clamp_timer_delay
from warden.plugins.storage import StorageQuotaManager
from warden.plugins.versioning import compare_versions, is_newer_version, satisfies

__all__ = [
    "AuditEntry",
    "AuditLog",
    "Capability",
    "CodeType",
    "ConfigSchema",
    "DependencyError",
    "Event",
    "EventBus",
    "EventKind",
    "FilesystemAccess",
    "HookName",
    "IsolationLevel",
    "ManifestNotFound",
    "ManifestSignatureError",
    "NetworkAccess",
    "PermissionDenied",
    "PermissionEvaluator",
    "PluginAccess",
    "PluginAlreadyLoaded",
    "PluginCallTimeout",
    "PluginConfigError",
    "PluginError",
    "PluginInstance",
    "PluginLoadTimeout",
    "PluginManifest",
    "PluginMethodNotFound",
    "PluginMetrics",
    "PluginNotLoaded",
    "PluginPermissions",
    "PluginRegistry",
    "PluginStatus",
    "PluginTimeout",
    "RepositoryFetchError",
    "SandboxExecutionError",
    "SandboxManager",
    "StorageAccess",
    "StoragePermission",
    "StorageQuotaExceeded",
    "StorageQuotaManager",
    "SystemAccess",
    "UIAccess",
    "clamp_timer_delay",
    "compare_versions",
    "is_newer_version",
    "parse_capability",
    "satisfies",
]
