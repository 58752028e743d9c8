"""Exception taxonomy for the plugin runtime.

Every error carries the id of the plugin it concerns so collaborators can
render failure state without parsing messages.

- PermissionDenied and StorageQuotaExceeded are recoverable: they are raised
  by mediated API calls and may be caught by plugin code or by the caller.
- PluginTimeout and SandboxExecutionError force the plugin into ``error``.
- RepositoryFetchError is swallowed by the background updater.
"""

from __future__ import annotations


class PluginError(Exception):
    """Base class for all plugin runtime errors."""

    def __init__(self, message: str, plugin_id: str | None = None):
        super().__init__(message)
        self.plugin_id = plugin_id


class ManifestNotFound(PluginError):
    """No manifest is registered (or published) under the requested id."""

    def __init__(self, plugin_id: str):
        super().__init__(f"Plugin {plugin_id} not found", plugin_id)


class PluginAlreadyLoaded(PluginError):
    """The plugin is loaded and its manifest can't be replaced."""

    def __init__(self, plugin_id: str):
        super().__init__(f"Plugin {plugin_id} already loaded", plugin_id)


class PluginNotLoaded(PluginError):
    """The operation needs a loaded plugin."""

    def __init__(self, plugin_id: str):
        super().__init__(f"Plugin {plugin_id} not loaded", plugin_id)


class PluginMethodNotFound(PluginError):
    """The plugin does not export the requested method."""

    def __init__(self, plugin_id: str, method: str):
        super().__init__(f"Method {method} not found in plugin {plugin_id}", plugin_id)
        self.method = method


class PluginTimeout(PluginError):
    """A request across the sandbox boundary was not answered in time."""

    def __init__(self, message: str, plugin_id: str | None = None, timeout: float = 0.0):
        super().__init__(message, plugin_id)
        self.timeout = timeout


class PluginLoadTimeout(PluginTimeout):
    """Loading plugin code did not finish in time."""

    def __init__(self, plugin_id: str, timeout: float):
        super().__init__(f"Plugin load timeout after {timeout}s", plugin_id, timeout)


class PluginCallTimeout(PluginTimeout):
    """A method or hook call did not finish in time."""

    def __init__(self, plugin_id: str, timeout: float, method: str | None = None):
        target = f" ({method})" if method else ""
        super().__init__(f"Plugin call timeout after {timeout}s{target}", plugin_id, timeout)
        self.method = method


class PermissionDenied(PluginError):
    """A mediated call was not covered by the plugin's declared permissions."""

    def __init__(self, permission: str, plugin_id: str | None = None, resource: str | None = None):
        message = f"Permission denied: {permission}"
        if resource:
            message = f"{message} ({resource})"
        super().__init__(message, plugin_id)
        self.permission = permission
        self.resource = resource


class StorageQuotaExceeded(PluginError):
    """A storage write would push the plugin over its storage cap."""

    def __init__(
        self,
        plugin_id: str,
        used: int = 0,
        requested: int = 0,
        limit: int = 0,
        message: str | None = None,
    ):
        super().__init__(
            message or f"Storage limit exceeded: {used} + {requested} bytes > {limit} bytes",
            plugin_id,
        )
        self.used = used
        self.requested = requested
        self.limit = limit

    @classmethod
    def from_message(cls, plugin_id: str, message: str) -> StorageQuotaExceeded:
        """Rebuild the error from the text reported by a sandbox."""
        return cls(plugin_id, message=message)


class SandboxExecutionError(PluginError):
    """Plugin code raised, or the sandbox process failed."""

    def __init__(self, message: str, plugin_id: str | None = None, error_type: str | None = None):
        super().__init__(message, plugin_id)
        self.error_type = error_type


class RepositoryFetchError(PluginError):
    """The plugin repository could not be reached or returned garbage."""


class DependencyError(PluginError):
    """A declared dependency is missing, unsatisfied or cyclic."""


class ManifestSignatureError(PluginError):
    """A manifest failed signature or trusted-author verification."""


class PluginConfigError(PluginError):
    """A plugin configuration does not match the manifest's config schema."""
