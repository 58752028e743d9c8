"""Plugin registry: lifecycle state machine and public entry point.

States::

    unloaded -> loading -> loaded | error
    loaded <-> disabled
    any -> unloaded (unload)

Each instance owns at most one sandbox, and only while ``loaded`` or
``disabled``. Lifecycle operations on one plugin are serialised with a
per-plugin lock. Timeouts and sandbox failures terminate the sandbox and
leave the plugin in ``error`` until it is loaded again explicitly.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx

from warden.plugins.audit import AuditEntry, AuditLog
from warden.plugins.broker import MessageBroker
from warden.plugins.context import ContextBuilder, PluginContext
from warden.plugins.errors import (
    DependencyError,
    ManifestNotFound,
    PermissionDenied,
    PluginAlreadyLoaded,
    PluginConfigError,
    PluginError,
    PluginMethodNotFound,
    PluginNotLoaded,
    PluginTimeout,
    SandboxExecutionError,
    StorageQuotaExceeded,
)
from warden.plugins.events import Event, EventBus, EventKind
from warden.plugins.manifest import CodeType, HookName, PluginManifest
from warden.plugins.permissions import PermissionEvaluator
from warden.plugins.repository import RepositoryClient, RepositoryUpdater, UpdateInfo
from warden.plugins.sandbox import SandboxHandle, SandboxManager
from warden.plugins.signing import verify_manifest
from warden.plugins.storage import StorageQuotaManager
from warden.plugins.versioning import satisfies

if TYPE_CHECKING:
    from warden.config.schema import WardenConfig

logger = logging.getLogger(__name__)

CodeLoader = Callable[[PluginManifest], Awaitable[str | bytes]]

LOG_LEVELS = ("error", "warn", "info", "debug")

_LOGGING_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

_AUDITED = {
    EventKind.PLUGIN_LOADED: "loaded",
    EventKind.PLUGIN_UNLOADED: "unloaded",
    EventKind.PLUGIN_ENABLED: "enabled",
    EventKind.PLUGIN_DISABLED: "disabled",
    EventKind.PLUGIN_ERROR: "error",
    EventKind.PLUGIN_API_CALL: "api-call",
    EventKind.PLUGIN_INSTALLED: "installed",
    EventKind.PLUGIN_UPDATE_AVAILABLE: "update-available",
}


class PluginStatus(StrEnum):
    """Lifecycle state of a plugin."""

    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    DISABLED = "disabled"
    ERROR = "error"


_ACTIVE = (PluginStatus.LOADING, PluginStatus.LOADED, PluginStatus.DISABLED)


@dataclass
class PluginMetrics:
    """Runtime counters of a plugin."""

    load_time_ms: float = 0.0
    api_calls: int = 0
    errors: int = 0


@dataclass
class PluginInstance:
    """Registered plugin and its runtime state."""

    manifest: PluginManifest
    status: PluginStatus = PluginStatus.UNLOADED
    exports: list[str] = field(default_factory=list)
    sandbox: SandboxHandle | None = None
    context: PluginContext | None = None
    error: str | None = None
    metrics: PluginMetrics = field(default_factory=PluginMetrics)
    config: dict[str, Any] = field(default_factory=dict)

    @property
    def plugin_id(self) -> str:
        return self.manifest.id


def normalize_log_level(level: str) -> str:
    level = level.lower()
    return "warn" if level == "warning" else level


def should_log(level: str, threshold: str) -> bool:
    """Return True if a plugin log line at ``level`` passes ``threshold``.

    Levels order as ``error < warn < info < debug``; unknown levels count
    as ``info``.
    """
    level = normalize_log_level(level)
    threshold = normalize_log_level(threshold)
    rank = LOG_LEVELS.index(level) if level in LOG_LEVELS else LOG_LEVELS.index("info")
    limit = LOG_LEVELS.index(threshold) if threshold in LOG_LEVELS else LOG_LEVELS.index("info")
    return rank <= limit


class PluginRegistry:
    """Loads, runs and tracks sandboxed plugins.

    Manifests listed in the configuration are registered on construction;
    :meth:`start` auto-loads them and starts the update checker when
    configured.

    Args:
        config: Runtime configuration (defaults when omitted)
        code_loader: Returns the code of a plugin; defaults to reading
            ``<plugin_dir>/<id>/<main>`` and falling back to the repository
        http_client: Shared client for ``utils.fetch`` and the repository
    """

    def __init__(
        self,
        config: WardenConfig | None = None,
        code_loader: CodeLoader | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        if config is None:
            from warden.config.schema import WardenConfig

            config = WardenConfig()
        self.config = config

        self._plugins: dict[str, PluginInstance] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: set[asyncio.Task] = set()
        self._started = False

        self.events = EventBus()
        self.audit = AuditLog(config.monitoring.audit_capacity)
        self.storage = StorageQuotaManager()
        self.evaluator = PermissionEvaluator(
            self._manifest_of, default_allow=config.permissions.default_allow
        )
        self.broker = MessageBroker(
            default_timeout=config.sandbox.timeout,
            request_handler=self._serve_api,
            log_handler=self._forward_log,
        )
        self.sandboxes = SandboxManager(
            self.broker,
            isolation_level=config.sandbox.isolation_level,
            timeout=config.sandbox.timeout,
            memory_limit_mb=config.sandbox.memory_limit_mb,
            python_executable=config.sandbox.python_executable,
            on_exit=self._on_sandbox_exit,
        )

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=config.sandbox.timeout)
        self.contexts = ContextBuilder(
            self.evaluator,
            self.storage,
            self.events,
            sandbox_timeout=config.sandbox.timeout,
            http_client=self.http_client,
            get_config=self._config_of,
            set_config=self._set_config_from_plugin,
            peer_caller=lambda peer_id, method, args: self.call_plugin(peer_id, method, *args),
            plugin_log=self._forward_log,
        )

        self.repository: RepositoryClient | None = None
        self.updater: RepositoryUpdater | None = None
        if config.repository is not None:
            self.repository = RepositoryClient(
                config.repository.url, timeout=config.repository.timeout, client=self.http_client
            )
            self.updater = RepositoryUpdater(
                self.repository,
                self._installed_versions,
                self.events,
                interval=config.repository.check_interval,
            )

        self._code_loader = code_loader or self._read_plugin_code
        self._configure_interactions()

        for manifest in config.plugins:
            self.register_manifest(manifest)

    # -- setup --------------------------------------------------------------

    def _configure_interactions(self) -> None:
        monitoring = self.config.monitoring
        if monitoring.track_metrics:
            self.events.subscribe(EventKind.PLUGIN_API_CALL, self._count_api_call)
            self.events.subscribe(EventKind.PLUGIN_ERROR, self._count_error)
        if monitoring.audit_events:
            for kind in _AUDITED:
                self.events.subscribe(kind, self._audit_event)
            self.events.subscribe(EventKind.PLUGIN_ACTION, self._audit_action)
        self.events.subscribe(EventKind.PLUGIN_EVENT, self._relay_plugin_event)

    def _count_api_call(self, event: Event) -> None:
        instance = self._plugins.get(event.plugin_id)
        if instance is not None:
            instance.metrics.api_calls += 1

    def _count_error(self, event: Event) -> None:
        instance = self._plugins.get(event.plugin_id)
        if instance is not None:
            instance.metrics.errors += 1

    def _audit_event(self, event: Event) -> None:
        self.audit.record(event.plugin_id, _AUDITED[event.kind], dict(event.data) or None)

    def _audit_action(self, event: Event) -> None:
        self.audit.record(
            event.plugin_id, str(event.data.get("action", "action")), event.data.get("details")
        )

    def _relay_plugin_event(self, event: Event) -> None:
        self.broadcast(str(event.data.get("event")), event.data.get("payload"))

    async def start(self) -> None:
        """Auto-load registered plugins and start the update checker."""
        if self._started:
            return
        self._started = True

        if self.config.auto_load:
            for plugin_id in list(self._plugins):
                try:
                    await self.load_plugin(plugin_id)
                except PluginError as e:
                    logger.error("Failed to auto-load plugin '%s': %s", plugin_id, e)

        repository = self.config.repository
        if self.updater is not None and repository is not None and repository.auto_update:
            self.updater.start()

    async def destroy(self) -> None:
        """Unload every plugin and release all resources."""
        if self.updater is not None:
            await self.updater.stop()

        for plugin_id in list(self._plugins):
            await self.unload_plugin(plugin_id)
        await self.sandboxes.terminate_all()

        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

        self._plugins.clear()
        self._locks.clear()
        self.evaluator.invalidate()
        self.audit = AuditLog(self.config.monitoring.audit_capacity)
        if self._owns_http_client:
            await self.http_client.aclose()
        self._started = False

    async def __aenter__(self) -> PluginRegistry:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.destroy()

    # -- manifests ----------------------------------------------------------

    def register_manifest(self, manifest: PluginManifest) -> PluginInstance:
        """Register (or replace) a manifest as an ``unloaded`` plugin.

        Raises:
            PluginAlreadyLoaded: If a plugin with this id is loading, loaded
                or disabled
            ManifestSignatureError: If signatures are required and the
                manifest's is missing or invalid
        """
        permissions = self.config.permissions
        if permissions.require_signature:
            verify_manifest(manifest, permissions.signing_key, require_signature=True)

        existing = self._plugins.get(manifest.id)
        if existing is not None:
            if existing.status in _ACTIVE:
                raise PluginAlreadyLoaded(manifest.id)
            existing.manifest = manifest
            existing.status = PluginStatus.UNLOADED
            existing.error = None
            existing.config = self._default_config(manifest)
            self.evaluator.invalidate(manifest.id)
            logger.info("Replaced manifest of plugin '%s' (v%s)", manifest.id, manifest.version)
            return existing

        instance = PluginInstance(manifest=manifest, config=self._default_config(manifest))
        self._plugins[manifest.id] = instance
        logger.info("Registered plugin '%s' (v%s)", manifest.id, manifest.version)
        return instance

    async def remove_manifest(self, plugin_id: str) -> None:
        """Unload a plugin and forget it.

        Raises:
            ManifestNotFound: If the id isn't registered
        """
        self._get(plugin_id)
        await self.unload_plugin(plugin_id)
        self._plugins.pop(plugin_id, None)
        self._locks.pop(plugin_id, None)
        self.storage.drop(plugin_id)
        self.evaluator.invalidate(plugin_id)
        logger.info("Removed plugin '%s'", plugin_id)

    @staticmethod
    def _default_config(manifest: PluginManifest) -> dict[str, Any]:
        if manifest.config_schema is None:
            return {}
        return manifest.config_schema.defaults()

    # -- lifecycle ----------------------------------------------------------

    async def load_plugin(self, plugin_id: str) -> None:
        """Load a plugin and its dependencies into sandboxes.

        Raises:
            ManifestNotFound: If the id isn't registered
            DependencyError: If dependencies are missing, unsatisfied or
                cyclic, or one of them fails to load
            PluginLoadTimeout, SandboxExecutionError: If loading fails; the
                plugin is left in ``error``
        """
        instance = self._get(plugin_id)
        if instance.status in (PluginStatus.LOADED, PluginStatus.DISABLED):
            logger.info("Plugin '%s' is already loaded", plugin_id)
            return

        # Resolved before taking any lock so dependency loads can't deadlock
        try:
            dependencies = self._resolve_dependencies(instance.manifest)
        except DependencyError as e:
            async with self._lock(plugin_id):
                await self._fail(instance, e)
            raise

        for dependency_id in dependencies:
            try:
                await self._load_one(self._plugins[dependency_id])
            except PluginError as e:
                error = DependencyError(
                    f"Dependency {dependency_id} of plugin {plugin_id} failed to load: {e}",
                    plugin_id,
                )
                async with self._lock(plugin_id):
                    await self._fail(instance, error)
                raise error from e

        await self._load_one(instance)

    async def _load_one(self, instance: PluginInstance) -> None:
        plugin_id = instance.plugin_id
        async with self._lock(plugin_id):
            if instance.status in (PluginStatus.LOADED, PluginStatus.DISABLED):
                logger.info("Plugin '%s' is already loaded", plugin_id)
                return

            manifest = instance.manifest
            instance.status = PluginStatus.LOADING
            instance.error = None
            started = time.perf_counter()
            logger.info("Loading plugin '%s' (v%s)", plugin_id, manifest.version)

            try:
                code = await self._code_loader(manifest)
                instance.context = self.contexts.build(manifest)
                instance.sandbox = await self.sandboxes.create_sandbox(manifest)
                instance.exports = await self.sandboxes.load_code(
                    instance.sandbox, code, instance.context.describe(), manifest.code_type
                )
                if manifest.declares_hook(HookName.ON_LOAD):
                    await self.sandboxes.call_hook(instance.sandbox, HookName.ON_LOAD, [])
            except Exception as e:
                await self._fail(instance, e)
                raise

            instance.status = PluginStatus.LOADED
            instance.metrics.load_time_ms = (time.perf_counter() - started) * 1000
            logger.info(
                "Loaded plugin '%s' in %.1fms (exports: %s)",
                plugin_id,
                instance.metrics.load_time_ms,
                ", ".join(instance.exports) or "-",
            )
            self.events.emit(
                EventKind.PLUGIN_LOADED, plugin_id, load_time_ms=instance.metrics.load_time_ms
            )

    async def unload_plugin(self, plugin_id: str) -> None:
        """Unload a plugin. No-op if it isn't loaded.

        A failing ``onUnload`` hook is logged; the sandbox is still
        terminated and the plugin ends in ``error``.

        Raises:
            ManifestNotFound: If the id isn't registered
        """
        instance = self._get(plugin_id)
        async with self._lock(plugin_id):
            if instance.status == PluginStatus.UNLOADED:
                return

            handle = instance.sandbox
            failure: Exception | None = None
            if (
                handle is not None
                and handle.alive
                and instance.manifest.declares_hook(HookName.ON_UNLOAD)
            ):
                try:
                    await self.sandboxes.call_hook(handle, HookName.ON_UNLOAD, [])
                except Exception as e:
                    logger.error("Error unloading plugin '%s': %s", plugin_id, e)
                    failure = e

            instance.sandbox = None
            instance.context = None
            instance.exports = []
            if handle is not None:
                await self.sandboxes.terminate(handle, force=failure is not None)
            self.storage.drop(plugin_id)
            self.evaluator.invalidate(plugin_id)

            if failure is not None:
                instance.status = PluginStatus.ERROR
                instance.error = str(failure)
                self.events.emit(EventKind.PLUGIN_ERROR, plugin_id, error=str(failure))
                return

            instance.status = PluginStatus.UNLOADED
            instance.error = None
            logger.info("Unloaded plugin '%s'", plugin_id)
            self.events.emit(EventKind.PLUGIN_UNLOADED, plugin_id)

    async def enable_plugin(self, plugin_id: str) -> None:
        """Move a plugin to ``loaded``, loading it first when needed.

        Raises:
            ManifestNotFound: If the id isn't registered
        """
        instance = self._get(plugin_id)
        if instance.status == PluginStatus.LOADED:
            return
        if instance.status in (PluginStatus.UNLOADED, PluginStatus.ERROR):
            await self.load_plugin(plugin_id)

        async with self._lock(plugin_id):
            if instance.status not in (PluginStatus.LOADED, PluginStatus.DISABLED):
                return
            if instance.manifest.declares_hook(HookName.ON_ENABLE):
                await self._guarded(
                    instance, self.sandboxes.call_hook(instance.sandbox, HookName.ON_ENABLE, [])
                )
            instance.status = PluginStatus.LOADED
            logger.info("Enabled plugin '%s'", plugin_id)
            self.events.emit(EventKind.PLUGIN_ENABLED, plugin_id)

    async def disable_plugin(self, plugin_id: str) -> None:
        """Move a ``loaded`` plugin to ``disabled``, keeping its sandbox.

        Raises:
            ManifestNotFound: If the id isn't registered
        """
        instance = self._get(plugin_id)
        async with self._lock(plugin_id):
            if instance.status != PluginStatus.LOADED:
                return
            if instance.manifest.declares_hook(HookName.ON_DISABLE):
                await self._guarded(
                    instance, self.sandboxes.call_hook(instance.sandbox, HookName.ON_DISABLE, [])
                )
            instance.status = PluginStatus.DISABLED
            logger.info("Disabled plugin '%s'", plugin_id)
            self.events.emit(EventKind.PLUGIN_DISABLED, plugin_id)

    # -- calls --------------------------------------------------------------

    async def call_plugin(self, plugin_id: str, method: str, *args: Any) -> Any:
        """Invoke an exported method of a loaded plugin.

        Raises:
            PluginNotLoaded: If the plugin isn't ``loaded``
            PluginMethodNotFound: If the method isn't exported
            PluginCallTimeout: If the call doesn't finish in time
            PermissionDenied, StorageQuotaExceeded: If a mediated call made
                by the plugin was rejected and not handled
            SandboxExecutionError: If the plugin code raised
        """
        instance = self._plugins.get(plugin_id)
        if instance is None or instance.status != PluginStatus.LOADED or instance.sandbox is None:
            raise PluginNotLoaded(plugin_id)
        if method not in instance.exports:
            raise PluginMethodNotFound(plugin_id, method)

        self._log_action(plugin_id, "call", method=method)
        try:
            result = await self._guarded(
                instance, self.sandboxes.call_method(instance.sandbox, method, list(args))
            )
        except Exception as e:
            self.events.emit(
                EventKind.PLUGIN_API_CALL, plugin_id, method=method, success=False, error=str(e)
            )
            raise

        self.events.emit(EventKind.PLUGIN_API_CALL, plugin_id, method=method, success=True)
        return result

    async def send_to_plugin(self, plugin_id: str, message: Any) -> Any:
        """Deliver a message to the plugin's ``onMessage`` hook.

        Returns:
            The hook's result, or None if the plugin declares no such hook

        Raises:
            PluginNotLoaded: If the plugin isn't ``loaded``
        """
        instance = self._plugins.get(plugin_id)
        if instance is None or instance.status != PluginStatus.LOADED or instance.sandbox is None:
            raise PluginNotLoaded(plugin_id)
        if not instance.manifest.declares_hook(HookName.ON_MESSAGE):
            return None
        return await self._guarded(
            instance, self.sandboxes.call_hook(instance.sandbox, HookName.ON_MESSAGE, [message])
        )

    def broadcast(self, event: str, data: Any = None) -> int:
        """Send an event to every loaded plugin with a running sandbox.

        Returns:
            Number of plugins the event was handed to
        """
        channels = [
            instance.sandbox.channel
            for instance in self._plugins.values()
            if instance.status == PluginStatus.LOADED
            and instance.sandbox is not None
            and instance.sandbox.alive
        ]
        return self.broker.broadcast(channels, event, data)

    async def _guarded(self, instance: PluginInstance, call: Awaitable[Any]) -> Any:
        """Await a sandbox request, failing the plugin on timeouts and crashes.

        Rejected mediated calls (PermissionDenied, StorageQuotaExceeded)
        propagate without a state change.
        """
        handle = instance.sandbox
        try:
            return await call
        except (PermissionDenied, StorageQuotaExceeded):
            raise
        except (PluginTimeout, SandboxExecutionError) as e:
            if handle is not None and instance.sandbox is handle:
                await self._fail(instance, e)
            raise

    async def _fail(self, instance: PluginInstance, error: Exception) -> None:
        handle = instance.sandbox
        instance.status = PluginStatus.ERROR
        instance.error = str(error) or type(error).__name__
        instance.sandbox = None
        instance.context = None
        instance.exports = []
        if handle is not None:
            await self.sandboxes.terminate(handle, force=True)
        logger.error("Plugin '%s' failed: %s", instance.plugin_id, instance.error)
        self.events.emit(EventKind.PLUGIN_ERROR, instance.plugin_id, error=instance.error)

    def _on_sandbox_exit(self, handle: SandboxHandle) -> None:
        instance = self._plugins.get(handle.plugin_id)
        if instance is None or instance.sandbox is not handle:
            return
        if instance.status not in (PluginStatus.LOADED, PluginStatus.DISABLED):
            # A load in progress fails through its pending request
            return
        instance.status = PluginStatus.ERROR
        instance.error = "Sandbox process exited unexpectedly"
        instance.sandbox = None
        instance.context = None
        instance.exports = []
        self.events.emit(EventKind.PLUGIN_ERROR, handle.plugin_id, error=instance.error)

    # -- configuration ------------------------------------------------------

    async def set_plugin_config(self, plugin_id: str, config: dict[str, Any]) -> None:
        """Validate and store a plugin's configuration, then run ``onConfigChange``.

        Raises:
            ManifestNotFound: If the id isn't registered
            PluginConfigError: If the config doesn't match the schema
        """
        instance = self._get(plugin_id)
        new, old = self._apply_config(instance, config)
        if self._wants_config_change(instance):
            await self._guarded(
                instance,
                self.sandboxes.call_hook(instance.sandbox, HookName.ON_CONFIG_CHANGE, [new, old]),
            )

    async def _set_config_from_plugin(self, plugin_id: str, config: dict[str, Any]) -> None:
        instance = self._get(plugin_id)
        new, old = self._apply_config(instance, config)
        if self._wants_config_change(instance):
            task = asyncio.create_task(self._notify_config_change(instance, new, old))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _notify_config_change(
        self, instance: PluginInstance, new: dict[str, Any], old: dict[str, Any]
    ) -> None:
        try:
            await self._guarded(
                instance,
                self.sandboxes.call_hook(instance.sandbox, HookName.ON_CONFIG_CHANGE, [new, old]),
            )
        except PluginError as e:
            logger.warning("onConfigChange of plugin '%s' failed: %s", instance.plugin_id, e)

    def _apply_config(
        self, instance: PluginInstance, config: dict[str, Any]
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        if not isinstance(config, dict):
            raise PluginConfigError("Plugin config must be a mapping", instance.plugin_id)
        schema = instance.manifest.config_schema
        new = dict(config)
        if schema is not None:
            problems = schema.validate_config(new)
            if problems:
                raise PluginConfigError(
                    f"Invalid config for plugin {instance.plugin_id}: {'; '.join(problems)}",
                    instance.plugin_id,
                )
            new = {**schema.defaults(), **new}
        old = instance.config
        instance.config = new
        return dict(new), dict(old)

    @staticmethod
    def _wants_config_change(instance: PluginInstance) -> bool:
        return (
            instance.status in (PluginStatus.LOADED, PluginStatus.DISABLED)
            and instance.sandbox is not None
            and instance.manifest.declares_hook(HookName.ON_CONFIG_CHANGE)
        )

    def set_default_allow(self, allow: bool) -> None:
        """Change the decision for manifests without a permissions block."""
        self.config.permissions.default_allow = allow
        self.evaluator.default_allow = allow

    # -- repository ---------------------------------------------------------

    async def install_plugin(self, plugin_id: str) -> PluginInstance:
        """Fetch a plugin from the repository and register it.

        The plugin is loaded right away when ``auto_load`` is set.

        Raises:
            PluginError: If no repository is configured
            ManifestNotFound: If the repository doesn't publish the plugin
            RepositoryFetchError: If the repository can't be reached
            ManifestSignatureError: If the author isn't trusted or the
                signature is invalid
        """
        if self.repository is None:
            raise PluginError("No repository configured", plugin_id)

        manifest = await self.repository.fetch_manifest(plugin_id)
        permissions = self.config.permissions
        verify_manifest(
            manifest,
            permissions.signing_key,
            trusted_authors=permissions.trusted_authors,
            require_signature=permissions.require_signature,
        )
        instance = self.register_manifest(manifest)

        if self.config.auto_load:
            await self.load_plugin(manifest.id)

        logger.info("Installed plugin '%s' (v%s)", manifest.id, manifest.version)
        self.events.emit(EventKind.PLUGIN_INSTALLED, manifest.id, version=manifest.version)
        return instance

    async def check_for_updates(self) -> list[UpdateInfo]:
        """Compare installed versions with the repository once."""
        if self.updater is None:
            return []
        return await self.updater.check_once()

    def _installed_versions(self) -> dict[str, str]:
        return {plugin_id: i.manifest.version for plugin_id, i in self._plugins.items()}

    async def _read_plugin_code(self, manifest: PluginManifest) -> str | bytes:
        base = Path(self.config.plugin_dir).expanduser().resolve()
        path = (base / manifest.id / manifest.main).resolve()
        if not path.is_relative_to(base):
            raise PluginError(
                f"Entry point {manifest.main} escapes the plugin directory", manifest.id
            )

        if path.is_file():
            if manifest.code_type == CodeType.BYTECODE:
                return await asyncio.to_thread(path.read_bytes)
            return await asyncio.to_thread(path.read_text, encoding="utf-8")
        if self.repository is not None:
            return await self.repository.fetch_code(manifest)
        raise PluginError(f"Code for plugin {manifest.id} not found at {path}", manifest.id)

    # -- host API -----------------------------------------------------------

    async def _serve_api(self, plugin_id: str, method: str, args: list[Any]) -> Any:
        instance = self._plugins.get(plugin_id)
        if instance is None or instance.context is None:
            raise PluginNotLoaded(plugin_id)
        return await instance.context.dispatch(method, args)

    def _forward_log(self, plugin_id: str, level: str, args: list[Any]) -> None:
        if not should_log(level, self.config.monitoring.log_level):
            return
        level = normalize_log_level(level)
        plugin_logger = logging.getLogger(f"warden.plugin.{plugin_id}")
        plugin_logger.log(
            _LOGGING_LEVELS.get(level, logging.INFO), " ".join(str(arg) for arg in args)
        )

    def _log_action(self, plugin_id: str, action: str, **details: Any) -> None:
        self.events.emit(EventKind.PLUGIN_ACTION, plugin_id, action=action, details=details)

    # -- queries ------------------------------------------------------------

    def get_plugin(self, plugin_id: str) -> PluginInstance | None:
        return self._plugins.get(plugin_id)

    def get_plugin_status(self, plugin_id: str) -> PluginStatus | None:
        instance = self._plugins.get(plugin_id)
        return instance.status if instance is not None else None

    def get_all_plugins(self, status: PluginStatus | None = None) -> list[PluginInstance]:
        if status is None:
            return list(self._plugins.values())
        return [i for i in self._plugins.values() if i.status == status]

    def get_audit_log(self, plugin_id: str | None = None) -> list[AuditEntry]:
        return self.audit.query(plugin_id)

    # -- helpers ------------------------------------------------------------

    def _get(self, plugin_id: str) -> PluginInstance:
        instance = self._plugins.get(plugin_id)
        if instance is None:
            raise ManifestNotFound(plugin_id)
        return instance

    def _lock(self, plugin_id: str) -> asyncio.Lock:
        return self._locks.setdefault(plugin_id, asyncio.Lock())

    def _manifest_of(self, plugin_id: str) -> PluginManifest | None:
        instance = self._plugins.get(plugin_id)
        return instance.manifest if instance is not None else None

    def _config_of(self, plugin_id: str) -> dict[str, Any]:
        instance = self._plugins.get(plugin_id)
        return dict(instance.config) if instance is not None else {}

    def _resolve_dependencies(self, manifest: PluginManifest) -> list[str]:
        """Return the transitive dependencies of a plugin, dependencies first.

        Raises:
            DependencyError: If a dependency is missing, its version doesn't
                satisfy the declared range, or the graph has a cycle
        """
        root = manifest.id
        order: list[str] = []
        visiting = {root}

        def visit(current: PluginManifest, chain: list[str]) -> None:
            for dependency_id, version_range in current.dependencies.items():
                dependency = self._plugins.get(dependency_id)
                if dependency is None:
                    raise DependencyError(
                        f"Plugin {current.id} requires {dependency_id}, which is not registered",
                        root,
                    )
                version = dependency.manifest.version
                try:
                    ok = satisfies(version, version_range)
                except ValueError as e:
                    raise DependencyError(
                        f"Invalid version range '{version_range}' for {dependency_id} "
                        f"in plugin {current.id}",
                        root,
                    ) from e
                if not ok:
                    raise DependencyError(
                        f"Plugin {current.id} requires {dependency_id} {version_range}, "
                        f"found {version}",
                        root,
                    )
                if dependency_id in visiting:
                    cycle = " -> ".join([*chain, dependency_id])
                    raise DependencyError(f"Dependency cycle: {cycle}", root)
                if dependency_id in order:
                    continue

                visiting.add(dependency_id)
                visit(dependency.manifest, [*chain, dependency_id])
                visiting.discard(dependency_id)
                order.append(dependency_id)

        visit(manifest, [root])
        return order
