"""Host side of the API plugins reach through ``context``.

Plugin code never receives host objects. The worker builds proxies from the
description returned by :meth:`PluginContext.describe`, and every proxy call
comes back as a ``call`` message that :meth:`PluginContext.dispatch` serves.
Each entry checks the caller's permissions and reports a ``plugin-action``
event.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import httpx

from warden.plugins.capabilities import (
    Capability,
    FilesystemAccess,
    NetworkAccess,
    PluginAccess,
    StorageAccess,
    SystemAccess,
    UIAccess,
)
from warden.plugins.errors import PluginError
from warden.plugins.events import EventBus, EventKind
from warden.plugins.manifest import PluginManifest
from warden.plugins.permissions import PermissionEvaluator
from warden.plugins.storage import StorageQuotaManager

logger = logging.getLogger(__name__)

ConfigGetter = Callable[[str], dict[str, Any]]
ConfigSetter = Callable[[str, dict[str, Any]], Awaitable[None]]
PeerCaller = Callable[[str, str, list[Any]], Awaitable[Any]]
PluginLogger = Callable[[str, str, list[Any]], None]


class ContextBuilder:
    """Builds a :class:`PluginContext` per loaded plugin.

    Args:
        evaluator: Permission checks for every mediated call
        storage: Per-plugin key/value stores
        events: Bus that receives plugin actions, events and UI requests
        sandbox_timeout: Upper bound for plugin timers and dialog waits
        http_client: Client used by ``utils.fetch``; a short-lived one is
            created per request when omitted
        get_config: Returns the current config of a plugin
        set_config: Validates and applies a new config for a plugin
        peer_caller: Invokes an exported method of another plugin
        plugin_log: Forwards ``api.log`` lines to the host log
    """

    def __init__(
        self,
        evaluator: PermissionEvaluator,
        storage: StorageQuotaManager,
        events: EventBus,
        sandbox_timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        get_config: ConfigGetter | None = None,
        set_config: ConfigSetter | None = None,
        peer_caller: PeerCaller | None = None,
        plugin_log: PluginLogger | None = None,
    ):
        self.evaluator = evaluator
        self.storage = storage
        self.events = events
        self.sandbox_timeout = sandbox_timeout
        self.http_client = http_client
        self.get_config = get_config or (lambda _plugin_id: {})
        self.set_config = set_config
        self.peer_caller = peer_caller
        self.plugin_log = plugin_log

    def build(self, manifest: PluginManifest) -> PluginContext:
        return PluginContext(self, manifest)


class PluginContext:
    """Mediated API of one plugin."""

    def __init__(self, builder: ContextBuilder, manifest: PluginManifest):
        self.plugin_id = manifest.id
        self.manifest = manifest
        self.subscriptions: set[str] = set()
        self._builder = builder

        self._handlers: dict[str, Callable[..., Any]] = {
            "api.emit": self._emit,
            "api.on": self._on,
            "api.off": self._off,
            "api.get_config": self._get_config,
            "api.set_config": self._set_config,
            "api.log": self._log,
            "storage.get": self._storage_get,
            "storage.set": self._storage_set,
            "storage.delete": self._storage_delete,
            "storage.clear": self._storage_clear,
            "storage.keys": self._storage_keys,
            "utils.fetch": self._fetch,
            "plugins.call": self._call_peer,
            "fs.read_text": self._read_text,
            "fs.write_text": self._write_text,
        }
        if self.ui_enabled:
            self._handlers.update(
                {
                    "ui.show_notification": self._show_notification,
                    "ui.show_dialog": self._show_dialog,
                    "ui.register_component": self._register_component,
                }
            )

    @property
    def ui_enabled(self) -> bool:
        return self._builder.evaluator.evaluate(self.plugin_id, UIAccess())

    @property
    def methods(self) -> list[str]:
        return list(self._handlers)

    def describe(self) -> dict[str, Any]:
        """Serialise the context for the sandbox: namespaces and method names."""
        namespaces: dict[str, list[str]] = {}
        for qualified in self._handlers:
            namespace, _, name = qualified.partition(".")
            namespaces.setdefault(namespace, []).append(name)

        return {
            "pluginId": self.plugin_id,
            "config": self._builder.get_config(self.plugin_id),
            "api": namespaces.get("api", []),
            "storage": namespaces.get("storage", []),
            "ui": namespaces.get("ui"),
            "utils": namespaces.get("utils", []),
            "plugins": namespaces.get("plugins", []),
            "fs": namespaces.get("fs", []),
            "limits": {"timer": self._builder.sandbox_timeout},
        }

    async def dispatch(self, method: str, args: list[Any]) -> Any:
        """Serve a mediated call coming from the sandbox.

        Raises:
            PluginError: If the method isn't part of this context
            PermissionDenied: If the plugin lacks the needed permission
        """
        handler = self._handlers.get(method)
        if handler is None:
            raise PluginError(f"Unknown context method: {method}", self.plugin_id)
        result = handler(*args)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _require(self, capability: Capability) -> None:
        self._builder.evaluator.require(self.plugin_id, capability)

    def _action(self, action: str, **details: Any) -> None:
        self._builder.events.emit(
            EventKind.PLUGIN_ACTION, self.plugin_id, action=action, details=details
        )

    # api

    def _emit(self, event: str, data: Any = None) -> None:
        self._require(SystemAccess("emit"))
        self._builder.events.emit(EventKind.PLUGIN_EVENT, self.plugin_id, event=event, payload=data)
        self._action("emit", event=event)

    def _on(self, event: str) -> None:
        self._require(SystemAccess("on"))
        self.subscriptions.add(event)
        self._action("on", event=event)

    def _off(self, event: str) -> None:
        self.subscriptions.discard(event)

    def _get_config(self) -> dict[str, Any]:
        return dict(self._builder.get_config(self.plugin_id))

    async def _set_config(self, config: dict[str, Any]) -> None:
        if self._builder.set_config is None:
            raise PluginError("Configuration is read-only", self.plugin_id)
        await self._builder.set_config(self.plugin_id, config)
        self._action("set_config")

    def _log(self, level: str, message: Any = "", *args: Any) -> None:
        if self._builder.plugin_log is not None:
            self._builder.plugin_log(self.plugin_id, level, [message, *args])

    # storage

    def _storage_get(self, key: str) -> Any:
        self._require(StorageAccess())
        return self._builder.storage.get(self.plugin_id, key)

    def _storage_set(self, key: str, value: Any) -> None:
        self._require(StorageAccess())
        storage = self._builder.storage
        storage.set(
            self.plugin_id, key, value, limit=self.manifest.storage_limit(storage.default_limit)
        )
        self._action("storage.set", key=key)

    def _storage_delete(self, key: str) -> None:
        self._require(StorageAccess())
        self._builder.storage.delete(self.plugin_id, key)
        self._action("storage.delete", key=key)

    def _storage_clear(self) -> None:
        self._require(StorageAccess())
        self._builder.storage.clear(self.plugin_id)
        self._action("storage.clear")

    def _storage_keys(self) -> list[str]:
        self._require(StorageAccess())
        return self._builder.storage.keys(self.plugin_id)

    # ui

    def _show_notification(self, message: str, type: str = "info") -> None:
        self._require(UIAccess("notify"))
        self._builder.events.emit(
            EventKind.PLUGIN_NOTIFICATION, self.plugin_id, message=message, type=type
        )

    async def _show_dialog(self, options: dict[str, Any] | None = None) -> Any:
        """Ask the UI for a dialog; None if nobody answers in time."""
        self._require(UIAccess("dialog"))
        future = asyncio.get_running_loop().create_future()
        self._builder.events.emit(
            EventKind.PLUGIN_DIALOG, self.plugin_id, options=options or {}, future=future
        )
        try:
            return await asyncio.wait_for(future, timeout=self._builder.sandbox_timeout)
        except TimeoutError:
            return None

    def _register_component(self, name: str, component: Any = None) -> None:
        self._require(UIAccess("component"))
        self._builder.events.emit(
            EventKind.PLUGIN_COMPONENT_REGISTERED, self.plugin_id, name=name, component=component
        )

    # utils

    async def _fetch(self, url: str, options: dict[str, Any] | None = None) -> dict[str, Any]:
        """Perform an HTTP request on behalf of the plugin.

        Returns:
            ``status``, ``ok``, ``url``, ``headers`` and ``text`` of the response
        """
        self._require(NetworkAccess(url))
        self._action("fetch", url=url)

        options = options or {}
        request = {
            "method": str(options.get("method", "GET")).upper(),
            "url": url,
            "headers": options.get("headers"),
            "params": options.get("params"),
        }
        if "json" in options:
            request["json"] = options["json"]
        elif "body" in options:
            request["content"] = options["body"]

        if self._builder.http_client is not None:
            response = await self._builder.http_client.request(**request)
        else:
            async with httpx.AsyncClient(timeout=self._builder.sandbox_timeout) as client:
                response = await client.request(**request)

        return {
            "status": response.status_code,
            "ok": response.is_success,
            "url": str(response.url),
            "headers": dict(response.headers),
            "text": response.text,
        }

    # plugins

    async def _call_peer(self, peer_id: str, method: str, *args: Any) -> Any:
        self._require(PluginAccess(peer_id))
        if self._builder.peer_caller is None:
            raise PluginError("Plugin calls are unavailable", self.plugin_id)
        self._action("plugins.call", peer=peer_id, method=method)
        return await self._builder.peer_caller(peer_id, method, list(args))

    # fs

    async def _read_text(self, path: str) -> str:
        capability = FilesystemAccess(path, "read")
        self._require(capability)
        self._action("fs.read", path=capability.path)
        return await asyncio.to_thread(Path(capability.path).read_text, encoding="utf-8")

    async def _write_text(self, path: str, text: str) -> int:
        capability = FilesystemAccess(path, "write")
        self._require(capability)
        self._action("fs.write", path=capability.path)
        return await asyncio.to_thread(Path(capability.path).write_text, text, encoding="utf-8")
