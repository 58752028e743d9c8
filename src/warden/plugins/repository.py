"""Remote plugin repository client and background update checker.

Repository layout::

    GET {url}/plugins.json                  -> [{"id": ..., "version": ...}, ...]
    GET {url}/plugins/{id}/manifest.json    -> manifest
    GET {url}/plugins/{id}/{main}           -> plugin code
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from warden.plugins.errors import ManifestNotFound, PluginError, RepositoryFetchError
from warden.plugins.events import EventBus, EventKind
from warden.plugins.manifest import CodeType, PluginManifest, is_valid_plugin_id
from warden.plugins.versioning import is_newer_version

logger = logging.getLogger(__name__)


class RemotePlugin(BaseModel):
    """Entry of the repository index."""

    model_config = ConfigDict(extra="allow")

    id: str
    version: str
    name: str | None = None
    description: str | None = None


@dataclass
class UpdateInfo:
    """A newer version of an installed plugin."""

    plugin_id: str
    current_version: str
    latest_version: str


class RepositoryClient:
    """HTTP client for a plugin repository.

    Args:
        url: Repository base URL
        timeout: Request timeout in seconds
        client: Shared httpx client (owned by the caller)
    """

    def __init__(self, url: str, timeout: float = 30.0, client: httpx.AsyncClient | None = None):
        self.url = url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def _get(self, path: str, plugin_id: str | None = None) -> httpx.Response:
        try:
            response = await self._client.get(f"{self.url}/{path}")
        except httpx.HTTPError as e:
            raise RepositoryFetchError(f"Repository request failed: {e}", plugin_id) from e

        if response.status_code == 404 and plugin_id is not None:
            raise ManifestNotFound(plugin_id)
        if response.is_error:
            raise RepositoryFetchError(
                f"Repository returned HTTP {response.status_code} for {path}", plugin_id
            )
        return response

    @staticmethod
    def _json(response: httpx.Response, plugin_id: str | None = None) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise RepositoryFetchError(f"Invalid JSON from repository: {e}", plugin_id) from e

    async def fetch_index(self) -> list[RemotePlugin]:
        """Fetch the list of published plugins.

        Raises:
            RepositoryFetchError: If the index can't be fetched or parsed
        """
        data = self._json(await self._get("plugins.json"))
        if isinstance(data, dict):
            data = data.get("plugins")
        if not isinstance(data, list):
            raise RepositoryFetchError("Repository index is not a list")
        try:
            return [RemotePlugin.model_validate(item) for item in data]
        except ValidationError as e:
            raise RepositoryFetchError(f"Invalid repository index: {e}") from e

    async def fetch_manifest(self, plugin_id: str) -> PluginManifest:
        """Fetch a published manifest.

        Raises:
            ManifestNotFound: If the repository doesn't know the plugin
            RepositoryFetchError: On transport errors, an invalid id or manifest,
                or a manifest published under another id
        """
        if not is_valid_plugin_id(plugin_id):
            raise RepositoryFetchError(f"Invalid plugin id: {plugin_id!r}", plugin_id)

        response = await self._get(f"plugins/{plugin_id}/manifest.json", plugin_id)
        data = self._json(response, plugin_id)
        try:
            manifest = PluginManifest.model_validate(data)
        except ValidationError as e:
            raise RepositoryFetchError(f"Invalid manifest for {plugin_id}: {e}", plugin_id) from e

        if manifest.id != plugin_id:
            raise RepositoryFetchError(
                f"Repository returned manifest '{manifest.id}' for plugin '{plugin_id}'", plugin_id
            )
        return manifest

    async def fetch_code(self, manifest: PluginManifest) -> str | bytes:
        """Fetch a plugin's entry point: text for scripts, bytes for bytecode."""
        response = await self._get(f"plugins/{manifest.id}/{manifest.main}", manifest.id)
        if manifest.code_type == CodeType.BYTECODE:
            return response.content
        return response.text

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> RepositoryClient:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


class RepositoryUpdater:
    """Periodically compares installed versions with the repository.

    Only reports updates through ``plugin-update-available`` events; never
    installs anything. Failed checks are logged and retried on the next tick.

    Args:
        client: Repository client
        installed: Returns ``{plugin_id: version}`` of installed plugins
        events: Bus receiving update events
        interval: Seconds between checks
    """

    def __init__(
        self,
        client: RepositoryClient,
        installed: Callable[[], dict[str, str]],
        events: EventBus,
        interval: float = 3600.0,
    ):
        self.client = client
        self.installed = installed
        self.events = events
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def check_once(self) -> list[UpdateInfo]:
        """Run one check; never raises for repository failures."""
        try:
            index = await self.client.fetch_index()
        except PluginError as e:
            logger.warning("Plugin update check failed: %s", e)
            return []

        installed = self.installed()
        updates = []
        for remote in index:
            current = installed.get(remote.id)
            if current is None or not is_newer_version(remote.version, current):
                continue
            updates.append(UpdateInfo(remote.id, current, remote.version))
            logger.info(
                "Update available for plugin '%s': %s -> %s", remote.id, current, remote.version
            )
            self.events.emit(
                EventKind.PLUGIN_UPDATE_AVAILABLE,
                remote.id,
                current_version=current,
                new_version=remote.version,
            )
        return updates

    def start(self) -> None:
        """Start the background loop; the first check runs immediately."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _loop(self) -> None:
        while True:
            try:
                await self.check_once()
            except Exception as e:
                logger.error("Unexpected error in plugin update check: %s", e)
            await asyncio.sleep(self.interval)
