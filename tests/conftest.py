"""Pytest configuration and shared fixtures."""

import asyncio
from typing import Any

import pytest

from warden.config.schema import SandboxConfig, WardenConfig
from warden.plugins.manifest import PluginManifest
from warden.plugins.registry import PluginRegistry


def make_manifest(plugin_id: str = "test-plugin", **fields: Any) -> PluginManifest:
    """Build a manifest from wire-style fields (camelCase aliases accepted)."""
    data = {"id": plugin_id, "name": fields.pop("name", plugin_id.title()), **fields}
    return PluginManifest.model_validate(data)


async def wait_for(predicate, timeout: float = 5.0) -> None:
    """Poll until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def default_config() -> WardenConfig:
    """Provide a default configuration for tests."""
    return WardenConfig()


@pytest.fixture
def registry_config() -> WardenConfig:
    """Configuration with quick, moderately isolated sandboxes."""
    return WardenConfig(sandbox=SandboxConfig(isolation_level="basic", timeout=5.0))


@pytest.fixture
def plugin_sources() -> dict[str, str]:
    """Plugin code by plugin id, served by the registry's code loader."""
    return {}


@pytest.fixture
async def make_registry(plugin_sources: dict[str, str]):
    """Factory for registries that are destroyed after the test.

    Plugin code comes from ``plugin_sources`` unless ``code_loader`` is
    passed explicitly.
    """
    created: list[PluginRegistry] = []

    async def load_code(manifest: PluginManifest) -> str:
        return plugin_sources[manifest.id]

    def factory(config: WardenConfig, **kwargs: Any) -> PluginRegistry:
        kwargs.setdefault("code_loader", load_code)
        registry = PluginRegistry(config, **kwargs)
        created.append(registry)
        return registry

    yield factory
    for registry in created:
        await registry.destroy()


@pytest.fixture
def registry(make_registry, registry_config: WardenConfig) -> PluginRegistry:
    """Registry whose plugin code comes from ``plugin_sources``."""
    return make_registry(registry_config)
