"""CLI commands for plugin management."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from warden.config.loader import ConfigError, load_config, save_config
from warden.config.schema import WardenConfig
from warden.plugins.errors import PluginError
from warden.plugins.registry import PluginRegistry, PluginStatus

console = Console()

_STATUS_STYLES = {
    PluginStatus.LOADED: "green",
    PluginStatus.DISABLED: "yellow",
    PluginStatus.ERROR: "red",
    PluginStatus.LOADING: "cyan",
    PluginStatus.UNLOADED: "dim",
}


def _load(config_path: str | None) -> WardenConfig:
    try:
        return load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from e


def _parse_arg(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        # Bare words are passed as strings
        return raw


def list_plugins(config_path: str | None = None) -> None:
    """List registered plugins and their status."""
    config = _load(config_path)

    async def collect() -> list[tuple[str, str, str, str, str]]:
        async with PluginRegistry(config) as registry:
            return [
                (
                    plugin.plugin_id,
                    plugin.manifest.name,
                    plugin.manifest.version,
                    plugin.status,
                    plugin.error or "",
                )
                for plugin in registry.get_all_plugins()
            ]

    rows = asyncio.run(collect())
    if not rows:
        console.print("[dim]No plugins registered.[/dim]")
        console.print(
            "Add manifests under 'plugins:' in your config or run 'warden plugin install'."
        )
        return

    table = Table(title="Registered Plugins")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Version")
    table.add_column("Status")

    for plugin_id, name, version, status, error in rows:
        style = _STATUS_STYLES.get(PluginStatus(status), "white")
        label = f"[{style}]{status}[/{style}]"
        if error:
            label = f"[red]error: {error[:40]}[/red]"
        table.add_row(plugin_id, name, version, label)

    console.print(table)


def info_plugin(plugin_id: str, config_path: str | None = None) -> None:
    """Show manifest and permission details of a plugin."""
    config = _load(config_path)
    manifest = next((m for m in config.plugins if m.id == plugin_id), None)
    if manifest is None:
        console.print(f"[red]Plugin '{plugin_id}' not found.[/red]")
        raise typer.Exit(1)

    m = manifest
    console.print(f"\n[bold cyan]{m.name}[/bold cyan] v{m.version} ({m.id})")
    if m.description:
        console.print(f"  {m.description}")
    if m.author:
        console.print(f"  Author: {m.author}")
    console.print(f"  Entry point: {m.main} ({m.code_type})")
    if m.hooks:
        console.print(f"  Hooks: {', '.join(sorted(m.hooks))}")
    if m.dependencies:
        deps = ", ".join(f"{dep} {rng}" for dep, rng in sorted(m.dependencies.items()))
        console.print(f"  Dependencies: {deps}")

    p = m.permissions
    console.print("  Permissions:")
    if p is None:
        policy = "allow" if config.permissions.default_allow else "deny"
        console.print(f"    none declared (default: {policy})")
        return
    console.print(f"    Network: {p.network if p.network is not None else 'none'}")
    console.print(f"    Filesystem: {p.filesystem if p.filesystem is not None else 'none'}")
    console.print(f"    System: {', '.join(p.system) or 'none'}")
    console.print(f"    Plugins: {', '.join(p.plugins) or 'none'}")
    console.print(f"    UI: {p.ui}")
    if p.storage is not None:
        size = f"{p.storage.size} bytes" if p.storage.size is not None else "default quota"
        console.print(f"    Storage: local={p.storage.local}, {size}")


def call_plugin(
    plugin_id: str, method: str, raw_args: list[str], config_path: str | None = None
) -> None:
    """Load a plugin and print the JSON result of one method call."""
    config = _load(config_path)
    args = [_parse_arg(raw) for raw in raw_args]

    async def run() -> Any:
        async with PluginRegistry(config) as registry:
            await registry.load_plugin(plugin_id)
            return await registry.call_plugin(plugin_id, method, *args)

    try:
        result = asyncio.run(run())
    except PluginError as e:
        console.print(f"[red]{type(e).__name__}: {e}[/red]")
        raise typer.Exit(1) from e

    console.print_json(data=result)


def check_updates(config_path: str | None = None) -> None:
    """Poll the repository once and show available updates."""
    config = _load(config_path)
    if config.repository is None:
        console.print("[yellow]No repository configured.[/yellow]")
        return

    async def run():
        async with PluginRegistry(config) as registry:
            return await registry.check_for_updates()

    updates = asyncio.run(run())
    if not updates:
        console.print("[green]All plugins are up to date.[/green]")
        return

    table = Table(title="Available Updates")
    table.add_column("ID", style="cyan")
    table.add_column("Installed")
    table.add_column("Available", style="green")
    for update in updates:
        table.add_row(update.plugin_id, update.current_version, update.latest_version)
    console.print(table)


def install_plugin(plugin_id: str, config_path: str | None = None) -> None:
    """Fetch a plugin from the repository and add it to the config file."""
    config = _load(config_path)

    async def run():
        async with PluginRegistry(config) as registry:
            instance = await registry.install_plugin(plugin_id)
            return instance.manifest, instance.status

    try:
        manifest, status = asyncio.run(run())
    except PluginError as e:
        console.print(f"[red]{type(e).__name__}: {e}[/red]")
        raise typer.Exit(1) from e

    config.plugins = [m for m in config.plugins if m.id != manifest.id] + [manifest]
    save_config(config, config_path)

    console.print(
        f"[green]Installed plugin '{manifest.id}' v{manifest.version} ({status}).[/green]"
    )
