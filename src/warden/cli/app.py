"""Main CLI application using Typer."""

import sys

import typer
from rich.console import Console

from warden import __version__

# Create Typer app
app = typer.Typer(
    name="warden",
    help="warden - Sandboxed plugin runtime",
    no_args_is_help=True,
)

console = Console()


@app.command()
def version():
    """Show warden version."""
    console.print(f"warden version {__version__}")


# Plugin commands
plugin_app = typer.Typer(help="Manage warden plugins")
app.add_typer(plugin_app, name="plugin")


@plugin_app.command("list")
def plugin_list(
    config_path: str = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config file (default: ~/.warden/warden.yaml)",
    ),
):
    """List registered plugins and their status."""
    from warden.cli.plugin_cmd import list_plugins

    list_plugins(config_path=config_path)


@plugin_app.command("info")
def plugin_info(
    plugin_id: str = typer.Argument(..., help="Plugin id"),
    config_path: str = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Show manifest and permission details of a plugin."""
    from warden.cli.plugin_cmd import info_plugin

    info_plugin(plugin_id, config_path=config_path)


@plugin_app.command("call")
def plugin_call(
    plugin_id: str = typer.Argument(..., help="Plugin id"),
    method: str = typer.Argument(..., help="Exported method to invoke"),
    args: list[str] = typer.Argument(None, help="Arguments as JSON values"),
    config_path: str = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Load a plugin and invoke one of its methods."""
    from warden.cli.plugin_cmd import call_plugin

    call_plugin(plugin_id, method, args or [], config_path=config_path)


@plugin_app.command("check-updates")
def plugin_check_updates(
    config_path: str = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Check the repository for newer plugin versions."""
    from warden.cli.plugin_cmd import check_updates

    check_updates(config_path=config_path)


@plugin_app.command("install")
def plugin_install(
    plugin_id: str = typer.Argument(..., help="Plugin id in the repository"),
    config_path: str = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Fetch a plugin from the repository and register it."""
    from warden.cli.plugin_cmd import install_plugin

    install_plugin(plugin_id, config_path=config_path)


def main():
    """Entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
