"""CLI entry point for mcplink.

``mcplink serve`` runs the OAuth callback listener and flow coordinator;
``mcplink check-config`` validates a configuration file.
"""

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .. import __version__
from ..auth.errors import CallbackListenerError
from ..auth.models import AuthCompleteEvent
from ..core.config import Config, ConfigError, ConfigManager
from ..runtime import AppContext, bootstrap_logging

app = typer.Typer(
    name="mcplink",
    help="mcplink - per-user OAuth for remote MCP services",
    no_args_is_help=True,
    add_completion=False,
)

console = Console()


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        console.print(f"mcplink {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
):
    """mcplink - per-user OAuth for remote MCP services."""


def _load_config(path: Optional[Path]) -> Config:
    try:
        return ConfigManager.load(path)
    except ConfigError as e:
        console.print(f"[red]{escape(str(e))}[/red]", soft_wrap=True)
        raise typer.Exit(code=1)


def _print_auth_complete(event: AuthCompleteEvent) -> None:
    if event.success:
        console.print(f"[green]user {event.user_id} connected to {event.service}[/green]")
    else:
        console.print(f"[yellow]user {event.user_id} login to {event.service} failed: {event.error}[/yellow]")


async def _serve(config: Config) -> None:
    ctx = AppContext(config, on_auth_complete=_print_auth_complete)
    await ctx.startup()
    console.print(f"Listening for OAuth callbacks at [bold]{ctx.listener.redirect_uri}[/bold]")
    try:
        await asyncio.Event().wait()
    finally:
        await ctx.shutdown()


@app.command()
def serve(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the config file",
    ),
    port: Optional[int] = typer.Option(
        None,
        "--port",
        "-p",
        help="OAuth callback port (overrides config)",
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Log level (DEBUG, INFO, WARN, ERROR)",
    ),
):
    """Run the OAuth callback listener and flow coordinator."""
    config = _load_config(config_path)
    if port is not None:
        config.callback.port = port

    try:
        bootstrap_logging(config, level=log_level)
    except ValueError as e:
        console.print(f"[red]{escape(str(e))}[/red]", soft_wrap=True)
        raise typer.Exit(code=1)

    try:
        asyncio.run(_serve(config))
    except CallbackListenerError as e:
        console.print(f"[red]{escape(str(e))}[/red]", soft_wrap=True)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("Stopped")


@app.command("check-config")
def check_config(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the config file",
    ),
):
    """Validate the configuration and show the configured services."""
    config = _load_config(config_path)
    console.print(f"Config: {ConfigManager.path()}", soft_wrap=True)
    console.print(f"Redirect URI: {config.callback.redirect_uri}")

    if not config.services:
        console.print("[yellow]No services configured[/yellow]")
        return

    table = Table(title="Services")
    table.add_column("Name")
    table.add_column("URL")
    table.add_column("Client")
    for name in sorted(config.services):
        service = config.services[name]
        client = service.oauth.client_id or "dynamic registration"
        table.add_row(service.display_name(name), service.url, client)
    console.print(table)


if __name__ == "__main__":
    app()
