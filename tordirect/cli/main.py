"""Command line interface for tordirect.

Provides:
- serve: run the gateway in the foreground
- list / add / remove / status: talk to a running gateway
- config show: print the effective configuration
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import aiohttp
import click
import toml
from rich.console import Console
from rich.table import Table

from tordirect import __version__
from tordirect.config.config import ConfigManager, init_config
from tordirect.daemon.main import run_daemon
from tordirect.gateway.client import GatewayClient
from tordirect.utils.exceptions import ConfigurationError, TorDirectError

console = Console()


def _format_bytes(num: float) -> str:
    for unit in ("B", "KiB", "MiB", "GiB"):
        if abs(num) < 1024:
            return f"{num:.1f} {unit}" if unit != "B" else f"{int(num)} B"
        num /= 1024
    return f"{num:.1f} TiB"


def _format_eta(seconds: float | None) -> str:
    if seconds is None:
        return "-"
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes:02d}m"
    return f"{minutes}m{secs:02d}s"


def _default_url(ctx: click.Context) -> str:
    try:
        cm = ConfigManager(ctx.obj.get("config"))
    except ConfigurationError:
        return "http://127.0.0.1:3000"
    return f"http://127.0.0.1:{cm.config.gateway.port}"


def _run_client(ctx: click.Context, url: str | None, operation: Any) -> Any:
    """Run an async client operation and map failures to click errors."""

    async def runner() -> Any:
        async with GatewayClient(url or _default_url(ctx)) as client:
            return await operation(client)

    try:
        return asyncio.run(runner())
    except TorDirectError as e:
        raise click.ClickException(f"{e.code}: {e.message}") from e
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        msg = f"Cannot reach gateway: {e}"
        raise click.ClickException(msg) from e


def _url_option(func: Any) -> Any:
    return click.option(
        "--url",
        type=str,
        default=None,
        help="Gateway URL (default: http://127.0.0.1:<gateway.port>)",
    )(func)


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    help="Configuration file path",
)
@click.version_option(__version__, prog_name="tordirect")
@click.pass_context
def cli(ctx, config):
    """tordirect - stream torrents over HTTP while they download."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@cli.command()
@click.option("--host", type=str, default=None, help="Bind address")
@click.option("--port", type=int, default=None, help="Listen port")
@click.option(
    "--storage",
    type=click.Path(file_okay=False),
    default=None,
    help="Storage root (downloads and saved sessions)",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
    default=None,
    help="Log level",
)
@click.pass_context
def serve(ctx, host, port, storage, log_level):
    """Run the gateway in the foreground."""
    overrides: dict[str, Any] = {}
    if host is not None:
        overrides.setdefault("gateway", {})["host"] = host
    if port is not None:
        overrides.setdefault("gateway", {})["port"] = port
    if storage is not None:
        overrides.setdefault("storage", {})["root"] = storage
    if log_level is not None:
        overrides.setdefault("observability", {})["log_level"] = log_level

    try:
        cm = init_config(ctx.obj.get("config"), overrides=overrides)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    cfg = cm.config
    console.print(
        f"[bold]tordirect[/bold] {__version__} serving "
        f"[cyan]{cfg.storage.root}[/cyan] on "
        f"[cyan]http://{cfg.gateway.host}:{cfg.gateway.port}[/cyan]"
    )
    ctx.exit(run_daemon(cfg))


@cli.command("list")
@_url_option
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def list_sessions(ctx, url, as_json):
    """List active sessions."""
    sessions = _run_client(ctx, url, lambda client: client.list_sessions())

    if as_json:
        click.echo(json.dumps(sessions, indent=2))
        return
    if not sessions:
        console.print("No active sessions")
        return

    table = Table(title="Sessions")
    table.add_column("Content ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("State")
    table.add_column("Progress", justify="right")
    table.add_column("Down", justify="right")
    table.add_column("Up", justify="right")
    table.add_column("Peers", justify="right")
    table.add_column("ETA", justify="right")

    for s in sessions:
        state = s["lifecycle_state"]
        if s["error"]["present"]:
            state = f"[red]{state} (error)[/red]"
        table.add_row(
            s["content_id"][:16],
            s["display_name"],
            state,
            f"{s['progress'] * 100:.1f}%",
            f"{_format_bytes(s['download_rate'])}/s",
            f"{_format_bytes(s['upload_rate'])}/s",
            str(s["peer_count"]),
            _format_eta(s["estimated_time_remaining"]),
        )
    console.print(table)


@cli.command()
@click.argument("descriptor")
@click.option("--strict", is_flag=True, help="Fail if the content is already present")
@_url_option
@click.pass_context
def add(ctx, descriptor, strict, url):
    """Add content by magnet URI or info hash."""
    result = _run_client(
        ctx, url, lambda client: client.add_content(descriptor, strict=strict)
    )
    if result.already_present:
        console.print(f"[yellow]Already present:[/yellow] {result.content_id}")
    else:
        console.print(f"[green]Added:[/green] {result.content_id}")
    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


@cli.command()
@click.argument("content_id")
@_url_option
@click.pass_context
def remove(ctx, content_id, url):
    """Remove a session and forget it across restarts."""
    result = _run_client(ctx, url, lambda client: client.remove_content(content_id))
    console.print(f"[green]Removed:[/green] {result.content_id}")
    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


@cli.command()
@_url_option
@click.pass_context
def status(ctx, url):
    """Show gateway health."""
    health = _run_client(ctx, url, lambda client: client.health())
    table = Table(show_header=False)
    table.add_row("Status", health.status)
    table.add_row("Version", health.version)
    table.add_row("Uptime", _format_eta(health.uptime))
    table.add_row("Sessions", str(health.num_sessions))
    table.add_row("Observers", str(health.num_observers))
    console.print(table)


@cli.group()
def config():
    """Configuration commands."""


@config.command("show")
@click.option(
    "--format",
    "format_",
    type=click.Choice(["toml", "json"]),
    default="toml",
)
@click.option(
    "--section",
    type=str,
    default=None,
    help="Show one section (e.g. gateway)",
)
@click.pass_context
def show_config(ctx, format_, section):
    """Show the effective configuration."""
    try:
        cm = ConfigManager(ctx.obj.get("config"))
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    data = cm.config.model_dump(mode="json", exclude_none=True)
    if section:
        if section not in data:
            msg = f"Section not found: {section}"
            raise click.ClickException(msg)
        data = {section: data[section]}

    if format_ == "json":
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(toml.dumps(data))


def main():
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
