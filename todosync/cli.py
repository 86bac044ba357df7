"""todosync command line.

Usage:
    todosync serve [--host H] [--port P]
    todosync keepalive [--url URL] [--interval-ms N]
    todosync status
    todosync login EMAIL --password P [--base-url URL]
    todosync pull [--base-url URL] [--token T]
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx
import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .configuration import ConfigurationBundle, load_runtime_configuration
from .keepalive import resolve_interval_ms, resolve_target, run_keep_alive
from .logging_utils import setup_logging
from .session import SessionController
from .state.storage import open_storage
from .sync.protocol import SyncSettings

app = typer.Typer(
    name="todosync",
    help="todosync - versioned to-do state sync server and client",
    no_args_is_help=True,
)
console = Console()
logger = logging.getLogger("todosync.cli")


def _bootstrap() -> ConfigurationBundle:
    bundle = load_runtime_configuration()
    logging_cfg = bundle.section("logging")
    try:
        bundle.log_path = setup_logging(
            bundle.data_dir,
            level=logging_cfg.get("level", "INFO"),
            structured=bool(logging_cfg.get("structured", True)),
        )
    except OSError as e:
        console.print(f"[yellow]Logging to files disabled: {e}[/yellow]")
    return bundle


def _settings(bundle: ConfigurationBundle, base_url: Optional[str]) -> SyncSettings:
    settings = SyncSettings.from_config(bundle.merged)
    if base_url:
        settings.base_url = base_url.rstrip("/")
    return settings


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port"),
):
    """Run the state sync server."""
    from .api.server import TodoSyncServer

    bundle = _bootstrap()
    server_cfg = bundle.merged.setdefault("server", {})
    if host:
        server_cfg["host"] = host
    if port:
        server_cfg["port"] = port

    server = TodoSyncServer(bundle)
    console.print(f"[green]Serving on http://{server.host}:{server.port}[/green]")
    if not server.start(blocking=True):
        raise typer.Exit(1)


@app.command("keepalive")
def keepalive(
    url: Optional[str] = typer.Option(None, "--url", help="Base URL of the backend"),
    interval_ms: Optional[int] = typer.Option(None, "--interval-ms", help="Ping interval"),
):
    """Ping a backend's /health endpoint forever."""
    _bootstrap()
    target = url.rstrip("/") + "/health" if url else resolve_target()
    if not target:
        console.print("[red]KEEP_ALIVE_URL (or BASE_URL/RENDER_SERVICE_URL) is not set.[/red]")
        raise typer.Exit(1)
    try:
        asyncio.run(run_keep_alive(target, interval_ms or resolve_interval_ms()))
    except KeyboardInterrupt:
        console.print("Keep-alive worker stopped.")


@app.command("status")
def status():
    """Show configuration status and diagnostics."""
    bundle = load_runtime_configuration()
    sync_cfg = bundle.section("sync")

    info = Table.grid(padding=(0, 1))
    info.add_column("Key", style="bold", no_wrap=True)
    info.add_column("Value", overflow="fold")
    info.add_row("Data dir", str(bundle.data_dir))
    info.add_row("Status", bundle.status)
    info.add_row("Config files", str(len(bundle.files_loaded)))
    info.add_row("Storage", str(bundle.section("storage").get("backend", "file")))
    info.add_row("Sync", "enabled" if sync_cfg.get("enabled") else "disabled")
    info.add_row("Base URL", sync_cfg.get("base_url") or "(not set)")
    console.print(Panel(info, title="todosync", border_style="green", padding=(0, 1)))

    if not bundle.diagnostics:
        console.print(Panel("[green]No diagnostics reported.", title="Diagnostics", border_style="green"))
        return

    table = Table(title="Diagnostics", box=box.SIMPLE, header_style="bold cyan")
    table.add_column("Level", no_wrap=True)
    table.add_column("Message")
    styles = {"error": "red", "warning": "yellow", "info": "cyan"}
    for diag in bundle.diagnostics:
        table.add_row(f"[{styles.get(diag.level, 'white')}]{diag.level}", diag.message)
    console.print(table)


@app.command("login")
def login(
    email: str = typer.Argument(..., help="Account email"),
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True),
    base_url: Optional[str] = typer.Option(None, "--base-url", help="Server URL"),
):
    """Sign in and store the session token for this profile."""
    bundle = _bootstrap()
    settings = _settings(bundle, base_url)
    if not settings.base_url:
        console.print("[red]No base URL configured (sync.base_url or --base-url).[/red]")
        raise typer.Exit(1)

    try:
        response = httpx.post(
            f"{settings.base_url}/api/auth/login",
            json={"email": email, "password": password},
            timeout=settings.request_timeout_ms / 1000,
        )
    except httpx.HTTPError as e:
        console.print(f"[red]Login failed: {e}[/red]")
        raise typer.Exit(1)

    if response.status_code != 200:
        console.print(f"[red]Login rejected ({response.status_code}): {response.text}[/red]")
        raise typer.Exit(1)

    body = response.json()
    session = SessionController(open_storage(bundle), settings)
    session.set_session(body.get("token"), body.get("user"))
    console.print(f"[green]Signed in as {email}.[/green]")


def _summary_table(state: Dict[str, Any]) -> Table:
    table = Table(title="Document", box=box.SIMPLE, header_style="bold cyan")
    table.add_column("Folder", style="green")
    table.add_column("Open", justify="right")
    table.add_column("Done", justify="right")
    for folder in state["folders"]:
        open_count = sum(1 for t in state["tasks"] if t.get("folderId") == folder["id"])
        done_count = sum(1 for t in state["archivedTasks"] if t.get("folderId") == folder["id"])
        table.add_row(folder["name"], str(open_count), str(done_count))
    unfiled = sum(1 for t in state["tasks"] if t.get("folderId") is None)
    table.add_row("(unfiled)", str(unfiled), "")
    return table


@app.command("pull")
def pull(
    base_url: Optional[str] = typer.Option(None, "--base-url", help="Server URL"),
    token: Optional[str] = typer.Option(None, "--token", help="Bearer token (defaults to stored)"),
):
    """Pull the remote document once and print a summary."""
    bundle = _bootstrap()
    settings = _settings(bundle, base_url)
    settings.pull_on_startup = True
    session = SessionController(open_storage(bundle), settings)
    session.load()
    if token:
        session.token = token

    async def _run():
        try:
            return await session.start(poll=False)
        finally:
            await session.stop()

    result = asyncio.run(_run())
    if result is None:
        console.print("[yellow]Sync is not available (missing base URL or credential).[/yellow]")
        raise typer.Exit(1)
    if result.error:
        console.print(f"[red]Pull failed: {result.error}[/red]")
        raise typer.Exit(1)

    meta = session.state["meta"]
    console.print(
        f"Version [bold]{meta['version']}[/bold] "
        f"({'applied' if result.applied else 'seeded' if result.not_found else 'unchanged'})"
    )
    console.print(_summary_table(session.state))


__all__ = ["app"]
