"""CLI interface for whatsched.

Quick start:
    whatsched setup                                   # Save Green API credentials
    whatsched serve                                   # API + WebSocket + scheduler
    whatsched status                                  # What's in the store
    whatsched schedule 1234567890@c.us "hi" --in 30m  # Queue a message
    whatsched scheduled --pending                     # What's still waiting
    whatsched config                                  # Effective settings

schedule/scheduled work directly on the store file, so they don't need
the server to be running. A running server picks new entries up on its
next delivery tick.
"""

import asyncio
import re
from datetime import timedelta

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from whatsched import __version__
from whatsched.broadcast import NullBroadcaster
from whatsched.config import (
    get_config_path,
    get_settings,
    load_config,
    reset_settings,
    save_config,
)
from whatsched.errors import InvalidRequestError, StoreError
from whatsched.logging_config import setup_logging
from whatsched.service import WhatschedService
from whatsched.store import DocumentStore, to_iso, utc_now


app = typer.Typer(
    name="whatsched",
    help="WhatsApp session relay with scheduled message delivery",
    no_args_is_help=True,
)

console = Console()


def _parse_interval(interval_str: str) -> timedelta:
    """Parse interval strings like '90s', '30m', '4h', '1d'."""
    match = re.match(r'^(\d+(?:\.\d+)?)\s*([smhd])$', interval_str.strip().lower())
    if not match:
        raise InvalidRequestError(f"Invalid interval '{interval_str}' (use e.g. 30m, 4h, 1d)")
    value = float(match.group(1))
    multipliers = {'s': 1, 'm': 60, 'h': 3600, 'd': 86400}
    return timedelta(seconds=value * multipliers[match.group(2)])


def _offline_service() -> WhatschedService:
    """A service for store-only commands: no provider is ever started."""
    return WhatschedService(broadcaster=NullBroadcaster())


@app.command()
def version() -> None:
    """Show version."""
    console.print(f"whatsched {__version__}")


@app.command()
def serve(
    host: str = typer.Option(None, "--host", help="Host to bind to"),
    port: int = typer.Option(None, "--port", "-p", help="Port to listen on"),
) -> None:
    """Run the HTTP API, WebSocket events and the delivery scheduler."""
    import uvicorn

    from whatsched.web.server import create_app

    settings = get_settings()
    setup_logging(settings.log_level)

    bind_host = host or settings.host
    bind_port = port or settings.port

    if not settings.green_api.is_configured():
        console.print(
            "[yellow]Green API is not configured; the session will fail to start.[/yellow]\n"
            "[dim]Set WHATSCHED_GREEN_API_INSTANCE_ID and WHATSCHED_GREEN_API_TOKEN, "
            f"or edit {get_config_path()}[/dim]")

    console.print(Panel(
        f"[bold cyan]whatsched[/bold cyan] {__version__}\n\n"
        f"🌐 API: http://{bind_host}:{bind_port}/api/\n"
        f"📡 Events: ws://{bind_host}:{bind_port}/ws\n"
        f"🗃️ Store: {settings.store_path}\n\n"
        "[dim]Press Ctrl+C to stop[/dim]",
        title="🚀 Starting",
        border_style="cyan",
    ))

    try:
        web_app = create_app()
    except StoreError as e:
        console.print(f"[red]Could not initialize store: {e}[/red]")
        raise typer.Exit(1)
    uvicorn.run(web_app, host=bind_host, port=bind_port, log_level="warning")


@app.command()
def status() -> None:
    """Summarize the store: logged messages and the scheduled queue."""
    settings = get_settings()
    store = DocumentStore(settings.store_path)
    try:
        doc = store.load()
    except StoreError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    now = utc_now()
    pending = [e for e in doc.scheduled_messages if not e.sent]
    due = [e for e in pending if e.is_due(now)]
    failing = [e for e in pending if e.last_error]

    table = Table(title="whatsched status")
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    table.add_row("Store", str(store.path))
    table.add_row("Green API", "[green]configured[/green]"
                  if settings.green_api.is_configured() else "[dim]not configured[/dim]")
    table.add_row("Messages logged", str(len(doc.messages)))
    table.add_row("Scheduled (total)", str(len(doc.scheduled_messages)))
    table.add_row("Scheduled (pending)", str(len(pending)))
    table.add_row("Due now", str(len(due)))
    table.add_row("Failing", f"[red]{len(failing)}[/red]" if failing else "0")
    console.print(table)


@app.command()
def schedule(
    chat_id: str = typer.Argument(..., help="Chat id, e.g. 1234567890@c.us"),
    content: str = typer.Argument(..., help="Message text"),
    at: str = typer.Option(None, "--at", help="ISO-8601 send time (UTC if no offset)"),
    in_: str = typer.Option(None, "--in", help="Relative delay, e.g. 30m, 4h, 1d"),
) -> None:
    """Queue a message for later delivery."""
    if bool(at) == bool(in_):
        console.print("[red]Pass exactly one of --at or --in[/red]")
        raise typer.Exit(1)

    service = _offline_service()
    try:
        send_at = at if at else to_iso(utc_now() + _parse_interval(in_))
        entry = asyncio.run(service.delivery.schedule(chat_id, content, send_at))
    except (InvalidRequestError, StoreError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓ Scheduled[/green] [white]{entry.id}[/white] for {entry.send_at}")


@app.command()
def scheduled(
    pending: bool = typer.Option(False, "--pending", help="Only show unsent entries"),
    limit: int = typer.Option(50, "--limit", "-n", help="Max rows"),
) -> None:
    """List scheduled messages."""
    service = _offline_service()
    try:
        entries = asyncio.run(service.delivery.list_scheduled(pending_only=pending))
    except StoreError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if not entries:
        console.print("[dim]No scheduled messages.[/dim]")
        return

    table = Table(title="Scheduled messages")
    table.add_column("ID", style="cyan")
    table.add_column("Chat")
    table.add_column("Send at")
    table.add_column("Status")
    table.add_column("Content")
    for entry in entries[-limit:]:
        if entry.sent:
            state = f"[green]sent {entry.sent_at}[/green]"
        elif entry.last_error:
            state = f"[red]retrying: {entry.last_error[:40]}[/red]"
        else:
            state = "[yellow]pending[/yellow]"
        table.add_row(entry.id, entry.conversation_id, entry.send_at, state, entry.content[:60])
    console.print(table)


@app.command()
def setup(
    instance_id: str = typer.Option(..., "--instance-id", prompt="Green API Instance ID"),
    api_token: str = typer.Option(..., "--token", prompt="Green API Token", hide_input=True),
) -> None:
    """Save Green API credentials to the config file."""
    console.print(Panel(
        "[bold]WhatsApp (Green API) Setup[/bold]\n\n"
        "1. Go to [cyan]https://green-api.com[/cyan] and create an instance\n"
        "2. Copy the Instance ID and API Token from the dashboard",
        title="📱 WhatsApp",
        border_style="green",
    ))
    instance_id = instance_id.strip()
    api_token = api_token.strip()
    if not instance_id or not api_token:
        console.print("[red]Instance ID and token are both required[/red]")
        raise typer.Exit(1)

    path = get_config_path()
    data = load_config(path)
    green = dict(data.get("green_api") or {})
    green.update({"instance_id": instance_id, "api_token": api_token})
    data["green_api"] = green
    save_config(data, path)
    reset_settings()

    console.print(f"\n[green]✓ WhatsApp (Green API) configured![/green] [dim]{path}[/dim]")
    console.print(
        "\n[dim]Next steps:[/dim]\n"
        "  1. Start the server: [cyan]whatsched serve[/cyan]\n"
        "  2. Scan the QR code sent to WebSocket clients")


@app.command()
def config() -> None:
    """Show the effective configuration (token masked)."""
    settings = get_settings()
    token = settings.green_api.api_token
    masked = f"{token[:4]}…{token[-4:]}" if len(token) > 8 else ("set" if token else "")

    table = Table(title=f"Configuration ({get_config_path()})")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("data_dir", str(settings.data_dir))
    table.add_row("store", str(settings.store_path))
    table.add_row("bind", f"{settings.host}:{settings.port}")
    table.add_row("cors_origins", ", ".join(settings.cors_origins))
    table.add_row("green_api.instance_id", settings.green_api.instance_id or "[dim]unset[/dim]")
    table.add_row("green_api.api_token", masked or "[dim]unset[/dim]")
    table.add_row("reconnect_delay_s", str(settings.reconnect_delay_s))
    table.add_row("delivery_interval_s", str(settings.delivery_interval_s))
    table.add_row("cache_refresh_interval_s", str(settings.cache_refresh_interval_s))
    table.add_row("activity_window_s", str(settings.activity_window_s))
    table.add_row("conversation_limit", str(settings.conversation_limit))
    table.add_row("log_level", settings.log_level)
    console.print(table)


if __name__ == "__main__":
    app()
