import asyncio
import logging
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from matrix_teams.bridge import Bridge, BridgeError
from matrix_teams.config import ConfigError, Settings, settings as default_settings
from matrix_teams.models import SyncReport
from matrix_teams.services.http_client import cleanup_http_client

APP_NAME = "matrix-teams-as"

console = Console()
app = typer.Typer(help="Matrix Application Service bridging Microsoft Teams")


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)


def _build_settings(debug: bool, matrix_url: Optional[str], hs_token: Optional[str],
                    as_token: Optional[str], **extra) -> Settings:
    configured = default_settings.with_overrides(
        debug=True if debug else None,
        matrix_url=matrix_url,
        hs_token=hs_token,
        as_token=as_token,
        **extra,
    )
    try:
        return configured.validate()
    except ConfigError as e:
        console.print(f"[bold red]unable to parse matrix URL: {e}[/]")
        raise typer.Exit(code=1)


@app.command("serve")
def cli_serve(
    debug: bool = typer.Option(False, "--debug", "-D", help="Verbose logging and FastAPI debug mode"),
    matrix_url: Optional[str] = typer.Option(None, "--matrix-url", "-u", help="Homeserver URL"),
    hs_token: Optional[str] = typer.Option(None, "--home-server-token", "-s", help="Token the homeserver sends us"),
    as_token: Optional[str] = typer.Option(None, "--application-service-token", "-a", help="Token we send the homeserver"),
    host: Optional[str] = typer.Option(None, "--host", help="Listen address"),
    port: Optional[int] = typer.Option(None, "--port", help="Listen port"),
    sync_on_startup: bool = typer.Option(False, "--sync-on-startup", help="Mirror Teams channels once after startup"),
):
    """Run the Application Service HTTP server."""
    configure_logging(debug or default_settings.debug)
    settings = _build_settings(
        debug, matrix_url, hs_token, as_token,
        host=host, port=port, sync_on_startup=True if sync_on_startup else None,
    )

    from matrix_teams.api import create_app

    console.print(f"[green]Starting {APP_NAME} on {settings.address} (homeserver {settings.matrix_url})[/]")
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level="debug" if settings.debug else "info",
    )


def print_sync_report(report: SyncReport) -> None:
    table = Table(title="Teams channels", show_lines=True, header_style="bold cyan")
    table.add_column("Team", style="white")
    table.add_column("Channel", style="white")
    table.add_column("Alias", style="magenta", no_wrap=True)
    table.add_column("Room", style="dim")
    table.add_column("Status")
    table.add_column("Sent", justify="right")

    for result in report.channels:
        status = result.status if not result.error else f"{result.status} ({result.error})"
        table.add_row(result.team, result.channel, result.alias, result.room_id or "-", status, str(result.messages_sent))

    console.print(table)
    totals = report.to_dict()
    console.print(
        f"[bold]Rooms created:[/] {totals['rooms_created']}  "
        f"[bold]joined:[/] {totals['rooms_joined']}  "
        f"[bold]skipped:[/] {totals['channels_skipped']}  "
        f"[bold]messages sent:[/] {totals['messages_sent']}  "
        f"[bold]failed:[/] {totals['messages_failed']}"
    )


async def _sync_once(settings: Settings) -> SyncReport:
    try:
        return await Bridge(settings).sync_teams()
    finally:
        await cleanup_http_client()


@app.command("sync")
def cli_sync(
    debug: bool = typer.Option(False, "--debug", "-D"),
    matrix_url: Optional[str] = typer.Option(None, "--matrix-url", "-u"),
    as_token: Optional[str] = typer.Option(None, "--application-service-token", "-a"),
):
    """Mirror every Teams channel into Matrix once, then exit."""
    configure_logging(debug or default_settings.debug)
    settings = _build_settings(debug, matrix_url, None, as_token)

    try:
        report = asyncio.run(_sync_once(settings))
    except BridgeError as e:
        console.print(f"[bold red]{e}[/]")
        raise typer.Exit(code=1)

    print_sync_report(report)


if __name__ == "__main__":
    app()
