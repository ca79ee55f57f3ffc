"""changewire status: pending change count and persisted poller cursor."""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from changewire.capture.store import ChangeLogStore
from changewire.cli.common import load_cli_config, mask_url, require_database_url
from changewire.config import ChangewireConfig
from changewire.db import create_session_factory
from changewire.errors import StorageError
from changewire.service import build_engine


async def _collect_status_info(config: ChangewireConfig) -> dict:
    engine = build_engine(config)
    try:
        store = ChangeLogStore(create_session_factory(engine))
        return {
            "pending": await store.count_pending(),
            "cursor": await store.load_cursor(config.poller.consumer_group),
        }
    finally:
        await engine.dispose()


def status_command(
    config: str = typer.Option("", "--config", help="Config file path (default: changewire.yaml)."),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Database URL (default: CHANGEWIRE_DATABASE_URL).",
    ),
) -> None:
    """Show pending changes and the poller cursor."""
    cfg = load_cli_config(config, database_url)
    url = require_database_url(cfg)
    try:
        info = asyncio.run(_collect_status_info(cfg))
    except StorageError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e

    console = Console()
    table = Table(title="Changewire Status", show_header=True, header_style="bold")
    table.add_column("Item", style="dim")
    table.add_column("Value")
    table.add_row("Database", mask_url(url))
    table.add_row("Consumer group", cfg.poller.consumer_group)
    table.add_row("Cursor", str(info["cursor"]))
    table.add_row("Pending changes", f"{info['pending']:,}")
    console.print(table)
