"""changewire db init: create the change log schema and install capture."""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from changewire.cli.common import load_cli_config, mask_url, require_database_url
from changewire.config import ChangewireConfig
from changewire.errors import ChangewireError
from changewire.service import build_engine, prepare_capture

db_app = typer.Typer(
    name="db",
    help="Database operations: init.",
)


async def _init_impl(config: ChangewireConfig) -> dict:
    engine = build_engine(config)
    try:
        recorder = await prepare_capture(engine, config)
        return recorder.describe()
    finally:
        await engine.dispose()


def init_command(
    config: str = typer.Option("", "--config", help="Config file path (default: changewire.yaml)."),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Database URL (default: CHANGEWIRE_DATABASE_URL).",
    ),
) -> None:
    """Create change log tables and install the change recorder."""
    cfg = load_cli_config(config, database_url)
    url = require_database_url(cfg)
    try:
        info = asyncio.run(_init_impl(cfg))
    except ChangewireError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e

    console = Console()
    table = Table(title="Change Capture", show_header=True, header_style="bold")
    table.add_column("Item", style="dim")
    table.add_column("Value")
    table.add_row("Database", mask_url(url))
    table.add_row("Capture mode", info["mode"])
    table.add_row("Watched tables", ", ".join(info["tables"]) or "-")
    table.add_row("Degraded", "yes" if info["degraded"] else "no")
    console.print(table)
    if info["degraded"]:
        console.print(
            "[yellow]Warning: database triggers are unavailable; only ORM writes made by a process "
            "running the hook recorder will be captured.[/yellow]"
        )


db_app.command("init")(init_command)
