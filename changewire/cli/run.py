"""changewire poll / changewire consume: long-running pipeline processes."""

import asyncio

import typer

from changewire.bus.dependencies import ensure_bus_dependency
from changewire.cli.common import load_cli_config, require_database_url
from changewire.errors import ChangewireError
from changewire.logging_config import configure_logging
from changewire.service import CaptureService, DispatchService, run_until_signalled


def _require_kafka() -> None:
    try:
        ensure_bus_dependency("kafka")
    except RuntimeError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e


def poll_command(
    config: str = typer.Option("", "--config", help="Config file path (default: changewire.yaml)."),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Database URL (default: CHANGEWIRE_DATABASE_URL).",
    ),
) -> None:
    """Run the change poller until interrupted."""
    cfg = load_cli_config(config, database_url)
    require_database_url(cfg)
    _require_kafka()
    configure_logging(cfg.logging.level, cfg.logging.json_output)
    try:
        asyncio.run(run_until_signalled(CaptureService(cfg)))
    except ChangewireError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e


def consume_command(
    config: str = typer.Option("", "--config", help="Config file path (default: changewire.yaml)."),
) -> None:
    """Run the dispatcher until interrupted."""
    cfg = load_cli_config(config)
    _require_kafka()
    configure_logging(cfg.logging.level, cfg.logging.json_output)
    asyncio.run(run_until_signalled(DispatchService(cfg)))
