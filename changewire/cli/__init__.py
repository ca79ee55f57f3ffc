"""CLI tools: changewire db, changewire poll, changewire consume, changewire status."""

import sys
from importlib import metadata

import typer

from changewire.cli.db import db_app
from changewire.cli.run import consume_command, poll_command
from changewire.cli.status import status_command

app = typer.Typer(
    name="changewire",
    help="Changewire: change capture and event propagation.",
)

app.add_typer(db_app, name="db")
app.command("poll")(poll_command)
app.command("consume")(consume_command)
app.command("status")(status_command)


def _version_callback(value: bool) -> None:
    if not value:
        return
    try:
        version = metadata.version("changewire")
    except metadata.PackageNotFoundError:
        version = "unknown"
    typer.echo(f"changewire {version}")
    raise typer.Exit(0)


@app.callback()
def _root(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Changewire: change capture and event propagation."""


def main() -> None:
    """Entry point for the changewire console script."""
    app(prog_name="changewire", args=sys.argv[1:])


__all__ = ["app", "main"]
