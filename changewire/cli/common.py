"""Helpers shared by CLI commands: config loading and database URL checks."""

from urllib.parse import urlsplit, urlunsplit

import typer
from typer.models import OptionInfo

from changewire.config import ChangewireConfig, ConfigLoadError, load_config
from changewire.db import ConfigurationError
from changewire.db.engine import DATABASE_URL_ENV, resolve_url


def normalize_optional_str_option(value: object) -> str | None:
    if isinstance(value, OptionInfo):
        return None
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    return value.strip() or None


def mask_url(url: str) -> str:
    """Hide password in URL."""
    if "://" not in url:
        return url
    split = urlsplit(url)
    if split.username is None:
        return url
    userinfo = split.username
    if split.password is not None:
        userinfo = f"{userinfo}:***"
    host = split.hostname or ""
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    try:
        parsed_port = split.port
    except ValueError:
        return url
    port_suffix = f":{parsed_port}" if parsed_port is not None else ""
    netloc = f"{userinfo}@{host}{port_suffix}"
    return urlunsplit((split.scheme, netloc, split.path, split.query, split.fragment))


def load_cli_config(config_path: object, database_url: object = None) -> ChangewireConfig:
    """Load config for a command; exit 2 on invalid config or a missing database URL."""
    path = normalize_optional_str_option(config_path)
    try:
        config = load_config(path)
    except ConfigLoadError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2) from e
    url = normalize_optional_str_option(database_url)
    if url is not None:
        config.database.url = url
    return config


def require_database_url(config: ChangewireConfig) -> str:
    try:
        url = resolve_url(config.database.url or None)
    except ConfigurationError as e:
        typer.echo(f"Error: {e} (set {DATABASE_URL_ENV} or pass --database-url)", err=True)
        raise typer.Exit(2) from e
    config.database.url = url
    return url
