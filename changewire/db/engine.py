"""Async engine creation for Changewire."""

import os

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from changewire.db.exceptions import ConfigurationError

DATABASE_URL_ENV = "CHANGEWIRE_DATABASE_URL"


def _normalize_url(url: str) -> str:
    """Ensure URL uses an async driver (asyncpg for PostgreSQL, aiosqlite for SQLite)."""
    u = url.strip()
    if u.startswith("postgresql://"):
        return "postgresql+asyncpg://" + u[len("postgresql://") :]
    if u.startswith("postgresql+asyncpg://"):
        return u
    if u.startswith("sqlite+aiosqlite://"):
        return u
    raise ConfigurationError(
        "Database URL must be PostgreSQL (postgresql:// or postgresql+asyncpg://) "
        "or SQLite (sqlite+aiosqlite://)."
    )


def resolve_url(database_url: str | None) -> str:
    """Resolve database URL from argument or environment."""
    if database_url is not None and database_url != "":
        return _normalize_url(database_url)
    url = os.environ.get(DATABASE_URL_ENV)
    if not url or not url.strip():
        raise ConfigurationError(
            f"Database URL not set. Set {DATABASE_URL_ENV} or pass database_url."
        )
    return _normalize_url(url)


def create_engine(
    database_url: str | None = None,
    *,
    pool_size: int = 5,
    max_overflow: int = 5,
    pool_timeout: float = 30.0,
    pool_recycle: int = 1800,
    pool_pre_ping: bool = True,
    echo: bool = False,
) -> AsyncEngine:
    """Create an async database engine.

    Args:
        database_url: postgresql+asyncpg:// or sqlite+aiosqlite:// URL.
            If None, uses CHANGEWIRE_DATABASE_URL.
        pool_size: Connection pool size (PostgreSQL only).
        max_overflow: Extra connections beyond pool_size when busy.
        pool_timeout: Seconds to wait for a connection.
        pool_recycle: Seconds after which connections are recycled.
        pool_pre_ping: Ping connections before use.
        echo: Log SQL (for development).

    Returns:
        Configured AsyncEngine.

    Raises:
        ConfigurationError: URL missing or invalid.
    """
    url = resolve_url(database_url)
    if url.startswith("sqlite+aiosqlite://"):
        return create_async_engine(url, echo=echo)
    return create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=pool_pre_ping,
        echo=echo,
    )
