"""Changewire database layer: Base, engine, session factory, exceptions."""

from changewire.db.base import Base
from changewire.db.engine import create_engine, resolve_url
from changewire.db.exceptions import ConfigurationError, DatabaseError
from changewire.db.session import create_session_factory

__all__ = [
    "Base",
    "create_engine",
    "resolve_url",
    "create_session_factory",
    "DatabaseError",
    "ConfigurationError",
]
