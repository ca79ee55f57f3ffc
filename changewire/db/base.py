"""Declarative base for Changewire ORM models."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all Changewire ORM models; ``Base.metadata`` feeds Alembic."""
