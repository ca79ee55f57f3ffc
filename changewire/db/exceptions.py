"""Database-related exceptions for Changewire.

Messages never include connection passwords.
"""


class DatabaseError(Exception):
    """Base exception for database configuration and connectivity."""

    pass


class ConfigurationError(DatabaseError):
    """Raised when database configuration is invalid or missing."""

    pass
