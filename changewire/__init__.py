"""Changewire: row-level change capture published as ordered, classified events."""

__version__ = "0.1.0"
