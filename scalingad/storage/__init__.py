"""Durable storage backends."""

from scalingad.storage.sqlite import SQLiteStorage

__all__ = ["SQLiteStorage"]
