"""Persistence sinks for scraped items."""

from .base import PersistenceSink, SaveResult
from .sqlite_storage import SQLiteStorage

__all__ = ["PersistenceSink", "SaveResult", "SQLiteStorage"]
