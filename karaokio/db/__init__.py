"""
Database module for Karaokio.

Provides async SQLAlchemy support with PostgreSQL and SQLite.
"""
from __future__ import annotations

from karaokio.db.database import (
    close_db,
    get_session_factory,
    init_db,
)
from karaokio.db.models import CacheEntry, Song, User

__all__ = [
    "get_session_factory",
    "init_db",
    "close_db",
    "CacheEntry",
    "Song",
    "User",
]
