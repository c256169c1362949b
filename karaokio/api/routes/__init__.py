"""API route modules."""
from __future__ import annotations

from karaokio.api.routes import cache, health, queue, songs

__all__ = ["cache", "health", "queue", "songs"]
