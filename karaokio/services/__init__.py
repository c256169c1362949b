"""Services for Karaokio: durable song state, the artifact cache, collaborator gateways."""
from __future__ import annotations

from karaokio.services.cache_index import CacheIndex, EvictionSweeper, cache_key
from karaokio.services.status_store import StatusStore

__all__ = [
    "CacheIndex",
    "EvictionSweeper",
    "StatusStore",
    "cache_key",
]
