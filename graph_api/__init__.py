"""
Graph API — remote image/sequence lookups and the session sequence cache

Provides:
- GraphApiClient: bbox search, sequence id lists, batched per-id lookups,
  lazy image -> sequence lookup, reverse geocoding
- SequenceCoordinateCache: ordered coordinates per sequence, once per session
- SessionStore: last active sequence persisted for widget reloads
"""
from .client import GraphApiClient
from .sequence_cache import SequenceCoordinateCache, SessionStore

__all__ = ["GraphApiClient", "SequenceCoordinateCache", "SessionStore"]
