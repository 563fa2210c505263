# FILE: resolver/__init__.py
"""
Resolver — from a map click to (sequence, image)

This package provides:
- Great-circle nearest-image / nearest-sequence search and ranking
- Sequence grouping of bbox search results with stable route colours
- ClickDispatcher: ordered hit priority (route overlay > feature popup >
  turbo coverage point > background proximity search)
"""
from .spatial import distance, nearest_in_sequence, rank_sequences_by_proximity, nearest_global_image
from .dispatch import ClickDispatcher, Hit, HitKind

__all__ = [
    "distance",
    "nearest_in_sequence",
    "rank_sequences_by_proximity",
    "nearest_global_image",
    "ClickDispatcher",
    "Hit",
    "HitKind",
]
