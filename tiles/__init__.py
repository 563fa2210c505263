"""
Tiles — vector-tile coordinate math, fetch & decode

Provides:
- mapper: lon/lat <-> TileIndex, bbox -> covering tiles, tile-local reprojection
- decode: Mapbox Vector Tile layer extraction + per-invocation de-duplication
- fetch: VectorTileClient (concurrent, best-effort tile fetch)

Usage examples:
    from tiles.mapper import tiles_covering_bbox
    from tiles.fetch import VectorTileClient
"""
from .mapper import to_tile_index, tiles_covering_bbox, tile_bounds

__all__ = ["to_tile_index", "tiles_covering_bbox", "tile_bounds"]
