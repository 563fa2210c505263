from __future__ import annotations

"""
Tile coordinate mapper: lon/lat <-> slippy-map tile index (Web Mercator).

Usage:
    t = to_tile_index(-77.058, 38.872, 14)
    tiles = tiles_covering_bbox((-77.06, 38.87, -77.05, 38.88), 14)
"""

import math
from typing import List, Sequence, Tuple

import mercantile

from common.types import TileIndex
from common.utils import clamp


MAX_ZOOM = 22
MAX_LAT = 85.0511287798066  # Web-Mercator latitude limit

BBox = Tuple[float, float, float, float]  # (min_lon, min_lat, max_lon, max_lat)


def _check_zoom(zoom: int) -> int:
    z = int(zoom)
    if z < 0 or z > MAX_ZOOM:
        raise ValueError(f"zoom must be in 0..{MAX_ZOOM}, got {zoom}")
    return z


def to_tile_index(lon: float, lat: float, zoom: int) -> TileIndex:
    """Tile containing (lon, lat) at `zoom`; latitude is clamped to the Mercator limit."""
    z = _check_zoom(zoom)
    t = mercantile.tile(float(lon), clamp(lat, -MAX_LAT, MAX_LAT), z)
    return TileIndex(x=t.x, y=t.y, z=t.z)


def tile_bounds(tile: TileIndex) -> BBox:
    """Geographic bounds of a tile as (west, south, east, north)."""
    b = mercantile.bounds(tile.x, tile.y, tile.z)
    return (b.west, b.south, b.east, b.north)


def tiles_covering_bbox(bbox: Sequence[float], zoom: int) -> List[TileIndex]:
    """
    Distinct tiles of the inclusive rectangle between the top-left (min_lon, max_lat)
    and bottom-right (max_lon, min_lat) corner tiles, row-major.
    Degenerate bbox (min >= max on either axis) -> [].
    """
    min_lon, min_lat, max_lon, max_lat = (float(v) for v in bbox)
    z = _check_zoom(zoom)
    if min_lon >= max_lon or min_lat >= max_lat:
        return []
    top_left = to_tile_index(min_lon, max_lat, z)
    bottom_right = to_tile_index(max_lon, min_lat, z)
    return [
        TileIndex(x=x, y=y, z=z)
        for y in range(top_left.y, bottom_right.y + 1)
        for x in range(top_left.x, bottom_right.x + 1)
    ]


# ----------------------------
# Tile-local -> geographic
# ----------------------------
def _x_to_lon(x: float, world: float) -> float:
    return x / world * 360.0 - 180.0


def _y_to_lat(y: float, world: float) -> float:
    n = math.pi - 2.0 * math.pi * (y / world)
    return math.degrees(math.atan(math.sinh(n)))


def tile_local_to_lonlat(tile: TileIndex, px: float, py: float, extent: int = 4096) -> Tuple[float, float]:
    """
    Vector-tile local coordinates (origin top-left, y down, 0..extent) -> (lon, lat).
    """
    world = float(2 ** tile.z)
    fx = tile.x + float(px) / float(extent)
    fy = tile.y + float(py) / float(extent)
    return _x_to_lon(fx, world), _y_to_lat(fy, world)


def lonlat_to_web_mercator(lon: float, lat: float) -> Tuple[float, float]:
    """(lon, lat) -> EPSG:3857 metres, the map's working spatial reference."""
    x, y = mercantile.xy(lon, clamp(lat, -MAX_LAT, MAX_LAT))
    return float(x), float(y)


def bbox_contains(bbox: Sequence[float], lon: float, lat: float) -> bool:
    min_lon, min_lat, max_lon, max_lat = bbox
    return (min_lon <= lon <= max_lon) and (min_lat <= lat <= max_lat)
