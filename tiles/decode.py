from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import mapbox_vector_tile

from common.types import RawFeature, TileIndex
from tiles.mapper import bbox_contains, lonlat_to_web_mercator, tile_local_to_lonlat


log = logging.getLogger(__name__)

# Keep tile-local origin at the top-left so rows grow southwards like tile y
_DECODE_OPTIONS = {"y_coord_down": True}


def _first_point(geometry: Optional[Dict[str, Any]]) -> Optional[Tuple[float, float]]:
    if not geometry:
        return None
    gtype = geometry.get("type")
    coords = geometry.get("coordinates")
    if not coords:
        return None
    if gtype == "Point":
        return float(coords[0]), float(coords[1])
    if gtype == "MultiPoint":
        return float(coords[0][0]), float(coords[0][1])
    return None


def _feature_id(feat: Dict[str, Any]) -> Optional[str]:
    props = feat.get("properties") or {}
    fid = props.get("id", feat.get("id"))
    return None if fid is None else str(fid)


def decode_layer(payload: bytes, layer: str, tile: TileIndex) -> List[RawFeature]:
    """
    Decode one vector-tile payload and return the point features of `layer`,
    reprojected to lon/lat and Web Mercator. Missing layer or bad payload -> [].
    """
    try:
        decoded = mapbox_vector_tile.decode(payload, default_options=_DECODE_OPTIONS)
    except Exception as e:
        log.warning("Undecodable vector tile %s: %s", tile.zxy, e)
        return []

    lyr = decoded.get(layer)
    if not lyr:
        return []
    extent = int(lyr.get("extent", 4096))

    out: List[RawFeature] = []
    for feat in lyr.get("features", []):
        fid = _feature_id(feat)
        pt = _first_point(feat.get("geometry"))
        if fid is None or pt is None:
            continue
        lon, lat = tile_local_to_lonlat(tile, pt[0], pt[1], extent)
        x, y = lonlat_to_web_mercator(lon, lat)
        out.append(RawFeature(id=fid, lon=lon, lat=lat, properties=dict(feat.get("properties") or {}), x=x, y=y))
    return out


def fold_features(
    per_tile: Iterable[Sequence[RawFeature]],
    bbox: Optional[Sequence[float]] = None,
) -> List[RawFeature]:
    """
    Merge per-tile feature lists in tile order: drop features outside `bbox`
    and keep the first emission of every id (tiles overlap at their edges).
    """
    seen = set()
    out: List[RawFeature] = []
    for feats in per_tile:
        for f in feats:
            if bbox is not None and not bbox_contains(bbox, f.lon, f.lat):
                continue
            if f.id in seen:
                continue
            seen.add(f.id)
            out.append(f)
    return out
