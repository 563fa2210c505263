from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple, Any, Dict, List
from datetime import datetime


def _iso(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    return ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class TileIndex:
    """One slippy-map vector tile, addressed by (x, y, z)."""
    x: int
    y: int
    z: int

    @property
    def zxy(self) -> Tuple[int, int, int]:
        return (self.z, self.x, self.y)


@dataclass(slots=True)
class RawFeature:
    """
    A decoded point feature from one tile layer, before deduplication.

    Attributes:
        id: feature id (stringified).
        lon, lat: WGS84 degrees.
        properties: vector-tile properties as decoded.
        x, y: Web-Mercator (EPSG:3857) metres, the map's working reference.
    """
    id: str
    lon: float
    lat: float
    properties: Dict[str, Any] = field(default_factory=dict)
    x: float = 0.0
    y: float = 0.0


@dataclass(slots=True)
class CoverageFeature:
    """
    Deduplicated, possibly detail-enriched imagery point.

    `sequence_id` may be filled in lazily when the point is clicked.
    """
    id: str
    lon: float
    lat: float
    creator_username: Optional[str] = None
    sequence_id: Optional[str] = None
    captured_at: Optional[datetime] = None
    is_pano: Optional[bool] = None
    year_category: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "lon": self.lon,
            "lat": self.lat,
            "creator_username": self.creator_username,
            "sequence_id": self.sequence_id,
            "captured_at": _iso(self.captured_at),
            "is_pano": self.is_pano,
            "year_category": self.year_category,
        }


@dataclass(slots=True)
class PointFeature:
    """Traffic-sign or map-object point (first/last seen are epoch ms as served)."""
    id: str
    lon: float
    lat: float
    value: Optional[str] = None
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "lon": self.lon,
            "lat": self.lat,
            "value": self.value,
            "first_seen_at": _iso(self.first_seen_at),
            "last_seen_at": _iso(self.last_seen_at),
        }


@dataclass(frozen=True, slots=True)
class SequenceImage:
    id: str
    lon: float
    lat: float

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "lon": self.lon, "lat": self.lat}


@dataclass(slots=True)
class SequenceSummary:
    """
    One candidate route found near a click.

    Attributes:
        sequence_id: remote sequence key.
        images: images of this sequence inside the search box, in response order.
        captured_at: earliest capture time seen for the sequence.
        min_distance: metres from the click to the closest image, used for ranking.
        color_index: palette slot; see resolver.spatial.sequence_color().
    """
    sequence_id: str
    images: List[SequenceImage]
    captured_at: Optional[datetime] = None
    min_distance: float = float("inf")
    color_index: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence_id": self.sequence_id,
            "images": [i.to_dict() for i in self.images],
            "captured_at": _iso(self.captured_at),
            "min_distance": self.min_distance,
            "color_index": self.color_index,
        }
