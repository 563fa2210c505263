from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from common.geo import haversine_m, haversine_many
from common.types import SequenceImage, SequenceSummary
from common.utils import parse_capture_time


LonLat = Tuple[float, float]

# Base route colours; every full cycle is darkened by 20 %
SEQUENCE_PALETTE = (
    (0, 0, 255),
    (255, 140, 0),
    (148, 0, 211),
    (0, 170, 170),
    (220, 20, 60),
    (34, 139, 34),
    (255, 0, 255),
    (139, 69, 19),
)
_DARKEN = 0.8


def distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle metres; every nearest-neighbour decision goes through this formula."""
    return haversine_m(lat1, lon1, lat2, lon2)


def _distances(point: LonLat, images: Sequence[SequenceImage]) -> np.ndarray:
    lon, lat = point
    return haversine_many(lat, lon, [i.lat for i in images], [i.lon for i in images])


def nearest_in_sequence(point: LonLat, images: Sequence[SequenceImage]) -> Optional[Tuple[SequenceImage, float]]:
    """Closest image to `point`; ties go to the first occurrence. None for no images."""
    if not images:
        return None
    d = _distances(point, images)
    k = int(np.argmin(d))  # argmin returns the first minimum
    return images[k], float(d[k])


def min_distance(point: LonLat, images: Sequence[SequenceImage]) -> float:
    hit = nearest_in_sequence(point, images)
    return float("inf") if hit is None else hit[1]


def rank_sequences_by_proximity(point: LonLat, candidates: Iterable[SequenceSummary]) -> List[SequenceSummary]:
    """Candidates sorted by their closest image to `point` (stable, ascending)."""
    return sorted(candidates, key=lambda s: min_distance(point, s.images))


def nearest_global_image(point: LonLat, sequences: Sequence[SequenceSummary]) -> Optional[Tuple[str, str, float]]:
    """
    (sequence_id, image_id, distance) of the single closest image across all
    candidates. A sequence's summary distance is not trusted here: every image
    of every candidate is scanned.
    """
    owners: List[str] = []
    flat: List[SequenceImage] = []
    for s in sequences:
        for img in s.images:
            owners.append(s.sequence_id)
            flat.append(img)
    if not flat:
        return None
    d = _distances(point, flat)
    k = int(np.argmin(d))
    return owners[k], flat[k].id, float(d[k])


def group_images_by_sequence(records: Iterable[Dict[str, Any]], point: LonLat) -> List[SequenceSummary]:
    """
    Group bbox search records by sequence (first-seen order). Records without a
    sequence or geometry are skipped. Keeps the earliest capture time per sequence.
    """
    grouped: Dict[str, SequenceSummary] = {}
    for rec in records:
        seq_id = rec.get("sequence")
        if isinstance(seq_id, dict):
            seq_id = seq_id.get("id")
        coords = (rec.get("geometry") or {}).get("coordinates")
        if not seq_id or not coords or rec.get("id") is None:
            continue
        seq_id = str(seq_id)
        captured = parse_capture_time(rec.get("captured_at"))
        summary = grouped.get(seq_id)
        if summary is None:
            summary = SequenceSummary(sequence_id=seq_id, images=[], captured_at=captured, color_index=len(grouped))
            grouped[seq_id] = summary
        summary.images.append(SequenceImage(id=str(rec["id"]), lon=float(coords[0]), lat=float(coords[1])))
        if captured is not None and (summary.captured_at is None or captured < summary.captured_at):
            summary.captured_at = captured

    for s in grouped.values():
        s.min_distance = min_distance(point, s.images)
    return list(grouped.values())


def sequence_color(color_index: int) -> str:
    """Hex colour for a palette slot; repeats darken so repeated sequences stay distinct."""
    base = SEQUENCE_PALETTE[color_index % len(SEQUENCE_PALETTE)]
    factor = _DARKEN ** (color_index // len(SEQUENCE_PALETTE))
    r, g, b = (int(round(c * factor)) for c in base)
    return f"#{r:02x}{g:02x}{b:02x}"


def sequence_label(summary: SequenceSummary) -> str:
    """Picker label, e.g. 'abc... (4 nearby) - Mar 2023'."""
    date = summary.captured_at.strftime("%b %Y") if summary.captured_at else "Unknown date"
    return f"{summary.sequence_id[:3]}... ({len(summary.images)} nearby) - {date}"
