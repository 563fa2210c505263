from __future__ import annotations

"""
Coverage filter pipeline.

Two speeds:
  - fast path: no filter and no colour-by-date -> one bare point per decoded
    feature (id/lon/lat), no remote calls;
  - detail path: ids are enriched in fixed-size batches (creator, sequence,
    capture time, panorama flag, geometry) and the predicates are applied.

Colour-by-date buckets passing features by capture year and derives a legend
plus a unique-value renderer description for the rendering side.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from common.types import CoverageFeature, RawFeature
from common.utils import batched, day_end, day_start, parse_capture_time
from graph_api.client import DETAIL_FIELDS


log = logging.getLogger(__name__)

YEAR_UNKNOWN = "unknown"
UNKNOWN_COLOR = "#9e9e9e"
# Oldest -> newest
YEAR_PALETTE = (
    "#440154", "#482878", "#3e4989", "#31688e", "#26828e",
    "#1f9e89", "#35b779", "#6ece58", "#b5de2b", "#fde725",
)

LegendEntry = Tuple[str, str]  # (year, hex colour)


@dataclass(frozen=True)
class CoverageFilter:
    """
    User filter settings for the coverage layer.

    creator: username, trimmed, case-sensitive; "" disables the predicate.
    start_date / end_date: YYYY-MM-DD, inclusive.
    is_pano: None (no filter) | True | False.
    color_by_date: bucket features by capture year.
    """
    creator: str = ""
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    is_pano: Optional[bool] = None
    color_by_date: bool = False

    def __post_init__(self):
        for name in ("start_date", "end_date"):
            value = getattr(self, name)
            try:
                day_start(value)
            except (TypeError, ValueError):
                raise ValueError(f"{name} must be YYYY-MM-DD, got {value!r}") from None

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]]) -> "CoverageFilter":
        cfg = cfg or {}
        pano = cfg.get("is_pano")
        return cls(
            creator=str(cfg.get("creator") or ""),
            start_date=cfg.get("start_date") or None,
            end_date=cfg.get("end_date") or None,
            is_pano=None if pano is None else bool(pano),
            color_by_date=bool(cfg.get("color_by_date", False)),
        )

    @property
    def creator_name(self) -> str:
        return (self.creator or "").strip()

    @property
    def has_date_range(self) -> bool:
        return bool(self.start_date) or bool(self.end_date)

    @property
    def bounds(self) -> Tuple[Optional[datetime], Optional[datetime]]:
        """Inclusive UTC bounds: start of the start day, last millisecond of the end day."""
        return day_start(self.start_date), day_end(self.end_date)

    @property
    def needs_detail(self) -> bool:
        return (
            self.color_by_date
            or bool(self.creator_name)
            or self.has_date_range
            or self.is_pano is not None
        )

    @property
    def popups_worthwhile(self) -> bool:
        """False when only panorama and/or colour-by-date drive the detail path."""
        if not self.needs_detail:
            return True
        return bool(self.creator_name) or self.has_date_range


@dataclass
class CoverageResult:
    features: List[Any] = field(default_factory=list)
    legend: List[LegendEntry] = field(default_factory=list)
    detail_mode: bool = False
    popups_enabled: bool = False
    renderer: Optional[Dict[str, Any]] = None

    @property
    def is_empty(self) -> bool:
        return not self.features

    def to_dict(self) -> Dict[str, Any]:
        return {
            "features": [f.to_dict() for f in self.features],
            "legend": [{"year": y, "color": c} for y, c in self.legend],
            "detail_mode": self.detail_mode,
            "popups_enabled": self.popups_enabled,
            "renderer": self.renderer,
        }


# ----------------------------
# Pure helpers
# ----------------------------
def fast_features(raw: Iterable[RawFeature]) -> List[CoverageFeature]:
    return [CoverageFeature(id=f.id, lon=f.lon, lat=f.lat) for f in raw]


def feature_from_detail(image_id: str, rec: Optional[Dict[str, Any]]) -> Optional[CoverageFeature]:
    """Detail record -> CoverageFeature; None when the record or its geometry is missing."""
    if not rec:
        return None
    coords = (rec.get("geometry") or {}).get("coordinates")
    if not coords or len(coords) < 2:
        return None
    creator = rec.get("creator")
    username = creator.get("username") if isinstance(creator, dict) else None
    seq = rec.get("sequence")
    if isinstance(seq, dict):
        seq = seq.get("id")
    pano = rec.get("is_pano")
    return CoverageFeature(
        id=image_id,
        lon=float(coords[0]),
        lat=float(coords[1]),
        creator_username=username,
        sequence_id=str(seq) if seq else None,
        captured_at=parse_capture_time(rec.get("captured_at")),
        is_pano=None if pano is None else bool(pano),
    )


def matches(feature: CoverageFeature, flt: CoverageFilter) -> bool:
    creator = flt.creator_name
    if creator and feature.creator_username != creator:
        return False
    if feature.captured_at is not None:
        start, end = flt.bounds
        if start is not None and feature.captured_at < start:
            return False
        if end is not None and feature.captured_at > end:
            return False
    if flt.is_pano is not None and feature.is_pano != flt.is_pano:
        return False
    return True


def year_category(ts: Optional[datetime]) -> str:
    return str(ts.year) if ts is not None else YEAR_UNKNOWN


def build_legend(years: Iterable[str]) -> List[LegendEntry]:
    ordered = sorted({y for y in years if y != YEAR_UNKNOWN})
    return [(y, YEAR_PALETTE[i % len(YEAR_PALETTE)]) for i, y in enumerate(ordered)]


def categorical_renderer(legend: Sequence[LegendEntry]) -> Dict[str, Any]:
    return {
        "type": "unique-value",
        "field": "year_category",
        "uniqueValueInfos": [{"value": y, "label": y, "color": c} for y, c in legend],
        "defaultColor": UNKNOWN_COLOR,
    }


def apply_filters(
    raw: Sequence[RawFeature],
    details: Dict[str, Dict[str, Any]],
    flt: CoverageFilter,
) -> CoverageResult:
    """
    Detail-path filtering over already fetched records. Pure: neither `raw`
    nor `details` is modified, so repeated calls give equal results.
    """
    out: List[CoverageFeature] = []
    years: List[str] = []
    for f in raw:
        feat = feature_from_detail(f.id, details.get(f.id))
        if feat is None or not matches(feat, flt):
            continue
        if flt.color_by_date:
            feat.year_category = year_category(feat.captured_at)
            years.append(feat.year_category)
        out.append(feat)

    legend = build_legend(years) if flt.color_by_date and out else []
    return CoverageResult(
        features=out,
        legend=legend,
        detail_mode=True,
        popups_enabled=bool(out) and flt.popups_worthwhile,
        renderer=categorical_renderer(legend) if flt.color_by_date and out else None,
    )


# ----------------------------
# Pipeline
# ----------------------------
class CoverageFilterPipeline:
    def __init__(self, api, batch_size: int = 50):
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self.api = api
        self.batch_size = int(batch_size)

    async def fetch_details(self, ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """Per-id detail records; batches run concurrently and a failed batch is skipped."""
        batches = list(batched(list(ids), self.batch_size))
        if not batches:
            return {}
        results = await asyncio.gather(
            *(self.api.fetch_images_by_ids(b, fields=DETAIL_FIELDS) for b in batches),
            return_exceptions=True,
        )
        details: Dict[str, Dict[str, Any]] = {}
        failed = 0
        for res in results:
            if isinstance(res, BaseException) or res is None:
                failed += 1
                continue
            details.update(res)
        if failed:
            log.warning("Skipped %d/%d detail batches", failed, len(batches))
        return details

    async def run(self, raw: Sequence[RawFeature], flt: CoverageFilter, token=None) -> CoverageResult:
        if not flt.needs_detail:
            feats = fast_features(raw)
            return CoverageResult(features=feats, detail_mode=False, popups_enabled=bool(feats))

        details = await self.fetch_details([f.id for f in raw])
        if token is not None and token.cancelled:
            return CoverageResult(detail_mode=True)
        result = apply_filters(raw, details, flt)
        log.info(
            "Coverage filtered",
            extra={"extra": {"raw": len(raw), "kept": len(result.features), "years": len(result.legend)}},
        )
        return result
