from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from common.types import PointFeature, RawFeature
from common.utils import parse_capture_time
from coverage_layers.filters import CoverageFilter, CoverageFilterPipeline, CoverageResult
from coverage_layers.session import CoverageKind, ViewState
from tiles.fetch import VectorTileClient
from tiles.mapper import tiles_covering_bbox


log = logging.getLogger(__name__)

# Coverage tiles are served up to z14; deeper map zooms reuse z14 tiles
DEFAULT_TILE_ZOOM = 14


class TurboCoverageLoader:
    """Imagery points for the current view: decode the image layer, then filter."""

    def __init__(
        self,
        tiles: VectorTileClient,
        pipeline: CoverageFilterPipeline,
        layer: str = "image",
        tile_zoom: int = DEFAULT_TILE_ZOOM,
        filters: Optional[CoverageFilter] = None,
    ):
        self.tiles = tiles
        self.pipeline = pipeline
        self.layer = layer
        self.tile_zoom = int(tile_zoom)
        self.filters = filters or CoverageFilter()

    async def __call__(self, view: ViewState, token=None) -> CoverageResult:
        tiles = tiles_covering_bbox(view.bbox, self.tile_zoom)
        raw = await self.tiles.fetch_layer_features(tiles, self.layer, bbox=view.bbox, token=token)
        if token is not None and token.cancelled:
            return CoverageResult()
        return await self.pipeline.run(raw, self.filters, token=token)


def point_feature(raw: RawFeature) -> PointFeature:
    p = raw.properties
    value = p.get("value")
    return PointFeature(
        id=raw.id,
        lon=raw.lon,
        lat=raw.lat,
        value=None if value is None else str(value),
        first_seen_at=parse_capture_time(p.get("first_seen_at")),
        last_seen_at=parse_capture_time(p.get("last_seen_at")),
    )


class PointFeatureLoader:
    """Traffic signs or map objects: decoded points, no enrichment."""

    def __init__(self, tiles: VectorTileClient, layer: str, tile_zoom: int = DEFAULT_TILE_ZOOM):
        self.tiles = tiles
        self.layer = layer
        self.tile_zoom = int(tile_zoom)

    async def __call__(self, view: ViewState, token=None) -> CoverageResult:
        tiles = tiles_covering_bbox(view.bbox, self.tile_zoom)
        raw = await self.tiles.fetch_layer_features(tiles, self.layer, bbox=view.bbox, token=token)
        feats = [point_feature(r) for r in raw]
        return CoverageResult(features=feats, popups_enabled=bool(feats))


def loaders_from_config(P: Dict[str, Any], api, access_token: str, session=None) -> Dict[CoverageKind, Any]:
    """One loader per coverage kind from the `mapillary.tiles` and `coverage` sections."""
    tiles_cfg = P.get("mapillary", {}).get("tiles", {})
    cov = P.get("coverage", {})
    timeout = float(P.get("http", {}).get("timeout_s", 10.0))

    def _client(kind: CoverageKind) -> VectorTileClient:
        return VectorTileClient(tiles_cfg[kind.value]["url"], api_key=access_token, session=session, timeout=timeout)

    turbo = tiles_cfg.get("turbo", {})
    loaders: Dict[CoverageKind, Any] = {
        CoverageKind.TURBO: TurboCoverageLoader(
            _client(CoverageKind.TURBO),
            CoverageFilterPipeline(api, batch_size=int(cov.get("batch_size", 50))),
            layer=turbo.get("layer", "image"),
            tile_zoom=int(turbo.get("zoom", DEFAULT_TILE_ZOOM)),
            filters=CoverageFilter.from_config(cov.get("filters")),
        ),
    }
    for kind in (CoverageKind.SIGNS, CoverageKind.OBJECTS):
        c = tiles_cfg.get(kind.value)
        if not c:
            continue
        loaders[kind] = PointFeatureLoader(_client(kind), layer=c["layer"], tile_zoom=int(c.get("zoom", DEFAULT_TILE_ZOOM)))
    return loaders
