from __future__ import annotations

"""
Vector-tile source adapter (coverage, traffic signs, map objects).

Usage:
    client = VectorTileClient(url_template)  # requires MAPILLARY_ACCESS_TOKEN in env or api_key=...
    feats = await client.fetch_layer_features(tiles, "image", bbox=bbox)

Individual tile failures are logged and skipped; a query over tiles that all
fail yields an empty list ("no coverage here"), never an exception.
"""

import asyncio
import logging
import os
from typing import List, Optional, Sequence
from urllib.parse import urlencode

import requests

from common.types import RawFeature, TileIndex
from tiles.decode import decode_layer, fold_features


log = logging.getLogger(__name__)


class VectorTileClient:
    def __init__(
        self,
        url_template: str,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
    ):
        """
        Params:
            url_template: tile URL with {z}, {x}, {y} placeholders
            api_key: access token (falls back to env MAPILLARY_ACCESS_TOKEN)
            session: optional requests.Session for connection reuse
            timeout: per-tile request timeout (s)
        """
        self.api_key = api_key or os.getenv("MAPILLARY_ACCESS_TOKEN")
        if not self.api_key:
            raise ValueError(
                "Mapillary access token is required. "
                "Set MAPILLARY_ACCESS_TOKEN environment variable or pass api_key=..."
            )
        for key in ("{z}", "{x}", "{y}"):
            if key not in url_template:
                raise ValueError(f"url_template must contain {key}")
        self.url_template = url_template
        self.session = session or requests.Session()
        self.timeout = float(timeout)

    # ----------------------------
    # Public API
    # ----------------------------
    def build_url(self, tile: TileIndex) -> str:
        """Fully-qualified tile URL (no request performed)."""
        base = self.url_template.format(z=tile.z, x=tile.x, y=tile.y)
        sep = "&" if "?" in base else "?"
        return f"{base}{sep}{urlencode({'access_token': self.api_key})}"

    def get_tile(self, tile: TileIndex) -> Optional[bytes]:
        """Blocking fetch of one tile's bytes; None on network error or non-200."""
        try:
            r = self.session.get(self.build_url(tile), timeout=self.timeout)
            if r.status_code != 200 or not r.content:
                log.warning("Tile request failed: %s %s", r.status_code, tile.zxy)
                return None
            return r.content
        except Exception as e:
            log.warning("Error fetching tile %s: %s", tile.zxy, e)
            return None

    async def fetch_tile(self, tile: TileIndex) -> Optional[bytes]:
        return await asyncio.to_thread(self.get_tile, tile)

    async def fetch_layer_features(
        self,
        tiles: Sequence[TileIndex],
        layer: str,
        bbox: Optional[Sequence[float]] = None,
        token=None,
    ) -> List[RawFeature]:
        """
        Fetch every tile concurrently, decode `layer`, drop features outside `bbox`
        and de-duplicate by id in tile enumeration order.

        `token` is any object with a `cancelled` attribute; a cancelled token
        short-circuits before decoding.
        """
        tiles = list(tiles)
        if not tiles:
            return []
        payloads = await asyncio.gather(*(self.fetch_tile(t) for t in tiles))
        if token is not None and token.cancelled:
            return []

        per_tile = [decode_layer(p, layer, t) for t, p in zip(tiles, payloads) if p]
        feats = fold_features(per_tile, bbox)
        log.debug(
            "Decoded layer",
            extra={"extra": {"layer": layer, "tiles": len(tiles), "ok": len(per_tile), "features": len(feats)}},
        )
        return feats
