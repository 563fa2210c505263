from __future__ import annotations

"""
Mapillary Graph API adapter.

Usage:
    api = GraphApiClient()  # requires MAPILLARY_ACCESS_TOKEN in env or api_key=...
    records = await api.fetch_images_in_bbox(lon, lat, 0.0001)
    ids = await api.fetch_sequence_image_ids(sequence_id)
    by_id = await api.fetch_images_by_ids(ids, fields=("id", "geometry"))

Every call returns None (or an empty list for searches) on transport errors or
non-200 responses; failures are logged, never raised to the caller.
"""

import asyncio
import logging
import os
from typing import Any, Dict, Iterable, List, Optional

import requests


log = logging.getLogger(__name__)

DETAIL_FIELDS = ("id", "creator", "sequence", "captured_at", "is_pano", "geometry")
GEOCODE_URL = "https://geocode.arcgis.com/arcgis/rest/services/World/GeocodeServer/reverseGeocode"


class GraphApiClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = "https://graph.mapillary.com",
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        geocode_url: str = GEOCODE_URL,
    ):
        """
        Params:
            api_key: access token (falls back to env MAPILLARY_ACCESS_TOKEN)
            base_url: Graph API root
            session: optional requests.Session for connection reuse
        """
        self.api_key = api_key or os.getenv("MAPILLARY_ACCESS_TOKEN")
        if not self.api_key:
            raise ValueError(
                "Mapillary access token is required. "
                "Set MAPILLARY_ACCESS_TOKEN environment variable or pass api_key=..."
            )
        self.base_url = base_url.rstrip("/")
        self.geocode_url = geocode_url
        self.session = session or requests.Session()
        self.timeout = float(timeout)

    # ----------------------------
    # Transport
    # ----------------------------
    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"OAuth {self.api_key}"}

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None, auth: bool = True) -> Optional[Any]:
        try:
            r = self.session.get(url, params=params, headers=self.headers if auth else None, timeout=self.timeout)
            if r.status_code != 200:
                log.warning("Graph API request failed: %s %s", r.status_code, url)
                return None
            return r.json()
        except Exception as e:
            log.warning("Error calling %s: %s", url, e)
            return None

    # ----------------------------
    # Blocking API
    # ----------------------------
    def get_images_in_bbox(self, lon: float, lat: float, half_size_deg: float, limit: int = 100) -> List[Dict[str, Any]]:
        """Raw image records (id, geometry, sequence, captured_at) inside a square around (lon, lat)."""
        bbox = f"{lon - half_size_deg},{lat - half_size_deg},{lon + half_size_deg},{lat + half_size_deg}"
        data = self._get_json(
            f"{self.base_url}/images",
            params={"fields": "id,geometry,sequence,captured_at", "bbox": bbox, "limit": int(limit)},
        )
        if not data or not isinstance(data.get("data"), list):
            return []
        return data["data"]

    def get_sequence_image_ids(self, sequence_id: str) -> Optional[List[str]]:
        """Ordered image ids of a sequence (capture order as served)."""
        data = self._get_json(f"{self.base_url}/image_ids", params={"sequence_id": sequence_id})
        if not data or not isinstance(data.get("data"), list):
            return None
        return [str(d["id"]) for d in data["data"] if d.get("id") is not None]

    def get_images_by_ids(self, ids: Iterable[str], fields: Iterable[str] = ("id", "geometry")) -> Optional[Dict[str, Dict[str, Any]]]:
        """One batched lookup; the response is keyed by id and carries no ordering."""
        ids = [str(i) for i in ids]
        if not ids:
            return {}
        data = self._get_json(f"{self.base_url}/", params={"ids": ",".join(ids), "fields": ",".join(fields)})
        if not isinstance(data, dict):
            return None
        return {str(k): v for k, v in data.items() if isinstance(v, dict)}

    def get_image_sequence_id(self, image_id: str) -> Optional[str]:
        data = self._get_json(f"{self.base_url}/{image_id}", params={"fields": "id,sequence"})
        if not isinstance(data, dict):
            return None
        seq = data.get("sequence")
        if isinstance(seq, dict):  # some responses nest {"id": ...}
            seq = seq.get("id")
        return str(seq) if seq else None

    def get_reverse_geocode(self, lat: float, lon: float) -> Optional[str]:
        """
        Short address for the info box: second part of the geocoder LongLabel
        (falls back to the full label when there is only one part).
        """
        data = self._get_json(
            self.geocode_url,
            params={"location": f"{lon},{lat}", "distance": 100, "f": "json"},
            auth=False,
        )
        if not isinstance(data, dict):
            return None
        label = (data.get("address") or {}).get("LongLabel")
        if not label:
            return None
        parts = [p for p in label.split(", ") if p.strip()]
        return parts[1] if len(parts) > 1 else label

    # ----------------------------
    # Async wrappers (run off the event loop)
    # ----------------------------
    async def fetch_images_in_bbox(self, lon: float, lat: float, half_size_deg: float, limit: int = 100) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.get_images_in_bbox, lon, lat, half_size_deg, limit)

    async def fetch_sequence_image_ids(self, sequence_id: str) -> Optional[List[str]]:
        return await asyncio.to_thread(self.get_sequence_image_ids, sequence_id)

    async def fetch_images_by_ids(self, ids: Iterable[str], fields: Iterable[str] = ("id", "geometry")) -> Optional[Dict[str, Dict[str, Any]]]:
        return await asyncio.to_thread(self.get_images_by_ids, list(ids), tuple(fields))

    async def fetch_image_sequence_id(self, image_id: str) -> Optional[str]:
        return await asyncio.to_thread(self.get_image_sequence_id, image_id)

    async def fetch_reverse_geocode(self, lat: float, lon: float) -> Optional[str]:
        return await asyncio.to_thread(self.get_reverse_geocode, lat, lon)
