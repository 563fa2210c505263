from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from common.types import SequenceImage


log = logging.getLogger(__name__)


def _image_from_record(image_id: str, rec: Optional[Dict[str, Any]]) -> Optional[SequenceImage]:
    """Geometry record -> SequenceImage; None for missing or (0, 0) sentinel geometry."""
    if not rec:
        return None
    coords = (rec.get("geometry") or {}).get("coordinates")
    if not coords or len(coords) < 2:
        return None
    try:
        lon, lat = float(coords[0]), float(coords[1])
    except (TypeError, ValueError):
        return None
    if lon == 0.0 and lat == 0.0:
        return None
    return SequenceImage(id=image_id, lon=lon, lat=lat)


def assemble_in_order(ids: Sequence[str], by_id: Dict[str, Dict[str, Any]]) -> List[SequenceImage]:
    """Re-order an id-keyed batch response to the sequence's id order, dropping unusable images."""
    out: List[SequenceImage] = []
    for image_id in ids:
        img = _image_from_record(image_id, by_id.get(image_id))
        if img is not None:
            out.append(img)
    return out


class SequenceCoordinateCache:
    """
    Session-scoped sequence_id -> ordered image coordinates.

    Filled once per sequence; only clear() evicts. Concurrent misses for the
    same id share one remote resolution.
    """

    def __init__(self, api):
        self.api = api
        self._cache: Dict[str, List[SequenceImage]] = {}
        self._pending: Dict[str, asyncio.Future] = {}

    def __contains__(self, sequence_id: str) -> bool:
        return sequence_id in self._cache

    def __len__(self) -> int:
        return len(self._cache)

    def get(self, sequence_id: str) -> Optional[List[SequenceImage]]:
        imgs = self._cache.get(sequence_id)
        return list(imgs) if imgs is not None else None

    def put(self, sequence_id: str, images: Sequence[SequenceImage]) -> None:
        self._cache[sequence_id] = list(images)

    def clear(self) -> None:
        n = len(self._cache)
        self._cache.clear()
        log.info("Sequence cache cleared", extra={"extra": {"entries": n}})

    async def resolve_sequence_images(self, sequence_id: str) -> List[SequenceImage]:
        """
        Ordered images of a sequence: cache hit, else ids -> one batched geometry
        request -> re-assembled in id order. Empty results are not cached.
        """
        hit = self._cache.get(sequence_id)
        if hit is not None:
            return list(hit)

        pending = self._pending.get(sequence_id)
        if pending is not None:
            return list(await asyncio.shield(pending))

        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[sequence_id] = fut
        try:
            images = await self._resolve_remote(sequence_id)
            if images:
                self._cache[sequence_id] = images
            fut.set_result(images)
            return list(images)
        except Exception as e:
            log.exception("Sequence resolution failed for %s: %s", sequence_id, e)
            fut.set_result([])
            return []
        finally:
            if not fut.done():
                # first caller was cancelled; waiters get a miss, not its CancelledError
                fut.set_result([])
            self._pending.pop(sequence_id, None)

    async def _resolve_remote(self, sequence_id: str) -> List[SequenceImage]:
        ids = await self.api.fetch_sequence_image_ids(sequence_id)
        if not ids:
            return []
        by_id = await self.api.fetch_images_by_ids(ids, fields=("id", "geometry"))
        if not by_id:
            return []
        images = assemble_in_order(ids, by_id)
        log.info(
            "Resolved sequence",
            extra={"extra": {"sequence_id": sequence_id, "ids": len(ids), "images": len(images)}},
        )
        return images


class SessionStore:
    """
    One persisted entry: the last active sequence and its ordered coordinates.

    Mirrors browser-session storage with a JSON file; restore() hands back only
    the image list so the sequence stays unselected until the user clicks.
    """

    def __init__(self, path: str = "runtime/session_cache.json"):
        self.path = Path(path)

    def save(self, sequence_id: str, images: Sequence[SequenceImage]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            payload = {"sequenceId": sequence_id, "sequenceImages": [i.to_dict() for i in images]}
            self.path.write_text(json.dumps(payload))
        except OSError as e:
            log.warning("Failed to save session cache: %s", e)

    def restore(self) -> List[SequenceImage]:
        if not self.path.exists():
            return []
        try:
            parsed = json.loads(self.path.read_text())
            if not parsed.get("sequenceId") or not isinstance(parsed.get("sequenceImages"), list):
                return []
            return [
                SequenceImage(id=str(d["id"]), lon=float(d["lon"]), lat=float(d["lat"]))
                for d in parsed["sequenceImages"]
            ]
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            log.warning("Failed to restore session cache: %s", e)
            return []

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
