from __future__ import annotations

"""
Click resolution.

The host map hit-tests a click and reports what was struck; the dispatcher
picks the highest-priority hit and runs exactly one handler:

    SEQUENCE_OVERLAY  route already drawn -> nearest image of that sequence
    FEATURE_POPUP     sign/object point   -> host popup, nothing else
    COVERAGE_POINT    turbo point         -> its sequence, at that image
    BACKGROUND        empty map           -> turbo: rejected; default: proximity search

A click within `reselect_tolerance_m` of the active image is a no-op.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from common.geo import initial_bearing_deg
from common.types import SequenceImage, SequenceSummary
from coverage_layers.session import CoverageSession, Notifier
from graph_api.sequence_cache import SequenceCoordinateCache, SessionStore
from resolver.spatial import (
    distance,
    group_images_by_sequence,
    nearest_global_image,
    nearest_in_sequence,
    rank_sequences_by_proximity,
)


log = logging.getLogger(__name__)

LonLat = Tuple[float, float]
Viewer = Callable[[str, str, List[SequenceImage]], None]

NO_IMAGERY_MSG = "No nearby imagery found at this location."
TURBO_MISS_MSG = "Turbo mode: click directly on a coverage point to open imagery."


class HitKind(IntEnum):
    """Closed set of hit-test outcomes; lower value wins."""
    SEQUENCE_OVERLAY = 0
    FEATURE_POPUP = 1
    COVERAGE_POINT = 2
    BACKGROUND = 3


@dataclass(frozen=True)
class Hit:
    kind: HitKind
    sequence_id: Optional[str] = None
    feature_id: Optional[str] = None
    layer: Optional[str] = None


class Action(str, Enum):
    OPEN = "open"
    RESELECT = "reselect"
    POPUP = "popup"
    REJECTED = "rejected"
    NO_IMAGERY = "no_imagery"


@dataclass
class ClickOutcome:
    action: Action
    sequence_id: Optional[str] = None
    image_id: Optional[str] = None
    images: List[SequenceImage] = field(default_factory=list)
    distance_m: Optional[float] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "sequence_id": self.sequence_id,
            "image_id": self.image_id,
            "images": [i.to_dict() for i in self.images],
            "distance_m": self.distance_m,
            "message": self.message,
        }


def top_hit(hits: Iterable[Hit]) -> Hit:
    hits = list(hits)
    return min(hits, key=lambda h: h.kind) if hits else Hit(HitKind.BACKGROUND)


class ClickDispatcher:
    def __init__(
        self,
        api,
        cache: SequenceCoordinateCache,
        turbo: Optional[CoverageSession] = None,
        viewer: Optional[Viewer] = None,
        notifier: Optional[Notifier] = None,
        store: Optional[SessionStore] = None,
        search_bbox_deg: float = 0.0001,
        reselect_tolerance_m: float = 0.5,
    ):
        self.api = api
        self.cache = cache
        self.turbo = turbo
        self.viewer = viewer
        self.notifier = notifier or Notifier()
        self.store = store
        self.search_bbox_deg = float(search_bbox_deg)
        # near-exact match guard; tunable, correctness does not depend on it
        self.reselect_tolerance_m = float(reselect_tolerance_m)

        self.active_sequence_id: Optional[str] = None
        self.active_image: Optional[SequenceImage] = None
        self.active_images: List[SequenceImage] = []
        self.last_click: Optional[LonLat] = None
        self.candidates: List[SequenceSummary] = []

        self._handlers = {
            HitKind.SEQUENCE_OVERLAY: self._on_sequence_overlay,
            HitKind.FEATURE_POPUP: self._on_feature_popup,
            HitKind.COVERAGE_POINT: self._on_coverage_point,
            HitKind.BACKGROUND: self._on_background,
        }

    @property
    def turbo_mode(self) -> bool:
        return self.turbo is not None and self.turbo.active

    # ----------------------------
    # Public API
    # ----------------------------
    async def dispatch(self, lon: float, lat: float, hits: Sequence[Hit] = ()) -> ClickOutcome:
        point = (float(lon), float(lat))
        hit = top_hit(hits)
        try:
            if hit.kind != HitKind.FEATURE_POPUP and self._is_reselect(point):
                return ClickOutcome(
                    Action.RESELECT,
                    sequence_id=self.active_sequence_id,
                    image_id=self.active_image.id,
                    images=list(self.active_images),
                )
            self.last_click = point
            return await self._handlers[hit.kind](point, hit)
        except Exception as e:
            log.exception("Click resolution failed: %s", e)
            return self._no_imagery()

    async def select_sequence(self, sequence_id: str) -> ClickOutcome:
        """Switch to another candidate sequence, at its image nearest to the last click."""
        try:
            images = await self.cache.resolve_sequence_images(sequence_id)
            if not images:
                return self._no_imagery()
            if self.last_click is None:
                return self._open(sequence_id, images[0].id, images)
            img, d = nearest_in_sequence(self.last_click, images)
            return self._open(sequence_id, img.id, images, d)
        except Exception as e:
            log.exception("Sequence switch failed: %s", e)
            return self._no_imagery()

    def set_active_image(self, image_id: str) -> None:
        """Viewer moved inside the active sequence."""
        if self.active_sequence_id is None:
            return
        for img in self.active_images:
            if img.id == image_id:
                self.active_image = img
                return

    def restore_route(self, images: Sequence[SequenceImage]) -> None:
        """Route markers from the previous session; the sequence stays unselected until a click."""
        self.active_sequence_id = None
        self.active_image = None
        self.active_images = list(images)

    def active_heading(self) -> Optional[float]:
        """Travel direction at the active image: towards the next image, else away from the previous one."""
        img = self.active_image
        if img is None or len(self.active_images) < 2:
            return None
        k = self.active_images.index(img)
        if k + 1 < len(self.active_images):
            nxt = self.active_images[k + 1]
            return initial_bearing_deg(img.lat, img.lon, nxt.lat, nxt.lon)
        prev = self.active_images[k - 1]
        return initial_bearing_deg(prev.lat, prev.lon, img.lat, img.lon)

    def reset(self) -> None:
        self.active_sequence_id = None
        self.active_image = None
        self.active_images = []
        self.last_click = None
        self.candidates = []

    # ----------------------------
    # Handlers
    # ----------------------------
    async def _on_sequence_overlay(self, point: LonLat, hit: Hit) -> ClickOutcome:
        seq_id = hit.sequence_id or self.active_sequence_id
        if not seq_id:
            return await self._on_background(point, hit)
        images = await self.cache.resolve_sequence_images(seq_id)
        nearest = nearest_in_sequence(point, images)
        if nearest is None:
            return self._no_imagery()
        img, d = nearest
        return self._open(seq_id, img.id, images, d)

    async def _on_feature_popup(self, point: LonLat, hit: Hit) -> ClickOutcome:
        return ClickOutcome(Action.POPUP)

    async def _on_coverage_point(self, point: LonLat, hit: Hit) -> ClickOutcome:
        if not self.turbo_mode:
            return await self._on_background(point, hit)
        feature = self.turbo.feature(hit.feature_id) if hit.feature_id else None
        if feature is None:
            return self._reject()

        seq_id = feature.sequence_id or hit.sequence_id
        if not seq_id:
            seq_id = await self.api.fetch_image_sequence_id(feature.id)
            if not seq_id:
                return self._no_imagery()
        feature.sequence_id = seq_id

        images = await self.cache.resolve_sequence_images(seq_id)
        if not images:
            return self._no_imagery()
        for img in images:
            if img.id == feature.id:
                return self._open(seq_id, img.id, images, distance(point[1], point[0], img.lat, img.lon))
        img, d = nearest_in_sequence((feature.lon, feature.lat), images)
        return self._open(seq_id, img.id, images, d)

    async def _on_background(self, point: LonLat, hit: Hit) -> ClickOutcome:
        if self.turbo_mode:
            return self._reject()

        lon, lat = point
        records = await self.api.fetch_images_in_bbox(lon, lat, self.search_bbox_deg)
        candidates = group_images_by_sequence(records, point)
        if not candidates:
            return self._no_imagery()

        self.candidates = rank_sequences_by_proximity(point, candidates)
        loaded = await asyncio.gather(
            *(self.cache.resolve_sequence_images(s.sequence_id) for s in self.candidates)
        )
        # whole routes where they resolved, the search hits otherwise
        routes = [replace(s, images=imgs or s.images) for s, imgs in zip(self.candidates, loaded)]
        seq_id, image_id, d = nearest_global_image(point, routes)
        images = next(s.images for s in routes if s.sequence_id == seq_id)
        log.info(
            "Resolved click",
            extra={"extra": {"candidates": len(self.candidates), "sequence_id": seq_id, "distance_m": round(d, 2)}},
        )
        return self._open(seq_id, image_id, images, d)

    # ----------------------------
    # Internals
    # ----------------------------
    def _is_reselect(self, point: LonLat) -> bool:
        if self.active_image is None:
            return False
        d = distance(point[1], point[0], self.active_image.lat, self.active_image.lon)
        return d <= self.reselect_tolerance_m

    def _open(
        self,
        sequence_id: str,
        image_id: str,
        images: List[SequenceImage],
        d: Optional[float] = None,
    ) -> ClickOutcome:
        self.active_sequence_id = sequence_id
        self.active_images = list(images)
        self.active_image = next((i for i in images if i.id == image_id), None)
        if self.store is not None:
            self.store.save(sequence_id, images)
        if self.viewer is not None:
            self.viewer(sequence_id, image_id, list(images))
        return ClickOutcome(Action.OPEN, sequence_id=sequence_id, image_id=image_id, images=list(images), distance_m=d)

    def _no_imagery(self) -> ClickOutcome:
        self.notifier.info(NO_IMAGERY_MSG)
        return ClickOutcome(Action.NO_IMAGERY, message=NO_IMAGERY_MSG)

    def _reject(self) -> ClickOutcome:
        self.notifier.info(TURBO_MISS_MSG)
        return ClickOutcome(Action.REJECTED, message=TURBO_MISS_MSG)
