from __future__ import annotations

import argparse
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple

import uvicorn
from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from common.config import access_token, load_config
from common.geo import anchored_center, cone_for_step, view_cone
from common.logging_setup import get_logger, setup_logging
from coverage_layers.filters import CoverageFilter
from coverage_layers.loaders import loaders_from_config
from coverage_layers.scheduler import RefreshScheduler
from coverage_layers.session import CoverageKind, CoverageSession, ViewState, sessions_for
from graph_api.client import GEOCODE_URL, GraphApiClient
from graph_api.sequence_cache import SequenceCoordinateCache, SessionStore
from resolver.dispatch import ClickDispatcher, Hit, HitKind
from resolver.spatial import sequence_color, sequence_label


log = logging.getLogger(__name__)


@dataclass
class Engine:
    """Everything one map session shares: API client, caches, per-kind sessions, dispatcher."""
    P: Dict[str, Any]
    api: Any
    cache: SequenceCoordinateCache
    store: SessionStore
    sessions: Dict[CoverageKind, CoverageSession]
    schedulers: Dict[CoverageKind, RefreshScheduler]
    dispatcher: ClickDispatcher


def build_engine(
    P: Optional[Dict[str, Any]] = None,
    api: Any = None,
    loaders: Optional[Dict[CoverageKind, Any]] = None,
    store: Optional[SessionStore] = None,
) -> Engine:
    P = P or load_config()
    token = access_token(P) if api is None or loaders is None else None
    mly = P.get("mapillary", {})
    timeout = float(P.get("http", {}).get("timeout_s", 10.0))

    if api is None:
        api = GraphApiClient(
            api_key=token,
            base_url=mly.get("graph_url", "https://graph.mapillary.com"),
            timeout=timeout,
            geocode_url=mly.get("geocode_url") or GEOCODE_URL,
        )
    if loaders is None:
        loaders = loaders_from_config(P, api, token)

    cov = P.get("coverage", {})
    sessions = sessions_for(list(loaders))
    schedulers = {
        kind: RefreshScheduler(
            sessions[kind],
            loader,
            min_zoom=float(cov.get("min_zoom", 16)),
            debounce_s=float(cov.get("debounce_s", 0.6)),
        )
        for kind, loader in loaders.items()
    }

    cache = SequenceCoordinateCache(api)
    store = store or SessionStore(P.get("session", {}).get("cache_path", "runtime/session_cache.json"))
    click = P.get("click", {})
    dispatcher = ClickDispatcher(
        api,
        cache,
        turbo=sessions.get(CoverageKind.TURBO),
        store=store,
        search_bbox_deg=float(click.get("search_bbox_deg", 0.0001)),
        reselect_tolerance_m=float(click.get("reselect_tolerance_m", 0.5)),
    )
    return Engine(P, api, cache, store, sessions, schedulers, dispatcher)


def _parse_bbox(bbox: str) -> Tuple[float, float, float, float]:
    try:
        w, s, e, n = [float(v) for v in bbox.split(",")]
    except ValueError:
        raise HTTPException(status_code=422, detail="bbox must be 'west,south,east,north'")
    return w, s, e, n


def _parse_hit(raw: str) -> Hit:
    """'<kind>' or '<kind>:<id>', kind one of sequence_overlay|feature_popup|coverage_point|background."""
    name, _, ident = raw.partition(":")
    try:
        kind = HitKind[name.strip().upper()]
    except KeyError:
        raise HTTPException(status_code=422, detail=f"unknown hit kind: {name}")
    ident = ident.strip() or None
    if kind == HitKind.SEQUENCE_OVERLAY:
        return Hit(kind, sequence_id=ident)
    return Hit(kind, feature_id=ident)


def _kind_or_404(engine: Engine, kind: str) -> CoverageKind:
    try:
        k = CoverageKind(kind)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"unknown coverage kind: {kind}")
    if k not in engine.schedulers:
        raise HTTPException(status_code=404, detail=f"coverage kind not configured: {kind}")
    return k


def _layer_payload(sched: RefreshScheduler) -> Dict[str, Any]:
    s = sched.session
    return {
        "kind": s.kind.value,
        "state": s.state.value,
        "warning": s.warning,
        "min_zoom": sched.min_zoom,
        "features": [f.to_dict() for f in s.rendered.values()],
        "legend": [{"year": y, "color": c} for y, c in s.legend],
        "popups_enabled": s.popups_enabled,
    }


def create_app(engine: Optional[Engine] = None) -> FastAPI:
    engine = engine or build_engine()
    restored = engine.store.restore()
    engine.dispatcher.restore_route(restored)
    if restored:
        log.info("Restored previous sequence", extra={"extra": {"images": len(restored)}})

    app = FastAPI(title="Street Imagery Coverage API", version="1.0.0")
    app.state.engine = engine

    # (Optional) CORS for local map front-ends
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        d = engine.dispatcher
        return {
            "status": "ok",
            "sequence_cache": {"entries": len(engine.cache)},
            "layers": {k.value: s.state.value for k, s in engine.sessions.items()},
            "active": {
                "sequence_id": d.active_sequence_id,
                "image_id": d.active_image.id if d.active_image else None,
            },
            "restored_images": len(restored),
        }

    @app.get("/session")
    def session():
        """Route currently drawn: the opened sequence, or markers restored from the last session."""
        d = engine.dispatcher
        return {
            "sequence_id": d.active_sequence_id,
            "image_id": d.active_image.id if d.active_image else None,
            "images": [i.to_dict() for i in d.active_images],
        }

    @app.get("/coverage/{kind}")
    async def coverage(kind: str, bbox: str = Query(...), zoom: float = Query(...)):
        """Load one coverage kind for the view. Below the zoom threshold nothing is fetched."""
        sched = engine.schedulers[_kind_or_404(engine, kind)]
        view = ViewState(bbox=_parse_bbox(bbox), zoom=zoom)
        applied = await sched.load(view)
        return {**_layer_payload(sched), "applied": applied}

    @app.delete("/coverage/{kind}")
    def coverage_off(kind: str):
        sched = engine.schedulers[_kind_or_404(engine, kind)]
        sched.disable()
        return _layer_payload(sched)

    @app.put("/coverage/{kind}/filters")
    async def coverage_filters(kind: str, filters: Dict[str, Any] = Body(...)):
        """Replace the layer's filter settings and reload the current view when the layer is on."""
        sched = engine.schedulers[_kind_or_404(engine, kind)]
        if not hasattr(sched.loader, "filters"):
            raise HTTPException(status_code=404, detail=f"{kind} coverage has no filters")
        try:
            sched.loader.filters = CoverageFilter.from_config(filters)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        log.info("Coverage filters changed", extra={"extra": {"kind": kind, **asdict(sched.loader.filters)}})

        applied = False
        if sched.session.active and sched.view is not None:
            applied = await sched.load(sched.view)
        return {**_layer_payload(sched), "filters": asdict(sched.loader.filters), "applied": applied}

    @app.get("/click")
    async def click(lon: float = Query(...), lat: float = Query(...), hit: Optional[List[str]] = Query(None)):
        hits = [_parse_hit(h) for h in (hit or [])]
        outcome = await engine.dispatcher.dispatch(lon, lat, hits)
        payload = outcome.to_dict()
        payload["candidates"] = [
            {**c.to_dict(), "label": sequence_label(c), "color": sequence_color(c.color_index)}
            for c in engine.dispatcher.candidates
        ]
        return payload

    @app.post("/sequences/{sequence_id}/select")
    async def select(sequence_id: str):
        outcome = await engine.dispatcher.select_sequence(sequence_id)
        return outcome.to_dict()

    @app.post("/active/{image_id}")
    def active_image(image_id: str):
        """Viewer moved to another image of the open sequence."""
        d = engine.dispatcher
        d.set_active_image(image_id)
        if d.active_image is None or d.active_image.id != image_id:
            raise HTTPException(status_code=404, detail="image not in active sequence")
        return {"sequence_id": d.active_sequence_id, "image_id": image_id}

    @app.get("/active/view")
    def active_view(
        bearing: Optional[float] = Query(None),
        step: int = Query(0),
        width_deg: float = Query(0.0),
        height_deg: float = Query(0.0),
        position: str = Query("center"),
    ):
        """
        View cone of the active image and the map centre that keeps it at `position`.
        Without `bearing` the travel direction along the sequence is used.
        """
        d = engine.dispatcher
        img = d.active_image
        if img is None:
            raise HTTPException(status_code=404, detail="no active image")
        try:
            center = anchored_center(img.lon, img.lat, width_deg, height_deg, position)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        heading = bearing if bearing is not None else d.active_heading()
        length_m, spread_deg = cone_for_step(step)
        return {
            "image": img.to_dict(),
            "bearing": heading,
            "cone": view_cone(img.lon, img.lat, heading, length_m, spread_deg) if heading is not None else None,
            "center": center,
        }

    @app.get("/sequences/{sequence_id}/images")
    async def sequence_images(sequence_id: str):
        images = await engine.cache.resolve_sequence_images(sequence_id)
        if not images:
            return JSONResponse({"error": "sequence_not_found", "sequence_id": sequence_id}, status_code=404)
        return {"sequence_id": sequence_id, "images": [i.to_dict() for i in images]}

    @app.get("/geocode")
    async def geocode(lat: float = Query(...), lon: float = Query(...)):
        address = await engine.api.fetch_reverse_geocode(lat, lon)
        return {"lat": lat, "lon": lon, "address": address}

    @app.delete("/cache")
    def clear_cache():
        n = len(engine.cache)
        engine.cache.clear()
        engine.store.clear()
        return {"cleared": n}

    return app


# -------- local dev entrypoint --------
def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Street imagery coverage API")
    ap.add_argument("--config", default=None, help="params.yaml path")
    ap.add_argument("--host", default="0.0.0.0")
    ap.add_argument("--port", type=int, default=8000)
    args = ap.parse_args(argv)

    P = load_config(args.config)
    setup_logging(P=P)
    get_logger("service").info("Starting API", extra={"extra": {"host": args.host, "port": args.port}})
    uvicorn.run(create_app(build_engine(P)), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
