from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_CONFIG_PATH = "config/params.yaml"

_DEFAULTS: Dict[str, Any] = {
    "mapillary": {
        "access_token": None,
        "graph_url": "https://graph.mapillary.com",
        "geocode_url": "https://geocode.arcgis.com/arcgis/rest/services/World/GeocodeServer/reverseGeocode",
        "tiles": {
            "turbo": {
                "url": "https://tiles.mapillary.com/maps/vtp/mly1_public/2/{z}/{x}/{y}",
                "layer": "image",
                "zoom": 14,
            },
            "signs": {
                "url": "https://tiles.mapillary.com/maps/vtp/mly_map_feature_traffic_sign/2/{z}/{x}/{y}",
                "layer": "traffic_sign",
                "zoom": 14,
            },
            "objects": {
                "url": "https://tiles.mapillary.com/maps/vtp/mly_map_feature_point/2/{z}/{x}/{y}",
                "layer": "point",
                "zoom": 14,
            },
        },
    },
    "coverage": {
        "min_zoom": 16,
        "debounce_s": 0.6,
        "batch_size": 50,
        "filters": {
            "creator": "",
            "start_date": None,
            "end_date": None,
            "is_pano": None,
            "color_by_date": False,
        },
    },
    "click": {
        "search_bbox_deg": 0.0001,  # ~11 m of latitude each way
        "reselect_tolerance_m": 0.5,
    },
    "session": {"cache_path": "runtime/session_cache.json"},
    "http": {"timeout_s": 10.0},
    "logging": {"level": "INFO", "file": None},
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load params.yaml on top of the built-in defaults.

    Path precedence: explicit arg, env COVERAGE_CONFIG, config/params.yaml.
    A missing file yields the defaults unchanged.
    """
    path = path or os.environ.get("COVERAGE_CONFIG") or DEFAULT_CONFIG_PATH
    if not Path(path).exists():
        return copy.deepcopy(_DEFAULTS)
    with open(path, "r") as f:
        loaded = yaml.safe_load(f) or {}
    return _merge(_DEFAULTS, loaded)


def access_token(P: Dict[str, Any], explicit: Optional[str] = None) -> str:
    """Token from explicit arg, then config, then env MAPILLARY_ACCESS_TOKEN."""
    token = explicit or P.get("mapillary", {}).get("access_token") or os.getenv("MAPILLARY_ACCESS_TOKEN")
    if not token:
        raise ValueError(
            "Mapillary access token is required. "
            "Set MAPILLARY_ACCESS_TOKEN environment variable or mapillary.access_token in params.yaml"
        )
    return token
