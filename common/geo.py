from __future__ import annotations

from typing import List, Sequence, Tuple
import math
import numpy as np


EARTH_RADIUS_M = 6371008.8  # mean Earth radius (m)
M_PER_DEG_LAT = 111320.0

# View-cone zoom steps: index 0 is zoomed out (wide & short)
CONE_SPREADS_DEG = (60.0, 40.0, 30.0, 20.0)
CONE_LENGTHS_M = (10.0, 15.0, 20.0, 30.0)

ANCHORS = ("center", "east", "west", "north", "south")


# -------------------------
# Great-circle & bearings
# -------------------------
def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine great-circle distance on WGS84 sphere approximation."""
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dphi = p2 - p1
    dl = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2.0) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2.0) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(min(1.0, a)))


def haversine_many(lat: float, lon: float, lats: Sequence[float], lons: Sequence[float]) -> np.ndarray:
    """
    Vectorised haversine from one point to many; same formula as haversine_m().
    Returns a float64 array of metres (empty for empty input).
    """
    la = np.radians(np.asarray(lats, dtype=float))
    lo = np.radians(np.asarray(lons, dtype=float))
    p1 = math.radians(lat)
    dphi = la - p1
    dl = lo - math.radians(lon)
    a = np.sin(dphi / 2.0) ** 2 + math.cos(p1) * np.cos(la) * np.sin(dl / 2.0) ** 2
    return 2 * EARTH_RADIUS_M * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


def initial_bearing_deg(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial great-circle bearing from point 1 to point 2 (degrees, 0..360)."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dl = math.radians(lon2 - lon1)
    y = math.sin(dl) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dl)
    b = math.degrees(math.atan2(y, x))
    return (b + 360.0) % 360.0


def meters_to_deg(m: float, lat: float) -> Tuple[float, float]:
    """Small-distance metres -> (dlon, dlat) degrees at latitude `lat`."""
    dlat = m / M_PER_DEG_LAT
    dlon = m / (M_PER_DEG_LAT * math.cos(math.radians(lat)))
    return dlon, dlat


# -------------------------
# Active-image helpers
# -------------------------
def view_cone(
    lon: float,
    lat: float,
    bearing_deg: float,
    length_m: float = CONE_LENGTHS_M[0],
    spread_deg: float = CONE_SPREADS_DEG[0],
    step_deg: float = 2.0,
) -> List[Tuple[float, float]]:
    """
    Closed polygon ring (lon, lat) of the camera viewing cone: apex at the image,
    arc sampled every `step_deg` across `spread_deg` centred on `bearing_deg`.
    """
    if step_deg <= 0:
        raise ValueError("step_deg must be > 0")
    rlon, rlat = meters_to_deg(length_m, lat)
    ring: List[Tuple[float, float]] = [(lon, lat)]
    angle = bearing_deg - spread_deg / 2.0
    end = bearing_deg + spread_deg / 2.0
    while angle <= end + 1e-9:
        rad = math.radians(angle)
        ring.append((lon + rlon * math.sin(rad), lat + rlat * math.cos(rad)))
        angle += step_deg
    ring.append((lon, lat))
    return ring


def cone_for_step(zoom_step: int) -> Tuple[float, float]:
    """(length_m, spread_deg) for a viewer zoom step, clamped to the known steps."""
    i = int(min(max(zoom_step, 0), len(CONE_SPREADS_DEG) - 1))
    return CONE_LENGTHS_M[i], CONE_SPREADS_DEG[i]


def anchored_center(
    lon: float,
    lat: float,
    view_width_deg: float,
    view_height_deg: float,
    position: str = "center",
) -> Tuple[float, float]:
    """
    Map centre that places (lon, lat) at `position` of the view.

    'east' puts the image on the right half (centre shifts west) and so on;
    the shift is a quarter of the view extent.
    """
    position = (position or "center").lower()
    if position not in ANCHORS:
        raise ValueError(f"unknown anchor position: {position}")
    dx = view_width_deg / 4.0
    dy = view_height_deg / 4.0
    if position == "east":
        return lon - dx, lat
    if position == "west":
        return lon + dx, lat
    if position == "north":
        return lon, lat - dy
    if position == "south":
        return lon, lat + dy
    return lon, lat
