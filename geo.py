"""Distance and angle helpers for GPS traces and route polylines.

Two families of measurements live here:

* ``haversine`` is the great-circle distance, used where a fix is compared to
  the previous fix of the same vehicle.
* The ``planar_*`` helpers project degrees onto a local tangent plane using
  latitude-dependent meters-per-degree factors. They are what the cleaner and
  planner use; at city scale the error is well under a meter.
"""
from __future__ import annotations

import math
from typing import List, Sequence, Tuple

R_EARTH = 6371000.0
METERS_PER_DEG_LAT = 110540.0
METERS_PER_DEG_LNG_EQUATOR = 111320.0

LatLng = Tuple[float, float]


def to_rad(d: float) -> float:
    return d * math.pi / 180.0


def haversine(a: LatLng, b: LatLng) -> float:
    """Great-circle distance in meters between two (lat, lng) points."""
    lat1, lon1 = a
    lat2, lon2 = b
    dlat = to_rad(lat2 - lat1)
    dlon = to_rad(lon2 - lon1)
    s = math.sin(dlat / 2) ** 2 + math.cos(to_rad(lat1)) * math.cos(to_rad(lat2)) * math.sin(dlon / 2) ** 2
    return 2 * R_EARTH * math.asin(math.sqrt(s))


def meters_per_deg_lng(lat: float) -> float:
    return METERS_PER_DEG_LNG_EQUATOR * math.cos(to_rad(lat))


def ll_to_xy(lat: float, lon: float, ref_lat: float, ref_lon: float) -> Tuple[float, float]:
    """Approximate meters in a local tangent plane using equirectangular scaling.
    Use ref point for origin; good enough for segment-level projection.
    """
    kx = meters_per_deg_lng((lat + ref_lat) * 0.5)
    ky = METERS_PER_DEG_LAT
    return ((lon - ref_lon) * kx, (lat - ref_lat) * ky)


def planar_distance(a: LatLng, b: LatLng) -> float:
    dx, dy = ll_to_xy(b[0], b[1], a[0], a[1])
    return math.hypot(dx, dy)


def perpendicular_distance(p: LatLng, a: LatLng, b: LatLng) -> float:
    """Distance in meters from ``p`` to the segment ``a``-``b``.

    Falls back to the point distance when the segment is degenerate.
    """
    ref_lat, ref_lon = a
    px, py = ll_to_xy(p[0], p[1], ref_lat, ref_lon)
    bx, by = ll_to_xy(b[0], b[1], ref_lat, ref_lon)
    seg_len_sq = bx * bx + by * by
    if seg_len_sq == 0.0:
        return math.hypot(px, py)
    t = (px * bx + py * by) / seg_len_sq
    t = max(0.0, min(1.0, t))
    return math.hypot(px - t * bx, py - t * by)


def interior_angle_deg(a: LatLng, b: LatLng, c: LatLng) -> float:
    """Angle ABC at vertex ``b`` in degrees (0 = hairpin, 180 = straight)."""
    ax, ay = ll_to_xy(a[0], a[1], b[0], b[1])
    cx, cy = ll_to_xy(c[0], c[1], b[0], b[1])
    norm = math.hypot(ax, ay) * math.hypot(cx, cy)
    if norm == 0.0:
        return 180.0
    cos_theta = (ax * cx + ay * cy) / norm
    cos_theta = max(-1.0, min(1.0, cos_theta))
    return math.degrees(math.acos(cos_theta))


def cumulative_distance(poly: Sequence[LatLng]) -> Tuple[List[float], float]:
    cum = [0.0]
    for i in range(1, len(poly)):
        cum.append(cum[-1] + planar_distance(poly[i - 1], poly[i]))
    return cum, cum[-1] if cum else 0.0


def polyline_length(poly: Sequence[LatLng]) -> float:
    return cumulative_distance(poly)[1]


__all__ = [
    "LatLng",
    "R_EARTH",
    "haversine",
    "ll_to_xy",
    "planar_distance",
    "perpendicular_distance",
    "interior_angle_deg",
    "cumulative_distance",
    "polyline_length",
]
