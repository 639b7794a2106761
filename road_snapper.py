"""Async OSRM map-matching client used to align route polylines to roads.

Snapping is cosmetic: any failure returns the input polyline unchanged with
``snapped=False``. Requests carry an explicit timeout and are never retried.
"""
from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from trace_store import Coordinate


OSRM_MATCH_URL = os.getenv("OSRM_MATCH_URL", "https://router.project-osrm.org/match/v1/driving")
OSRM_TIMEOUT_S = float(os.getenv("OSRM_TIMEOUT_S", "10"))
OSRM_BATCH_SIZE = int(os.getenv("OSRM_BATCH_SIZE", "60"))
OSRM_RADIUS_M = float(os.getenv("OSRM_RADIUS_M", "50"))


class SnapError(RuntimeError):
    pass


@dataclass
class SnapResult:
    snapped: bool
    coords: List[Coordinate] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        if not self.snapped:
            return {"snapped": False}
        return {"snapped": True, "coords": [[lat, lng] for lat, lng in self.coords]}


def split_batches(coords: Sequence[Coordinate], batch_size: int) -> List[List[Coordinate]]:
    """Chunk ``coords`` so consecutive batches share their boundary point."""
    if batch_size < 2:
        raise ValueError("batch_size must be at least 2")
    step = batch_size - 1
    return [list(coords[start: start + batch_size]) for start in range(0, len(coords) - 1, step)]


def _parse_matchings(payload: Any) -> List[Coordinate]:
    if not isinstance(payload, dict):
        raise SnapError("response is not an object")
    code = payload.get("code")
    if code != "Ok":
        raise SnapError(f"osrm code {code!r}")
    matchings = payload.get("matchings")
    if not isinstance(matchings, list) or not matchings:
        raise SnapError("no matchings")
    out: List[Coordinate] = []
    for matching in matchings:
        geometry = matching.get("geometry") if isinstance(matching, dict) else None
        coords = geometry.get("coordinates") if isinstance(geometry, dict) else None
        if not isinstance(coords, list):
            raise SnapError("matching without geometry")
        for pair in coords:
            if not isinstance(pair, (list, tuple)) or len(pair) < 2:
                raise SnapError("malformed coordinate")
            try:
                lng, lat = float(pair[0]), float(pair[1])
            except (TypeError, ValueError) as exc:
                raise SnapError(f"malformed coordinate {pair!r}") from exc
            if not (math.isfinite(lat) and math.isfinite(lng)):
                raise SnapError(f"non-finite coordinate {pair!r}")
            point = (lat, lng)
            if out and out[-1] == point:
                continue
            out.append(point)
    if len(out) < 2:
        raise SnapError("matching too short")
    return out


class RoadSnapper:
    """Thin wrapper around the OSRM ``match`` service."""

    def __init__(
        self,
        base_url: str = OSRM_MATCH_URL,
        *,
        batch_size: int = OSRM_BATCH_SIZE,
        radius_m: float = OSRM_RADIUS_M,
        timeout_s: float = OSRM_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.batch_size = batch_size
        self.radius_m = radius_m
        self.timeout = httpx.Timeout(timeout_s)
        self._client = client

    async def _match_batch(self, client: httpx.AsyncClient, batch: Sequence[Coordinate]) -> List[Coordinate]:
        coord_str = ";".join(f"{lng},{lat}" for lat, lng in batch)
        radius = f"{self.radius_m:g}"
        params = {
            "geometries": "geojson",
            "overview": "full",
            "radiuses": ";".join([radius] * len(batch)),
        }
        response = await client.get(f"{self.base_url}/{coord_str}", params=params, timeout=self.timeout)
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as exc:
            raise SnapError(f"invalid json: {exc}") from exc
        return _parse_matchings(payload)

    async def _snap_with(self, client: httpx.AsyncClient, coords: Sequence[Coordinate]) -> List[Coordinate]:
        stitched: List[Coordinate] = []
        for idx, batch in enumerate(split_batches(coords, self.batch_size)):
            try:
                part = await self._match_batch(client, batch)
            except (httpx.HTTPError, httpx.InvalidURL, SnapError, ValueError) as exc:
                raise SnapError(f"batch {idx} failed: {exc}") from exc
            if stitched:
                part = part[1:]
            stitched.extend(part)
        return stitched

    async def snap(self, coords: Sequence[Coordinate]) -> SnapResult:
        original = list(coords)
        if len(original) < 2:
            return SnapResult(snapped=False, coords=original)
        try:
            if self._client is not None:
                stitched = await self._snap_with(self._client, original)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    stitched = await self._snap_with(client, original)
        except SnapError as exc:
            print(f"[road_snapper] {exc}; using unsnapped polyline")
            return SnapResult(snapped=False, coords=original)
        return SnapResult(snapped=True, coords=stitched)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = [
    "OSRM_MATCH_URL",
    "OSRM_BATCH_SIZE",
    "OSRM_RADIUS_M",
    "RoadSnapper",
    "SnapError",
    "SnapResult",
    "split_batches",
]
