"""Validation and filtering of live position fixes into the trace store."""
from __future__ import annotations

import asyncio
import math
import os
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from geo import haversine
from trace_store import Coordinate, Snapshot, TraceStore, VehicleTrace


# A fix further than this from the previous stored fix is treated as a teleport
MAX_JUMP_M = float(os.getenv("TRACE_MAX_JUMP_M", "350"))
# Closer than this and the vehicle is considered stationary
MIN_MOVE_M = float(os.getenv("TRACE_MIN_MOVE_M", "8"))
# Ring buffer capacity per vehicle
MAX_POINTS = int(os.getenv("TRACE_MAX_POINTS", "6000"))

ACTIVE_STATUSES = {"on"}
NO_LINE_SENTINELS = {"", "?", "-"}

# Rejection reasons
ACCEPTED = "accepted"
REJECT_INACTIVE = "inactive"
REJECT_INVALID_COORDINATES = "invalid_coordinates"
REJECT_NO_LINE = "no_line"
REJECT_DUPLICATE = "duplicate"
REJECT_JUMP = "jump"
REJECT_JITTER = "jitter"


class InvalidInput(ValueError):
    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or reason)
        self.reason = reason


def _coerce_float(value: Any) -> Optional[float]:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def _first_present(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


@dataclass
class FeedRecord:
    """A single position report for a vehicle."""
    vehicle_id: str
    status: str
    lat: Optional[float]
    lng: Optional[float]
    line: str

    @classmethod
    def from_raw(cls, vehicle_id: Any, raw: Mapping[str, Any]) -> "FeedRecord":
        """Build a record from either the feed's positional keys ("1".."4")
        or named keys. Missing or non-finite coordinates become ``None``."""
        status = _first_present(raw, "status", "1")
        lat = _first_present(raw, "latitude", "lat", "2")
        lng = _first_present(raw, "longitude", "lng", "lon", "3")
        line = _first_present(raw, "line", "4")
        return cls(
            vehicle_id=str(vehicle_id),
            status=str(status).strip().lower() if status is not None else "",
            lat=_coerce_float(lat),
            lng=_coerce_float(lng),
            line=str(line).strip() if line is not None else "",
        )

    @property
    def position(self) -> Optional[Coordinate]:
        if self.lat is None or self.lng is None:
            return None
        return (self.lat, self.lng)


def parse_feed_payload(payload: Any) -> List[FeedRecord]:
    """Turn a feed payload into typed records.

    Accepts the live feed's ``{vehicle_id: record}`` mapping or a list of
    records that carry their own ``id``. Entries without an id are skipped.
    """
    records: List[FeedRecord] = []
    if isinstance(payload, Mapping):
        items: Iterable = payload.items()
    elif isinstance(payload, list):
        items = []
        for entry in payload:
            if not isinstance(entry, Mapping):
                continue
            vid = _first_present(entry, "id", "vehicle_id", "vehicleId")
            items.append((vid, entry))
    else:
        raise InvalidInput("malformed_payload", "feed payload must be an object or a list")

    for vehicle_id, raw in items:
        if vehicle_id is None or str(vehicle_id).strip() == "":
            continue
        if not isinstance(raw, Mapping):
            continue
        records.append(FeedRecord.from_raw(str(vehicle_id).strip(), raw))
    return records


def validate_record(record: FeedRecord) -> None:
    """Raise ``InvalidInput`` for the first failing check, in feed order."""
    if record.status not in ACTIVE_STATUSES:
        raise InvalidInput(REJECT_INACTIVE, f"vehicle {record.vehicle_id} is not active")
    if record.position is None:
        raise InvalidInput(REJECT_INVALID_COORDINATES, f"vehicle {record.vehicle_id} has no usable position")
    if record.line in NO_LINE_SENTINELS:
        raise InvalidInput(REJECT_NO_LINE, f"vehicle {record.vehicle_id} is not assigned to a line")


@dataclass
class IngestResult:
    vehicle_id: str
    reason: str

    @property
    def accepted(self) -> bool:
        return self.reason == ACCEPTED


@dataclass
class IngestCycleSummary:
    results: List[IngestResult] = field(default_factory=list)
    persisted: bool = False

    @property
    def appended(self) -> int:
        return sum(1 for r in self.results if r.accepted)

    @property
    def rejected(self) -> int:
        return len(self.results) - self.appended

    def reasons(self) -> Dict[str, int]:
        return dict(Counter(r.reason for r in self.results))


class TraceIngestor:
    """Applies fixes to vehicle traces.

    Each cycle is a read-modify-write against the store held under a single
    lock, so overlapping polls cannot lose each other's updates. A failing
    write leaves the previously stored snapshot untouched.
    """

    def __init__(
        self,
        store: TraceStore,
        *,
        max_jump_m: float = MAX_JUMP_M,
        min_move_m: float = MIN_MOVE_M,
        max_points: int = MAX_POINTS,
    ):
        self.store = store
        self.max_jump_m = max_jump_m
        self.min_move_m = min_move_m
        self.max_points = max_points
        self._lock = asyncio.Lock()

    def apply(self, snapshot: Snapshot, record: FeedRecord) -> IngestResult:
        """Apply one fix to ``snapshot`` in place."""
        try:
            validate_record(record)
        except InvalidInput as exc:
            return IngestResult(record.vehicle_id, exc.reason)

        point = record.position
        assert point is not None
        trace = snapshot.get(record.vehicle_id)
        last = trace.last_point if trace is not None else None
        if last is not None:
            if point == last:
                return IngestResult(record.vehicle_id, REJECT_DUPLICATE)
            moved = haversine(last, point)
            if moved > self.max_jump_m:
                return IngestResult(record.vehicle_id, REJECT_JUMP)
            if moved < self.min_move_m:
                return IngestResult(record.vehicle_id, REJECT_JITTER)

        if trace is None:
            trace = VehicleTrace(vehicle_id=record.vehicle_id, line=record.line)
            snapshot[record.vehicle_id] = trace
        trace.points.append(point)
        trace.line = record.line
        if len(trace.points) > self.max_points:
            del trace.points[: len(trace.points) - self.max_points]
        return IngestResult(record.vehicle_id, ACCEPTED)

    async def run_cycle(self, records: Iterable[FeedRecord]) -> IngestCycleSummary:
        async with self._lock:
            snapshot = self.store.load()
            summary = IngestCycleSummary()
            for record in records:
                summary.results.append(self.apply(snapshot, record))
            if summary.appended:
                self.store.replace(snapshot)
                summary.persisted = True
            return summary

    async def ingest(self, record: FeedRecord) -> IngestResult:
        summary = await self.run_cycle([record])
        return summary.results[0]


__all__ = [
    "ACCEPTED",
    "REJECT_INACTIVE",
    "REJECT_INVALID_COORDINATES",
    "REJECT_NO_LINE",
    "REJECT_DUPLICATE",
    "REJECT_JUMP",
    "REJECT_JITTER",
    "MAX_JUMP_M",
    "MIN_MOVE_M",
    "MAX_POINTS",
    "FeedRecord",
    "IngestCycleSummary",
    "IngestResult",
    "InvalidInput",
    "TraceIngestor",
    "parse_feed_payload",
    "validate_record",
]
