"""Key-value persistence for per-vehicle GPS traces.

The store holds ``vehicle_id -> VehicleTrace``. Writers always go through
``replace`` with a complete snapshot; the file-backed implementation writes a
temporary file and swaps it into place so readers never see a partial write.
"""
from __future__ import annotations

import json
import math
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

Coordinate = Tuple[float, float]


class TraceStoreError(RuntimeError):
    """Raised when the store cannot be read or a snapshot cannot be written."""


@dataclass
class VehicleTrace:
    """Accumulated raw fixes for one vehicle, oldest first."""
    vehicle_id: str
    line: str
    points: List[Coordinate] = field(default_factory=list)

    @property
    def last_point(self) -> Optional[Coordinate]:
        return self.points[-1] if self.points else None

    def copy(self) -> "VehicleTrace":
        return VehicleTrace(vehicle_id=self.vehicle_id, line=self.line, points=list(self.points))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line": self.line,
            "coord": [[lat, lng] for lat, lng in self.points],
        }

    @classmethod
    def from_dict(cls, vehicle_id: str, raw: Mapping[str, Any]) -> "VehicleTrace":
        coord = raw.get("coord")
        if coord is None:
            coord = []
        if not isinstance(coord, (list, tuple)):
            raise ValueError(f"trace {vehicle_id}: coord is not a list")
        points: List[Coordinate] = []
        for pair in coord:
            if not isinstance(pair, (list, tuple)) or len(pair) < 2:
                continue
            try:
                lat = float(pair[0])
                lng = float(pair[1])
            except (TypeError, ValueError):
                continue
            if not (math.isfinite(lat) and math.isfinite(lng)):
                continue
            points.append((lat, lng))
        line = raw.get("line")
        return cls(vehicle_id=str(vehicle_id), line=str(line) if line is not None else "", points=points)


Snapshot = Dict[str, VehicleTrace]


def _copy_snapshot(snapshot: Mapping[str, VehicleTrace]) -> Snapshot:
    return {vid: trace.copy() for vid, trace in snapshot.items()}


class TraceStore(ABC):
    """Minimal key-value interface over vehicle traces."""

    @abstractmethod
    def load(self) -> Snapshot:
        """Return a private copy of every stored trace, in insertion order."""

    @abstractmethod
    def replace(self, snapshot: Mapping[str, VehicleTrace]) -> None:
        """Atomically swap the whole stored state for ``snapshot``."""

    def get(self, vehicle_id: str) -> Optional[VehicleTrace]:
        return self.load().get(vehicle_id)

    def put(self, trace: VehicleTrace) -> None:
        snapshot = self.load()
        snapshot[trace.vehicle_id] = trace.copy()
        self.replace(snapshot)


class MemoryTraceStore(TraceStore):
    def __init__(self, initial: Optional[Mapping[str, VehicleTrace]] = None):
        self._traces: Snapshot = _copy_snapshot(initial or {})
        self.writes = 0

    def load(self) -> Snapshot:
        return _copy_snapshot(self._traces)

    def replace(self, snapshot: Mapping[str, VehicleTrace]) -> None:
        self._traces = _copy_snapshot(snapshot)
        self.writes += 1


def _atomic_write(path: Path, data: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.{os.getpid()}.{int(time.time()*1000)}.tmp")
    try:
        tmp.write_text(data)
        tmp.replace(path)
    finally:
        if tmp.exists():
            try:
                tmp.unlink()
            except OSError:
                pass


class JsonFileTraceStore(TraceStore):
    """Traces persisted as one JSON object ``{vehicle_id: {line, coord}}``."""

    def __init__(self, path: Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Snapshot:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            raise TraceStoreError(f"unreadable trace store {self._path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise TraceStoreError(f"unexpected trace store shape in {self._path}")
        snapshot: Snapshot = {}
        for vehicle_id, entry in raw.items():
            if not isinstance(entry, dict):
                continue
            try:
                snapshot[str(vehicle_id)] = VehicleTrace.from_dict(str(vehicle_id), entry)
            except (TypeError, ValueError) as exc:
                raise TraceStoreError(f"unexpected trace store shape in {self._path}: {exc}") from exc
        return snapshot

    def replace(self, snapshot: Mapping[str, VehicleTrace]) -> None:
        payload = json.dumps({vid: trace.to_dict() for vid, trace in snapshot.items()})
        try:
            _atomic_write(self._path, payload)
        except OSError as exc:
            raise TraceStoreError(f"failed to write trace store {self._path}: {exc}") from exc


__all__ = [
    "Coordinate",
    "VehicleTrace",
    "Snapshot",
    "TraceStore",
    "TraceStoreError",
    "MemoryTraceStore",
    "JsonFileTraceStore",
]
