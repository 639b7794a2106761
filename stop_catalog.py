from __future__ import annotations

import json
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from trace_store import Coordinate


DEFAULT_STOP_CATALOG_PATH = Path("config/stops.json")


@dataclass(frozen=True)
class Stop:
    """A transit stop and the lines serving it, in catalog order."""
    stop_id: str
    name: str
    position: Coordinate
    lines: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.stop_id,
            "name": self.name,
            "position": [self.position[0], self.position[1]],
            "lines": list(self.lines),
        }


def _parse_position(entry: Mapping[str, Any]) -> Optional[Coordinate]:
    raw = entry.get("position")
    if isinstance(raw, (list, tuple)) and len(raw) >= 2:
        lat_raw, lng_raw = raw[0], raw[1]
    else:
        lat_raw = entry.get("lat", entry.get("latitude"))
        lng_raw = entry.get("lng", entry.get("longitude"))
    try:
        lat = float(lat_raw)
        lng = float(lng_raw)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return None
    return (lat, lng)


def parse_stops(entries: Iterable[Any]) -> List[Stop]:
    stops: List[Stop] = []
    seen: set[str] = set()
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        stop_id = entry.get("id")
        if stop_id is None or str(stop_id).strip() == "":
            continue
        stop_id = str(stop_id).strip()
        if stop_id in seen:
            print(f"[stops] duplicate stop id {stop_id} ignored")
            continue
        position = _parse_position(entry)
        if position is None:
            print(f"[stops] stop {stop_id} has no usable position")
            continue
        lines_raw = entry.get("lines") or []
        lines = tuple(str(line).strip() for line in lines_raw if line is not None and str(line).strip())
        seen.add(stop_id)
        stops.append(
            Stop(
                stop_id=stop_id,
                name=str(entry.get("name") or stop_id),
                position=position,
                lines=lines,
            )
        )
    return stops


def load_stop_catalog(path: Path = DEFAULT_STOP_CATALOG_PATH) -> List[Stop]:
    """Load the static stop catalog from a JSON list (or ``{"stops": [...]}``)."""
    if not path.exists():
        print(f"[stops] catalog {path} not found; planner has no stops")
        return []
    try:
        raw = json.loads(path.read_text())
    except Exception as exc:
        print(f"[stops] failed to load catalog {path}: {exc}")
        return []
    if isinstance(raw, dict):
        raw = raw.get("stops", [])
    if not isinstance(raw, list):
        print(f"[stops] unexpected catalog shape in {path}")
        return []
    return parse_stops(raw)


__all__ = ["Stop", "DEFAULT_STOP_CATALOG_PATH", "parse_stops", "load_stop_catalog"]
