"""Per-line route derivation from the trace store snapshot."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Sequence

from trace_cleaner import clean_trace
from trace_store import Coordinate, VehicleTrace


@dataclass
class LineRoute:
    line: str
    polyline: List[Coordinate]
    source_vehicle_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line": self.line,
            "coord": [[lat, lng] for lat, lng in self.polyline],
            "sourceBusId": self.source_vehicle_id,
        }


def select_line_sources(snapshot: Mapping[str, VehicleTrace]) -> Dict[str, VehicleTrace]:
    """Pick, for every line, the vehicle trace with the most points.

    Ties keep the vehicle seen first. Lines whose best trace has fewer than
    two points are left out.
    """
    best: Dict[str, VehicleTrace] = {}
    for trace in snapshot.values():
        if not trace.line:
            continue
        current = best.get(trace.line)
        if current is None or len(trace.points) > len(current.points):
            best[trace.line] = trace
    return {line: trace for line, trace in best.items() if len(trace.points) >= 2}


def build_line_routes(
    snapshot: Mapping[str, VehicleTrace],
    cleaner: Callable[[Sequence[Coordinate]], List[Coordinate]] = clean_trace,
) -> Dict[str, LineRoute]:
    routes: Dict[str, LineRoute] = {}
    for line, trace in select_line_sources(snapshot).items():
        polyline = cleaner(trace.points)
        if len(polyline) < 2:
            continue
        routes[line] = LineRoute(line=line, polyline=polyline, source_vehicle_id=trace.vehicle_id)
    return routes


__all__ = ["LineRoute", "select_line_sources", "build_line_routes"]
