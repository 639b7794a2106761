"""Direct and one-transfer trip planning over learned line routes.

The search is greedy: the nearest usable board stop wins for a direct trip,
and the first (board stop, line, transfer stop) combination that reaches the
destination wins for a transfer. It does not look for the shortest journey.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from geo import cumulative_distance, planar_distance
from line_aggregator import LineRoute
from stop_catalog import Stop
from trace_cleaner import dedupe_consecutive
from trace_store import Coordinate


BOARD_RADIUS_M = 900.0
MAX_BOARD_CANDIDATES = 10

ERR_DEST_NOT_FOUND = "Destination stop not found."
ERR_NO_PLAN = "No direct or 1-transfer route found with current stop/line data."


def _coords(points: Sequence[Coordinate]) -> List[List[float]]:
    return [[lat, lng] for lat, lng in points]


@dataclass
class DirectPlan:
    line: str
    board_stop: Stop
    dest_stop: Stop
    walk: List[Coordinate]
    ride: List[Coordinate]

    kind = "direct"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "kind": self.kind,
            "lineA": self.line,
            "boardStopId": self.board_stop.stop_id,
            "destStopId": self.dest_stop.stop_id,
            "walk": _coords(self.walk),
            "rideA": _coords(self.ride),
        }


@dataclass
class TransferPlan:
    line_a: str
    line_b: str
    board_stop: Stop
    transfer_stop: Stop
    dest_stop: Stop
    walk: List[Coordinate]
    ride_a: List[Coordinate]
    ride_b: List[Coordinate]

    kind = "transfer"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "kind": self.kind,
            "lineA": self.line_a,
            "lineB": self.line_b,
            "boardStopId": self.board_stop.stop_id,
            "transferStopId": self.transfer_stop.stop_id,
            "destStopId": self.dest_stop.stop_id,
            "walk": _coords(self.walk),
            "rideA": _coords(self.ride_a),
            "rideB": _coords(self.ride_b),
        }


@dataclass
class PlanFailure:
    reason: str

    kind = "failure"

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.reason}


PlanResult = Union[DirectPlan, TransferPlan, PlanFailure]


def _shared_lines(a: Sequence[str], b: Sequence[str]) -> List[str]:
    other = set(b)
    return [line for line in a if line and line in other]


def nearest_index_on_polyline(coords: Sequence[Coordinate], p: Coordinate) -> int:
    best_i = 0
    best_d = float("inf")
    for i, c in enumerate(coords):
        d = planar_distance(c, p)
        if d < best_d:
            best_d = d
            best_i = i
    return best_i


def slice_route_between_stops(
    route: Sequence[Coordinate], a: Coordinate, b: Coordinate
) -> Optional[List[Coordinate]]:
    """Cut ``route`` between the vertices nearest to ``a`` and ``b``.

    Both the forward range and its wrap-around complement are measured and the
    shorter one is returned, running from ``a`` towards ``b``. The wrap arc
    includes the closing hop from the last vertex back to the first, which is
    zero on a closed loop.
    """
    if not route or len(route) < 2:
        return None

    i_a = nearest_index_on_polyline(route, a)
    i_b = nearest_index_on_polyline(route, b)
    if i_a == i_b:
        return [route[i_a], route[i_a]]

    lo, hi = min(i_a, i_b), max(i_a, i_b)
    cum, total = cumulative_distance(route)
    forward_len = cum[hi] - cum[lo]
    wrap_len = total - forward_len + planar_distance(route[-1], route[0])

    if wrap_len < forward_len:
        # hi -> end -> start -> lo
        merged = dedupe_consecutive(list(route[hi:]) + list(route[: lo + 1]))
        return merged[::-1] if i_a < i_b else merged

    sliced = list(route[lo: hi + 1])
    return sliced if i_a < i_b else sliced[::-1]


def _stops_by_distance(rider: Coordinate, stops: Sequence[Stop], radius_m: float) -> List[Tuple[float, Stop]]:
    ranked = [(planar_distance(rider, s.position), s) for s in stops]
    ranked = [(d, s) for d, s in ranked if d <= radius_m]
    # stable sort keeps catalog order among equidistant stops
    ranked.sort(key=lambda item: item[0])
    return ranked


@dataclass
class _StopChoice:
    kind: str
    line_a: str
    board: Stop
    dest: Stop
    line_b: Optional[str] = None
    transfer: Optional[Stop] = None


def choose_plan_stops(
    rider: Coordinate,
    dest: Stop,
    stops: Sequence[Stop],
    *,
    radius_m: float = BOARD_RADIUS_M,
    max_candidates: int = MAX_BOARD_CANDIDATES,
) -> Optional[_StopChoice]:
    nearby = _stops_by_distance(rider, stops, radius_m)

    # direct
    for _, stop in nearby:
        shared = _shared_lines(stop.lines, dest.lines)
        if shared:
            return _StopChoice(kind="direct", line_a=shared[0], board=stop, dest=dest)

    # 1 transfer
    candidates = [s for _, s in nearby if s.lines][:max_candidates]
    for board in candidates:
        for line_a in board.lines:
            if not line_a:
                continue
            for transfer in stops:
                if line_a not in transfer.lines:
                    continue
                line_bs = [line for line in _shared_lines(transfer.lines, dest.lines) if line != line_a]
                if not line_bs:
                    continue
                return _StopChoice(
                    kind="transfer",
                    line_a=line_a,
                    line_b=line_bs[0],
                    board=board,
                    transfer=transfer,
                    dest=dest,
                )
    return None


def _route_for(routes: Mapping[str, LineRoute], line: str) -> Optional[List[Coordinate]]:
    route = routes.get(line)
    if route is None or len(route.polyline) < 2:
        return None
    return route.polyline


def plan_trip(
    rider: Coordinate,
    dest_stop_id: str,
    routes: Mapping[str, LineRoute],
    stops: Sequence[Stop],
    *,
    radius_m: float = BOARD_RADIUS_M,
    max_candidates: int = MAX_BOARD_CANDIDATES,
) -> PlanResult:
    dest = next((s for s in stops if s.stop_id == dest_stop_id), None)
    if dest is None:
        return PlanFailure(ERR_DEST_NOT_FOUND)

    choice = choose_plan_stops(rider, dest, stops, radius_m=radius_m, max_candidates=max_candidates)
    if choice is None:
        return PlanFailure(ERR_NO_PLAN)

    walk = [rider, choice.board.position]

    route_a = _route_for(routes, choice.line_a)
    if route_a is None:
        return PlanFailure(f"No route polyline found for line {choice.line_a}.")

    if choice.kind == "direct":
        ride = slice_route_between_stops(route_a, choice.board.position, dest.position) or []
        return DirectPlan(line=choice.line_a, board_stop=choice.board, dest_stop=dest, walk=walk, ride=ride)

    assert choice.line_b is not None and choice.transfer is not None
    route_b = _route_for(routes, choice.line_b)
    if route_b is None:
        return PlanFailure(f"No route polyline found for line {choice.line_b}.")

    ride_a = slice_route_between_stops(route_a, choice.board.position, choice.transfer.position) or []
    ride_b = slice_route_between_stops(route_b, choice.transfer.position, dest.position) or []
    return TransferPlan(
        line_a=choice.line_a,
        line_b=choice.line_b,
        board_stop=choice.board,
        transfer_stop=choice.transfer,
        dest_stop=dest,
        walk=walk,
        ride_a=ride_a,
        ride_b=ride_b,
    )


__all__ = [
    "BOARD_RADIUS_M",
    "MAX_BOARD_CANDIDATES",
    "ERR_DEST_NOT_FOUND",
    "ERR_NO_PLAN",
    "DirectPlan",
    "TransferPlan",
    "PlanFailure",
    "PlanResult",
    "choose_plan_stops",
    "nearest_index_on_polyline",
    "plan_trip",
    "slice_route_between_stops",
]
