"""Turn a raw vehicle trace into a clean route polyline.

Stages, each consuming the previous one's output:

1. drop consecutive duplicates
2. per-axis median smoothing over a sliding window
3. single-point spike removal (repeated a few passes)
4. Ramer-Douglas-Peucker simplification
5. re-insertion of despiked points wherever a simplified segment is too long

Stage 4 reports which despiked indices it kept, so stage 5 can splice the
original points back in by index.
"""
from __future__ import annotations

from statistics import median
from typing import List, Sequence

from geo import interior_angle_deg, perpendicular_distance, planar_distance
from trace_store import Coordinate


MEDIAN_WINDOW = 7

SPIKE_MAX_CHORD_M = 35.0
SPIKE_MIN_LEG_M = 18.0
SPIKE_MAX_ANGLE_DEG = 55.0
SPIKE_PASSES = 3

RDP_EPSILON_M = 6.0

MAX_SEGMENT_M = 60.0


def dedupe_consecutive(points: Sequence[Coordinate]) -> List[Coordinate]:
    out: List[Coordinate] = []
    for p in points:
        if out and out[-1] == p:
            continue
        out.append(p)
    return out


def median_smooth(points: Sequence[Coordinate], window: int = MEDIAN_WINDOW) -> List[Coordinate]:
    """Replace each point by the median latitude and the median longitude of
    its window. The axes are filtered independently, so the result is not a
    2-D geometric median. Sequences shorter than the window pass through."""
    n = len(points)
    if n < window:
        return list(points)
    half = window // 2
    out: List[Coordinate] = []
    for i in range(n):
        chunk = points[max(0, i - half): min(n, i + half + 1)]
        out.append((median(p[0] for p in chunk), median(p[1] for p in chunk)))
    return out


def _is_spike(a: Coordinate, b: Coordinate, c: Coordinate) -> bool:
    if planar_distance(a, c) > SPIKE_MAX_CHORD_M:
        return False
    if planar_distance(a, b) < SPIKE_MIN_LEG_M or planar_distance(b, c) < SPIKE_MIN_LEG_M:
        return False
    return interior_angle_deg(a, b, c) <= SPIKE_MAX_ANGLE_DEG


def _remove_spikes_once(points: Sequence[Coordinate]) -> List[Coordinate]:
    if len(points) < 3:
        return list(points)
    kept: List[Coordinate] = [points[0]]
    for i in range(1, len(points) - 1):
        if _is_spike(kept[-1], points[i], points[i + 1]):
            continue
        kept.append(points[i])
    kept.append(points[-1])
    return kept


def remove_spikes(points: Sequence[Coordinate], passes: int = SPIKE_PASSES) -> List[Coordinate]:
    """Drop sharp out-and-back kinks: a point whose neighbours are close to each
    other while the point itself sits well away from both at an acute angle."""
    current = list(points)
    for _ in range(passes):
        nxt = _remove_spikes_once(current)
        if len(nxt) == len(current):
            break
        current = nxt
    return current


def simplify_indices(points: Sequence[Coordinate], epsilon: float = RDP_EPSILON_M) -> List[int]:
    """Ramer-Douglas-Peucker; returns the sorted indices of retained points."""
    n = len(points)
    if n <= 2:
        return list(range(n))
    keep = [False] * n
    keep[0] = keep[n - 1] = True
    stack = [(0, n - 1)]
    while stack:
        start, end = stack.pop()
        if end - start < 2:
            continue
        max_dist = -1.0
        max_idx = start
        for i in range(start + 1, end):
            d = perpendicular_distance(points[i], points[start], points[end])
            if d > max_dist:
                max_dist = d
                max_idx = i
        if max_dist > epsilon:
            keep[max_idx] = True
            stack.append((start, max_idx))
            stack.append((max_idx, end))
    return [i for i, flag in enumerate(keep) if flag]


def simplify(points: Sequence[Coordinate], epsilon: float = RDP_EPSILON_M) -> List[Coordinate]:
    return [points[i] for i in simplify_indices(points, epsilon)]


def enforce_max_segment(
    points: Sequence[Coordinate],
    kept_indices: Sequence[int],
    max_segment_m: float = MAX_SEGMENT_M,
) -> List[Coordinate]:
    """Rebuild the simplified polyline, restoring every intermediate point of
    ``points`` between two kept indices whose chord exceeds ``max_segment_m``."""
    if not kept_indices:
        return []
    out: List[Coordinate] = [points[kept_indices[0]]]
    for prev_idx, idx in zip(kept_indices, kept_indices[1:]):
        if planar_distance(points[prev_idx], points[idx]) > max_segment_m:
            out.extend(points[prev_idx + 1: idx])
        out.append(points[idx])
    return out


def clean_trace(
    points: Sequence[Coordinate],
    *,
    epsilon: float = RDP_EPSILON_M,
    max_segment_m: float = MAX_SEGMENT_M,
) -> List[Coordinate]:
    deduped = dedupe_consecutive(points)
    if len(deduped) < 2:
        return deduped
    smoothed = median_smooth(deduped)
    despiked = remove_spikes(smoothed)
    kept = simplify_indices(despiked, epsilon)
    cleaned = dedupe_consecutive(enforce_max_segment(despiked, kept, max_segment_m))
    if len(cleaned) < 2:
        return deduped
    return cleaned


__all__ = [
    "MEDIAN_WINDOW",
    "RDP_EPSILON_M",
    "MAX_SEGMENT_M",
    "clean_trace",
    "dedupe_consecutive",
    "median_smooth",
    "remove_spikes",
    "simplify",
    "simplify_indices",
    "enforce_max_segment",
]
