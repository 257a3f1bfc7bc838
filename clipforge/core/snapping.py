"""Hard-snap placement for clips dragged along one track.

A dragged clip keeps its duration and may only land on a snap point: the
track origin or the end of another clip on the same track. Among the
candidates that do not overlap anything, the one nearest to the raw
proposal wins; ties go to the smaller position. When nothing qualifies the
result is ``None`` and the caller keeps the clip where it was.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple

from .models import EPSILON

Span = Tuple[float, float]  # (start, end), half-open


def spans_overlap(a_start: float, a_end: float, b_start: float, b_end: float) -> bool:
    """True when [a_start, a_end) and [b_start, b_end) share any time.

    Touching endpoints do not count.
    """
    return a_start < b_end - EPSILON and b_start < a_end - EPSILON


def fits(start: float, duration: float, others: Iterable[Span]) -> bool:
    if start < -EPSILON:
        return False
    end = start + duration
    return not any(spans_overlap(start, end, s, e) for s, e in others)


def snap_candidates(others: Iterable[Span]) -> List[float]:
    points = {0.0}
    points.update(end for _, end in others)
    return sorted(points)


def resolve_snap(
    duration: float,
    proposed: float,
    others: Sequence[Span],
    tolerance: Optional[float] = None,
) -> Optional[float]:
    """Return the legal snap point nearest ``proposed`` or None.

    ``others`` are the spans of every other clip on the track (the dragged
    clip excluded). ``tolerance`` caps how far the result may be from the
    proposal; None means any distance.
    """
    best: Optional[float] = None
    best_distance = 0.0
    # candidates are ascending, so a strict comparison keeps the smaller one on ties
    for candidate in snap_candidates(others):
        if not fits(candidate, duration, others):
            continue
        distance = abs(candidate - proposed)
        if tolerance is not None and distance > tolerance + EPSILON:
            continue
        if best is None or distance < best_distance - EPSILON:
            best = candidate
            best_distance = distance
    return best


def end_of_track(others: Iterable[Span]) -> float:
    return max((end for _, end in others), default=0.0)


__all__ = ["spans_overlap", "fits", "snap_candidates", "resolve_snap", "end_of_track"]
