"""
Primitive operations on lists of half-open time intervals.

Pure functions without any I/O; every result is sorted by start time.
"""

from datetime import time, timedelta
from typing import Iterable, List, Optional, Tuple

from .models import TimeInterval, local_datetime


def merge(intervals: Iterable[TimeInterval]) -> List[TimeInterval]:
    """
    Merge overlapping or adjacent intervals.

    Example: [09:00-10:00, 10:00-11:00] -> [09:00-11:00]
    """
    sorted_intervals = sorted(intervals, key=lambda r: (r.start, r.end))
    if not sorted_intervals:
        return []

    merged: List[TimeInterval] = [sorted_intervals[0]]
    for current in sorted_intervals[1:]:
        last = merged[-1]
        # Overlapping or touching (no gap)
        if current.start <= last.end:
            if current.end > last.end:
                merged[-1] = TimeInterval(start=last.start, end=current.end)
        else:
            merged.append(current)

    return merged


def subtract(
    blocks: Iterable[TimeInterval],
    removals: Iterable[TimeInterval],
) -> List[TimeInterval]:
    """
    Subtract ``removals`` from ``blocks``, yielding what remains.

    Example:
    Block: 09:00 - 17:00
    Removals: [10:00-11:00, 14:00-15:00]
    Result: [09:00-10:00, 11:00-14:00, 15:00-17:00]
    """
    sorted_removals = merge(removals)
    remaining: List[TimeInterval] = []

    for block in merge(blocks):
        current_start = block.start

        for removal in sorted_removals:
            if removal.end <= current_start:
                continue
            if removal.start >= block.end:
                break
            if current_start < removal.start:
                remaining.append(TimeInterval(start=current_start, end=removal.start))
            current_start = max(current_start, removal.end)
            if current_start >= block.end:
                break

        if current_start < block.end:
            remaining.append(TimeInterval(start=current_start, end=block.end))

    return remaining


def intersect(
    first: Iterable[TimeInterval],
    second: Iterable[TimeInterval],
) -> List[TimeInterval]:
    """Every period covered by both lists."""
    second = list(second)
    intersections: List[TimeInterval] = []

    for range1 in first:
        for range2 in second:
            overlap = range1.intersect(range2)
            if overlap:
                intersections.append(overlap)

    return merge(intersections)


def clip(interval: TimeInterval, bounds: TimeInterval) -> Optional[TimeInterval]:
    """
    Clip an interval to fit within bounds.
    Returns None if the interval is completely outside bounds.
    """
    if interval.end <= bounds.start or interval.start >= bounds.end:
        return None
    return TimeInterval(start=max(interval.start, bounds.start), end=min(interval.end, bounds.end))


def clip_all(intervals: Iterable[TimeInterval], bounds: TimeInterval) -> List[TimeInterval]:
    clipped = (clip(interval, bounds) for interval in intervals)
    return [interval for interval in clipped if interval is not None]


def split_by_day(interval: TimeInterval, timezone: str) -> List[TimeInterval]:
    """Cut an interval at every local midnight of ``timezone``."""
    pieces: List[TimeInterval] = []
    current = interval.start

    while current < interval.end:
        local_day = current.in_timezone(timezone).date()
        next_midnight, _ = local_datetime(local_day + timedelta(days=1), time(0, 0), timezone)
        piece_end = min(interval.end, next_midnight)
        pieces.append(TimeInterval(start=current, end=piece_end))
        current = piece_end

    return pieces


def _boundaries(intervals: Iterable[TimeInterval]) -> List[Tuple]:
    # Ends sort before starts at the same instant: half-open intervals that
    # merely touch do not overlap.
    events = []
    for interval in intervals:
        events.append((interval.start, 1))
        events.append((interval.end, -1))
    events.sort(key=lambda event: (event[0], event[1]))
    return events


def saturated(intervals: Iterable[TimeInterval], capacity: int) -> List[TimeInterval]:
    """
    Periods during which at least ``capacity`` of the intervals overlap.

    With capacity 1 this is simply the merged union.
    """
    result: List[TimeInterval] = []
    depth = 0
    opened_at = None

    for instant, delta in _boundaries(intervals):
        depth += delta
        if delta > 0 and depth == capacity:
            opened_at = instant
        elif delta < 0 and depth == capacity - 1 and opened_at is not None:
            if opened_at < instant:
                result.append(TimeInterval(start=opened_at, end=instant))
            opened_at = None

    return merge(result)


def peak_overlap(intervals: Iterable[TimeInterval], within: TimeInterval) -> int:
    """Highest number of intervals overlapping at any instant inside ``within``."""
    peak = 0
    depth = 0
    for instant, delta in _boundaries(clip_all(intervals, within)):
        depth += delta
        peak = max(peak, depth)
    return peak
