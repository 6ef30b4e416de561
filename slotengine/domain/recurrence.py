"""
Expansion of recurrence patterns into concrete, DST-aware occurrences.
"""

from datetime import date, timedelta
from typing import Iterator

import pendulum

from .exceptions import RecurrenceBoundsExceeded
from .models import Frequency, Occurrence, RecurrencePattern, TimeInterval, local_datetime


class RecurrenceExpander:
    """
    Expands a pattern from an anchor instance into a bounded sequence.

    Stepping starts at the anchor's local date in the series timezone. The
    sequence stops at ``count``, ``until`` or ``horizon_cap``, whichever binds
    first; ``count`` and ``horizon_cap`` count generated positions including
    exception dates, so excluding a date never pulls in a later one.
    """

    def __init__(self, max_occurrences: int = 1000):
        if max_occurrences < 1:
            raise RecurrenceBoundsExceeded("max_occurrences must be at least 1")
        self.max_occurrences = max_occurrences

    def validate(self, pattern: RecurrencePattern, horizon_cap: int) -> None:
        if horizon_cap < 1:
            raise RecurrenceBoundsExceeded(f"Horizon cap must be at least 1, got {horizon_cap}")
        if horizon_cap > self.max_occurrences:
            raise RecurrenceBoundsExceeded(
                f"Horizon cap {horizon_cap} exceeds the limit of {self.max_occurrences} occurrences"
            )
        if pattern.count is not None and pattern.count > self.max_occurrences:
            raise RecurrenceBoundsExceeded(
                f"Recurrence count {pattern.count} exceeds the limit of {self.max_occurrences} occurrences"
            )

    def expand(
        self,
        pattern: RecurrencePattern,
        anchor: TimeInterval,
        horizon_cap: int,
        timezone: str = "UTC",
    ) -> Iterator[Occurrence]:
        """
        Return a finite, deterministic iterator of occurrences.

        Bounds are validated eagerly; each call returns a fresh iterator.

        Raises:
            RecurrenceBoundsExceeded: If the cap or count is outside the allowed range
        """
        self.validate(pattern, horizon_cap)
        return self._generate(pattern, anchor, horizon_cap, timezone)

    def check_within_cap(
        self,
        pattern: RecurrencePattern,
        anchor: TimeInterval,
        horizon_cap: int,
        timezone: str = "UTC",
    ) -> None:
        """
        Reject a pattern whose own ``count`` or ``until`` reaches past the cap.

        ``expand`` stops at the cap without complaint; this is the stricter
        check run before a series is previewed or booked. A pattern without
        ``count`` or ``until`` is bounded by the cap alone.

        Raises:
            RecurrenceBoundsExceeded: If the pattern has more positions than ``horizon_cap``
        """
        self.validate(pattern, horizon_cap)
        if pattern.count is not None:
            if pattern.count > horizon_cap:
                raise RecurrenceBoundsExceeded(
                    f"Recurrence count {pattern.count} exceeds the horizon cap of {horizon_cap}"
                )
            return
        if pattern.until is not None:
            first_beyond = self.step(self._anchor_day(anchor, timezone), pattern, horizon_cap)
            if first_beyond <= pattern.until:
                raise RecurrenceBoundsExceeded(
                    f"Recurrence until {pattern.until.isoformat()} reaches past the horizon cap of "
                    f"{horizon_cap} occurrences"
                )

    def _generate(
        self,
        pattern: RecurrencePattern,
        anchor: TimeInterval,
        horizon_cap: int,
        timezone: str,
    ) -> Iterator[Occurrence]:
        local_start = anchor.start.in_timezone(timezone)
        anchor_day = self._anchor_day(anchor, timezone)
        time_of_day = local_start.time()
        duration_seconds = int(anchor.duration.total_seconds())

        limit = horizon_cap if pattern.count is None else min(pattern.count, horizon_cap)

        for index in range(limit):
            day = self.step(anchor_day, pattern, index)
            if pattern.until is not None and day > pattern.until:
                return
            if day in pattern.exception_dates:
                continue

            start, shifted = local_datetime(day, time_of_day, timezone)
            yield Occurrence(
                index=index,
                occurrence_date=day,
                interval=TimeInterval(start=start, end=start.add(seconds=duration_seconds)),
                shifted=shifted,
            )

    @staticmethod
    def _anchor_day(anchor: TimeInterval, timezone: str) -> date:
        local_start = anchor.start.in_timezone(timezone)
        return date(local_start.year, local_start.month, local_start.day)

    @staticmethod
    def step(anchor_day: date, pattern: RecurrencePattern, index: int) -> date:
        """Local date of the ``index``-th position of the pattern."""
        units = index * pattern.interval
        if pattern.frequency is Frequency.DAILY:
            return anchor_day + timedelta(days=units)
        if pattern.frequency is Frequency.WEEKLY:
            return anchor_day + timedelta(weeks=units)
        # Always measured from the anchor so a 31st clamps per month without drifting
        moved = pendulum.date(anchor_day.year, anchor_day.month, anchor_day.day).add(months=units)
        return date(moved.year, moved.month, moved.day)
