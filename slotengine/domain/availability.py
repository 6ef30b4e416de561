"""
Per-resource availability: working hours minus holidays minus bookings.

Pure domain logic; the caller loads rules, holidays and appointments and
passes them in, so the same inputs always produce the same timeline.
"""

import logging
from datetime import date, timedelta
from typing import Dict, Iterable, List

from . import intervals
from .exceptions import ConfigurationError
from .models import Appointment, Holiday, Resource, TimeInterval, WorkingHoursRule, iter_days

logger = logging.getLogger(__name__)


class AvailabilityCalendar:
    """
    Builds the free-time timeline of a single resource.

    Algorithm:
    1. Expand working hours rules into concrete windows for every local day
       touching the range (starting one day early to catch overnight rules)
    2. Merge the windows into a union so adjacent windows never double count
    3. Subtract holidays and breaks
    4. Subtract the periods where scheduled appointments fill the capacity
    5. Clip to the requested range

    Service buffers are not part of the calendar; the slot generator deducts
    them for the specific service being scheduled.
    """

    def working_windows(
        self,
        resource: Resource,
        date_range: TimeInterval,
        rules: Iterable[WorkingHoursRule],
    ) -> List[TimeInterval]:
        """Union of working hours windows intersecting ``date_range``."""
        rules = [rule for rule in rules if rule.resource_id == resource.id]
        if not rules:
            return []

        windows: List[TimeInterval] = []
        first_day = date_range.start.in_timezone(resource.timezone).date() - timedelta(days=1)
        last_day = date_range.end.in_timezone(resource.timezone).date()

        for day in iter_days(first_day, last_day):
            for rule in self._rules_for_day(rules, day):
                windows.append(rule.window_for(day, resource.timezone))

        self._ensure_disjoint(resource, windows)
        return intervals.clip_all(intervals.merge(windows), date_range)

    def working_intervals(
        self,
        resource: Resource,
        date_range: TimeInterval,
        rules: Iterable[WorkingHoursRule],
        holidays: Iterable[Holiday],
    ) -> List[TimeInterval]:
        """Working hours minus holidays, ignoring bookings."""
        if not resource.active:
            return []

        blocked: List[TimeInterval] = []
        for holiday in holidays:
            if holiday.applies_to(resource.id):
                blocked.extend(holiday.windows(resource.timezone, date_range))

        return intervals.subtract(
            self.working_windows(resource, date_range, rules),
            blocked,
        )

    def free_intervals(
        self,
        resource: Resource,
        date_range: TimeInterval,
        rules: Iterable[WorkingHoursRule],
        holidays: Iterable[Holiday],
        appointments: Iterable[Appointment],
    ) -> List[TimeInterval]:
        """
        Free time of ``resource`` inside ``date_range``.

        Returns an ordered list of non-overlapping intervals.
        """
        working = self.working_intervals(resource, date_range, rules, holidays)
        if not working:
            return []

        free = intervals.subtract(working, self.occupied_intervals(resource, appointments))
        logger.debug(
            "Resource %s has %d free interval(s) in %s", resource.id, len(free), date_range
        )
        return free

    def free_intervals_by_day(
        self,
        resource: Resource,
        date_range: TimeInterval,
        rules: Iterable[WorkingHoursRule],
        holidays: Iterable[Holiday],
        appointments: Iterable[Appointment],
    ) -> Dict[date, List[TimeInterval]]:
        """Free intervals grouped by the resource's local date."""
        by_day: Dict[date, List[TimeInterval]] = {}
        free = self.free_intervals(resource, date_range, rules, holidays, appointments)

        for interval in free:
            for piece in intervals.split_by_day(interval, resource.timezone):
                local_day = piece.start.in_timezone(resource.timezone).date()
                by_day.setdefault(local_day, []).append(piece)

        return by_day

    @staticmethod
    def occupied_intervals(
        resource: Resource,
        appointments: Iterable[Appointment],
    ) -> List[TimeInterval]:
        """Periods during which scheduled appointments use up the whole capacity."""
        blocks = [
            appointment.blocked_interval
            for appointment in appointments
            if appointment.is_scheduled and resource.id in appointment.resource_ids
        ]
        return intervals.saturated(blocks, resource.capacity)

    @staticmethod
    def _rules_for_day(rules: List[WorkingHoursRule], day: date) -> List[WorkingHoursRule]:
        # A date-specific rule replaces the weekday pattern for that date
        dated = [rule for rule in rules if rule.on_date is not None and rule.applies_to(day)]
        if dated:
            return dated
        return [rule for rule in rules if rule.weekday is not None and rule.applies_to(day)]

    @staticmethod
    def _ensure_disjoint(resource: Resource, windows: List[TimeInterval]) -> None:
        ordered = sorted(windows, key=lambda w: w.start)
        for previous, current in zip(ordered, ordered[1:]):
            if current.start < previous.end:
                raise ConfigurationError(
                    f"Working hours of resource '{resource.id}' overlap: {previous} and {current}"
                )
