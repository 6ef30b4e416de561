"""
Capacity-aware conflict detection between a candidate booking and existing appointments.
"""

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Sequence, Tuple

from . import intervals
from .exceptions import ConflictError
from .models import Appointment, Resource, TimeInterval


@dataclass(frozen=True)
class ConflictResult:
    """Outcome of a conflict check; ``ok`` is False when capacity would be exceeded."""
    ok: bool
    conflicting_appointment_ids: Tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return self.ok


class ConflictDetector:
    """
    Decides whether a candidate blocked interval fits next to existing bookings.

    Two intervals conflict iff they overlap (``a.start < b.end and b.start <
    a.end``) and the resource's remaining capacity during the overlap would be
    exceeded. Only scheduled appointments count.
    """

    def check(
        self,
        candidate: TimeInterval,
        resource: Resource,
        appointments: Iterable[Appointment],
        exclude_appointment_id: Optional[str] = None,
    ) -> ConflictResult:
        """Check a single resource."""
        overlapping = [
            appointment
            for appointment in appointments
            if appointment.is_scheduled
            and appointment.id != exclude_appointment_id
            and resource.id in appointment.resource_ids
            and appointment.blocked_interval.overlaps(candidate)
        ]
        if not overlapping:
            return ConflictResult(ok=True)

        peak = intervals.peak_overlap(
            (appointment.blocked_interval for appointment in overlapping),
            within=candidate,
        )
        if peak + 1 <= resource.capacity:
            return ConflictResult(ok=True)

        return ConflictResult(
            ok=False,
            conflicting_appointment_ids=tuple(sorted(a.id for a in overlapping)),
        )

    def check_conflict(
        self,
        candidate: TimeInterval,
        bookings: Mapping[str, Tuple[Resource, Sequence[Appointment]]],
        exclude_appointment_id: Optional[str] = None,
    ) -> ConflictResult:
        """
        Check every resource of a booking.

        Args:
            candidate: Blocked interval (buffers included) of the booking
            bookings: Maps resource id to the resource and its appointments
            exclude_appointment_id: Appointment to ignore (the one being moved)
        """
        conflicting = set()
        for resource, appointments in bookings.values():
            result = self.check(candidate, resource, appointments, exclude_appointment_id)
            conflicting.update(result.conflicting_appointment_ids)

        if conflicting:
            return ConflictResult(ok=False, conflicting_appointment_ids=tuple(sorted(conflicting)))
        return ConflictResult(ok=True)

    def raise_for_conflict(
        self,
        candidate: TimeInterval,
        bookings: Mapping[str, Tuple[Resource, Sequence[Appointment]]],
        exclude_appointment_id: Optional[str] = None,
    ) -> None:
        result = self.check_conflict(candidate, bookings, exclude_appointment_id)
        if not result.ok:
            raise ConflictError(result.conflicting_appointment_ids)
