"""
Tests for conflict detection.
"""

import pendulum
import pytest

from slotengine.domain.conflicts import ConflictDetector
from slotengine.domain.exceptions import ConflictError
from slotengine.domain.models import Appointment, AppointmentStatus, Resource, ResourceKind, TimeInterval

TZ = "Europe/Berlin"


def _iv(start: str, end: str) -> TimeInterval:
    return TimeInterval(
        start=pendulum.parse(f"2024-11-25 {start}", tz=TZ),
        end=pendulum.parse(f"2024-11-25 {end}", tz=TZ),
    )


def _appointment(appointment_id, start, end, resource_ids=("alice",), **kwargs):
    return Appointment(
        id=appointment_id,
        resource_ids=frozenset(resource_ids),
        service_id="consultation",
        interval=_iv(start, end),
        **kwargs,
    )


ALICE = Resource(id="alice")
ROOM = Resource(id="room-1", kind=ResourceKind.ROOM, capacity=2)


class TestConflictDetector:
    """Tests for ConflictDetector."""

    def test_overlap_conflicts(self):
        detector = ConflictDetector()
        existing = [_appointment("a1", "10:00", "11:00")]

        result = detector.check(_iv("10:30", "11:30"), ALICE, existing)

        assert not result
        assert result.conflicting_appointment_ids == ("a1",)

    def test_touching_is_fine(self):
        detector = ConflictDetector()
        existing = [_appointment("a1", "10:00", "11:00")]

        assert detector.check(_iv("11:00", "11:30"), ALICE, existing).ok
        assert detector.check(_iv("09:30", "10:00"), ALICE, existing).ok

    def test_buffers_are_part_of_existing_booking(self):
        detector = ConflictDetector()
        existing = [_appointment("a1", "10:00", "10:30", buffer_before_minutes=10, buffer_after_minutes=5)]

        assert not detector.check(_iv("10:30", "11:00"), ALICE, existing).ok
        assert detector.check(_iv("10:35", "11:05"), ALICE, existing).ok
        assert not detector.check(_iv("09:30", "09:55"), ALICE, existing).ok

    def test_cancelled_and_excluded_are_ignored(self):
        detector = ConflictDetector()
        existing = [
            _appointment("a1", "10:00", "11:00", status=AppointmentStatus.CANCELLED),
            _appointment("a2", "10:00", "11:00"),
        ]

        assert detector.check(_iv("10:00", "11:00"), ALICE, existing, exclude_appointment_id="a2").ok

    def test_capacity_two_allows_one_overlap(self):
        detector = ConflictDetector()
        existing = [_appointment("a1", "10:00", "11:00", resource_ids=("room-1",))]

        assert detector.check(_iv("10:30", "11:30"), ROOM, existing).ok

    def test_capacity_two_rejects_third(self):
        detector = ConflictDetector()
        existing = [
            _appointment("a1", "10:00", "11:00", resource_ids=("room-1",)),
            _appointment("a2", "10:30", "11:30", resource_ids=("room-1",)),
        ]

        result = detector.check(_iv("10:45", "11:15"), ROOM, existing)

        assert not result.ok
        assert result.conflicting_appointment_ids == ("a1", "a2")

    def test_capacity_two_when_existing_do_not_overlap_each_other(self):
        """Two bookings side by side never fill both seats at once."""
        detector = ConflictDetector()
        existing = [
            _appointment("a1", "10:00", "10:30", resource_ids=("room-1",)),
            _appointment("a2", "10:30", "11:00", resource_ids=("room-1",)),
        ]

        assert detector.check(_iv("10:00", "11:00"), ROOM, existing).ok

    def test_multi_resource_booking(self):
        """Every resource of a booking has to be free."""
        detector = ConflictDetector()
        bookings = {
            "alice": (ALICE, []),
            "room-1": (
                ROOM,
                [
                    _appointment("a1", "10:00", "11:00", resource_ids=("room-1",)),
                    _appointment("a2", "10:00", "11:00", resource_ids=("room-1", "bob")),
                ],
            ),
        }

        result = detector.check_conflict(_iv("10:15", "10:45"), bookings)

        assert not result.ok
        with pytest.raises(ConflictError) as exc_info:
            detector.raise_for_conflict(_iv("10:15", "10:45"), bookings)
        assert exc_info.value.conflicting_appointment_ids == ("a1", "a2")
        assert exc_info.value.to_dict()["error"] == "conflict"
