"""
Domain layer - pure scheduling logic without any I/O.
"""

from .availability import AvailabilityCalendar
from .conflicts import ConflictDetector, ConflictResult
from .models import (
    Appointment,
    AppointmentStatus,
    Frequency,
    Holiday,
    Occurrence,
    RecurrencePattern,
    RecurringSeries,
    Resource,
    ResourceKind,
    Service,
    Slot,
    TimeInterval,
    WorkingHoursRule,
)
from .recurrence import RecurrenceExpander
from .slot_generator import SlotGenerator

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "AvailabilityCalendar",
    "ConflictDetector",
    "ConflictResult",
    "Frequency",
    "Holiday",
    "Occurrence",
    "RecurrenceExpander",
    "RecurrencePattern",
    "RecurringSeries",
    "Resource",
    "ResourceKind",
    "Service",
    "Slot",
    "SlotGenerator",
    "TimeInterval",
    "WorkingHoursRule",
]
