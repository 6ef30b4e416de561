"""
Domain-specific exception hierarchy for the scheduling engine.

Every error carries a stable ``kind`` name and a ``retryable`` flag so the
calling layer can map it to a response without inspecting the class.
"""

from typing import Iterable, Tuple


class SchedulingError(Exception):
    """Base class for all engine-level errors."""

    kind = "scheduling_error"
    retryable = False

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": str(self)}


class InvalidInterval(SchedulingError, ValueError):
    """Raised when an interval is empty, inverted, naive or outside the allowed horizon."""

    kind = "invalid_interval"


class ResourceInactive(SchedulingError):
    """Raised when a booking targets a resource that is switched off."""

    kind = "resource_inactive"

    def __init__(self, resource_id: str):
        super().__init__(f"Resource '{resource_id}' is not active")
        self.resource_id = resource_id


class ConflictError(SchedulingError):
    """Raised when a booking would exceed a resource's capacity."""

    kind = "conflict"

    def __init__(self, conflicting_appointment_ids: Iterable[str], message: str = ""):
        self.conflicting_appointment_ids: Tuple[str, ...] = tuple(
            sorted(set(conflicting_appointment_ids))
        )
        super().__init__(
            message
            or "Requested time conflicts with appointment(s): "
            + ", ".join(self.conflicting_appointment_ids)
        )

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "message": str(self),
            "conflictingAppointmentIds": list(self.conflicting_appointment_ids),
        }


class RecurrenceBoundsExceeded(SchedulingError):
    """Raised when a recurrence would run past the configured horizon ceiling."""

    kind = "recurrence_bounds_exceeded"


class ConcurrencyTimeout(SchedulingError):
    """Raised when a resource's serialization scope could not be acquired in time."""

    kind = "concurrency_timeout"
    retryable = True


class NotFoundError(SchedulingError, LookupError):
    """Raised when a referenced resource, service, appointment or series does not exist."""

    kind = "not_found"


class InvalidTransition(SchedulingError):
    """Raised when an appointment status change is not allowed."""

    kind = "invalid_transition"


class ConfigurationError(SchedulingError):
    """Raised when scheduling data (e.g. overlapping working hours) is inconsistent."""

    kind = "configuration_error"


class StoreError(SchedulingError):
    """Raised when the persistence collaborator cannot read or write data."""

    kind = "store_error"
