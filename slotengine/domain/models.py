"""
Domain models for intervals, resources, services, appointments and recurrence.

All records are plain dataclasses. Timestamps are normalised to UTC when a
``TimeInterval`` is built, so every comparison inside the engine happens in UTC;
local wall-clock values only appear when rules are expanded in a resource's
timezone or when something is rendered for display.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple

import pendulum
from pendulum import DateTime

from .exceptions import ConfigurationError, InvalidInterval, InvalidTransition


def to_utc(value: datetime, label: str = "timestamp") -> DateTime:
    """Convert an aware datetime to a UTC pendulum DateTime."""
    if not isinstance(value, datetime):
        raise InvalidInterval(f"{label} must be a datetime, got {type(value).__name__}")
    if value.tzinfo is None or value.utcoffset() is None:
        raise InvalidInterval(f"{label} {value} has no timezone/UTC offset")
    return pendulum.instance(value).in_timezone("UTC")


def local_datetime(day: date, at: time, timezone: str) -> Tuple[DateTime, bool]:
    """
    Build the local datetime for ``day`` at ``at`` in ``timezone``.

    Returns the datetime and whether it had to be moved because the wall-clock
    time does not exist on that day (spring-forward gap). Pendulum resolves
    such times by shifting forward; ambiguous (fold) times resolve to the
    post-transition offset.
    """
    dt = pendulum.datetime(
        day.year, day.month, day.day, at.hour, at.minute, at.second, tz=timezone
    )
    shifted = dt.date() != day or (dt.hour, dt.minute) != (at.hour, at.minute)
    return dt, shifted


def iter_days(first: date, last: date) -> Iterator[date]:
    """Yield every date from ``first`` to ``last`` inclusive."""
    current = first
    while current <= last:
        yield current
        current = current + timedelta(days=1)


@dataclass(frozen=True)
class TimeInterval:
    """
    Half-open time interval ``[start, end)``.

    Invariant: start must be before end. Both ends are stored in UTC.
    """
    start: DateTime
    end: DateTime

    def __post_init__(self):
        start = to_utc(self.start, "start")
        end = to_utc(self.end, "end")
        if start >= end:
            raise InvalidInterval(f"Start time {start} must be before end time {end}")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    @classmethod
    def parse(cls, start: str, end: str, tz: str = "UTC") -> "TimeInterval":
        """Build an interval from two ISO-8601 strings; ``tz`` applies to naive strings."""
        return cls(start=pendulum.parse(start, tz=tz), end=pendulum.parse(end, tz=tz))

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def duration_minutes(self) -> int:
        """Return the duration in minutes."""
        return int(self.duration.total_seconds() // 60)

    def overlaps(self, other: "TimeInterval") -> bool:
        """Check if this interval overlaps with another."""
        return self.start < other.end and other.start < self.end

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end

    def covers(self, other: "TimeInterval") -> bool:
        """True when ``other`` lies completely inside this interval."""
        return self.start <= other.start and other.end <= self.end

    def intersect(self, other: "TimeInterval") -> "TimeInterval | None":
        """
        Calculate the intersection of two intervals.
        Returns None if there is no overlap.
        """
        if not self.overlaps(other):
            return None
        return TimeInterval(start=max(self.start, other.start), end=min(self.end, other.end))

    def expand(self, before_minutes: int = 0, after_minutes: int = 0) -> "TimeInterval":
        """Widen the interval by the given number of minutes on each side."""
        return TimeInterval(
            start=self.start.subtract(minutes=before_minutes),
            end=self.end.add(minutes=after_minutes),
        )

    def to_dict(self, timezone: Optional[str] = None) -> Dict[str, str]:
        tz = timezone or "UTC"
        return {
            "startTime": self.start.in_timezone(tz).isoformat(),
            "endTime": self.end.in_timezone(tz).isoformat(),
        }

    def __str__(self) -> str:
        return f"{self.start.format('DD.MM.YYYY HH:mm')} - {self.end.format('HH:mm')} UTC"


class ResourceKind(str, Enum):
    STAFF = "staff"
    ROOM = "room"
    EQUIPMENT = "equipment"

    @property
    def shareable(self) -> bool:
        """Staff members serve one appointment at a time; rooms and equipment may be shared."""
        return self is not ResourceKind.STAFF


@dataclass(frozen=True)
class Resource:
    """A bookable staff member, room or piece of equipment."""
    id: str
    kind: ResourceKind = ResourceKind.STAFF
    name: str = ""
    timezone: str = "UTC"
    capacity: int = 1
    active: bool = True

    def __post_init__(self):
        object.__setattr__(self, "kind", ResourceKind(self.kind))
        if self.capacity < 1:
            raise ConfigurationError(f"Resource '{self.id}' capacity must be at least 1")
        if self.capacity > 1 and not self.kind.shareable:
            raise ConfigurationError(
                f"Resource '{self.id}' is {self.kind.value} and cannot have capacity {self.capacity}"
            )

    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class WorkingHoursRule:
    """
    A recurring (weekday) or one-off (date) working window in the resource's local time.

    ``end_time <= start_time`` means the window runs past midnight into the
    following day.
    """
    resource_id: str
    start_time: time
    end_time: time
    weekday: Optional[int] = None  # 0=Monday, 6=Sunday
    on_date: Optional[date] = None

    def __post_init__(self):
        if (self.weekday is None) == (self.on_date is None):
            raise ConfigurationError("A working hours rule needs exactly one of weekday or on_date")
        if self.weekday is not None and self.weekday not in range(7):
            raise ConfigurationError(f"weekday must be between 0 and 6, got {self.weekday}")
        if self.start_time == self.end_time:
            raise ConfigurationError("Working hours rule must not start and end at the same time")

    @property
    def overnight(self) -> bool:
        return self.end_time <= self.start_time

    def applies_to(self, day: date) -> bool:
        if self.on_date is not None:
            return self.on_date == day
        return day.weekday() == self.weekday

    def window_for(self, day: date, timezone: str) -> TimeInterval:
        """Concrete interval for this rule starting on ``day``."""
        start, _ = local_datetime(day, self.start_time, timezone)
        end_day = day + timedelta(days=1) if self.overnight else day
        end, _ = local_datetime(end_day, self.end_time, timezone)
        return TimeInterval(start=start, end=end)


@dataclass(frozen=True)
class Holiday:
    """
    A date range that removes availability.

    ``resource_id=None`` applies to every resource. With ``start_time`` and
    ``end_time`` only that window is removed on each day (a recurring break).
    """
    start_date: date
    end_date: Optional[date] = None
    resource_id: Optional[str] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    reason: str = ""

    def __post_init__(self):
        if self.end_date is None:
            object.__setattr__(self, "end_date", self.start_date)
        if self.end_date < self.start_date:
            raise ConfigurationError(f"Holiday end {self.end_date} is before start {self.start_date}")
        if (self.start_time is None) != (self.end_time is None):
            raise ConfigurationError("Holiday needs both start_time and end_time, or neither")
        if self.start_time is not None and self.end_time <= self.start_time:
            raise ConfigurationError("Holiday end_time must be after start_time")

    def applies_to(self, resource_id: str) -> bool:
        return self.resource_id is None or self.resource_id == resource_id

    def windows(self, timezone: str, within: Optional[TimeInterval] = None) -> List[TimeInterval]:
        """
        Concrete blocked intervals in the given timezone.

        With ``within`` a daily break is only expanded for the local days
        touching that interval.
        """
        if self.start_time is None:
            start, _ = local_datetime(self.start_date, time(0, 0), timezone)
            end, _ = local_datetime(self.end_date + timedelta(days=1), time(0, 0), timezone)
            return [TimeInterval(start=start, end=end)]

        first, last = self.start_date, self.end_date
        if within is not None:
            first = max(first, within.start.in_timezone(timezone).date() - timedelta(days=1))
            last = min(last, within.end.in_timezone(timezone).date())

        windows: List[TimeInterval] = []
        for day in iter_days(first, last):
            start, _ = local_datetime(day, self.start_time, timezone)
            end, _ = local_datetime(day, self.end_time, timezone)
            if start < end:
                windows.append(TimeInterval(start=start, end=end))
        return windows


@dataclass(frozen=True)
class Service:
    """What is being booked: a duration plus the buffers kept free around it."""
    id: str
    duration_minutes: int
    buffer_before_minutes: int = 0
    buffer_after_minutes: int = 0
    name: str = ""

    def __post_init__(self):
        if self.duration_minutes <= 0:
            raise ConfigurationError(f"Service '{self.id}' duration must be greater than zero")
        if self.buffer_before_minutes < 0 or self.buffer_after_minutes < 0:
            raise ConfigurationError(f"Service '{self.id}' buffers must not be negative")

    def interval_at(self, start: datetime) -> TimeInterval:
        start = to_utc(start, "start")
        return TimeInterval(start=start, end=start.add(minutes=self.duration_minutes))

    def blocked_interval(self, interval: TimeInterval) -> TimeInterval:
        """The interval widened by this service's buffers."""
        return interval.expand(self.buffer_before_minutes, self.buffer_after_minutes)


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


_ALLOWED_TRANSITIONS = {
    AppointmentStatus.SCHEDULED: {AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED},
    AppointmentStatus.CANCELLED: set(),
    AppointmentStatus.COMPLETED: set(),
}


@dataclass(frozen=True)
class Appointment:
    """
    A booking of one service on one or more resources.

    Buffers are copied from the service at booking time; ``blocked_interval``
    is what the appointment actually occupies on its resources.
    """
    id: str
    resource_ids: FrozenSet[str]
    service_id: str
    interval: TimeInterval
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    recurrence_id: Optional[str] = None
    occurrence_date: Optional[date] = None
    buffer_before_minutes: int = 0
    buffer_after_minutes: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    horizon_cap: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "resource_ids", frozenset(self.resource_ids))
        object.__setattr__(self, "status", AppointmentStatus(self.status))
        if not self.resource_ids:
            raise ConfigurationError(f"Appointment '{self.id}' must reference at least one resource")

    @property
    def blocked_interval(self) -> TimeInterval:
        return self.interval.expand(self.buffer_before_minutes, self.buffer_after_minutes)

    @property
    def is_scheduled(self) -> bool:
        return self.status is AppointmentStatus.SCHEDULED

    def transition(self, status: AppointmentStatus) -> "Appointment":
        """Return a copy in ``status``; terminal states cannot be left."""
        status = AppointmentStatus(status)
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Appointment '{self.id}' cannot go from {self.status.value} to {status.value}"
            )
        return replace(self, status=status)

    def moved_to(self, interval: TimeInterval) -> "Appointment":
        if not self.is_scheduled:
            raise InvalidTransition(
                f"Appointment '{self.id}' is {self.status.value} and cannot be rescheduled"
            )
        return replace(self, interval=interval)

    def detached(self) -> "Appointment":
        """Standalone copy of a series instance."""
        return replace(self, recurrence_id=None, occurrence_date=None)

    def to_dict(self, timezone: Optional[str] = None) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "resourceIds": sorted(self.resource_ids),
            "serviceId": self.service_id,
            "status": self.status.value,
            "recurrenceId": self.recurrence_id,
            "occurrenceDate": self.occurrence_date.isoformat() if self.occurrence_date else None,
            "bufferBeforeMinutes": self.buffer_before_minutes,
            "bufferAfterMinutes": self.buffer_after_minutes,
            "metadata": dict(self.metadata),
        }
        data.update(self.interval.to_dict(timezone))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Appointment":
        occurrence = data.get("occurrenceDate")
        return cls(
            id=data["id"],
            resource_ids=frozenset(data["resourceIds"]),
            service_id=data["serviceId"],
            interval=TimeInterval(
                start=pendulum.parse(data["startTime"]),
                end=pendulum.parse(data["endTime"]),
            ),
            status=AppointmentStatus(data.get("status", "scheduled")),
            recurrence_id=data.get("recurrenceId"),
            occurrence_date=date.fromisoformat(occurrence) if occurrence else None,
            buffer_before_minutes=data.get("bufferBeforeMinutes", 0),
            buffer_after_minutes=data.get("bufferAfterMinutes", 0),
            metadata=dict(data.get("metadata") or {}),
        )


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class RecurrencePattern:
    """How a series repeats. ``until`` is inclusive; with neither bound the horizon cap applies."""
    frequency: Frequency
    interval: int = 1
    count: Optional[int] = None
    until: Optional[date] = None
    exception_dates: FrozenSet[date] = frozenset()

    def __post_init__(self):
        object.__setattr__(self, "frequency", Frequency(self.frequency))
        object.__setattr__(self, "exception_dates", frozenset(self.exception_dates))
        if self.interval < 1:
            raise ConfigurationError(f"Recurrence interval must be at least 1, got {self.interval}")
        if self.count is not None and self.count < 1:
            raise ConfigurationError(f"Recurrence count must be at least 1, got {self.count}")

    def with_exception(self, day: date) -> "RecurrencePattern":
        return replace(self, exception_dates=self.exception_dates | {day})

    def truncated_before(self, day: date) -> "RecurrencePattern":
        """Pattern that ends on the day before ``day``."""
        last = day - timedelta(days=1)
        if self.until is not None and self.until <= last:
            return self
        return replace(self, until=last)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frequency": self.frequency.value,
            "interval": self.interval,
            "count": self.count,
            "until": self.until.isoformat() if self.until else None,
            "exceptionDates": sorted(d.isoformat() for d in self.exception_dates),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecurrencePattern":
        until = data.get("until")
        return cls(
            frequency=Frequency(data["frequency"]),
            interval=data.get("interval", 1),
            count=data.get("count"),
            until=date.fromisoformat(until) if until else None,
            exception_dates=frozenset(
                date.fromisoformat(d) for d in data.get("exceptionDates", [])
            ),
        )


@dataclass(frozen=True)
class RecurringSeries:
    """Stored owner of a recurrence pattern and the anchor instance it repeats."""
    id: str
    resource_ids: FrozenSet[str]
    service_id: str
    anchor: TimeInterval
    timezone: str
    pattern: RecurrencePattern
    metadata: Dict[str, Any] = field(default_factory=dict)
    # cap the series was booked under; None means the engine default
    horizon_cap: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "resource_ids", frozenset(self.resource_ids))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "resourceIds": sorted(self.resource_ids),
            "serviceId": self.service_id,
            "anchor": self.anchor.to_dict(self.timezone),
            "timezone": self.timezone,
            "pattern": self.pattern.to_dict(),
            "metadata": dict(self.metadata),
            "horizonCap": self.horizon_cap,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecurringSeries":
        return cls(
            id=data["id"],
            resource_ids=frozenset(data["resourceIds"]),
            service_id=data["serviceId"],
            anchor=TimeInterval(
                start=pendulum.parse(data["anchor"]["startTime"]),
                end=pendulum.parse(data["anchor"]["endTime"]),
            ),
            timezone=data["timezone"],
            pattern=RecurrencePattern.from_dict(data["pattern"]),
            metadata=dict(data.get("metadata") or {}),
            horizon_cap=data.get("horizonCap"),
        )


@dataclass(frozen=True)
class Occurrence:
    """One expanded instance of a series. ``shifted`` marks a DST-gap adjustment."""
    index: int
    occurrence_date: date
    interval: TimeInterval
    shifted: bool = False


@dataclass(frozen=True)
class Slot:
    """
    A bookable start on a specific resource.
    """
    resource_id: str
    interval: TimeInterval

    @property
    def start(self) -> DateTime:
        return self.interval.start

    def to_dict(self, timezone: Optional[str] = None) -> Dict[str, str]:
        data = {"resourceId": self.resource_id}
        data.update(self.interval.to_dict(timezone))
        return data

    def format_display(self, timezone: str = "UTC") -> str:
        """
        Format the slot for display.
        Format: Weekday, DD.MM.YYYY | HH:MM - HH:MM (resource)
        """
        start = self.interval.start.in_timezone(timezone)
        end = self.interval.end.in_timezone(timezone)
        return (
            f"{start.format('ddd, DD.MM.YYYY')} | "
            f"{start.format('HH:mm')} - {end.format('HH:mm')} ({self.resource_id})"
        )


def group_by_resource(slots: Iterable[Slot]) -> Dict[str, List[Slot]]:
    grouped: Dict[str, List[Slot]] = {}
    for slot in slots:
        grouped.setdefault(slot.resource_id, []).append(slot)
    return grouped
