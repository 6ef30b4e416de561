"""
Application service orchestrating availability, slot generation and bookings.

The coordinator loads scheduling data through a store adapter and delegates
the actual calculations to the domain layer. Every mutation re-validates
against freshly loaded appointments while holding the per-resource locks,
so slots returned by ``find_slots`` are advisory only.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import timedelta
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
)

import pendulum

from ..config import EngineSettings
from ..domain.availability import AvailabilityCalendar
from ..domain.conflicts import ConflictDetector
from ..domain.exceptions import (
    ConflictError,
    InvalidInterval,
    InvalidTransition,
    ResourceInactive,
)
from ..domain.models import (
    Appointment,
    AppointmentStatus,
    Holiday,
    Occurrence,
    RecurrencePattern,
    RecurringSeries,
    Resource,
    Service,
    Slot,
    TimeInterval,
    WorkingHoursRule,
)
from ..domain.recurrence import RecurrenceExpander
from ..domain.slot_generator import SlotGenerator
from .locks import ResourceLockManager

logger = logging.getLogger(__name__)

Observer = Callable[[str, Any], None]
Bookings = Dict[str, Tuple[Resource, List[Appointment]]]


class ScheduleStoreProtocol(Protocol):
    """Protocol describing the persistence behaviour needed by the coordinator."""

    async def get_resource(self, resource_id: str) -> Resource:
        """Return the resource or raise ``NotFoundError``."""

    async def get_service(self, service_id: str) -> Service:
        """Return the service or raise ``NotFoundError``."""

    async def load_working_hours(
        self, resource_id: str, date_range: TimeInterval
    ) -> List[WorkingHoursRule]:
        """Return the working hours rules of a resource."""

    async def load_holidays(self, resource_id: str, date_range: TimeInterval) -> List[Holiday]:
        """Return resource-specific and global holidays touching ``date_range``."""

    async def load_scheduled_appointments(
        self, resource_id: str, date_range: TimeInterval
    ) -> List[Appointment]:
        """Return scheduled appointments whose blocked interval overlaps ``date_range``."""

    async def get_appointment(self, appointment_id: str) -> Appointment:
        """Return the appointment or raise ``NotFoundError``."""

    async def insert_appointment(self, appointment: Appointment) -> None:
        """Store a new appointment."""

    async def update_appointment(self, appointment: Appointment) -> None:
        """Replace an existing appointment (interval or series link changes)."""

    async def update_appointment_status(
        self, appointment_id: str, status: AppointmentStatus
    ) -> Appointment:
        """Set the status of an appointment and return the updated record."""

    async def get_series(self, series_id: str) -> RecurringSeries:
        """Return the series or raise ``NotFoundError``."""

    async def save_series(self, series: RecurringSeries) -> None:
        """Insert or replace a series."""

    async def load_series_appointments(self, series_id: str) -> List[Appointment]:
        """Return every appointment belonging to a series."""


class SeriesScope(str, Enum):
    """Which instances of a series a cancellation affects."""
    THIS = "this"
    FOLLOWING = "following"


class SchedulingCoordinator:
    """
    Answers slot queries and commits bookings atomically per resource.

    Configuration and collaborators are passed in explicitly; observers are
    called synchronously after a successful write and their failures never
    affect the outcome of the operation.
    """

    def __init__(
        self,
        store: ScheduleStoreProtocol,
        settings: Optional[EngineSettings] = None,
        *,
        calendar: Optional[AvailabilityCalendar] = None,
        slot_generator: Optional[SlotGenerator] = None,
        conflict_detector: Optional[ConflictDetector] = None,
        recurrence_expander: Optional[RecurrenceExpander] = None,
        lock_manager: Optional[ResourceLockManager] = None,
        observers: Iterable[Observer] = (),
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self._store = store
        self._settings = settings or EngineSettings()
        self._calendar = calendar or AvailabilityCalendar()
        self._slot_generator = slot_generator or SlotGenerator(self._settings.granularity_minutes)
        self._conflicts = conflict_detector or ConflictDetector()
        self._recurrence = recurrence_expander or RecurrenceExpander(
            self._settings.max_recurrence_occurrences
        )
        self._locks = lock_manager or ResourceLockManager(self._settings.lock_timeout_seconds)
        self._observers: List[Observer] = list(observers)
        self._new_id = id_factory or (lambda: uuid.uuid4().hex)

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    def add_observer(self, observer: Observer) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: Observer) -> None:
        self._observers.remove(observer)

    # Read side

    async def free_intervals(self, resource_id: str, date_range: TimeInterval) -> List[TimeInterval]:
        """Free time of a single resource, ignoring any particular service."""
        resource = await self._store.get_resource(resource_id)
        return await self._free_intervals(resource, date_range)

    async def find_slots(
        self,
        service_id: str,
        resource_ids: Union[str, Sequence[str]],
        date_range: TimeInterval,
        granularity_minutes: Optional[int] = None,
    ) -> List[Slot]:
        """
        Ranked bookable slots for ``service_id`` across the candidate resources.

        Read-only and lock-free; the result may already be stale when the
        caller commits, which is why ``commit`` checks again. Inactive
        resources are skipped.
        """
        service = await self._store.get_service(service_id)
        ids = _normalise_ids(resource_ids)

        results = await asyncio.gather(
            *(self._resource_slots(resource_id, service, date_range, granularity_minutes) for resource_id in ids)
        )
        per_resource = {resource_id: slots for resource_id, slots in zip(ids, results) if slots is not None}

        ranked = self._slot_generator.rank_slots(per_resource)
        logger.debug("Found %d slot(s) for service %s in %s", len(ranked), service_id, date_range)
        return ranked

    async def expand_series(
        self,
        series_id: str,
        horizon_cap: Optional[int] = None,
    ) -> List[Occurrence]:
        """
        Current occurrences of a series, honoring its exception dates.

        Without ``horizon_cap`` the cap the series was booked under is used.
        """
        series = await self._store.get_series(series_id)
        cap = self._resolve_cap(horizon_cap if horizon_cap is not None else series.horizon_cap)
        return list(self._recurrence.expand(series.pattern, series.anchor, cap, series.timezone))

    def preview_series(
        self,
        pattern: RecurrencePattern,
        anchor: TimeInterval,
        horizon_cap: Optional[int] = None,
        timezone: Optional[str] = None,
    ) -> List[Occurrence]:
        """
        Occurrences a series would have, without checking or booking anything.

        Raises:
            RecurrenceBoundsExceeded: The pattern's count or until reaches past the cap
        """
        cap = self._resolve_cap(horizon_cap)
        series_tz = timezone or self._settings.timezone
        self._recurrence.check_within_cap(pattern, anchor, cap, series_tz)
        return list(self._recurrence.expand(pattern, anchor, cap, series_tz))

    # Write side

    async def commit(
        self,
        resource_ids: Union[str, Sequence[str]],
        interval: TimeInterval,
        service_id: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Appointment:
        """
        Book ``interval`` for ``service_id`` on the given resource(s).

        Raises:
            InvalidInterval: Wrong duration, outside working hours or horizon
            ResourceInactive: A resource is switched off
            ConflictError: Capacity would be exceeded
            ConcurrencyTimeout: The resource locks could not be taken in time
        """
        ids = _normalise_ids(resource_ids)
        service = await self._store.get_service(service_id)
        resources = await self._active_resources(ids)

        self._validate_interval(interval, service)
        blocked = service.blocked_interval(interval)
        await self._ensure_bookable(resources, [blocked])

        async with self._locks.hold(ids):
            bookings = await self._load_bookings(resources, blocked)
            self._conflicts.raise_for_conflict(blocked, bookings)

            appointment = Appointment(
                id=self._new_id(),
                resource_ids=frozenset(ids),
                service_id=service.id,
                interval=interval,
                buffer_before_minutes=service.buffer_before_minutes,
                buffer_after_minutes=service.buffer_after_minutes,
                metadata=dict(metadata or {}),
            )
            await self._store.insert_appointment(appointment)

        logger.info("Committed appointment %s on %s at %s", appointment.id, ", ".join(ids), interval)
        self._notify("appointment.created", appointment)
        return appointment

    async def reschedule(self, appointment_id: str, new_interval: TimeInterval) -> Appointment:
        """
        Move an appointment to ``new_interval`` on the same resources.

        The original slot stays occupied until the move is stored. A series
        instance is detached into a standalone appointment and its original
        date becomes an exception of the series.
        """
        current = await self._store.get_appointment(appointment_id)
        if not current.is_scheduled:
            raise InvalidTransition(
                f"Appointment '{appointment_id}' is {current.status.value} and cannot be rescheduled"
            )

        service = await self._store.get_service(current.service_id)
        ids = sorted(current.resource_ids)
        resources = await self._active_resources(ids)

        self._validate_interval(new_interval, service)
        blocked = new_interval.expand(current.buffer_before_minutes, current.buffer_after_minutes)
        await self._ensure_bookable(resources, [blocked])

        async with self._locks.hold(ids):
            # Re-read under the lock; a concurrent cancel may have won
            current = await self._store.get_appointment(appointment_id)
            bookings = await self._load_bookings(resources, blocked)
            self._conflicts.raise_for_conflict(blocked, bookings, exclude_appointment_id=appointment_id)

            moved = current.moved_to(new_interval)
            if current.recurrence_id is not None:
                await self._add_series_exception(current)
                moved = moved.detached()
            await self._store.update_appointment(moved)

        logger.info("Rescheduled appointment %s to %s", appointment_id, new_interval)
        self._notify("appointment.rescheduled", moved)
        return moved

    async def cancel(
        self,
        appointment_id: str,
        scope: SeriesScope = SeriesScope.THIS,
    ) -> Appointment:
        """
        Cancel an appointment; its time is free again immediately.

        For a series instance ``SeriesScope.THIS`` adds the date to the
        series exceptions, ``SeriesScope.FOLLOWING`` ends the series before
        this instance and cancels every later scheduled instance.
        """
        scope = SeriesScope(scope)
        appointment = await self._store.get_appointment(appointment_id)
        cancelled: List[Appointment] = []

        async with self._locks.hold(appointment.resource_ids):
            appointment = await self._store.get_appointment(appointment_id)
            appointment.transition(AppointmentStatus.CANCELLED)

            if appointment.recurrence_id is not None:
                if scope is SeriesScope.FOLLOWING:
                    cancelled.extend(await self._truncate_series(appointment))
                else:
                    await self._add_series_exception(appointment)

            cancelled.insert(
                0,
                await self._store.update_appointment_status(appointment_id, AppointmentStatus.CANCELLED),
            )

        logger.info("Cancelled %d appointment(s) starting with %s", len(cancelled), appointment_id)
        for item in cancelled:
            self._notify("appointment.cancelled", item)
        return cancelled[0]

    async def complete(self, appointment_id: str) -> Appointment:
        """Mark a scheduled appointment as completed."""
        appointment = await self._store.get_appointment(appointment_id)

        async with self._locks.hold(appointment.resource_ids):
            appointment = await self._store.get_appointment(appointment_id)
            appointment.transition(AppointmentStatus.COMPLETED)
            completed = await self._store.update_appointment_status(
                appointment_id, AppointmentStatus.COMPLETED
            )

        logger.info("Completed appointment %s", appointment_id)
        self._notify("appointment.completed", completed)
        return completed

    async def book_series(
        self,
        resource_ids: Union[str, Sequence[str]],
        service_id: str,
        anchor: TimeInterval,
        pattern: RecurrencePattern,
        metadata: Optional[Mapping[str, Any]] = None,
        horizon_cap: Optional[int] = None,
        timezone: Optional[str] = None,
    ) -> Tuple[RecurringSeries, List[Appointment]]:
        """
        Book every occurrence of a recurring series, all or nothing.

        Occurrences are expanded in ``timezone`` (default: the first
        resource's timezone). If any occurrence falls outside working hours
        or conflicts, nothing is stored. A ``count`` or ``until`` reaching
        past the horizon cap raises ``RecurrenceBoundsExceeded`` instead of
        being cut short.
        """
        ids = _normalise_ids(resource_ids)
        service = await self._store.get_service(service_id)
        resources = await self._active_resources(ids)
        self._validate_interval(anchor, service)

        series_tz = timezone or resources[ids[0]].timezone
        cap = self._resolve_cap(horizon_cap)
        self._recurrence.check_within_cap(pattern, anchor, cap, series_tz)
        occurrences = list(self._recurrence.expand(pattern, anchor, cap, series_tz))
        if not occurrences:
            raise InvalidInterval("Recurrence pattern produces no occurrences")

        blocked = [service.blocked_interval(occurrence.interval) for occurrence in occurrences]
        for interval in blocked:
            self._validate_horizon(interval)
        await self._ensure_bookable(resources, blocked)

        span = TimeInterval(start=blocked[0].start, end=blocked[-1].end)
        series = RecurringSeries(
            id=self._new_id(),
            resource_ids=frozenset(ids),
            service_id=service.id,
            anchor=anchor,
            timezone=series_tz,
            pattern=pattern,
            metadata=dict(metadata or {}),
            horizon_cap=cap,
        )

        async with self._locks.hold(ids):
            bookings = await self._load_bookings(resources, span)
            conflicting = set()
            appointments: List[Appointment] = []

            for occurrence, occurrence_block in zip(occurrences, blocked):
                result = self._conflicts.check_conflict(occurrence_block, bookings)
                conflicting.update(result.conflicting_appointment_ids)

                appointment = Appointment(
                    id=self._new_id(),
                    resource_ids=frozenset(ids),
                    service_id=service.id,
                    interval=occurrence.interval,
                    recurrence_id=series.id,
                    occurrence_date=occurrence.occurrence_date,
                    buffer_before_minutes=service.buffer_before_minutes,
                    buffer_after_minutes=service.buffer_after_minutes,
                    metadata={**series.metadata, **({"dst_shifted": True} if occurrence.shifted else {})},
                )
                appointments.append(appointment)
                # Later occurrences must also fit next to earlier ones
                for _, resource_appointments in bookings.values():
                    resource_appointments.append(appointment)

            if conflicting:
                raise ConflictError(conflicting)

            await self._store.save_series(series)
            for appointment in appointments:
                await self._store.insert_appointment(appointment)

        logger.info("Booked series %s with %d occurrence(s)", series.id, len(appointments))
        self._notify("series.created", series)
        for appointment in appointments:
            self._notify("appointment.created", appointment)
        return series, appointments

    # Internals

    async def _resource_slots(
        self,
        resource_id: str,
        service: Service,
        date_range: TimeInterval,
        granularity_minutes: Optional[int],
    ) -> Optional[List[Slot]]:
        resource = await self._store.get_resource(resource_id)
        if not resource.active:
            logger.warning("Skipping inactive resource %s", resource_id)
            return None

        free = await self._free_intervals(resource, date_range)
        return list(
            self._slot_generator.candidate_slots(
                resource, service, free, date_range, granularity_minutes
            )
        )

    async def _free_intervals(self, resource: Resource, date_range: TimeInterval) -> List[TimeInterval]:
        rules, holidays, appointments = await asyncio.gather(
            self._store.load_working_hours(resource.id, date_range),
            self._store.load_holidays(resource.id, date_range),
            self._store.load_scheduled_appointments(resource.id, date_range),
        )
        return self._calendar.free_intervals(resource, date_range, rules, holidays, appointments)

    async def _active_resources(self, resource_ids: Sequence[str]) -> Dict[str, Resource]:
        resources = await asyncio.gather(*(self._store.get_resource(rid) for rid in resource_ids))
        for resource in resources:
            if not resource.active:
                raise ResourceInactive(resource.id)
        return {resource.id: resource for resource in resources}

    async def _ensure_bookable(
        self,
        resources: Mapping[str, Resource],
        blocked: Sequence[TimeInterval],
    ) -> None:
        """Every blocked window has to lie inside working hours minus holidays."""
        span = TimeInterval(
            start=min(interval.start for interval in blocked),
            end=max(interval.end for interval in blocked),
        )
        for resource in resources.values():
            rules, holidays = await asyncio.gather(
                self._store.load_working_hours(resource.id, span),
                self._store.load_holidays(resource.id, span),
            )
            working = self._calendar.working_intervals(resource, span, rules, holidays)
            for interval in blocked:
                if not any(window.covers(interval) for window in working):
                    raise InvalidInterval(
                        f"{interval} is outside the working hours of resource '{resource.id}'"
                    )

    async def _load_bookings(
        self,
        resources: Mapping[str, Resource],
        window: TimeInterval,
    ) -> Bookings:
        loaded = await asyncio.gather(
            *(self._store.load_scheduled_appointments(rid, window) for rid in resources)
        )
        return {
            rid: (resources[rid], list(appointments))
            for rid, appointments in zip(resources, loaded)
        }

    def _validate_interval(self, interval: TimeInterval, service: Service) -> None:
        if interval.duration != timedelta(minutes=service.duration_minutes):
            raise InvalidInterval(
                f"Interval {interval} lasts {interval.duration_minutes()} minutes, "
                f"service '{service.id}' needs {service.duration_minutes}"
            )
        self._validate_horizon(interval)

    def _resolve_cap(self, horizon_cap: Optional[int]) -> int:
        return horizon_cap if horizon_cap is not None else self._settings.default_horizon_cap

    def _validate_horizon(self, interval: TimeInterval) -> None:
        horizon_days = self._settings.booking_horizon_days
        if horizon_days is None:
            return
        limit = pendulum.now("UTC").add(days=horizon_days)
        if interval.end > limit:
            raise InvalidInterval(
                f"{interval} is beyond the booking horizon of {horizon_days} days"
            )

    async def _add_series_exception(self, appointment: Appointment) -> None:
        series = await self._store.get_series(appointment.recurrence_id)
        pattern = series.pattern.with_exception(appointment.occurrence_date)
        await self._store.save_series(replace(series, pattern=pattern))

    async def _truncate_series(self, appointment: Appointment) -> List[Appointment]:
        """End the series before ``appointment`` and cancel the later instances."""
        series = await self._store.get_series(appointment.recurrence_id)
        await self._store.save_series(
            replace(series, pattern=series.pattern.truncated_before(appointment.occurrence_date))
        )

        cancelled: List[Appointment] = []
        for sibling in await self._store.load_series_appointments(series.id):
            if (
                sibling.id != appointment.id
                and sibling.is_scheduled
                and sibling.occurrence_date is not None
                and sibling.occurrence_date > appointment.occurrence_date
            ):
                cancelled.append(
                    await self._store.update_appointment_status(sibling.id, AppointmentStatus.CANCELLED)
                )
        return cancelled

    def _notify(self, event: str, payload: Any) -> None:
        for observer in list(self._observers):
            try:
                observer(event, payload)
            except Exception:
                logger.exception("Observer %r failed while handling %s", observer, event)


def _normalise_ids(resource_ids: Union[str, Sequence[str]]) -> List[str]:
    if isinstance(resource_ids, str):
        resource_ids = [resource_ids]
    ids = list(dict.fromkeys(resource_ids))
    if not ids:
        raise ValueError("At least one resource id is required")
    return ids

