"""
In-memory and JSON-file backed schedule stores.
"""

import asyncio
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Dict, Iterable, List

from ..domain.exceptions import NotFoundError, StoreError
from ..domain.models import (
    Appointment,
    AppointmentStatus,
    Holiday,
    RecurringSeries,
    Resource,
    Service,
    TimeInterval,
    WorkingHoursRule,
)

logger = logging.getLogger(__name__)


class InMemoryScheduleStore:
    """
    Store implementing ``ScheduleStoreProtocol`` on plain dictionaries.

    Every call yields to the event loop once, the way a real database
    round-trip would, so concurrent coordinators interleave realistically.
    """

    def __init__(
        self,
        resources: Iterable[Resource] = (),
        services: Iterable[Service] = (),
        working_hours: Iterable[WorkingHoursRule] = (),
        holidays: Iterable[Holiday] = (),
        appointments: Iterable[Appointment] = (),
        series: Iterable[RecurringSeries] = (),
    ):
        self.resources: Dict[str, Resource] = {r.id: r for r in resources}
        self.services: Dict[str, Service] = {s.id: s for s in services}
        self.working_hours: List[WorkingHoursRule] = list(working_hours)
        self.holidays: List[Holiday] = list(holidays)
        self.appointments: Dict[str, Appointment] = {a.id: a for a in appointments}
        self.series: Dict[str, RecurringSeries] = {s.id: s for s in series}

    @classmethod
    def from_config(cls, config, **kwargs) -> "InMemoryScheduleStore":
        """Seed a store from an ``AppConfig`` catalogue."""
        return cls(
            resources=config.domain_resources(),
            services=config.domain_services(),
            working_hours=config.domain_working_hours(),
            holidays=config.domain_holidays(),
            **kwargs,
        )

    async def get_resource(self, resource_id: str) -> Resource:
        await asyncio.sleep(0)
        try:
            return self.resources[resource_id]
        except KeyError:
            raise NotFoundError(f"Unknown resource: {resource_id}") from None

    async def get_service(self, service_id: str) -> Service:
        await asyncio.sleep(0)
        try:
            return self.services[service_id]
        except KeyError:
            raise NotFoundError(f"Unknown service: {service_id}") from None

    async def load_working_hours(
        self, resource_id: str, date_range: TimeInterval
    ) -> List[WorkingHoursRule]:
        await asyncio.sleep(0)
        return [rule for rule in self.working_hours if rule.resource_id == resource_id]

    async def load_holidays(self, resource_id: str, date_range: TimeInterval) -> List[Holiday]:
        await asyncio.sleep(0)
        # Day-level filter with a day of slack on both sides for timezone offsets
        first = date_range.start.subtract(days=1).date()
        last = date_range.end.add(days=1).date()
        return [
            holiday
            for holiday in self.holidays
            if holiday.applies_to(resource_id)
            and holiday.start_date <= last
            and holiday.end_date >= first
        ]

    async def load_scheduled_appointments(
        self, resource_id: str, date_range: TimeInterval
    ) -> List[Appointment]:
        await asyncio.sleep(0)
        return sorted(
            (
                appointment
                for appointment in self.appointments.values()
                if appointment.is_scheduled
                and resource_id in appointment.resource_ids
                and appointment.blocked_interval.overlaps(date_range)
            ),
            key=lambda appointment: (appointment.interval.start, appointment.id),
        )

    async def get_appointment(self, appointment_id: str) -> Appointment:
        await asyncio.sleep(0)
        try:
            return self.appointments[appointment_id]
        except KeyError:
            raise NotFoundError(f"Unknown appointment: {appointment_id}") from None

    async def insert_appointment(self, appointment: Appointment) -> None:
        await asyncio.sleep(0)
        if appointment.id in self.appointments:
            raise StoreError(f"Appointment {appointment.id} already exists")
        self.appointments[appointment.id] = appointment
        self._changed()

    async def update_appointment(self, appointment: Appointment) -> None:
        await asyncio.sleep(0)
        if appointment.id not in self.appointments:
            raise NotFoundError(f"Unknown appointment: {appointment.id}")
        self.appointments[appointment.id] = appointment
        self._changed()

    async def update_appointment_status(
        self, appointment_id: str, status: AppointmentStatus
    ) -> Appointment:
        await asyncio.sleep(0)
        current = self.appointments.get(appointment_id)
        if current is None:
            raise NotFoundError(f"Unknown appointment: {appointment_id}")
        updated = replace(current, status=AppointmentStatus(status))
        self.appointments[appointment_id] = updated
        self._changed()
        return updated

    async def get_series(self, series_id: str) -> RecurringSeries:
        await asyncio.sleep(0)
        try:
            return self.series[series_id]
        except KeyError:
            raise NotFoundError(f"Unknown series: {series_id}") from None

    async def save_series(self, series: RecurringSeries) -> None:
        await asyncio.sleep(0)
        self.series[series.id] = series
        self._changed()

    async def load_series_appointments(self, series_id: str) -> List[Appointment]:
        await asyncio.sleep(0)
        return sorted(
            (a for a in self.appointments.values() if a.recurrence_id == series_id),
            key=lambda appointment: appointment.interval.start,
        )

    def all_appointments(self) -> List[Appointment]:
        """Every stored appointment, oldest start first."""
        return sorted(self.appointments.values(), key=lambda a: (a.interval.start, a.id))

    def _changed(self) -> None:
        """Hook for subclasses that persist state."""


class JsonFileScheduleStore(InMemoryScheduleStore):
    """
    In-memory store that keeps appointments and series in a JSON file.

    The catalogue (resources, services, hours, holidays) still comes from the
    constructor; only booking state is persisted between runs.
    """

    def __init__(self, data_file: Path, **kwargs):
        super().__init__(**kwargs)
        self.data_file = Path(data_file)
        self._load_data()

    def _load_data(self) -> None:
        """Load appointments and series from the data file if it exists."""
        if not self.data_file.exists():
            return

        try:
            with open(self.data_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            raise StoreError(f"Could not read schedule data from {self.data_file}: {exc}") from exc

        try:
            for item in data.get("appointments", []):
                appointment = Appointment.from_dict(item)
                self.appointments[appointment.id] = appointment
            for item in data.get("series", []):
                series = RecurringSeries.from_dict(item)
                self.series[series.id] = series
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreError(f"Invalid schedule data in {self.data_file}: {exc}") from exc

        logger.debug(
            "Loaded %d appointment(s) and %d series from %s",
            len(self.appointments), len(self.series), self.data_file,
        )

    def _changed(self) -> None:
        payload = {
            "appointments": [a.to_dict() for a in self.all_appointments()],
            "series": [s.to_dict() for s in sorted(self.series.values(), key=lambda s: s.id)],
        }
        try:
            self.data_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_file = self.data_file.with_suffix(self.data_file.suffix + ".tmp")
            with open(tmp_file, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            tmp_file.replace(self.data_file)
        except OSError as exc:
            raise StoreError(f"Could not save schedule data to {self.data_file}: {exc}") from exc
