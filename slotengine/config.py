"""
Configuration management using Pydantic models loaded from YAML.
"""

from datetime import date, time
from pathlib import Path
from typing import List, Optional

import pendulum
import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .domain.models import Holiday, Resource, ResourceKind, Service, WorkingHoursRule


class EngineSettings(BaseModel):
    """Tunables passed explicitly into the scheduling coordinator."""
    timezone: str = "UTC"
    granularity_minutes: int = 15
    lock_timeout_seconds: float = 5.0
    default_horizon_cap: int = 52
    max_recurrence_occurrences: int = 520
    booking_horizon_days: Optional[int] = None
    search_days: int = 7

    @field_validator("granularity_minutes", "default_horizon_cap", "max_recurrence_occurrences", "search_days")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        """Ensure counters and steps are positive."""
        if value <= 0:
            raise ValueError("value must be greater than zero")
        return value

    @field_validator("lock_timeout_seconds")
    @classmethod
    def validate_timeout(cls, value: float) -> float:
        """A lock wait must be bounded and non-zero."""
        if value <= 0:
            raise ValueError("lock_timeout_seconds must be greater than zero")
        return value

    @field_validator("booking_horizon_days")
    @classmethod
    def validate_horizon_days(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            raise ValueError("booking_horizon_days must be greater than zero")
        return value

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        return _check_timezone(value)

    @model_validator(mode="after")
    def validate_cap_order(self) -> "EngineSettings":
        """The default cap has to respect the hard ceiling."""
        if self.default_horizon_cap > self.max_recurrence_occurrences:
            raise ValueError("default_horizon_cap must not exceed max_recurrence_occurrences")
        return self


def _check_timezone(value: str) -> str:
    try:
        pendulum.timezone(value)
    except Exception as exc:
        raise ValueError(f"Unknown timezone: {value}") from exc
    return value


def _coerce_clock_time(value):
    # YAML 1.1 reads unquoted 17:30 as the base-60 integer 1050
    if isinstance(value, int) and not isinstance(value, bool):
        hours, minutes = divmod(value, 60)
        return time(hour=hours, minute=minutes)
    return value


class ResourceConfig(BaseModel):
    """Staff member, room or equipment."""
    id: str
    kind: ResourceKind = ResourceKind.STAFF
    name: str = ""
    timezone: Optional[str] = None  # falls back to engine timezone
    capacity: int = 1
    active: bool = True

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: Optional[str]) -> Optional[str]:
        return _check_timezone(value) if value is not None else value

    @model_validator(mode="after")
    def validate_capacity(self) -> "ResourceConfig":
        """Only shareable resources may serve several bookings at once."""
        if self.capacity < 1:
            raise ValueError(f"Resource {self.id}: capacity must be at least 1")
        if self.capacity > 1 and not self.kind.shareable:
            raise ValueError(f"Resource {self.id}: staff cannot have capacity above 1")
        return self

    def to_domain(self, default_timezone: str) -> Resource:
        return Resource(
            id=self.id,
            kind=self.kind,
            name=self.name,
            timezone=self.timezone or default_timezone,
            capacity=self.capacity,
            active=self.active,
        )


class ServiceConfig(BaseModel):
    """Bookable service with duration and buffers."""
    id: str
    name: str = ""
    duration_minutes: int
    buffer_before_minutes: int = 0
    buffer_after_minutes: int = 0

    @field_validator("duration_minutes")
    @classmethod
    def validate_duration(cls, value: int) -> int:
        """Ensure service duration is positive."""
        if value <= 0:
            raise ValueError("duration_minutes must be greater than zero")
        return value

    @field_validator("buffer_before_minutes", "buffer_after_minutes")
    @classmethod
    def validate_buffer(cls, value: int) -> int:
        if value < 0:
            raise ValueError("buffers must not be negative")
        return value

    def to_domain(self) -> Service:
        return Service(
            id=self.id,
            name=self.name,
            duration_minutes=self.duration_minutes,
            buffer_before_minutes=self.buffer_before_minutes,
            buffer_after_minutes=self.buffer_after_minutes,
        )


class WorkingHoursConfig(BaseModel):
    """One working window; ``weekdays`` expands to one rule per day."""
    resource: str
    start: time
    end: time
    weekdays: List[int] = Field(default_factory=list)  # 0=Monday, 6=Sunday
    on_date: Optional[date] = None

    coerce_times = field_validator("start", "end", mode="before")(_coerce_clock_time)

    @field_validator("weekdays")
    @classmethod
    def validate_weekdays(cls, value: List[int]) -> List[int]:
        """Ensure weekdays are in valid range and deduplicated."""
        invalid_days = [day for day in value if day not in range(7)]
        if invalid_days:
            raise ValueError(f"weekdays must be between 0 and 6, got {invalid_days}")
        return sorted(set(value))

    @model_validator(mode="after")
    def validate_target(self) -> "WorkingHoursConfig":
        if bool(self.weekdays) == (self.on_date is not None):
            raise ValueError(f"Working hours for {self.resource}: give either weekdays or a date")
        if self.start == self.end:
            raise ValueError(f"Working hours for {self.resource}: start and end must differ")
        return self

    def to_domain(self) -> List[WorkingHoursRule]:
        if self.on_date is not None:
            return [WorkingHoursRule(self.resource, self.start, self.end, on_date=self.on_date)]
        return [
            WorkingHoursRule(self.resource, self.start, self.end, weekday=weekday)
            for weekday in self.weekdays
        ]


class HolidayConfig(BaseModel):
    """Closed day(s) or recurring break; no resource means everyone."""
    start_date: date
    end_date: Optional[date] = None
    resource: Optional[str] = None
    start: Optional[time] = None
    end: Optional[time] = None
    reason: str = ""

    coerce_times = field_validator("start", "end", mode="before")(_coerce_clock_time)

    @model_validator(mode="after")
    def validate_range(self) -> "HolidayConfig":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if (self.start is None) != (self.end is None):
            raise ValueError("Holiday needs both start and end, or neither")
        return self

    def to_domain(self) -> Holiday:
        return Holiday(
            start_date=self.start_date,
            end_date=self.end_date,
            resource_id=self.resource,
            start_time=self.start,
            end_time=self.end,
            reason=self.reason,
        )


class AppConfig(BaseModel):
    """Application configuration: engine settings plus the bookable catalogue."""
    engine: EngineSettings = Field(default_factory=EngineSettings)
    resources: List[ResourceConfig] = Field(default_factory=list)
    services: List[ServiceConfig] = Field(default_factory=list)
    working_hours: List[WorkingHoursConfig] = Field(default_factory=list)
    holidays: List[HolidayConfig] = Field(default_factory=list)
    data_file: Optional[Path] = None

    @field_validator("resources")
    @classmethod
    def validate_resources(cls, value: List[ResourceConfig]) -> List[ResourceConfig]:
        """Ensure resource ids are unique."""
        seen: set[str] = set()
        for resource in value:
            if resource.id in seen:
                raise ValueError(f"Duplicate resource id detected: {resource.id}")
            seen.add(resource.id)
        return value

    @field_validator("services")
    @classmethod
    def validate_services(cls, value: List[ServiceConfig]) -> List[ServiceConfig]:
        """Ensure service ids are unique."""
        seen: set[str] = set()
        for service in value:
            if service.id in seen:
                raise ValueError(f"Duplicate service id detected: {service.id}")
            seen.add(service.id)
        return value

    @model_validator(mode="after")
    def validate_references(self) -> "AppConfig":
        """Working hours and holidays must point at configured resources."""
        known = {resource.id for resource in self.resources}
        unknown = sorted(
            {entry.resource for entry in self.working_hours if entry.resource not in known}
            | {entry.resource for entry in self.holidays if entry.resource and entry.resource not in known}
        )
        if unknown:
            raise ValueError(f"Unknown resource(s) referenced: {', '.join(unknown)}")
        return self

    @classmethod
    def load_from_yaml(cls, config_path: Path) -> "AppConfig":
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to the YAML config file

        Returns:
            AppConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not config_path.exists():
            raise FileNotFoundError(
                f"Config file not found: {config_path}\n"
                f"Please create a config.yaml file. See config.example.yaml for reference."
            )

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ValueError("Config file must contain a mapping at the root level.")

        config = cls(**data)
        # Relative data files live next to the config
        if config.data_file is not None and not config.data_file.is_absolute():
            config.data_file = config_path.parent / config.data_file
        return config

    def domain_resources(self) -> List[Resource]:
        return [resource.to_domain(self.engine.timezone) for resource in self.resources]

    def domain_services(self) -> List[Service]:
        return [service.to_domain() for service in self.services]

    def domain_working_hours(self) -> List[WorkingHoursRule]:
        rules: List[WorkingHoursRule] = []
        for entry in self.working_hours:
            rules.extend(entry.to_domain())
        return rules

    def domain_holidays(self) -> List[Holiday]:
        return [holiday.to_domain() for holiday in self.holidays]

    def find_resource(self, identifier: str) -> ResourceConfig | None:
        """Find a resource by id or (case-insensitive) name."""
        for resource in self.resources:
            if resource.id == identifier or (resource.name and resource.name.lower() == identifier.lower()):
                return resource
        return None

    def resolve_resources(self, identifiers: List[str]) -> List[str]:
        """
        Resolve resource names or ids to ids, ensuring uniqueness.

        Raises:
            ValueError: If an identifier is unknown
        """
        resolved: List[str] = []
        unknown: List[str] = []
        for identifier in identifiers:
            resource = self.find_resource(identifier)
            if resource is None:
                unknown.append(identifier)
            elif resource.id not in resolved:
                resolved.append(resource.id)

        if unknown:
            raise ValueError(f"Unknown resource identifier(s): {', '.join(sorted(set(unknown)))}")
        return resolved


def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    # Look for config.yaml in current directory
    current_dir = Path.cwd()
    config_path = current_dir / "config.yaml"

    if not config_path.exists():
        # Try in the project root (parent of the package)
        project_root = Path(__file__).parent.parent
        config_path = project_root / "config.yaml"

    return config_path
