"""
Main CLI application using Typer.
"""

import asyncio
import logging
from pathlib import Path
from typing import Annotated, List, Optional, Tuple

import pendulum
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ..adapters.memory_store import InMemoryScheduleStore, JsonFileScheduleStore
from ..config import AppConfig, get_default_config_path
from ..domain.exceptions import ConflictError, SchedulingError
from ..domain.models import Frequency, RecurrencePattern, TimeInterval, group_by_resource
from ..services.coordinator import SchedulingCoordinator, SeriesScope

app = typer.Typer(
    name="slotengine",
    help="Find bookable slots and manage appointments",
    add_completion=False
)

console = Console()

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to config file. Defaults to ./config.yaml"),
]


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show engine log output.")] = False,
):
    """Appointment scheduling and availability engine."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _build(config_file: Optional[Path]) -> Tuple[AppConfig, InMemoryScheduleStore, SchedulingCoordinator]:
    """Load the configuration and wire store and coordinator."""
    config = AppConfig.load_from_yaml(config_file or get_default_config_path())
    if config.data_file is not None:
        store = JsonFileScheduleStore.from_config(config, data_file=config.data_file)
    else:
        store = InMemoryScheduleStore.from_config(config)
    return config, store, SchedulingCoordinator(store, config.engine)


def _fail(error: Exception) -> None:
    console.print(f"[bold red]Error:[/bold red] {error}")
    if isinstance(error, ConflictError):
        console.print(f"   Conflicting appointments: {', '.join(error.conflicting_appointment_ids)}")
    elif isinstance(error, SchedulingError) and error.retryable:
        console.print("[yellow]This error is temporary, please try again.[/yellow]")
    raise typer.Exit(1)


def _determine_date_range(
    *,
    tz: str,
    start_option: Optional[str],
    end_option: Optional[str],
    search_days: int,
) -> TimeInterval:
    """Resolve the search window from explicit dates or the configured default."""
    now = pendulum.now(tz)

    try:
        if start_option:
            start_date = pendulum.from_format(start_option, "YYYY-MM-DD", tz=tz).start_of("day")
        else:
            start_date = now.start_of("day")

        if end_option:
            end_date = pendulum.from_format(end_option, "YYYY-MM-DD", tz=tz).add(days=1).start_of("day")
        else:
            end_date = start_date.add(days=search_days)
    except ValueError as e:
        console.print(f"[red]Could not parse date: {e}[/red]")
        raise typer.Exit(1)

    return TimeInterval(start=start_date, end=end_date)


def _parse_start(value: str, tz: str, duration_minutes: int) -> TimeInterval:
    try:
        start = pendulum.parse(value, tz=tz)
    except ValueError as e:
        console.print(f"[red]Could not parse start time '{value}': {e}[/red]")
        raise typer.Exit(1)
    return TimeInterval(start=start, end=start.add(minutes=duration_minutes))


def _appointment_table(title: str, appointments, tz: str) -> Table:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("ID", style="dim")
    table.add_column("Start", style="bold yellow")
    table.add_column("End")
    table.add_column("Resources")
    table.add_column("Service")
    table.add_column("Status")
    table.add_column("Series", style="dim")

    for appointment in appointments:
        table.add_row(
            appointment.id,
            appointment.interval.start.in_timezone(tz).format("ddd DD.MM.YYYY HH:mm"),
            appointment.interval.end.in_timezone(tz).format("HH:mm"),
            ", ".join(sorted(appointment.resource_ids)),
            appointment.service_id,
            appointment.status.value,
            appointment.recurrence_id or "",
        )
    return table


@app.command()
def slots(
    service: Annotated[str, typer.Argument(help="Service id")],
    resources: Annotated[Optional[List[str]], typer.Argument(help="Resource ids or names. Defaults to all active resources.")] = None,
    config_file: ConfigOption = None,
    start: Annotated[Optional[str], typer.Option("--start", help="Start date (YYYY-MM-DD)")] = None,
    end: Annotated[Optional[str], typer.Option("--end", help="Last date (YYYY-MM-DD), inclusive")] = None,
    granularity: Annotated[Optional[int], typer.Option("--granularity", "-g", help="Minutes between slot starts")] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Show at most this many slots")] = 20,
):
    """
    Find bookable slots for a service.

    Examples:

        slotengine slots consultation
        slotengine slots consultation alice bob --start 2024-11-25 --end 2024-11-29
    """
    try:
        config, _, coordinator = _build(config_file)
        tz = config.engine.timezone
        resource_ids = (
            config.resolve_resources(resources)
            if resources
            else [r.id for r in config.resources if r.active]
        )
        date_range = _determine_date_range(
            tz=tz, start_option=start, end_option=end, search_days=config.engine.search_days
        )

        found = asyncio.run(coordinator.find_slots(service, resource_ids, date_range, granularity))
    except (FileNotFoundError, ValueError, SchedulingError) as e:
        _fail(e)

    console.print()
    if not found:
        console.print(
            "[yellow]No bookable slots found.[/yellow]\n"
            "Try a longer period or other resources."
        )
        return

    per_resource = group_by_resource(found)
    summary = ", ".join(f"{rid}: {len(items)}" for rid, items in per_resource.items())
    console.print(f"[bold green]{len(found)} slot(s) found[/bold green] [dim]({summary})[/dim]\n")
    for slot in found[:limit]:
        console.print(f"  {slot.format_display(tz)}")
    if len(found) > limit:
        console.print(f"  [dim]... and {len(found) - limit} more[/dim]")
    console.print()


@app.command()
def book(
    service: Annotated[str, typer.Argument(help="Service id")],
    resources: Annotated[List[str], typer.Argument(help="Resource ids or names")],
    at: Annotated[str, typer.Option("--at", help="Start time, e.g. '2024-11-25 10:00'")],
    config_file: ConfigOption = None,
    note: Annotated[Optional[str], typer.Option("--note", help="Free text stored with the booking")] = None,
):
    """
    Book a service on one or more resources.
    """
    try:
        config, store, coordinator = _build(config_file)
        tz = config.engine.timezone
        resource_ids = config.resolve_resources(resources)
        duration = store.services[service].duration_minutes if service in store.services else 0
        if not duration:
            raise ValueError(f"Unknown service: {service}")
        interval = _parse_start(at, tz, duration)

        appointment = asyncio.run(
            coordinator.commit(resource_ids, interval, service, {"note": note} if note else None)
        )
    except (FileNotFoundError, ValueError, SchedulingError) as e:
        _fail(e)

    console.print(f"\n[green]Booked[/green] {appointment.id}")
    console.print(_appointment_table("Appointment", [appointment], tz))


@app.command()
def reschedule(
    appointment_id: Annotated[str, typer.Argument(help="Appointment id")],
    at: Annotated[str, typer.Option("--at", help="New start time")],
    config_file: ConfigOption = None,
):
    """
    Move an appointment to a new start time.
    """
    try:
        config, store, coordinator = _build(config_file)
        tz = config.engine.timezone
        current = store.appointments.get(appointment_id)
        if current is None:
            raise ValueError(f"Unknown appointment: {appointment_id}")
        interval = _parse_start(at, tz, current.interval.duration_minutes())

        moved = asyncio.run(coordinator.reschedule(appointment_id, interval))
    except (FileNotFoundError, ValueError, SchedulingError) as e:
        _fail(e)

    console.print("\n[green]Rescheduled[/green]")
    console.print(_appointment_table("Appointment", [moved], tz))


@app.command()
def cancel(
    appointment_id: Annotated[str, typer.Argument(help="Appointment id")],
    following: Annotated[bool, typer.Option("--following", help="Also cancel all later instances of the series.")] = False,
    config_file: ConfigOption = None,
):
    """
    Cancel an appointment (or a series from this instance on).
    """
    scope = SeriesScope.FOLLOWING if following else SeriesScope.THIS
    try:
        _, _, coordinator = _build(config_file)
        cancelled = asyncio.run(coordinator.cancel(appointment_id, scope))
    except (FileNotFoundError, ValueError, SchedulingError) as e:
        _fail(e)

    console.print(f"\n[green]Cancelled[/green] {cancelled.id}\n")


@app.command()
def complete(
    appointment_id: Annotated[str, typer.Argument(help="Appointment id")],
    config_file: ConfigOption = None,
):
    """
    Mark an appointment as completed.
    """
    try:
        _, _, coordinator = _build(config_file)
        done = asyncio.run(coordinator.complete(appointment_id))
    except (FileNotFoundError, ValueError, SchedulingError) as e:
        _fail(e)

    console.print(f"\n[green]Completed[/green] {done.id}\n")


@app.command()
def series(
    service: Annotated[str, typer.Argument(help="Service id")],
    resources: Annotated[List[str], typer.Argument(help="Resource ids or names")],
    at: Annotated[str, typer.Option("--at", help="Start of the first occurrence")],
    frequency: Annotated[Frequency, typer.Option("--frequency", "-f", help="Repeat daily, weekly or monthly")] = Frequency.WEEKLY,
    every: Annotated[int, typer.Option("--every", help="Repeat every N periods")] = 1,
    count: Annotated[Optional[int], typer.Option("--count", help="Number of occurrences")] = None,
    until: Annotated[Optional[str], typer.Option("--until", help="Last date (YYYY-MM-DD), inclusive")] = None,
    horizon_cap: Annotated[Optional[int], typer.Option("--horizon-cap", help="Most occurrences allowed (default from config)")] = None,
    preview: Annotated[bool, typer.Option("--preview", help="Only check the occurrences, do not book")] = False,
    config_file: ConfigOption = None,
):
    """
    Book a recurring series, or preview it with --preview.
    """
    try:
        config, store, coordinator = _build(config_file)
        tz = config.engine.timezone
        resource_ids = config.resolve_resources(resources)
        if service not in store.services:
            raise ValueError(f"Unknown service: {service}")
        anchor = _parse_start(at, tz, store.services[service].duration_minutes)
        pattern = RecurrencePattern(
            frequency=frequency,
            interval=every,
            count=count,
            until=pendulum.from_format(until, "YYYY-MM-DD").date() if until else None,
        )

        if preview:
            occurrences = coordinator.preview_series(pattern, anchor, horizon_cap, tz)
            table = Table(title="Series preview", show_header=True, header_style="bold cyan")
            table.add_column("#", style="dim")
            table.add_column("Date", style="bold yellow")
            table.add_column("Time")
            table.add_column("Note")
            for occurrence in occurrences:
                local = occurrence.interval.start.in_timezone(tz)
                table.add_row(
                    str(occurrence.index + 1),
                    local.format("ddd DD.MM.YYYY"),
                    local.format("HH:mm"),
                    "shifted (DST)" if occurrence.shifted else "",
                )
            console.print()
            console.print(table)
            console.print()
            return

        created, appointments = asyncio.run(
            coordinator.book_series(resource_ids, service, anchor, pattern, horizon_cap=horizon_cap, timezone=tz)
        )
    except (FileNotFoundError, ValueError, SchedulingError) as e:
        _fail(e)

    console.print(f"\n[green]Booked series[/green] {created.id} ({len(appointments)} occurrences)")
    console.print(_appointment_table("Series", appointments, tz))


@app.command()
def appointments(
    config_file: ConfigOption = None,
    show_all: Annotated[bool, typer.Option("--all", help="Include cancelled and completed appointments.")] = False,
):
    """
    List stored appointments.
    """
    try:
        config, store, _ = _build(config_file)
    except (FileNotFoundError, ValueError, SchedulingError) as e:
        _fail(e)

    items = [a for a in store.all_appointments() if show_all or a.is_scheduled]
    if not items:
        console.print("[yellow]No appointments stored.[/yellow]")
        return

    console.print()
    console.print(_appointment_table("Appointments", items, config.engine.timezone))
    console.print()


@app.command()
def resources(
    config_file: ConfigOption = None,
):
    """
    List all configured resources.
    """
    try:
        config_path = config_file or get_default_config_path()
        config = AppConfig.load_from_yaml(config_path)
    except (FileNotFoundError, ValueError) as e:
        _fail(e)

    if not config.resources:
        console.print("[yellow]No resources defined in the config file.[/yellow]")
        return

    table = Table(
        title="Configured resources",
        show_header=True,
        header_style="bold cyan"
    )
    table.add_column("ID", style="bold yellow")
    table.add_column("Name")
    table.add_column("Kind")
    table.add_column("Capacity", justify="right")
    table.add_column("Timezone", style="dim")
    table.add_column("Active")

    for resource in config.domain_resources():
        table.add_row(
            resource.id,
            resource.display_name(),
            resource.kind.value,
            str(resource.capacity),
            resource.timezone,
            "yes" if resource.active else "no",
        )

    console.print()
    console.print(table)
    console.print()


@app.command()
def version():
    """
    Show version information.
    """
    from .. import __version__
    console.print(f"\n[bold cyan]slotengine[/bold cyan] version [bold]{__version__}[/bold]\n")


if __name__ == "__main__":
    app()
