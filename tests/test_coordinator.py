"""
Tests for the SchedulingCoordinator orchestration layer.
"""

import asyncio
import itertools
from datetime import date, time
from typing import List, Tuple

import pendulum
import pytest

from slotengine.adapters.memory_store import InMemoryScheduleStore
from slotengine.config import EngineSettings
from slotengine.domain.exceptions import (
    ConcurrencyTimeout,
    ConflictError,
    InvalidInterval,
    InvalidTransition,
    NotFoundError,
    RecurrenceBoundsExceeded,
    ResourceInactive,
)
from slotengine.domain.models import (
    AppointmentStatus,
    Frequency,
    RecurrencePattern,
    Resource,
    ResourceKind,
    Service,
    TimeInterval,
    WorkingHoursRule,
)
from slotengine.services.coordinator import SchedulingCoordinator, SeriesScope
from slotengine.services.locks import ResourceLockManager

TZ = "Europe/Berlin"


def _iv(start: str, minutes: int = 30) -> TimeInterval:
    begin = pendulum.parse(start, tz=TZ)
    return TimeInterval(start=begin, end=begin.add(minutes=minutes))


def _build_store() -> InMemoryScheduleStore:
    resources = [
        Resource(id="alice", timezone=TZ),
        Resource(id="bob", timezone=TZ),
        Resource(id="room-1", kind=ResourceKind.ROOM, capacity=2, timezone=TZ),
        Resource(id="retired", timezone=TZ, active=False),
    ]
    working_hours = [
        WorkingHoursRule(resource.id, time(9), time(17), weekday=weekday)
        for resource in resources
        for weekday in range(5)
    ]
    return InMemoryScheduleStore(
        resources=resources,
        services=[
            Service(id="consultation", duration_minutes=30, buffer_before_minutes=10, buffer_after_minutes=5),
            Service(id="checkup", duration_minutes=30),
        ],
        working_hours=working_hours,
    )


def _build_coordinator(store=None, **kwargs) -> SchedulingCoordinator:
    counter = itertools.count(1)
    kwargs.setdefault("settings", EngineSettings(timezone=TZ))
    return SchedulingCoordinator(
        store or _build_store(),
        id_factory=lambda: f"apt-{next(counter)}",
        **kwargs,
    )


def _monday() -> TimeInterval:
    return TimeInterval(
        start=pendulum.parse("2024-11-25 00:00", tz=TZ),
        end=pendulum.parse("2024-11-26 00:00", tz=TZ),
    )


class TestFindSlots:
    """Tests for slot queries."""

    def test_scenario_with_existing_appointment(self):
        """A booked hour removes exactly its two half-hour slots."""
        coordinator = _build_coordinator()

        async def scenario():
            await coordinator.commit("alice", _iv("2024-11-25 10:00"), "checkup")
            await coordinator.commit("alice", _iv("2024-11-25 10:30"), "checkup")
            return await coordinator.find_slots("checkup", ["alice"], _monday(), granularity_minutes=30)

        slots = asyncio.run(scenario())

        starts = [slot.start.in_timezone(TZ).format("HH:mm") for slot in slots]
        assert starts[:3] == ["09:00", "09:30", "11:00"]
        assert starts[-1] == "16:30"
        assert "10:00" not in starts
        assert "10:30" not in starts
        assert len(starts) == 14

    def test_ranked_across_resources(self):
        coordinator = _build_coordinator()

        async def scenario():
            await coordinator.commit("alice", _iv("2024-11-25 09:00"), "checkup")
            return await coordinator.find_slots("checkup", ["alice", "bob"], _monday(), granularity_minutes=30)

        slots = asyncio.run(scenario())

        # bob has the earlier first slot and wins every tie
        assert (slots[0].resource_id, slots[0].start.in_timezone(TZ).hour) == ("bob", 9)
        assert [slot.resource_id for slot in slots[1:3]] == ["bob", "alice"]

    def test_inactive_resources_are_skipped(self):
        coordinator = _build_coordinator()

        slots = asyncio.run(coordinator.find_slots("checkup", ["retired", "bob"], _monday(), 30))

        assert {slot.resource_id for slot in slots} == {"bob"}

    def test_unknown_service(self):
        coordinator = _build_coordinator()

        with pytest.raises(NotFoundError):
            asyncio.run(coordinator.find_slots("massage", ["alice"], _monday()))

    def test_free_intervals(self):
        coordinator = _build_coordinator()

        free = asyncio.run(coordinator.free_intervals("alice", _monday()))

        assert free == [
            TimeInterval(
                start=pendulum.parse("2024-11-25 09:00", tz=TZ),
                end=pendulum.parse("2024-11-25 17:00", tz=TZ),
            )
        ]


class TestCommit:
    """Tests for booking single appointments."""

    def test_buffers_block_surrounding_time(self):
        """A 30 minute booking with 10/5 minute buffers at 10:00 blocks 09:50-10:35."""
        coordinator = _build_coordinator()

        async def scenario():
            booked = await coordinator.commit("alice", _iv("2024-11-25 10:00"), "consultation")
            with pytest.raises(ConflictError) as exc_info:
                await coordinator.commit("alice", _iv("2024-11-25 10:30"), "checkup")
            with pytest.raises(ConflictError):
                await coordinator.commit("alice", _iv("2024-11-25 09:25"), "checkup")
            after = await coordinator.commit("alice", _iv("2024-11-25 10:35"), "checkup")
            before = await coordinator.commit("alice", _iv("2024-11-25 09:20"), "checkup")
            return booked, exc_info.value, after, before

        booked, conflict, after, before = asyncio.run(scenario())

        assert booked.blocked_interval == TimeInterval(
            start=pendulum.parse("2024-11-25 09:50", tz=TZ),
            end=pendulum.parse("2024-11-25 10:35", tz=TZ),
        )
        assert conflict.conflicting_appointment_ids == (booked.id,)
        assert after.is_scheduled
        assert before.is_scheduled

    def test_concurrent_commits_only_one_wins(self):
        coordinator = _build_coordinator()

        async def scenario():
            return await asyncio.gather(
                coordinator.commit("alice", _iv("2024-11-25 10:00"), "checkup"),
                coordinator.commit("alice", _iv("2024-11-25 10:15"), "checkup"),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        failures = [result for result in results if isinstance(result, ConflictError)]
        successes = [result for result in results if not isinstance(result, Exception)]
        assert len(failures) == 1
        assert len(successes) == 1
        assert failures[0].conflicting_appointment_ids == (successes[0].id,)

    def test_identical_concurrent_commits(self):
        """Racing commits for the very same interval leave exactly one booking."""
        store = _build_store()
        coordinator = _build_coordinator(store)

        async def scenario():
            return await asyncio.gather(
                *(coordinator.commit("alice", _iv("2024-11-25 10:00"), "checkup") for _ in range(5)),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        successes = [result for result in results if not isinstance(result, Exception)]
        failures = [result for result in results if isinstance(result, ConflictError)]
        assert len(successes) == 1
        assert len(failures) == 4
        assert all(failure.conflicting_appointment_ids == (successes[0].id,) for failure in failures)
        assert list(store.appointments) == [successes[0].id]

    def test_shared_room(self):
        coordinator = _build_coordinator()

        async def scenario():
            await coordinator.commit("room-1", _iv("2024-11-25 10:00"), "checkup")
            await coordinator.commit("room-1", _iv("2024-11-25 10:00"), "checkup")
            await coordinator.commit("room-1", _iv("2024-11-25 10:00"), "checkup")

        with pytest.raises(ConflictError):
            asyncio.run(scenario())

    def test_multi_resource_booking_needs_every_resource(self):
        coordinator = _build_coordinator()

        async def scenario():
            await coordinator.commit("bob", _iv("2024-11-25 10:00"), "checkup")
            await coordinator.commit(["alice", "bob"], _iv("2024-11-25 10:00"), "checkup")

        with pytest.raises(ConflictError):
            asyncio.run(scenario())

    def test_wrong_duration(self):
        coordinator = _build_coordinator()

        with pytest.raises(InvalidInterval):
            asyncio.run(coordinator.commit("alice", _iv("2024-11-25 10:00", 45), "checkup"))

    def test_outside_working_hours(self):
        coordinator = _build_coordinator()

        with pytest.raises(InvalidInterval):
            asyncio.run(coordinator.commit("alice", _iv("2024-11-25 16:45"), "checkup"))
        with pytest.raises(InvalidInterval):
            asyncio.run(coordinator.commit("alice", _iv("2024-11-30 10:00"), "checkup"))

    def test_buffer_must_fit_working_hours(self):
        coordinator = _build_coordinator()

        with pytest.raises(InvalidInterval):
            asyncio.run(coordinator.commit("alice", _iv("2024-11-25 09:00"), "consultation"))

    def test_inactive_resource(self):
        coordinator = _build_coordinator()

        with pytest.raises(ResourceInactive):
            asyncio.run(coordinator.commit("retired", _iv("2024-11-25 10:00"), "checkup"))

    def test_booking_horizon(self):
        coordinator = _build_coordinator(settings=EngineSettings(timezone=TZ, booking_horizon_days=30))
        far = pendulum.now(TZ).add(days=90).set(hour=10, minute=0, second=0, microsecond=0)

        with pytest.raises(InvalidInterval):
            asyncio.run(coordinator.commit("alice", TimeInterval(start=far, end=far.add(minutes=30)), "checkup"))

    def test_lock_timeout(self):
        """A booking waiting too long for a busy resource gives up with a retryable error."""
        locks = ResourceLockManager(timeout_seconds=0.05)
        coordinator = _build_coordinator(lock_manager=locks)

        async def scenario():
            async with locks.hold(["alice"]):
                await coordinator.commit("alice", _iv("2024-11-25 10:00"), "checkup")

        with pytest.raises(ConcurrencyTimeout) as exc_info:
            asyncio.run(scenario())
        assert exc_info.value.retryable
        assert not locks.is_locked("alice")


class TestRescheduleCancelComplete:
    """Tests for changing existing appointments."""

    def test_reschedule_frees_old_slot(self):
        coordinator = _build_coordinator()

        async def scenario():
            booked = await coordinator.commit("alice", _iv("2024-11-25 10:00"), "checkup")
            moved = await coordinator.reschedule(booked.id, _iv("2024-11-25 14:00"))
            other = await coordinator.commit("alice", _iv("2024-11-25 10:00"), "checkup")
            return booked, moved, other

        booked, moved, other = asyncio.run(scenario())

        assert moved.id == booked.id
        assert moved.interval == _iv("2024-11-25 14:00")
        assert other.is_scheduled

    def test_reschedule_may_overlap_itself(self):
        coordinator = _build_coordinator()

        async def scenario():
            booked = await coordinator.commit("alice", _iv("2024-11-25 10:00"), "consultation")
            return await coordinator.reschedule(booked.id, _iv("2024-11-25 10:15"))

        moved = asyncio.run(scenario())

        assert moved.interval == _iv("2024-11-25 10:15")
        assert moved.buffer_before_minutes == 10

    def test_reschedule_conflict_keeps_original(self):
        store = _build_store()
        coordinator = _build_coordinator(store)

        async def scenario():
            first = await coordinator.commit("alice", _iv("2024-11-25 10:00"), "checkup")
            await coordinator.commit("alice", _iv("2024-11-25 14:00"), "checkup")
            with pytest.raises(ConflictError):
                await coordinator.reschedule(first.id, _iv("2024-11-25 14:15"))
            return first

        first = asyncio.run(scenario())

        assert store.appointments[first.id].interval == _iv("2024-11-25 10:00")

    def test_cancel_frees_time(self):
        coordinator = _build_coordinator()

        async def scenario():
            booked = await coordinator.commit("alice", _iv("2024-11-25 10:00"), "checkup")
            cancelled = await coordinator.cancel(booked.id)
            again = await coordinator.commit("alice", _iv("2024-11-25 10:00"), "checkup")
            return cancelled, again

        cancelled, again = asyncio.run(scenario())

        assert cancelled.status is AppointmentStatus.CANCELLED
        assert again.is_scheduled

    def test_terminal_states(self):
        coordinator = _build_coordinator()

        async def scenario():
            booked = await coordinator.commit("alice", _iv("2024-11-25 10:00"), "checkup")
            done = await coordinator.complete(booked.id)
            assert done.status is AppointmentStatus.COMPLETED
            with pytest.raises(InvalidTransition):
                await coordinator.cancel(booked.id)
            with pytest.raises(InvalidTransition):
                await coordinator.reschedule(booked.id, _iv("2024-11-25 11:00"))

        asyncio.run(scenario())

    def test_unknown_appointment(self):
        coordinator = _build_coordinator()

        with pytest.raises(NotFoundError):
            asyncio.run(coordinator.cancel("nope"))


class TestSeries:
    """Tests for recurring series."""

    def _book(self, coordinator, count=4):
        return coordinator.book_series(
            "alice",
            "checkup",
            _iv("2024-11-25 10:00"),
            RecurrencePattern(Frequency.WEEKLY, count=count),
        )

    def test_book_series(self):
        coordinator = _build_coordinator()

        series, appointments = asyncio.run(self._book(coordinator))

        assert series.timezone == TZ
        assert [a.occurrence_date for a in appointments] == [
            date(2024, 11, 25), date(2024, 12, 2), date(2024, 12, 9), date(2024, 12, 16)
        ]
        assert all(a.recurrence_id == series.id for a in appointments)

    def test_series_is_all_or_nothing(self):
        store = _build_store()
        coordinator = _build_coordinator(store)

        async def scenario():
            await coordinator.commit("alice", _iv("2024-12-09 10:00"), "checkup")
            with pytest.raises(ConflictError):
                await self._book(coordinator)

        asyncio.run(scenario())

        assert store.series == {}
        assert len(store.appointments) == 1

    def test_cancel_single_instance(self):
        """Cancelling one instance removes exactly that date from the series."""
        store = _build_store()
        coordinator = _build_coordinator(store)

        async def scenario():
            series, appointments = await self._book(coordinator)
            await coordinator.cancel(appointments[1].id)
            return series, await coordinator.expand_series(series.id)

        series, occurrences = asyncio.run(scenario())

        assert store.series[series.id].pattern.exception_dates == {date(2024, 12, 2)}
        assert [o.occurrence_date for o in occurrences] == [
            date(2024, 11, 25), date(2024, 12, 9), date(2024, 12, 16)
        ]

    def test_cancel_following(self):
        store = _build_store()
        coordinator = _build_coordinator(store)

        async def scenario():
            series, appointments = await self._book(coordinator)
            await coordinator.cancel(appointments[1].id, SeriesScope.FOLLOWING)
            return series, appointments, await coordinator.expand_series(series.id)

        series, appointments, occurrences = asyncio.run(scenario())

        statuses = [store.appointments[a.id].status for a in appointments]
        assert statuses == [
            AppointmentStatus.SCHEDULED,
            AppointmentStatus.CANCELLED,
            AppointmentStatus.CANCELLED,
            AppointmentStatus.CANCELLED,
        ]
        assert store.series[series.id].pattern.until == date(2024, 12, 1)
        assert [o.occurrence_date for o in occurrences] == [date(2024, 11, 25)]

    def test_reschedule_instance_detaches_it(self):
        store = _build_store()
        coordinator = _build_coordinator(store)

        async def scenario():
            series, appointments = await self._book(coordinator)
            moved = await coordinator.reschedule(appointments[2].id, _iv("2024-12-10 10:00"))
            return series, moved, await coordinator.expand_series(series.id)

        series, moved, occurrences = asyncio.run(scenario())

        assert moved.recurrence_id is None
        assert date(2024, 12, 9) in store.series[series.id].pattern.exception_dates
        assert date(2024, 12, 9) not in [o.occurrence_date for o in occurrences]

    def test_preview_does_not_book(self):
        store = _build_store()
        coordinator = _build_coordinator(store)

        occurrences = coordinator.preview_series(
            RecurrencePattern(Frequency.DAILY, count=3), _iv("2024-11-25 10:00")
        )

        assert len(occurrences) == 3
        assert store.appointments == {}

    def test_count_above_cap_is_rejected(self):
        store = _build_store()
        coordinator = _build_coordinator(store)

        with pytest.raises(RecurrenceBoundsExceeded):
            asyncio.run(self._book(coordinator, count=60))
        with pytest.raises(RecurrenceBoundsExceeded):
            coordinator.preview_series(RecurrencePattern(Frequency.WEEKLY, count=60), _iv("2024-11-25 10:00"))

        assert store.series == {}
        assert store.appointments == {}

    def test_until_beyond_cap_is_rejected(self):
        store = _build_store()
        coordinator = _build_coordinator(store)
        anchor = _iv("2024-11-25 10:00")

        with pytest.raises(RecurrenceBoundsExceeded):
            asyncio.run(
                coordinator.book_series(
                    "alice", "checkup", anchor, RecurrencePattern(Frequency.WEEKLY, until=date(2026, 12, 31))
                )
            )
        assert store.appointments == {}

        # The 52nd weekly position is 2025-11-17, so this until fits the default cap exactly
        _, appointments = asyncio.run(
            coordinator.book_series(
                "alice", "checkup", anchor, RecurrencePattern(Frequency.WEEKLY, until=date(2025, 11, 17))
            )
        )
        assert len(appointments) == 52

    def test_series_keeps_its_horizon_cap(self):
        store = _build_store()
        coordinator = _build_coordinator(store)

        async def scenario():
            series, appointments = await coordinator.book_series(
                "alice",
                "checkup",
                _iv("2024-11-25 10:00"),
                RecurrencePattern(Frequency.WEEKLY, count=60),
                horizon_cap=60,
            )
            return series, appointments, await coordinator.expand_series(series.id)

        series, appointments, occurrences = asyncio.run(scenario())

        assert store.series[series.id].horizon_cap == 60
        assert len(appointments) == 60
        assert [o.occurrence_date for o in occurrences] == [a.occurrence_date for a in appointments]

    def test_default_cap_is_stored(self):
        store = _build_store()
        coordinator = _build_coordinator(store)

        series, _ = asyncio.run(self._book(coordinator))

        assert store.series[series.id].horizon_cap == 52

    def test_dst_shifted_instance_is_flagged(self):
        store = _build_store()
        store.working_hours.extend(
            WorkingHoursRule("bob", time(1), time(23), weekday=weekday) for weekday in (5, 6)
        )
        coordinator = _build_coordinator(store)
        # Saturday 02:30 repeats into the non-existent 02:30 on 2024-03-31
        anchor = _iv("2024-03-30 02:30")

        # alice does not work weekends, so nothing is booked for her
        with pytest.raises(InvalidInterval):
            asyncio.run(
                coordinator.book_series("alice", "checkup", anchor, RecurrencePattern(Frequency.DAILY, count=2))
            )
        assert store.appointments == {}

        _, appointments = asyncio.run(
            coordinator.book_series("bob", "checkup", anchor, RecurrencePattern(Frequency.DAILY, count=2))
        )

        assert appointments[1].metadata == {"dst_shifted": True}
        assert appointments[1].interval.start.in_timezone(TZ).hour == 3
        assert "dst_shifted" not in appointments[0].metadata


class TestObserversAndInvariants:
    """Tests for notifications and the no-double-booking guarantee."""

    def test_failing_observer_does_not_break_commit(self):
        events: List[Tuple[str, str]] = []

        def broken(event, payload):
            raise RuntimeError("boom")

        def recorder(event, payload):
            events.append((event, payload.id))

        coordinator = _build_coordinator(observers=[broken, recorder])

        async def scenario():
            booked = await coordinator.commit("alice", _iv("2024-11-25 10:00"), "checkup")
            await coordinator.cancel(booked.id)
            return booked

        booked = asyncio.run(scenario())

        assert events == [("appointment.created", booked.id), ("appointment.cancelled", booked.id)]

    def test_no_overlap_after_mixed_operations(self):
        store = _build_store()
        coordinator = _build_coordinator(store)

        async def attempt(call):
            try:
                return await call
            except (ConflictError, InvalidInterval):
                return None

        async def scenario():
            await asyncio.gather(
                *(
                    attempt(coordinator.commit("alice", _iv(f"2024-11-25 {hour:02d}:{minute:02d}"), "consultation"))
                    for hour in range(9, 16)
                    for minute in (0, 15, 30, 45)
                )
            )
            scheduled = [a for a in store.all_appointments() if a.is_scheduled]
            await coordinator.cancel(scheduled[0].id)
            await attempt(coordinator.reschedule(scheduled[1].id, _iv("2024-11-25 09:15")))
            await attempt(
                coordinator.book_series(
                    "alice", "consultation", _iv("2024-11-25 15:20"), RecurrencePattern(Frequency.DAILY, count=3)
                )
            )

        asyncio.run(scenario())

        blocked = sorted(
            (a.blocked_interval for a in store.all_appointments() if a.is_scheduled and "alice" in a.resource_ids),
            key=lambda interval: interval.start,
        )
        assert blocked
        for previous, current in zip(blocked, blocked[1:]):
            assert not previous.overlaps(current)
