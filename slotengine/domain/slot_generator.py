"""
Turns free intervals into discrete bookable slots for a service.
"""

from typing import Iterable, Iterator, List, Mapping, Optional

from pendulum import DateTime

from .exceptions import ConfigurationError
from .models import Resource, Service, Slot, TimeInterval


class SlotGenerator:
    """
    Emits bookable start times at a fixed granularity.

    Candidate starts sit on a clock grid: multiples of ``granularity_minutes``
    after local midnight in the resource's timezone. Within each free interval
    the first start is ``free.start + buffer_before`` rounded up to that grid,
    so a booking that ends at 10:35 is followed by an 11:00 slot at a 30 minute
    granularity, not 10:35. A start is kept when the whole blocked window
    ``[start - buffer_before, start + duration + buffer_after)`` fits inside
    the free interval; anything running past the end is dropped.
    """

    def __init__(self, granularity_minutes: int = 15):
        if granularity_minutes <= 0:
            raise ConfigurationError("granularity_minutes must be greater than zero")
        self.granularity_minutes = granularity_minutes

    def candidate_slots(
        self,
        resource: Resource,
        service: Service,
        free_intervals: Iterable[TimeInterval],
        date_range: Optional[TimeInterval] = None,
        granularity_minutes: Optional[int] = None,
    ) -> Iterator[Slot]:
        """
        Lazily yield slots for ``service`` on ``resource``.

        The sequence is finite; calling again with the same (re-iterable)
        ``free_intervals`` walks it from the beginning.
        """
        step = granularity_minutes or self.granularity_minutes
        if step <= 0:
            raise ConfigurationError("granularity_minutes must be greater than zero")

        block_minutes = service.duration_minutes + service.buffer_after_minutes

        for free in free_intervals:
            earliest = free.start.add(minutes=service.buffer_before_minutes)
            start = self._align(earliest, step, resource.timezone)

            while start.add(minutes=block_minutes) <= free.end:
                if date_range is None or date_range.contains(start):
                    yield Slot(
                        resource_id=resource.id,
                        interval=TimeInterval(
                            start=start,
                            end=start.add(minutes=service.duration_minutes),
                        ),
                    )
                start = start.add(minutes=step)

    @staticmethod
    def _align(earliest: DateTime, step: int, timezone: str) -> DateTime:
        """Round ``earliest`` up to the next multiple of ``step`` minutes after local midnight."""
        local = earliest.in_timezone(timezone)
        remainder = ((local.hour * 60 + local.minute) * 60 + local.second) % (step * 60)
        if remainder == 0 and local.microsecond == 0:
            return earliest
        return earliest.add(seconds=step * 60 - remainder).replace(microsecond=0)

    @staticmethod
    def rank_resources(per_resource: Mapping[str, List[Slot]]) -> List[str]:
        """
        Order resources by earliest available slot, then by lowest id.

        Resources without any slot are left out.
        """
        return sorted(
            (resource_id for resource_id, slots in per_resource.items() if slots),
            key=lambda resource_id: (per_resource[resource_id][0].start, resource_id),
        )

    def rank_slots(self, per_resource: Mapping[str, Iterable[Slot]]) -> List[Slot]:
        """
        Merge the slots of several eligible resources into one ranked list.

        Slots are ordered by start time; at the same start the resource with
        the earlier first slot (then the lower id) comes first.
        """
        materialised = {
            resource_id: sorted(slots, key=lambda slot: slot.start)
            for resource_id, slots in per_resource.items()
        }
        order = self.rank_resources(materialised)
        rank = {resource_id: position for position, resource_id in enumerate(order)}

        ranked = [slot for resource_id in order for slot in materialised[resource_id]]
        ranked.sort(key=lambda slot: (slot.start, rank[slot.resource_id]))
        return ranked
