"""
Service layer helpers that orchestrate store adapters and domain logic.
"""

from .coordinator import ScheduleStoreProtocol, SchedulingCoordinator, SeriesScope
from .locks import ResourceLockManager

__all__ = ["ResourceLockManager", "ScheduleStoreProtocol", "SchedulingCoordinator", "SeriesScope"]
