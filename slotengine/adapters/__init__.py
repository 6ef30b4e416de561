"""
Adapters layer - Persistence collaborators for the scheduling engine.
"""

from .memory_store import InMemoryScheduleStore, JsonFileScheduleStore

__all__ = ["InMemoryScheduleStore", "JsonFileScheduleStore"]
