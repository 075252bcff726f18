"""Persistence backends for calendar records."""

from studycal.storage.base import CalendarStore
from studycal.storage.memory import InMemoryCalendarStore

__all__ = ["CalendarStore", "InMemoryCalendarStore"]
