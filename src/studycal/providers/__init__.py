"""Calendar provider adapters."""

from studycal.providers.base import CalendarProvider
from studycal.providers.google import GoogleCalendarProvider

__all__ = ["CalendarProvider", "GoogleCalendarProvider"]
