"""
Domain layer - Pure business logic without external dependencies.
"""

from .blocked_intervals import BlockedIntervalBuilder
from .booking import Appointment, BookingRequest, ConflictKind, ConflictReport
from .models import (
    BlockedInterval,
    BookedSlot,
    BreakPeriod,
    DayHours,
    TemporaryBreak,
    TemporaryClosure,
    TimeOfDay,
    WorkingHours,
)
from .slot_cache import SlotCache, SlotCacheKey
from .slot_generator import TimeSlotGenerator

__all__ = [
    "Appointment",
    "BlockedInterval",
    "BlockedIntervalBuilder",
    "BookedSlot",
    "BookingRequest",
    "BreakPeriod",
    "ConflictKind",
    "ConflictReport",
    "DayHours",
    "SlotCache",
    "SlotCacheKey",
    "TemporaryBreak",
    "TemporaryClosure",
    "TimeOfDay",
    "TimeSlotGenerator",
    "WorkingHours",
]
