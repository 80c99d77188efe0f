"""
Service layer helpers that orchestrate adapters and domain logic.
"""

from .booked_slots import BookedSetChanged, BookedSlotStore, ChangeReason
from .booking_coordinator import (
    AppointmentAPIProtocol,
    BookingAttempt,
    BookingCoordinator,
    BookingState,
)

__all__ = [
    "AppointmentAPIProtocol",
    "BookedSetChanged",
    "BookedSlotStore",
    "BookingAttempt",
    "BookingCoordinator",
    "BookingState",
    "ChangeReason",
]
