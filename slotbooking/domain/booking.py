"""
Booking requests, conflict reports and appointment records.
"""

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Mapping

from .models import BookedSlot, TimeOfDay, parse_date


class ConflictKind(str, Enum):
    """Reasons the appointment store gives for rejecting a commit."""
    TIME_CONFLICT = "TIME_CONFLICT"
    RACE_CONDITION = "RACE_CONDITION"
    DUPLICATE_BOOKING = "DUPLICATE_BOOKING"
    DURATION_OVERLAP = "DURATION_OVERLAP"

    @classmethod
    def decode(cls, value: Any) -> "ConflictKind | None":
        """Return the matching kind, or None for any other error string."""
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass(frozen=True)
class ConflictReport:
    """A commit rejected because the slot is no longer valid."""
    kind: ConflictKind
    message: str = ""


@dataclass(frozen=True)
class BookingRequest:
    """Payload submitted to the appointment store. Never modified after submission."""
    business_id: str
    service_id: str
    date: date
    time: TimeOfDay
    duration_minutes: int
    requester: str
    notes: str = ""

    @property
    def booked_slot(self) -> BookedSlot:
        return BookedSlot(start=self.time, duration_minutes=self.duration_minutes)


def _ref_id(value: Any) -> str:
    # References come back either as bare ids or as populated documents
    if isinstance(value, Mapping):
        return str(value.get("_id") or value.get("id") or "")
    return "" if value is None else str(value)


@dataclass(frozen=True)
class Appointment:
    """An appointment record as held by the appointment store."""
    id: str
    business_id: str
    service_id: str
    date: date
    time: TimeOfDay
    duration_minutes: int
    status: str = "booked"

    def __post_init__(self):
        if self.duration_minutes <= 0:
            raise ValueError(f"duration_minutes must be positive, got {self.duration_minutes}")

    @property
    def booked_slot(self) -> BookedSlot:
        return BookedSlot(start=self.time, duration_minutes=self.duration_minutes)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Appointment":
        """
        Build an appointment from an API record.

        Raises:
            ValueError: If required fields are missing or malformed
        """
        try:
            return cls(
                id=_ref_id(payload.get("_id") or payload.get("id")),
                business_id=_ref_id(payload.get("business")),
                service_id=_ref_id(payload.get("service")),
                date=parse_date(payload["date"]),
                time=TimeOfDay.parse(payload["time"]),
                duration_minutes=int(payload["durationMinutes"]),
                status=payload.get("status", "booked"),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Malformed appointment record: {exc}") from exc
