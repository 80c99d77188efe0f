"""
Locally known booked slots per business and date.

The store is the only place that mutates the booked set. Every mutation
invalidates the slot cache for the affected (business, date) before the
call returns, then notifies subscribers synchronously.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Callable, Dict, Iterable, List, Tuple

from ..domain.models import BookedSlot, TimeOfDay, booked_set_signature
from ..domain.slot_cache import SlotCache

logger = logging.getLogger(__name__)


class ChangeReason(str, Enum):
    BOOKED = "booked"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"
    REFRESHED = "refreshed"


@dataclass(frozen=True)
class BookedSetChanged:
    """Notification that the booked set of (business_id, day) changed."""
    business_id: str
    day: date
    reason: ChangeReason


BookedSetListener = Callable[[BookedSetChanged], None]


class BookedSlotStore:
    """Booked slots keyed by (business_id, day), with eager cache invalidation."""

    def __init__(self, cache: SlotCache):
        self._cache = cache
        self._slots: Dict[Tuple[str, date], List[BookedSlot]] = {}
        self._listeners: List[BookedSetListener] = []

    def is_loaded(self, business_id: str, day: date) -> bool:
        return (business_id, day) in self._slots

    def get(self, business_id: str, day: date) -> List[BookedSlot]:
        return list(self._slots.get((business_id, day), []))

    def signature(self, business_id: str, day: date) -> str:
        return booked_set_signature(self._slots.get((business_id, day), []))

    def replace(self, business_id: str, day: date, slots: Iterable[BookedSlot]) -> bool:
        """
        Replace the booked set with a fresh copy from the appointment store.

        Returns:
            True if the set changed
        """
        new_slots = sorted(slots)
        key = (business_id, day)
        if key in self._slots and self._slots[key] == new_slots:
            return False

        self._slots[key] = new_slots
        self._changed(business_id, day, ChangeReason.REFRESHED)
        return True

    def add(
        self,
        business_id: str,
        day: date,
        slot: BookedSlot,
        reason: ChangeReason = ChangeReason.BOOKED,
    ) -> None:
        """Record a slot as occupied, replacing any entry with the same start."""
        slots = [
            existing for existing in self._slots.get((business_id, day), [])
            if existing.start != slot.start
        ]
        slots.append(slot)
        self._slots[(business_id, day)] = sorted(slots)
        self._changed(business_id, day, reason)

    def remove(
        self,
        business_id: str,
        day: date,
        start: TimeOfDay,
        reason: ChangeReason = ChangeReason.CANCELLED,
    ) -> BookedSlot | None:
        """
        Release the slot starting at ``start``.

        Returns:
            The released slot, or None if no slot started at that time
        """
        slots = self._slots.get((business_id, day), [])
        released = next((slot for slot in slots if slot.start == start), None)
        if released is None:
            return None

        # An emptied set stays loaded; it is known to be empty
        self._slots[(business_id, day)] = [slot for slot in slots if slot is not released]
        self._changed(business_id, day, reason)
        return released

    def subscribe(self, listener: BookedSetListener) -> Callable[[], None]:
        """
        Register a callback for booked-set changes.

        Returns:
            A function that removes the listener again
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _changed(self, business_id: str, day: date, reason: ChangeReason) -> None:
        self._cache.invalidate(business_id, day)

        event = BookedSetChanged(business_id=business_id, day=day, reason=reason)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Booked-set listener failed for %s on %s (%s)",
                    business_id, day, reason.value,
                )
