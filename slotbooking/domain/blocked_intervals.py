"""
Projection of bookings and breaks onto a calendar date.
"""

from datetime import date
from typing import Iterable, List

from .models import BlockedInterval, BookedSlot, BreakPeriod, DayHours


class BlockedIntervalBuilder:
    """
    Turns booked slots and breaks for one date into absolute blocked intervals.

    All arithmetic is in whole minutes. The result is sorted by start time so
    that overlap scans can stop early.
    """

    def __init__(self, timezone: str = "UTC"):
        self.timezone = timezone

    def build(
        self,
        day: date,
        day_hours: DayHours | None,
        booked_slots: Iterable[BookedSlot],
        extra_breaks: Iterable[BreakPeriod] = (),
    ) -> List[BlockedInterval]:
        """
        Build the blocked intervals for a date.

        Args:
            day: Calendar date to project onto
            day_hours: Opening hours of that date (None when closed)
            booked_slots: Appointments already committed for that date
            extra_breaks: One-off breaks for that date

        Returns:
            List of BlockedInterval objects ordered by start
        """
        intervals: List[BlockedInterval] = []

        for slot in booked_slots:
            start = slot.start.on(day, self.timezone)
            intervals.append(
                BlockedInterval(start=start, end=start.add(minutes=slot.duration_minutes))
            )

        breaks: List[BreakPeriod] = list(day_hours.breaks) if day_hours else []
        breaks.extend(extra_breaks)

        for period in breaks:
            intervals.append(
                BlockedInterval(
                    start=period.start.on(day, self.timezone),
                    end=period.end.on(day, self.timezone),
                )
            )

        return sorted(intervals, key=lambda interval: interval.start)
