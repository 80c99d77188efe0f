"""
Core business logic for generating bookable start times.

Pure domain logic: no API calls, no storage, no I/O.
"""

import logging
from datetime import date
from typing import Iterable, List

import pendulum
from pendulum import DateTime

from .blocked_intervals import BlockedIntervalBuilder
from .exceptions import BookingValidationError, SlotGenerationError
from .models import MINUTES_PER_DAY, BookedSlot, BreakPeriod, DayHours, TimeOfDay

logger = logging.getLogger(__name__)


class TimeSlotGenerator:
    """
    Generates the bookable start times for one date.

    Algorithm:
    1. Closed day -> no slots
    2. Resolve the open window, pushing its start past "now + buffer" on the current day
    3. Build blocked intervals from bookings and breaks
    4. Walk the window in buffer-sized steps
    5. Keep every start whose [start, start + duration) stays inside the window and
       keeps at least one buffer away from every blocked interval
    """

    def __init__(
        self,
        timezone: str = "UTC",
        max_iterations: int = MINUTES_PER_DAY,
        interval_builder: BlockedIntervalBuilder | None = None,
    ):
        if max_iterations <= 0:
            raise ValueError(f"max_iterations must be positive, got {max_iterations}")
        self.timezone = timezone
        self.max_iterations = max_iterations
        self.interval_builder = interval_builder or BlockedIntervalBuilder(timezone)

    def generate(
        self,
        day: date,
        day_hours: DayHours | None,
        booked_slots: Iterable[BookedSlot],
        duration_minutes: int,
        buffer_minutes: int,
        now: DateTime | None = None,
        extra_breaks: Iterable[BreakPeriod] = (),
    ) -> List[TimeOfDay]:
        """
        Compute the ordered list of bookable start times.

        Args:
            day: Date to generate slots for
            day_hours: Opening hours for that date, None when closed
            booked_slots: Appointments already committed on that date
            duration_minutes: Length of the requested service
            buffer_minutes: Gap kept around bookings, also the step between starts
            now: Current instant, defaults to the clock in the business timezone
            extra_breaks: One-off breaks on that date

        Returns:
            Chronological list of TimeOfDay start times without duplicates

        Raises:
            BookingValidationError: If duration_minutes is not positive
            SlotGenerationError: If the walk exceeds max_iterations
        """
        if duration_minutes <= 0:
            raise BookingValidationError(
                f"Service duration must be positive, got {duration_minutes} minutes"
            )

        if day_hours is None:
            return []

        buffer = max(buffer_minutes, 0)
        # A zero buffer would never advance the walk
        step = max(buffer, 1)

        open_at = day_hours.open.on(day, self.timezone)
        close_at = day_hours.close.on(day, self.timezone)

        window_start = open_at
        cutoff = self.same_day_cutoff(day, buffer, now)
        if cutoff is not None and cutoff > open_at:
            window_start = cutoff

        blocked = self.interval_builder.build(day, day_hours, booked_slots, extra_breaks)

        slots: List[TimeOfDay] = []
        current = window_start
        iterations = 0

        while current < close_at:
            iterations += 1
            if iterations > self.max_iterations:
                logger.error(
                    "Slot generation for %s exceeded %d iterations (duration=%d, buffer=%d)",
                    day, self.max_iterations, duration_minutes, buffer_minutes,
                )
                raise SlotGenerationError(
                    f"Slot generation for {day} exceeded {self.max_iterations} iterations"
                )

            candidate_end = current.add(minutes=duration_minutes)
            if candidate_end > close_at:
                break

            if not any(
                interval.conflicts_with(current, candidate_end, buffer)
                for interval in blocked
            ):
                slots.append(TimeOfDay(hour=current.hour, minute=current.minute))

            current = current.add(minutes=step)

        logger.debug("Generated %d slot(s) for %s", len(slots), day)
        return slots

    def same_day_cutoff(
        self,
        day: date,
        buffer_minutes: int,
        now: DateTime | None = None,
    ) -> DateTime | None:
        """
        Earliest start allowed on the current day.

        This is the first multiple of the buffer (counted from midnight) strictly
        after now + one buffer. Returns None when ``day`` is not the current day.
        """
        now = (now or pendulum.now(self.timezone)).in_timezone(self.timezone)
        if now.date() != day:
            return None

        buffer = max(buffer_minutes, 0)
        step = max(buffer, 1)
        now_minutes = now.hour * 60 + now.minute
        cutoff_minutes = ((now_minutes + buffer) // step + 1) * step

        if cutoff_minutes >= MINUTES_PER_DAY:
            return pendulum.datetime(day.year, day.month, day.day, tz=self.timezone).add(days=1)

        return TimeOfDay.from_minutes(cutoff_minutes).on(day, self.timezone)
