"""
Domain models for working hours, booked slots and blocked intervals.
"""

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Tuple

import pendulum
from pendulum import Date, DateTime

# Indexed by date.weekday(): 0=Monday, 6=Sunday
WEEKDAY_KEYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

MINUTES_PER_DAY = 24 * 60

_TIME_PATTERN = re.compile(r"^\s*(\d{1,2}):(\d{2})(?:\s*([AaPp][Mm]))?\s*$")


@dataclass(frozen=True, order=True)
class TimeOfDay:
    """
    Business-local wall-clock time with minute precision.

    External form is always zero-padded ``HH:MM`` (24-hour).
    """
    hour: int
    minute: int = 0

    def __post_init__(self):
        if not 0 <= self.hour <= 23:
            raise ValueError(f"Hour must be between 0 and 23, got {self.hour}")
        if not 0 <= self.minute <= 59:
            raise ValueError(f"Minute must be between 0 and 59, got {self.minute}")

    @classmethod
    def parse(cls, value: str) -> "TimeOfDay":
        """
        Parse an external time string.

        Accepts the current ``HH:MM`` form and the legacy ``h:MM AM/PM`` form
        still found in older appointment records.

        Raises:
            ValueError: If the string matches neither form
        """
        match = _TIME_PATTERN.match(value or "")
        if not match:
            raise ValueError(f"Could not parse time of day: {value!r}")

        hour = int(match.group(1))
        minute = int(match.group(2))
        period = match.group(3)

        if period:
            if not 1 <= hour <= 12:
                raise ValueError(f"Hour must be between 1 and 12 with AM/PM, got {value!r}")
            period = period.upper()
            if period == "PM" and hour < 12:
                hour += 12
            elif period == "AM" and hour == 12:
                hour = 0

        return cls(hour=hour, minute=minute)

    @classmethod
    def from_minutes(cls, minutes: int) -> "TimeOfDay":
        """Build a time from minutes since midnight."""
        if not 0 <= minutes < MINUTES_PER_DAY:
            raise ValueError(f"Minutes since midnight out of range: {minutes}")
        return cls(hour=minutes // 60, minute=minutes % 60)

    @property
    def minutes(self) -> int:
        """Minutes since midnight."""
        return self.hour * 60 + self.minute

    def on(self, day: date, timezone: str) -> DateTime:
        """Project this wall-clock time onto a calendar date."""
        return pendulum.datetime(
            day.year, day.month, day.day, self.hour, self.minute, tz=timezone
        )

    def __str__(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


def parse_date(value: str) -> Date:
    """Parse a ``YYYY-MM-DD`` calendar date."""
    parsed = pendulum.parse(value, exact=True)
    if not isinstance(parsed, Date) or isinstance(parsed, DateTime):
        raise ValueError(f"Expected a calendar date (YYYY-MM-DD), got {value!r}")
    return parsed


@dataclass(frozen=True)
class BreakPeriod:
    """A recurring pause inside a day's opening hours."""
    start: TimeOfDay
    end: TimeOfDay

    def __post_init__(self):
        if self.start >= self.end:
            raise ValueError(f"Break start {self.start} must be before break end {self.end}")


@dataclass(frozen=True)
class DayHours:
    """
    Opening hours for one weekday.

    Invariants: open < close, every break lies within [open, close),
    breaks do not overlap each other.
    """
    open: TimeOfDay
    close: TimeOfDay
    breaks: Tuple[BreakPeriod, ...] = ()

    def __post_init__(self):
        if self.open >= self.close:
            raise ValueError(f"Opening time {self.open} must be before closing time {self.close}")

        ordered = tuple(sorted(self.breaks, key=lambda b: b.start))
        for period in ordered:
            if period.start < self.open or period.end > self.close:
                raise ValueError(
                    f"Break {period.start}-{period.end} lies outside opening hours "
                    f"{self.open}-{self.close}"
                )
        for previous, current in zip(ordered, ordered[1:]):
            if current.start < previous.end:
                raise ValueError(
                    f"Breaks {previous.start}-{previous.end} and "
                    f"{current.start}-{current.end} overlap"
                )
        object.__setattr__(self, "breaks", ordered)


@dataclass(frozen=True)
class TemporaryClosure:
    """A run of calendar days on which the business does not open at all."""
    start_date: Date
    end_date: Date
    reason: str = ""

    def __post_init__(self):
        if self.start_date > self.end_date:
            raise ValueError(
                f"Closure start {self.start_date} must not be after closure end {self.end_date}"
            )

    def covers(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date


@dataclass(frozen=True)
class TemporaryBreak:
    """A one-off pause on a single date."""
    date: Date
    period: BreakPeriod
    reason: str = ""


@dataclass
class WorkingHours:
    """
    Weekly opening hours of a business.

    Weekdays without an entry are closed.
    """
    days: Dict[str, DayHours] = field(default_factory=dict)
    temporary_closures: List[TemporaryClosure] = field(default_factory=list)
    temporary_breaks: List[TemporaryBreak] = field(default_factory=list)

    def __post_init__(self):
        unknown = [key for key in self.days if key not in WEEKDAY_KEYS]
        if unknown:
            raise ValueError(f"Unknown weekday key(s): {', '.join(sorted(unknown))}")

    def hours_for(self, day: date) -> DayHours | None:
        """
        Get the opening hours for a specific date.
        Returns None if the business is closed that day.
        """
        if any(closure.covers(day) for closure in self.temporary_closures):
            return None
        return self.days.get(WEEKDAY_KEYS[day.weekday()])

    def breaks_on(self, day: date) -> List[BreakPeriod]:
        """Return the one-off breaks scheduled for a date."""
        return [item.period for item in self.temporary_breaks if item.date == day]

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "WorkingHours":
        """
        Build working hours from the appointment API schedule payload.

        Accepts either the full schedule document
        ``{"workingHours": {...}, "temporaryClosures": [...], "temporaryBreaks": [...]}``
        or a bare weekday mapping ``{"mon": {"open": "09:00", "close": "17:00", "breaks": []}}``.

        Raises:
            ValueError: If any entry is malformed or violates an invariant
        """
        week = (payload.get("workingHours") or {}) if "workingHours" in payload else payload

        days: Dict[str, DayHours] = {}
        for key in WEEKDAY_KEYS:
            entry = week.get(key)
            # A day with no open or close time is a closed day
            if not entry or not entry.get("open") or not entry.get("close"):
                continue
            days[key] = DayHours(
                open=TimeOfDay.parse(entry["open"]),
                close=TimeOfDay.parse(entry["close"]),
                breaks=tuple(
                    BreakPeriod(
                        start=TimeOfDay.parse(item["start"]),
                        end=TimeOfDay.parse(item["end"]),
                    )
                    for item in entry.get("breaks") or []
                ),
            )

        closures = [
            TemporaryClosure(
                start_date=parse_date(item["startDate"]),
                end_date=parse_date(item["endDate"]),
                reason=item.get("reason", ""),
            )
            for item in payload.get("temporaryClosures") or []
        ]
        breaks = [
            TemporaryBreak(
                date=parse_date(item["date"]),
                period=BreakPeriod(
                    start=TimeOfDay.parse(item["startTime"]),
                    end=TimeOfDay.parse(item["endTime"]),
                ),
                reason=item.get("reason", ""),
            )
            for item in payload.get("temporaryBreaks") or []
        ]

        return cls(days=days, temporary_closures=closures, temporary_breaks=breaks)


@dataclass(frozen=True, order=True)
class BookedSlot:
    """One committed appointment occupying the business on a date."""
    start: TimeOfDay
    duration_minutes: int

    def __post_init__(self):
        if self.duration_minutes <= 0:
            raise ValueError(f"duration_minutes must be positive, got {self.duration_minutes}")

    def __str__(self) -> str:
        return f"{self.start}+{self.duration_minutes}"


def booked_set_signature(slots: Iterable[BookedSlot]) -> str:
    """Stable serialization of a booked set, independent of input order."""
    return "|".join(str(slot) for slot in sorted(slots))


@dataclass(frozen=True)
class BlockedInterval:
    """
    An absolute time range a candidate slot must keep clear of.

    Invariant: start must be before end.
    """
    start: DateTime
    end: DateTime

    def __post_init__(self):
        if self.start >= self.end:
            raise ValueError(f"Start time {self.start} must be before end time {self.end}")

    def duration_minutes(self) -> int:
        """Return the duration in minutes."""
        return int((self.end - self.start).total_seconds() / 60)

    def overlaps(self, start: DateTime, end: DateTime) -> bool:
        """Check if [start, end) overlaps this interval."""
        return end > self.start and start < self.end

    def conflicts_with(self, start: DateTime, end: DateTime, buffer_minutes: int) -> bool:
        """
        Check if [start, end) overlaps this interval or comes closer than
        ``buffer_minutes`` to either of its edges.
        """
        return (
            end > self.start.subtract(minutes=buffer_minutes)
            and start < self.end.add(minutes=buffer_minutes)
        )

    def __str__(self) -> str:
        return f"{self.start.format('DD.MM.YYYY HH:mm')} - {self.end.format('HH:mm')}"
