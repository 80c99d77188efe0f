"""
Application service that drives booking attempts against the appointment store.

The appointment store is always the final arbiter of whether a slot is free.
Slots generated here are candidates for the user to choose from; a commit
rejected with a conflict triggers a re-fetch of the booked set and a fresh
list of candidates, never a resubmission of the rejected request.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from enum import Enum
from typing import Callable, Dict, List, Protocol

import pendulum
from pendulum import DateTime

from ..config import BookingDefaults
from ..domain.booking import Appointment, BookingRequest, ConflictReport
from ..domain.exceptions import (
    AppointmentAPIError,
    BookingConflictError,
    BookingEngineError,
    BookingStateError,
    BookingValidationError,
)
from ..domain.models import BookedSlot, TimeOfDay, WorkingHours, booked_set_signature
from ..domain.slot_cache import SlotCache, SlotCacheKey
from ..domain.slot_generator import TimeSlotGenerator
from .booked_slots import BookedSetListener, BookedSlotStore, ChangeReason

logger = logging.getLogger(__name__)


class AppointmentAPIProtocol(Protocol):
    """Protocol describing the appointment store operations needed by the coordinator."""

    async def get_working_hours(self, business_id: str) -> WorkingHours:
        """Return the business's working hours."""

    async def get_booked_slots(self, business_id: str, day: date) -> List[BookedSlot]:
        """Return the slots booked for a business on a date."""

    async def create_appointment(self, request: BookingRequest) -> Appointment:
        """Commit a new appointment or raise BookingConflictError / AppointmentAPIError."""

    async def reschedule_appointment(self, appointment_id: str, request: BookingRequest) -> Appointment:
        """Move an appointment or raise BookingConflictError / AppointmentAPIError."""

    async def cancel_appointment(self, appointment_id: str, reason: str = "") -> None:
        """Cancel an appointment."""


class BookingState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    COMMITTED = "committed"
    CONFLICT_DETECTED = "conflict_detected"
    AWAITING_RESELECTION = "awaiting_reselection"
    AWAITING_DATE_CHANGE = "awaiting_date_change"
    FAILED = "failed"


class BookingAttempt:
    """
    One user's attempt to book (or move) an appointment.

    The attempt holds the selection and the offered times; the coordinator
    performs every network call and every transition out of SUBMITTING.
    """

    def __init__(
        self,
        coordinator: "BookingCoordinator",
        *,
        business_id: str,
        service_id: str,
        requester: str,
        duration_minutes: int,
        notes: str = "",
        rescheduling: Appointment | None = None,
    ):
        if duration_minutes <= 0:
            raise BookingValidationError(
                f"Service duration must be positive, got {duration_minutes} minutes"
            )
        self._coordinator = coordinator
        self.business_id = business_id
        self.service_id = service_id
        self.requester = requester
        self.duration_minutes = duration_minutes
        self.notes = notes
        self.rescheduling = rescheduling

        self.state = BookingState.IDLE
        self.selected_date: date | None = None
        self.selected_time: TimeOfDay | None = None
        self.available_times: List[TimeOfDay] = []
        self.last_request: BookingRequest | None = None
        self.last_conflict: ConflictReport | None = None
        self.appointment: Appointment | None = None
        self.error: BookingEngineError | None = None
        self.finished = False

    @property
    def excluded_slot(self) -> BookedSlot | None:
        """The slot being moved, which must not block its own new time."""
        if self.rescheduling is not None and self.rescheduling.date == self.selected_date:
            return self.rescheduling.booked_slot
        return None

    async def select_date(self, day: date) -> List[TimeOfDay]:
        """Choose a date and load its available times."""
        self._require_state(
            BookingState.IDLE,
            BookingState.AWAITING_RESELECTION,
            BookingState.AWAITING_DATE_CHANGE,
            BookingState.FAILED,
        )
        self._coordinator.validate_date(day)

        self.selected_date = day
        self.selected_time = None
        self.available_times = []
        self.state = BookingState.IDLE

        self.available_times = await self._coordinator.load_availability(
            self.business_id, day, self.duration_minutes, exclude=self.excluded_slot
        )
        return list(self.available_times)

    def select_time(self, time: TimeOfDay) -> None:
        """Choose one of the currently offered times."""
        self._require_state(
            BookingState.IDLE,
            BookingState.AWAITING_RESELECTION,
            BookingState.FAILED,
        )
        if self.selected_date is None:
            raise BookingValidationError("Select a date before selecting a time")
        if time not in self.available_times:
            raise BookingValidationError(f"{time} is not available on {self.selected_date}")

        self.selected_time = time
        self.state = BookingState.IDLE

    async def confirm(self) -> BookingState:
        """
        Submit the current selection to the appointment store.

        Returns:
            The state the attempt ended up in
        """
        self._require_state(BookingState.IDLE, BookingState.FAILED)
        if self.selected_date is None or self.selected_time is None:
            raise BookingValidationError("A date and a time must be selected before confirming")
        self._coordinator.validate_date(self.selected_date)

        request = BookingRequest(
            business_id=self.business_id,
            service_id=self.service_id,
            date=self.selected_date,
            time=self.selected_time,
            duration_minutes=self.duration_minutes,
            requester=self.requester,
            notes=self.notes,
        )
        await self._coordinator.submit(self, request)
        return self.state

    def cancel(self) -> None:
        """Abandon the selection and go back to IDLE."""
        if self.state in (BookingState.SUBMITTING, BookingState.COMMITTED) or self.finished:
            raise BookingStateError(f"Cannot cancel an attempt in state {self.state.value}")
        self.selected_date = None
        self.selected_time = None
        self.available_times = []
        self.state = BookingState.IDLE

    def acknowledge(self) -> None:
        """Close a failed attempt after the user has seen the error."""
        self._require_state(BookingState.FAILED)
        self.finished = True

    def _require_state(self, *states: BookingState) -> None:
        if self.finished or self.state not in states:
            raise BookingStateError(
                f"Operation not allowed while the attempt is {self.state.value}"
                + (" (finished)" if self.finished else "")
            )

    def _transition(self, state: BookingState) -> None:
        logger.info(
            "Booking attempt for %s: %s -> %s",
            self.business_id, self.state.value, state.value,
        )
        self.state = state


class BookingCoordinator:
    """
    Orchestrates availability lookups and conflict-aware commits.

    Owns the booked-slot store and the slot cache; callers receive them by
    reference and subscribe to booked-set changes through ``subscribe``.
    """

    def __init__(
        self,
        api: AppointmentAPIProtocol,
        *,
        settings: BookingDefaults | None = None,
        timezone: str = "UTC",
        generator: TimeSlotGenerator | None = None,
        cache: SlotCache | None = None,
        store: BookedSlotStore | None = None,
        clock: Callable[[], DateTime] | None = None,
    ) -> None:
        self._api = api
        self.settings = settings or BookingDefaults()
        self.timezone = timezone
        self.cache = cache or SlotCache(max_entries=self.settings.cache_max_entries)
        self.store = store or BookedSlotStore(self.cache)
        self.generator = generator or TimeSlotGenerator(
            timezone, max_iterations=self.settings.max_slot_iterations
        )
        self._clock = clock or (lambda: pendulum.now(timezone))
        self._working_hours: Dict[str, WorkingHours] = {}

    def subscribe(self, listener: BookedSetListener) -> Callable[[], None]:
        """Register for "booked set changed for (business, date)" notifications."""
        return self.store.subscribe(listener)

    def begin(
        self,
        *,
        business_id: str,
        service_id: str,
        requester: str,
        duration_minutes: int | None = None,
        notes: str = "",
    ) -> BookingAttempt:
        """Start a new booking attempt."""
        return BookingAttempt(
            self,
            business_id=business_id,
            service_id=service_id,
            requester=requester,
            duration_minutes=(
                self.settings.default_duration_minutes if duration_minutes is None else duration_minutes
            ),
            notes=notes,
        )

    def begin_reschedule(self, appointment: Appointment, *, requester: str) -> BookingAttempt:
        """Start an attempt that moves an existing appointment."""
        return BookingAttempt(
            self,
            business_id=appointment.business_id,
            service_id=appointment.service_id,
            requester=requester,
            duration_minutes=appointment.duration_minutes,
            rescheduling=appointment,
        )

    def validate_date(self, day: date | None) -> None:
        """Reject dates in the past or beyond the lookahead window."""
        if day is None:
            raise BookingValidationError("No date selected")

        today = self._clock().in_timezone(self.timezone).date()
        last_day = today.add(days=self.settings.lookahead_days)
        if day < today or day > last_day:
            raise BookingValidationError(
                f"{day} is outside the booking window {today} - {last_day}"
            )

    async def load_working_hours(self, business_id: str, *, force: bool = False) -> WorkingHours:
        """Fetch working hours once per business for the session."""
        if force or business_id not in self._working_hours:
            self._working_hours[business_id] = await self._api.get_working_hours(business_id)
        return self._working_hours[business_id]

    async def refresh_booked_slots(self, business_id: str, day: date) -> List[BookedSlot]:
        """Re-fetch the authoritative booked set for (business_id, day)."""
        slots = await self._api.get_booked_slots(business_id, day)
        self.store.replace(business_id, day, slots)
        return self.store.get(business_id, day)

    async def load_availability(
        self,
        business_id: str,
        day: date,
        duration_minutes: int,
        *,
        exclude: BookedSlot | None = None,
    ) -> List[TimeOfDay]:
        """Fetch what is needed for (business_id, day) and return its available times."""
        await self.load_working_hours(business_id)
        await self.refresh_booked_slots(business_id, day)
        return self.available_times(business_id, day, duration_minutes, exclude=exclude)

    def available_times(
        self,
        business_id: str,
        day: date,
        duration_minutes: int,
        *,
        exclude: BookedSlot | None = None,
    ) -> List[TimeOfDay]:
        """
        Return the bookable start times for a date from locally known data.

        Results are served from the slot cache when the booked set is unchanged.
        """
        if duration_minutes <= 0:
            raise BookingValidationError(
                f"Service duration must be positive, got {duration_minutes} minutes"
            )
        working_hours = self._working_hours.get(business_id)
        if working_hours is None:
            raise BookingEngineError(f"Working hours for business {business_id} are not loaded")

        booked = self.store.get(business_id, day)
        if exclude is not None and exclude in booked:
            booked.remove(exclude)

        buffer = self.settings.buffer_minutes
        now = self._clock()
        cutoff = self.generator.same_day_cutoff(day, buffer, now)

        key = SlotCacheKey(
            day=day,
            business_id=business_id,
            duration_minutes=duration_minutes,
            buffer_minutes=buffer,
            signature=booked_set_signature(booked),
            cutoff=cutoff.to_iso8601_string() if cutoff is not None else None,
        )
        return self.cache.get_or_compute(
            key,
            lambda: self.generator.generate(
                day,
                working_hours.hours_for(day),
                booked,
                duration_minutes,
                buffer,
                now=now,
                extra_breaks=working_hours.breaks_on(day),
            ),
        )

    async def submit(self, attempt: BookingAttempt, request: BookingRequest) -> None:
        """Run one commit through the state machine."""
        attempt._transition(BookingState.SUBMITTING)
        attempt.last_request = request
        attempt.error = None

        moving = attempt.rescheduling
        released: BookedSlot | None = None
        if moving is not None:
            released = self.store.remove(
                moving.business_id, moving.date, moving.time, reason=ChangeReason.RESCHEDULED
            )

        timeout = self.settings.submit_timeout_seconds
        try:
            if moving is not None:
                call = self._api.reschedule_appointment(moving.id, request)
            else:
                call = self._api.create_appointment(request)
            appointment = await asyncio.wait_for(call, timeout=timeout)

        except BookingConflictError as exc:
            self._restore(moving, released)
            await self._recover_from_conflict(attempt, request, exc.report)
            return

        except asyncio.TimeoutError:
            self._restore(moving, released)
            self._fail(
                attempt,
                AppointmentAPIError(f"Booking request timed out after {timeout}s"),
            )
            return

        except AppointmentAPIError as exc:
            self._restore(moving, released)
            self._fail(attempt, exc)
            return

        except Exception as exc:
            # The outcome on the store side is unknown; treat it like a transport failure
            logger.exception("Unexpected error submitting booking for %s", request.business_id)
            self._restore(moving, released)
            self._fail(attempt, AppointmentAPIError(f"Booking request failed: {exc}"))
            return

        attempt.appointment = appointment
        attempt.selected_time = None
        attempt._transition(BookingState.COMMITTED)
        self.store.add(
            request.business_id,
            request.date,
            request.booked_slot,
            reason=ChangeReason.RESCHEDULED if moving is not None else ChangeReason.BOOKED,
        )
        logger.info(
            "Committed %s on %s at %s for business %s",
            appointment.id, request.date, request.time, request.business_id,
        )

    async def cancel_appointment(self, appointment: Appointment, reason: str = "") -> None:
        """
        Cancel an appointment and release its slot locally.

        Raises:
            AppointmentAPIError: If the appointment store rejects or does not answer
        """
        timeout = self.settings.submit_timeout_seconds
        try:
            await asyncio.wait_for(
                self._api.cancel_appointment(appointment.id, reason), timeout=timeout
            )
        except asyncio.TimeoutError as exc:
            raise AppointmentAPIError(f"Cancel request timed out after {timeout}s") from exc

        released = self.store.remove(
            appointment.business_id, appointment.date, appointment.time,
            reason=ChangeReason.CANCELLED,
        )
        if released is None:
            # The slot was never loaded locally; drop anything derived from a stale view
            self.cache.invalidate(appointment.business_id, appointment.date)
        logger.info("Cancelled %s on %s at %s", appointment.id, appointment.date, appointment.time)

    async def _recover_from_conflict(
        self,
        attempt: BookingAttempt,
        request: BookingRequest,
        report: ConflictReport,
    ) -> None:
        logger.warning(
            "Booking conflict %s for business %s on %s at %s",
            report.kind.value, request.business_id, request.date, request.time,
        )
        attempt.last_conflict = report
        attempt.selected_time = None
        attempt._transition(BookingState.CONFLICT_DETECTED)

        try:
            await self.refresh_booked_slots(request.business_id, request.date)
            self.cache.invalidate(request.business_id, request.date)

            # The rejected time is never offered again within this attempt
            times = [
                time for time in self.available_times(
                    request.business_id,
                    request.date,
                    request.duration_minutes,
                    exclude=attempt.excluded_slot,
                )
                if time != request.time
            ]
        except BookingEngineError as exc:
            self._fail(attempt, exc)
            return
        except Exception as exc:
            logger.exception("Unexpected error recovering from conflict for %s", request.business_id)
            self._fail(attempt, AppointmentAPIError(f"Refreshing booked slots failed: {exc}"))
            return

        attempt.available_times = times

        if times:
            attempt._transition(BookingState.AWAITING_RESELECTION)
        else:
            attempt._transition(BookingState.AWAITING_DATE_CHANGE)

    def _restore(self, moving: Appointment | None, released: BookedSlot | None) -> None:
        if moving is not None and released is not None:
            self.store.add(moving.business_id, moving.date, released, reason=ChangeReason.RESCHEDULED)

    def _fail(self, attempt: BookingAttempt, error: BookingEngineError) -> None:
        logger.error("Booking attempt for %s failed: %s", attempt.business_id, error)
        attempt.error = error
        attempt._transition(BookingState.FAILED)
