"""
Tests for the BookingCoordinator orchestration layer.
"""

import asyncio
from typing import Dict, List

import pendulum
import pytest

from slotbooking.config import BookingDefaults
from slotbooking.domain.booking import Appointment, BookingRequest, ConflictKind, ConflictReport
from slotbooking.domain.exceptions import (
    AppointmentAPIError,
    BookingConflictError,
    BookingEngineError,
    BookingStateError,
    BookingValidationError,
    SlotGenerationError,
)
from slotbooking.domain.models import BookedSlot, DayHours, TimeOfDay, WorkingHours
from slotbooking.services.booked_slots import ChangeReason
from slotbooking.services.booking_coordinator import BookingCoordinator, BookingState

SUNDAY = pendulum.date(2024, 11, 24)
MONDAY = pendulum.date(2024, 11, 25)
TUESDAY = pendulum.date(2024, 11, 26)

HANG = object()


def _clock():
    return pendulum.datetime(2024, 11, 24, 12, 0, tz="UTC")


class StubAppointmentAPI:
    """Minimal stub matching AppointmentAPIProtocol."""

    def __init__(self, working_hours: WorkingHours, booked: Dict = None):
        self.working_hours = working_hours
        self.booked: Dict = dict(booked or {})
        self.outcomes: List = []
        self.requests: List[BookingRequest] = []
        self.rescheduled: List[str] = []
        self.cancelled: List = []
        self.hours_calls = 0
        self.booked_calls = 0
        self.fail_refresh = False

    async def get_working_hours(self, business_id):
        self.hours_calls += 1
        return self.working_hours

    async def get_booked_slots(self, business_id, day):
        self.booked_calls += 1
        if self.fail_refresh:
            raise AppointmentAPIError("Service unavailable", status_code=503)
        return list(self.booked.get(day, []))

    async def create_appointment(self, request):
        self.requests.append(request)
        await self._outcome()
        return Appointment(
            id=f"apt-{len(self.requests)}",
            business_id=request.business_id,
            service_id=request.service_id,
            date=request.date,
            time=request.time,
            duration_minutes=request.duration_minutes,
        )

    async def reschedule_appointment(self, appointment_id, request):
        self.rescheduled.append(appointment_id)
        self.requests.append(request)
        await self._outcome()
        return Appointment(
            id=appointment_id,
            business_id=request.business_id,
            service_id=request.service_id,
            date=request.date,
            time=request.time,
            duration_minutes=request.duration_minutes,
        )

    async def cancel_appointment(self, appointment_id, reason=""):
        self.cancelled.append((appointment_id, reason))

    async def _outcome(self):
        if not self.outcomes:
            return
        outcome = self.outcomes.pop(0)
        if outcome is HANG:
            await asyncio.sleep(10)
        elif isinstance(outcome, Exception):
            raise outcome


def _monday_hours(open_at="09:00", close_at="17:00") -> WorkingHours:
    return WorkingHours(
        days={"mon": DayHours(open=TimeOfDay.parse(open_at), close=TimeOfDay.parse(close_at))}
    )


def _build(api: StubAppointmentAPI, **settings) -> BookingCoordinator:
    return BookingCoordinator(
        api,
        settings=BookingDefaults(**settings),
        timezone="UTC",
        clock=_clock,
    )


def _conflict(kind: ConflictKind) -> BookingConflictError:
    return BookingConflictError(ConflictReport(kind=kind, message="Slot taken"))


def _existing(time: str = "10:00") -> Appointment:
    return Appointment(
        id="apt-existing",
        business_id="shop",
        service_id="haircut",
        date=MONDAY,
        time=TimeOfDay.parse(time),
        duration_minutes=60,
    )


class TestBookingFlow:
    """Happy path and validation of a booking attempt."""

    def test_commit_updates_store_and_slots(self):
        api = StubAppointmentAPI(_monday_hours())
        coordinator = _build(api)
        events = []
        coordinator.subscribe(events.append)

        async def scenario():
            attempt = coordinator.begin(business_id="shop", service_id="haircut", requester="u1")
            times = await attempt.select_date(MONDAY)
            attempt.select_time(TimeOfDay(10))
            state = await attempt.confirm()
            return attempt, times, state

        attempt, times, state = asyncio.run(scenario())

        assert len(times) == 29
        assert state == BookingState.COMMITTED
        assert attempt.appointment.id == "apt-1"
        assert api.requests[0].duration_minutes == 60
        assert coordinator.store.get("shop", MONDAY) == [BookedSlot(TimeOfDay(10), 60)]
        assert events[-1].reason == ChangeReason.BOOKED

        remaining = coordinator.available_times("shop", MONDAY, 60)
        assert TimeOfDay(10) not in remaining
        assert len(remaining) == 20

    def test_working_hours_fetched_once_and_slots_cached(self):
        api = StubAppointmentAPI(_monday_hours())
        coordinator = _build(api)

        async def scenario():
            first = await coordinator.load_availability("shop", MONDAY, 60)
            second = await coordinator.load_availability("shop", MONDAY, 60)
            return first, second

        first, second = asyncio.run(scenario())

        assert first == second
        assert api.hours_calls == 1
        assert api.booked_calls == 2
        assert coordinator.cache.misses == 1
        assert coordinator.cache.hits == 1

    def test_available_times_requires_working_hours(self):
        coordinator = _build(StubAppointmentAPI(_monday_hours()))

        with pytest.raises(BookingEngineError, match="not loaded"):
            coordinator.available_times("shop", MONDAY, 60)

    def test_validate_date_window(self):
        coordinator = _build(StubAppointmentAPI(_monday_hours()), lookahead_days=30)

        coordinator.validate_date(SUNDAY)
        coordinator.validate_date(SUNDAY.add(days=30))
        with pytest.raises(BookingValidationError):
            coordinator.validate_date(SUNDAY.subtract(days=1))
        with pytest.raises(BookingValidationError):
            coordinator.validate_date(SUNDAY.add(days=31))
        with pytest.raises(BookingValidationError):
            coordinator.validate_date(None)

    def test_selection_rules(self):
        api = StubAppointmentAPI(_monday_hours())
        coordinator = _build(api)
        attempt = coordinator.begin(business_id="shop", service_id="haircut", requester="u1")

        with pytest.raises(BookingValidationError):
            attempt.select_time(TimeOfDay(10))
        with pytest.raises(BookingValidationError):
            asyncio.run(attempt.confirm())

        asyncio.run(attempt.select_date(MONDAY))
        with pytest.raises(BookingValidationError, match="not available"):
            attempt.select_time(TimeOfDay(10, 5))

        attempt.select_time(TimeOfDay(10))
        attempt.cancel()

        assert attempt.state == BookingState.IDLE
        assert attempt.selected_date is None
        assert attempt.selected_time is None
        assert api.requests == []

    def test_non_positive_duration_rejected(self):
        coordinator = _build(StubAppointmentAPI(_monday_hours()))

        with pytest.raises(BookingValidationError):
            coordinator.begin(
                business_id="shop", service_id="haircut", requester="u1", duration_minutes=-5
            )

    def test_begin_rejects_zero_duration(self):
        coordinator = _build(StubAppointmentAPI(_monday_hours()), default_duration_minutes=60)

        with pytest.raises(BookingValidationError, match="got 0 minutes"):
            coordinator.begin(
                business_id="shop", service_id="haircut", requester="u1", duration_minutes=0
            )

    def test_committed_attempt_cannot_be_cancelled_or_reconfirmed(self):
        coordinator = _build(StubAppointmentAPI(_monday_hours()))

        async def scenario():
            attempt = coordinator.begin(business_id="shop", service_id="haircut", requester="u1")
            await attempt.select_date(MONDAY)
            attempt.select_time(TimeOfDay(9))
            await attempt.confirm()
            return attempt

        attempt = asyncio.run(scenario())

        with pytest.raises(BookingStateError):
            attempt.cancel()
        with pytest.raises(BookingStateError):
            asyncio.run(attempt.confirm())


class TestConflictRecovery:
    """Conflict responses lead to a refreshed slot list, never to a resubmission."""

    def test_race_condition_refreshes_and_awaits_reselection(self):
        api = StubAppointmentAPI(_monday_hours())
        coordinator = _build(api)
        attempt = coordinator.begin(business_id="shop", service_id="haircut", requester="u1")

        asyncio.run(attempt.select_date(MONDAY))
        attempt.select_time(TimeOfDay(10))

        # Another client takes 10:00 before we confirm
        api.booked[MONDAY] = [BookedSlot(TimeOfDay(10), 60)]
        api.outcomes.append(_conflict(ConflictKind.RACE_CONDITION))

        state = asyncio.run(attempt.confirm())

        assert state == BookingState.AWAITING_RESELECTION
        assert attempt.last_conflict.kind == ConflictKind.RACE_CONDITION
        assert attempt.selected_time is None
        assert TimeOfDay(10) not in attempt.available_times
        assert attempt.available_times[0] == TimeOfDay(11, 15)
        assert len(api.requests) == 1
        assert coordinator.store.get("shop", MONDAY) == [BookedSlot(TimeOfDay(10), 60)]

        with pytest.raises(BookingValidationError):
            attempt.select_time(TimeOfDay(10))

        attempt.select_time(TimeOfDay(11, 15))
        state = asyncio.run(attempt.confirm())

        assert state == BookingState.COMMITTED
        assert len(api.requests) == 2

    def test_rejected_time_is_dropped_even_if_refresh_shows_nothing(self):
        api = StubAppointmentAPI(_monday_hours())
        coordinator = _build(api)
        attempt = coordinator.begin(business_id="shop", service_id="haircut", requester="u1")
        api.outcomes.append(_conflict(ConflictKind.TIME_CONFLICT))

        async def scenario():
            await attempt.select_date(MONDAY)
            attempt.select_time(TimeOfDay(10))
            return await attempt.confirm()

        state = asyncio.run(scenario())

        assert state == BookingState.AWAITING_RESELECTION
        assert TimeOfDay(10) not in attempt.available_times
        assert len(attempt.available_times) == 28

    def test_no_times_left_asks_for_another_date(self):
        api = StubAppointmentAPI(_monday_hours("09:00", "10:00"))
        coordinator = _build(api)
        attempt = coordinator.begin(business_id="shop", service_id="haircut", requester="u1")

        asyncio.run(attempt.select_date(MONDAY))
        assert attempt.available_times == [TimeOfDay(9)]
        attempt.select_time(TimeOfDay(9))

        api.booked[MONDAY] = [BookedSlot(TimeOfDay(9), 60)]
        api.outcomes.append(_conflict(ConflictKind.DUPLICATE_BOOKING))
        state = asyncio.run(attempt.confirm())

        assert state == BookingState.AWAITING_DATE_CHANGE
        assert attempt.available_times == []
        with pytest.raises(BookingStateError):
            attempt.select_time(TimeOfDay(9))

        times = asyncio.run(attempt.select_date(TUESDAY))

        assert times == []
        assert attempt.state == BookingState.IDLE

    def test_refresh_failure_during_recovery_fails_attempt(self):
        api = StubAppointmentAPI(_monday_hours())
        coordinator = _build(api)
        attempt = coordinator.begin(business_id="shop", service_id="haircut", requester="u1")

        asyncio.run(attempt.select_date(MONDAY))
        attempt.select_time(TimeOfDay(10))
        api.outcomes.append(_conflict(ConflictKind.DURATION_OVERLAP))
        api.fail_refresh = True

        state = asyncio.run(attempt.confirm())

        assert state == BookingState.FAILED
        assert attempt.error.status_code == 503
        assert attempt.last_conflict.kind == ConflictKind.DURATION_OVERLAP


class TestFailures:
    """Non-conflict errors and timeouts."""

    def test_api_error_fails_and_allows_retry(self):
        api = StubAppointmentAPI(_monday_hours())
        coordinator = _build(api)
        attempt = coordinator.begin(business_id="shop", service_id="haircut", requester="u1")

        asyncio.run(attempt.select_date(MONDAY))
        attempt.select_time(TimeOfDay(10))
        api.outcomes.append(AppointmentAPIError("Server error", status_code=500))

        assert asyncio.run(attempt.confirm()) == BookingState.FAILED
        assert str(attempt.error) == "Server error"
        assert coordinator.store.get("shop", MONDAY) == []

        assert asyncio.run(attempt.confirm()) == BookingState.COMMITTED
        assert attempt.error is None

    def test_timeout_fails_attempt(self):
        api = StubAppointmentAPI(_monday_hours())
        coordinator = _build(api, submit_timeout_seconds=0.05)
        attempt = coordinator.begin(business_id="shop", service_id="haircut", requester="u1")

        asyncio.run(attempt.select_date(MONDAY))
        attempt.select_time(TimeOfDay(10))
        api.outcomes.append(HANG)

        assert asyncio.run(attempt.confirm()) == BookingState.FAILED
        assert "timed out" in str(attempt.error)

    def test_acknowledged_failure_is_finished(self):
        api = StubAppointmentAPI(_monday_hours())
        coordinator = _build(api)
        attempt = coordinator.begin(business_id="shop", service_id="haircut", requester="u1")

        asyncio.run(attempt.select_date(MONDAY))
        attempt.select_time(TimeOfDay(10))
        api.outcomes.append(AppointmentAPIError("Server error", status_code=500))
        asyncio.run(attempt.confirm())

        attempt.acknowledge()

        assert attempt.finished
        with pytest.raises(BookingStateError):
            asyncio.run(attempt.select_date(MONDAY))
        with pytest.raises(BookingStateError):
            attempt.cancel()


    def test_unexpected_error_fails_attempt_and_restores_slot(self):
        api = StubAppointmentAPI(_monday_hours(), booked={MONDAY: [BookedSlot(TimeOfDay(10), 60)]})
        coordinator = _build(api)
        attempt = coordinator.begin_reschedule(_existing("10:00"), requester="u1")

        asyncio.run(attempt.select_date(MONDAY))
        attempt.select_time(TimeOfDay(14))
        api.outcomes.append(RuntimeError("boom"))

        state = asyncio.run(attempt.confirm())

        assert state == BookingState.FAILED
        assert isinstance(attempt.error, AppointmentAPIError)
        assert "boom" in str(attempt.error)
        assert coordinator.store.get("shop", MONDAY) == [BookedSlot(TimeOfDay(10), 60)]

        attempt.cancel()
        assert attempt.state == BookingState.IDLE

    def test_slot_generation_error_during_recovery_fails_attempt(self):
        api = StubAppointmentAPI(_monday_hours())
        coordinator = _build(api)
        attempt = coordinator.begin(business_id="shop", service_id="haircut", requester="u1")

        asyncio.run(attempt.select_date(MONDAY))
        attempt.select_time(TimeOfDay(10))
        # Regenerating the invalidated day now overruns the walk limit
        coordinator.generator.max_iterations = 1
        api.outcomes.append(_conflict(ConflictKind.RACE_CONDITION))

        state = asyncio.run(attempt.confirm())

        assert state == BookingState.FAILED
        assert isinstance(attempt.error, SlotGenerationError)
        assert attempt.last_conflict.kind == ConflictKind.RACE_CONDITION


class TestRescheduleAndCancel:
    """Moving and cancelling existing appointments."""

    def test_reschedule_moves_slot(self):
        api = StubAppointmentAPI(_monday_hours(), booked={MONDAY: [BookedSlot(TimeOfDay(10), 60)]})
        coordinator = _build(api)
        events = []
        coordinator.subscribe(events.append)
        attempt = coordinator.begin_reschedule(_existing("10:00"), requester="u1")

        times = asyncio.run(attempt.select_date(MONDAY))
        # The appointment being moved does not block its own neighbourhood
        assert TimeOfDay(10, 30) in times

        attempt.select_time(TimeOfDay(10, 30))
        state = asyncio.run(attempt.confirm())

        assert state == BookingState.COMMITTED
        assert api.rescheduled == ["apt-existing"]
        assert coordinator.store.get("shop", MONDAY) == [BookedSlot(TimeOfDay(10, 30), 60)]
        assert events[-1].reason == ChangeReason.RESCHEDULED

    def test_reschedule_conflict_restores_old_slot(self):
        api = StubAppointmentAPI(_monday_hours(), booked={MONDAY: [BookedSlot(TimeOfDay(10), 60)]})
        coordinator = _build(api)
        attempt = coordinator.begin_reschedule(_existing("10:00"), requester="u1")

        asyncio.run(attempt.select_date(MONDAY))
        attempt.select_time(TimeOfDay(14))
        api.outcomes.append(_conflict(ConflictKind.TIME_CONFLICT))

        state = asyncio.run(attempt.confirm())

        assert state == BookingState.AWAITING_RESELECTION
        assert coordinator.store.get("shop", MONDAY) == [BookedSlot(TimeOfDay(10), 60)]
        assert TimeOfDay(14) not in attempt.available_times

    def test_cancel_releases_slot(self):
        api = StubAppointmentAPI(_monday_hours(), booked={MONDAY: [BookedSlot(TimeOfDay(10), 60)]})
        coordinator = _build(api)
        events = []
        coordinator.subscribe(events.append)

        async def scenario():
            before = await coordinator.load_availability("shop", MONDAY, 60)
            await coordinator.cancel_appointment(_existing("10:00"), "sick")
            return before

        before = asyncio.run(scenario())
        after = coordinator.available_times("shop", MONDAY, 60)

        assert TimeOfDay(10) not in before
        assert TimeOfDay(10) in after
        assert api.cancelled == [("apt-existing", "sick")]
        assert events[-1].reason == ChangeReason.CANCELLED

    def test_cancel_of_unloaded_slot_invalidates_cache(self):
        api = StubAppointmentAPI(_monday_hours())
        coordinator = _build(api)
        asyncio.run(coordinator.load_availability("shop", MONDAY, 60))
        assert len(coordinator.cache) == 1

        asyncio.run(coordinator.cancel_appointment(_existing("10:00")))

        assert len(coordinator.cache) == 0
