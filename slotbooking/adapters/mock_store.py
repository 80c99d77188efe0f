"""
In-memory appointment store for testing without the appointment API.
"""

import itertools
import json
import logging
from dataclasses import replace
from datetime import date
from pathlib import Path
from typing import Dict, List

import pendulum

from ..domain.booking import Appointment, BookingRequest, ConflictKind, ConflictReport
from ..domain.exceptions import AppointmentAPIError, BookingConflictError
from ..domain.models import BookedSlot, TimeOfDay, WorkingHours, parse_date

logger = logging.getLogger(__name__)


class InMemoryAppointmentStore:
    """
    Stand-in for the appointment API that enforces the booking rules itself.

    A commit is rejected when it
    - comes closer than ``buffer_minutes`` to an active appointment (TIME_CONFLICT),
    - starts at the same time as an active appointment (RACE_CONDITION),
    - overlaps an active appointment (DURATION_OVERLAP).
    Checks run in that order, so with a positive buffer every rejection is a
    TIME_CONFLICT; the other kinds surface with ``buffer_minutes=0``.
    """

    def __init__(
        self,
        businesses: Dict[str, WorkingHours] | None = None,
        buffer_minutes: int = 15,
    ):
        self.buffer_minutes = buffer_minutes
        self._businesses: Dict[str, WorkingHours] = dict(businesses or {})
        self._appointments: Dict[str, Appointment] = {}
        self._ids = itertools.count(1)

    @classmethod
    def from_file(
        cls,
        data_file: Path | None = None,
        buffer_minutes: int = 15,
        today: date | None = None,
    ) -> "InMemoryAppointmentStore":
        """
        Load businesses and appointments from a JSON file.

        Appointments may carry ``dayOffset`` (days from ``today``) instead of a
        fixed ``date`` so the sample data stays bookable.
        """
        data_file = data_file or Path(__file__).parent / "mock_store_data.json"
        today = today or pendulum.today().date()

        with open(data_file, "r", encoding="utf-8") as f:
            data = json.load(f)

        store = cls(buffer_minutes=buffer_minutes)
        for business_id, schedule in data.get("businesses", {}).items():
            store.add_business(business_id, WorkingHours.from_dict(schedule))

        for item in data.get("appointments", []):
            if "dayOffset" in item:
                day = pendulum.date(today.year, today.month, today.day).add(days=int(item["dayOffset"]))
            else:
                day = parse_date(item["date"])
            store.seed(
                Appointment(
                    id=str(item.get("_id") or f"apt-{next(store._ids)}"),
                    business_id=item["business"],
                    service_id=item.get("service", ""),
                    date=day,
                    time=TimeOfDay.parse(item["time"]),
                    duration_minutes=int(item["durationMinutes"]),
                    status=item.get("status", "booked"),
                )
            )

        return store

    def add_business(self, business_id: str, working_hours: WorkingHours) -> None:
        self._businesses[business_id] = working_hours

    def seed(self, appointment: Appointment) -> None:
        """Insert an appointment without validation, as another client's booking would land."""
        self._appointments[appointment.id] = appointment

    def appointments_for(self, business_id: str, day: date) -> List[Appointment]:
        """Active appointments of a business on a date, ordered by time."""
        return sorted(
            (
                appointment for appointment in self._appointments.values()
                if appointment.business_id == business_id
                and appointment.date == day
                and appointment.status != "canceled"
            ),
            key=lambda appointment: appointment.time,
        )

    async def __aenter__(self) -> "InMemoryAppointmentStore":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Nothing to release."""

    async def get_working_hours(self, business_id: str) -> WorkingHours:
        try:
            return self._businesses[business_id]
        except KeyError:
            raise AppointmentAPIError(f"Business not found: {business_id}", status_code=404)

    async def get_booked_slots(self, business_id: str, day: date) -> List[BookedSlot]:
        return [appointment.booked_slot for appointment in self.appointments_for(business_id, day)]

    async def create_appointment(self, request: BookingRequest) -> Appointment:
        if request.business_id not in self._businesses:
            raise AppointmentAPIError(f"Business not found: {request.business_id}", status_code=400)

        self._check_conflicts(request)

        appointment = Appointment(
            id=f"apt-{next(self._ids)}",
            business_id=request.business_id,
            service_id=request.service_id,
            date=request.date,
            time=request.time,
            duration_minutes=request.duration_minutes,
        )
        self._appointments[appointment.id] = appointment
        logger.debug("Mock store booked %s at %s on %s", appointment.id, appointment.time, appointment.date)
        return appointment

    async def reschedule_appointment(self, appointment_id: str, request: BookingRequest) -> Appointment:
        current = self._appointments.get(appointment_id)
        if current is None or current.status == "canceled":
            raise AppointmentAPIError(f"Appointment not found: {appointment_id}", status_code=404)

        self._check_conflicts(request, exclude_id=appointment_id)

        moved = replace(
            current,
            date=request.date,
            time=request.time,
            duration_minutes=request.duration_minutes,
        )
        self._appointments[appointment_id] = moved
        return moved

    async def cancel_appointment(self, appointment_id: str, reason: str = "") -> None:
        current = self._appointments.get(appointment_id)
        if current is None:
            raise AppointmentAPIError(f"Appointment not found: {appointment_id}", status_code=404)
        self._appointments[appointment_id] = replace(current, status="canceled")

    def _check_conflicts(self, request: BookingRequest, exclude_id: str | None = None) -> None:
        others = [
            appointment for appointment in self.appointments_for(request.business_id, request.date)
            if appointment.id != exclude_id
        ]
        start = request.time.minutes
        end = start + request.duration_minutes

        def spans(appointment: Appointment):
            return appointment.time.minutes, appointment.time.minutes + appointment.duration_minutes

        if self.buffer_minutes > 0:
            for appointment in others:
                other_start, other_end = spans(appointment)
                if end > other_start - self.buffer_minutes and start < other_end + self.buffer_minutes:
                    raise BookingConflictError(
                        ConflictReport(
                            kind=ConflictKind.TIME_CONFLICT,
                            message=f"Conflicts with existing appointment from {appointment.time}",
                        )
                    )

        if any(appointment.time == request.time for appointment in others):
            raise BookingConflictError(
                ConflictReport(
                    kind=ConflictKind.RACE_CONDITION,
                    message=f"Time slot {request.time} was booked by another user",
                )
            )

        for appointment in others:
            other_start, other_end = spans(appointment)
            if end > other_start and start < other_end:
                raise BookingConflictError(
                    ConflictReport(
                        kind=ConflictKind.DURATION_OVERLAP,
                        message=f"Your {request.duration_minutes}-minute service overlaps with an existing appointment",
                    )
                )
