"""
REST client for the appointment API, the authoritative store of bookings.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List

import httpx

from ..domain.booking import Appointment, BookingRequest, ConflictKind, ConflictReport
from ..domain.exceptions import AppointmentAPIError, BookingConflictError
from ..domain.models import BookedSlot, TimeOfDay, WorkingHours

logger = logging.getLogger(__name__)


class AppointmentAPI:
    """
    Async client for the appointment API.

    Conflict responses are decoded here, once, into ``BookingConflictError``;
    every other failure becomes ``AppointmentAPIError``.
    """

    def __init__(
        self,
        base_url: str,
        access_token: str | None = None,
        timeout: float = 30.0,
        default_duration_minutes: int = 60,
        http: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the appointment API client.

        Args:
            base_url: API root, e.g. ``https://example.com/api``
            access_token: Opaque bearer token supplied by the caller
            timeout: Per-request timeout in seconds
            default_duration_minutes: Duration assumed for records without one
            http: Preconfigured client, mainly for tests
        """
        headers = {"Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        self.default_duration_minutes = default_duration_minutes
        self.http = http or httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
        )

    async def __aenter__(self) -> "AppointmentAPI":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.http.aclose()

    async def get_working_hours(self, business_id: str) -> WorkingHours:
        """
        Fetch the weekly schedule of a business.

        Response format:
        {
            "success": true,
            "workingHours": {"mon": {"open": "09:00", "close": "17:00", "breaks": [...]}, ...},
            "temporaryClosures": [{"startDate": "...", "endDate": "...", "reason": "..."}],
            "temporaryBreaks": [{"date": "...", "startTime": "...", "endTime": "...", "reason": "..."}]
        }
        """
        data = await self._request("GET", f"/working-hours/businesses/{business_id}/schedule")
        if not isinstance(data, dict):
            raise AppointmentAPIError("Schedule response must be an object")
        try:
            return WorkingHours.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise AppointmentAPIError(f"Malformed schedule for business {business_id}: {exc}") from exc

    async def get_booked_slots(self, business_id: str, day: date) -> List[BookedSlot]:
        """Fetch the slots occupied by non-cancelled appointments on a date."""
        day_str = day.isoformat()
        data = await self._request(
            "GET", f"/appointments/business/{business_id}", params={"date": day_str}
        )
        if not isinstance(data, list):
            raise AppointmentAPIError("Appointment list response must be an array")

        slots: List[BookedSlot] = []
        for item in data:
            if not isinstance(item, dict):
                raise AppointmentAPIError(f"Malformed appointment record for business {business_id}")
            if item.get("status") == "canceled" or item.get("date") != day_str:
                continue
            try:
                slots.append(
                    BookedSlot(
                        start=TimeOfDay.parse(item["time"]),
                        duration_minutes=int(
                            item.get("durationMinutes") or self.default_duration_minutes
                        ),
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise AppointmentAPIError(
                    f"Malformed appointment record for business {business_id}: {exc}"
                ) from exc

        return slots

    async def create_appointment(self, request: BookingRequest) -> Appointment:
        """
        Commit a new appointment.

        Raises:
            BookingConflictError: If the store reports one of the conflict kinds
            AppointmentAPIError: On any other failure
        """
        payload: Dict[str, Any] = {
            "business": request.business_id,
            "service": request.service_id,
            "user": request.requester,
            "date": request.date.isoformat(),
            "time": str(request.time),
            "durationMinutes": request.duration_minutes,
        }
        if request.notes:
            payload["notes"] = request.notes

        data = await self._request("POST", "/appointments/book", json=payload)
        return self._parse_appointment(data)

    async def reschedule_appointment(self, appointment_id: str, request: BookingRequest) -> Appointment:
        """Move an appointment to the request's date and time."""
        payload = {
            "date": request.date.isoformat(),
            "time": str(request.time),
            "durationMinutes": request.duration_minutes,
        }
        data = await self._request("PUT", f"/appointments/{appointment_id}/reschedule", json=payload)
        return self._parse_appointment(data)

    async def cancel_appointment(self, appointment_id: str, reason: str = "") -> None:
        """Cancel an appointment, freeing its slot."""
        await self._request("PUT", f"/appointments/{appointment_id}/cancel", json={"reason": reason})

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Dict[str, Any] | None = None,
        json: Dict[str, Any] | None = None,
    ) -> Any:
        try:
            response = await self.http.request(method, path, params=params, json=json)
        except httpx.TimeoutException as exc:
            raise AppointmentAPIError(f"Request to {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise AppointmentAPIError(f"Request to {path} failed: {exc}") from exc

        if response.status_code >= 400:
            self._raise_for_error(path, response)

        try:
            return response.json()
        except ValueError as exc:
            raise AppointmentAPIError(
                f"Response from {path} is not valid JSON", status_code=response.status_code
            ) from exc

    @staticmethod
    def _raise_for_error(path: str, response: httpx.Response) -> None:
        """
        Translate an error response.

        Error format:
        {"error": "TIME_CONFLICT" | "RACE_CONDITION" | ... | "<message>", "message": "..."}
        """
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        error = body.get("error")
        message = body.get("message") or ""

        kind = ConflictKind.decode(error)
        if kind is not None:
            raise BookingConflictError(ConflictReport(kind=kind, message=message))

        logger.debug("Appointment API error %d on %s: %s", response.status_code, path, body)
        raise AppointmentAPIError(
            str(error or message or f"Appointment API returned {response.status_code}"),
            status_code=response.status_code,
        )

    @staticmethod
    def _parse_appointment(data: Any) -> Appointment:
        # Some endpoints wrap the record as {"appointment": {...}}
        if isinstance(data, dict) and isinstance(data.get("appointment"), dict):
            data = data["appointment"]
        if not isinstance(data, dict):
            raise AppointmentAPIError("Appointment response must be an object")
        try:
            return Appointment.from_dict(data)
        except ValueError as exc:
            raise AppointmentAPIError(str(exc)) from exc
