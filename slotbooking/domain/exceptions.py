"""
Domain-specific exception hierarchy for the booking engine.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .booking import ConflictReport


class BookingEngineError(Exception):
    """Base class for all application-level errors."""


class BookingValidationError(BookingEngineError):
    """Raised when a request is rejected locally, before any network call."""


class BookingStateError(BookingEngineError):
    """Raised when an operation is not allowed in the current attempt state."""


class SlotGenerationError(BookingEngineError):
    """Raised when slot generation exceeds its iteration bound."""


class AppointmentAPIError(BookingEngineError):
    """Raised when the appointment store cannot be reached or answers with a non-conflict error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class BookingConflictError(BookingEngineError):
    """Raised when the appointment store rejects a commit with one of the conflict kinds."""

    def __init__(self, report: "ConflictReport"):
        super().__init__(f"{report.kind.value}: {report.message}" if report.message else report.kind.value)
        self.report = report
