"""
Adapters layer - External integrations (appointment API).
"""

from .appointment_api import AppointmentAPI
from .mock_store import InMemoryAppointmentStore

__all__ = ["AppointmentAPI", "InMemoryAppointmentStore"]
