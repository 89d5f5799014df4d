"""Appointment creation with per-call idempotency."""

from .handler import BookingHandler, BookingResult, calculate_urgency_score, determine_priority
from .store import AppointmentStore, InMemoryAppointmentStore

__all__ = [
    "AppointmentStore",
    "BookingHandler",
    "BookingResult",
    "InMemoryAppointmentStore",
    "calculate_urgency_score",
    "determine_priority",
]
