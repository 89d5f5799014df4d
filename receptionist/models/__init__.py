"""Data models for the receptionist pipeline.

``CallSession`` lives in ``receptionist.models.call``; it depends on the
tenant schema and is imported from there directly.
"""

from .appointment import Appointment, AppointmentRequest
from .decision import Action, Decision, MatchSource, TurnReply, TurnRequest

__all__ = [
    "Action",
    "Appointment",
    "AppointmentRequest",
    "Decision",
    "MatchSource",
    "TurnReply",
    "TurnRequest",
]
