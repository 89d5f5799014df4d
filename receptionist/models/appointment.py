"""Pydantic models for appointment requests and stored appointments."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class AppointmentRequest(BaseModel):
    """Confirmed facts handed from a call to the appointment store."""

    tenant_id: str
    call_id: str
    contact_name: str
    contact_phone: str = ""
    address: str
    problem: str
    urgency: str = "normal"  # normal | high | emergency
    time_window: str = "TBD"
    priority: str = "routine"  # routine | high | emergency
    urgency_score: int = 50


class Appointment(BaseModel):
    """A persisted appointment.  ``(tenant_id, call_id)`` is unique."""

    id: str
    tenant_id: str
    call_id: str
    contact_name: str
    contact_phone: str = ""
    address: str
    problem: str
    urgency: str = "normal"
    time_window: str = "TBD"
    priority: str = "routine"
    urgency_score: int = 50
    created_at: datetime = Field(default_factory=_utcnow)
    status: str = "scheduled"
    notes: Optional[str] = None
