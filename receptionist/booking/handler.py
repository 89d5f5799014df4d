"""Booking handler: turn a call's confirmed slots into exactly one appointment.

Idempotency guard, in order:

1. the session already references an appointment → return it;
2. the store already holds one for ``(tenant_id, call_id)`` → adopt it;
3. create one.  If another attempt wins the race the store raises
   ``DuplicateAppointmentError`` and the winner is returned instead.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from receptionist.booking.store import AppointmentStore
from receptionist.errors import BookingNotReadyError, DuplicateAppointmentError
from receptionist.models.appointment import Appointment, AppointmentRequest
from receptionist.models.call import CallSession
from receptionist.session import redact_pii

log = logging.getLogger("receptionist.booking.handler")

_EMERGENCY_WORDS = re.compile(
    r"\b(?:emergency|urgent|flooding|flooded|leak|leaking|burst|fire|electrical|gas|dangerous|immediately)\b",
    re.IGNORECASE,
)
_SCORE_WORDS = ("emergency", "urgent", "immediately")
_SAME_DAY = re.compile(r"\b(?:today|tonight|asap|as soon as possible|right away|this (?:morning|afternoon|evening))\b", re.IGNORECASE)
_NEXT_DAY = re.compile(r"\btomorrow\b", re.IGNORECASE)
_THIS_WEEK = re.compile(r"\b(?:this week|monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b", re.IGNORECASE)


def determine_priority(problem: str, urgency: str) -> str:
    """``emergency`` | ``high`` | ``routine``."""
    if urgency == "emergency" or _EMERGENCY_WORDS.search(problem or ""):
        return "emergency"
    if urgency == "high":
        return "high"
    return "routine"


def calculate_urgency_score(problem: str, urgency: str, time_window: str) -> int:
    """0-100, base 50."""
    score = 50
    text = (problem or "").lower()
    for word in _SCORE_WORDS:
        if re.search(rf"\b{word}\b", text):
            score += 15

    if urgency == "emergency":
        score += 30
    elif urgency == "high":
        score += 10

    window = time_window or ""
    if _SAME_DAY.search(window):
        score += 20
    elif _NEXT_DAY.search(window):
        score += 15
    elif _THIS_WEEK.search(window):
        score += 10

    return max(0, min(100, score))


@dataclass
class BookingResult:
    appointment: Appointment
    created: bool


class BookingHandler:
    def __init__(self, store: AppointmentStore) -> None:
        self._store = store

    def build_request(self, session: CallSession) -> AppointmentRequest:
        def value(name: str, default: str = "") -> str:
            return session.slot_value(name) or default

        problem = value("problem")
        urgency = value("urgency", "normal")
        time_window = value("time_window", "TBD")
        return AppointmentRequest(
            tenant_id=session.tenant_id,
            call_id=session.call_id,
            contact_name=value("name"),
            contact_phone=value("phone"),
            address=value("address"),
            problem=problem,
            urgency=urgency,
            time_window=time_window,
            priority=determine_priority(problem, urgency),
            urgency_score=calculate_urgency_score(problem, urgency, time_window),
        )

    async def book(self, session: CallSession) -> BookingResult:
        """Return the call's appointment, creating it at most once.

        Raises:
            BookingNotReadyError: a required slot is not confirmed.
            StoreUnavailableError: the appointment store is down.
        """
        if session.appointment_ref:
            existing = await self._store.get(session.appointment_ref)
            if existing is not None:
                log.info("Booking short-circuit: call %s already has %s",
                         session.call_id, existing.id)
                return BookingResult(existing, created=False)
            log.warning("Call %s references missing appointment %s; dropping the reference",
                        session.call_id, session.appointment_ref)
            session.appointment_ref = None

        existing = await self._store.get_by_call(session.tenant_id, session.call_id)
        if existing is not None:
            log.info("Booking recovered from store: call %s → %s", session.call_id, existing.id)
            self._link(session, existing)
            return BookingResult(existing, created=False)

        missing = session.unconfirmed_slots()
        if missing:
            raise BookingNotReadyError(missing)

        request = self.build_request(session)
        try:
            appointment = await self._store.create(request)
            created = True
        except DuplicateAppointmentError:
            appointment = await self._store.get_by_call(session.tenant_id, session.call_id)
            if appointment is None:
                raise
            log.warning("Booking race lost for call %s; using %s", session.call_id, appointment.id)
            created = False

        self._link(session, appointment)
        log.info("Booked %s for %s at %s (priority=%s score=%d)",
                 appointment.id, redact_pii(request.contact_name),
                 redact_pii(request.address), appointment.priority, appointment.urgency_score)
        return BookingResult(appointment, created=created)

    @staticmethod
    def _link(session: CallSession, appointment: Appointment) -> None:
        if session.appointment_ref is None:
            session.appointment_ref = appointment.id
