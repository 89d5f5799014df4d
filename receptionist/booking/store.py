"""Abstract appointment store plus the in-memory implementation.

``(tenant_id, call_id)`` is unique: ``create`` is the single writer and
raises ``DuplicateAppointmentError`` for the loser of a race.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from typing import Optional

from receptionist.errors import DuplicateAppointmentError
from receptionist.models.appointment import Appointment, AppointmentRequest

log = logging.getLogger("receptionist.booking.store")


class AppointmentStore(ABC):
    """Persistence for appointments.  Appointments are never deleted here."""

    @abstractmethod
    async def get(self, appointment_id: str) -> Optional[Appointment]:
        ...

    @abstractmethod
    async def get_by_call(self, tenant_id: str, call_id: str) -> Optional[Appointment]:
        """Return the appointment created for this call, if any."""

    @abstractmethod
    async def create(self, request: AppointmentRequest) -> Appointment:
        """Create an appointment.

        Raises:
            DuplicateAppointmentError: one already exists for the call.
            StoreUnavailableError: the backend could not be reached.
        """

    @abstractmethod
    async def count(self, tenant_id: Optional[str] = None) -> int:
        ...


class InMemoryAppointmentStore(AppointmentStore):
    def __init__(self) -> None:
        self._by_id: dict[str, Appointment] = {}
        self._by_call: dict[tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    async def get(self, appointment_id: str) -> Optional[Appointment]:
        appointment = self._by_id.get(appointment_id)
        return appointment.model_copy() if appointment else None

    async def get_by_call(self, tenant_id: str, call_id: str) -> Optional[Appointment]:
        appointment_id = self._by_call.get((tenant_id, call_id))
        return await self.get(appointment_id) if appointment_id else None

    async def create(self, request: AppointmentRequest) -> Appointment:
        key = (request.tenant_id, request.call_id)
        async with self._lock:
            if key in self._by_call:
                raise DuplicateAppointmentError(request.tenant_id, request.call_id)
            appointment = Appointment(
                id=f"apt_{secrets.token_hex(8)}",
                **request.model_dump(),
            )
            self._by_id[appointment.id] = appointment
            self._by_call[key] = appointment.id
        log.info("Appointment created: %s (tenant=%s call=%s)",
                 appointment.id, request.tenant_id, request.call_id)
        return appointment.model_copy()

    async def count(self, tenant_id: Optional[str] = None) -> int:
        if tenant_id is None:
            return len(self._by_id)
        return sum(1 for t, _ in self._by_call if t == tenant_id)
