"""Exception taxonomy for the turn pipeline.

Components raise these; the orchestrator catches them and turns each one
into a caller-safe outcome.  Nothing here ever reaches the telephony layer.
"""

from __future__ import annotations


class ReceptionistError(Exception):
    """Base class for all pipeline errors."""


# ── Configuration ──────────────────────────────────────────────────


class TenantConfigError(ReceptionistError):
    """Tenant configuration could not be loaded or failed validation."""

    def __init__(self, tenant_id: str, reason: str) -> None:
        super().__init__(f"Tenant {tenant_id}: {reason}")
        self.tenant_id = tenant_id
        self.reason = reason


class TenantNotFoundError(TenantConfigError):
    """No configuration document exists for the tenant."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(tenant_id, "configuration not found")


# ── Fallback reasoner (recoverable-local) ──────────────────────────


class FallbackError(ReceptionistError):
    """Tier 3 could not produce a usable decision for this turn."""

    trace_reason = "service_error"


class FallbackParseError(FallbackError):
    """The language model answered with something that is not a decision."""

    trace_reason = "parse_error"

    def __init__(self, message: str, raw_response: str = "") -> None:
        super().__init__(message)
        self.raw_response = raw_response


class FallbackTimeoutError(FallbackError):
    """The language model did not answer within the hard timeout."""

    trace_reason = "timeout"


class FallbackUnavailableError(FallbackError):
    """Transport failure, non-2xx status, or the circuit breaker is open."""

    trace_reason = "service_error"


# ── Persistence (fatal-infrastructure) ─────────────────────────────


class StoreUnavailableError(ReceptionistError):
    """A session or appointment store could not be reached."""


# ── Booking ────────────────────────────────────────────────────────


class DuplicateAppointmentError(ReceptionistError):
    """The appointment store already holds an appointment for this call."""

    def __init__(self, tenant_id: str, call_id: str) -> None:
        super().__init__(f"Appointment already exists for {tenant_id}/{call_id}")
        self.tenant_id = tenant_id
        self.call_id = call_id


class BookingNotReadyError(ReceptionistError):
    """Required slots are not confirmed yet."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"Missing confirmed slots: {', '.join(missing)}")
        self.missing = missing
