"""Pydantic model tracking one call's state across its turns."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from receptionist.models.decision import MatchSource, TurnReply
from receptionist.tenants.schema import TenantConfig


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class CallState(str, Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    BOOKED = "booked"
    ESCALATED = "escalated"
    ENDED = "ended"


class SlotValue(BaseModel):
    """One extracted fact with where it came from."""

    value: str
    confidence: float = 0.0
    source: str = "rules"  # rules | fallback-llm | confirmation
    turn_seq: int = 0


class TranscriptEntry(BaseModel):
    speaker: str  # caller | agent
    text: str
    timestamp: datetime = Field(default_factory=_utcnow)


class CallSession(BaseModel):
    """Mutable session state for a single call.

    Only the turns of this call touch it, one at a time.  ``config`` is the
    tenant snapshot taken when the call started and is never replaced.
    """

    call_id: str
    tenant_id: str
    config: TenantConfig
    state: CallState = CallState.NEW

    created_at: datetime = Field(default_factory=_utcnow)
    last_activity_at: datetime = Field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    transcript: list[TranscriptEntry] = []
    confirmed_slots: dict[str, SlotValue] = {}
    pending_slots: dict[str, SlotValue] = {}

    match_source: Optional[MatchSource] = None
    appointment_ref: Optional[str] = None
    trace_events: list[dict[str, Any]] = []

    # Booking flow
    booking_requested: bool = False
    awaiting_confirmation: bool = False
    consent_given: bool = False
    slot_ask_counts: dict[str, int] = {}
    declined_slots: list[str] = []
    disclosures_made: list[str] = []
    last_asked_slot: Optional[str] = None
    frustration_count: int = 0

    # Duplicate delivery of the same turn
    turn_count: int = 0
    last_turn_seq: Optional[int] = None
    last_reply: Optional[TurnReply] = None

    # ── Helpers ────────────────────────────────────────────────

    @property
    def is_closed(self) -> bool:
        return self.state in (CallState.BOOKED, CallState.ESCALATED, CallState.ENDED)

    def add_transcript(self, speaker: str, text: str) -> None:
        if text:
            self.transcript.append(TranscriptEntry(speaker=speaker, text=text))

    def recent_transcript(self, n: int = 3) -> list[TranscriptEntry]:
        return self.transcript[-n:]

    def slot_value(self, name: str) -> Optional[str]:
        """Confirmed value if any, else the pending one."""
        slot = self.confirmed_slots.get(name) or self.pending_slots.get(name)
        return slot.value if slot else None

    def missing_slots(self) -> list[str]:
        """Required slots with neither a confirmed nor a pending value."""
        return [
            name for name in self.config.booking.required_slots
            if name not in self.confirmed_slots and name not in self.pending_slots
        ]

    def unconfirmed_slots(self) -> list[str]:
        """Required slots that are not confirmed yet."""
        return [
            name for name in self.config.booking.required_slots
            if name not in self.confirmed_slots
        ]

    def to_dict(self, detail: bool = False) -> dict[str, Any]:
        """Summary for the admin API.  Slot values are included only with ``detail``."""
        data: dict[str, Any] = {
            "callId": self.call_id,
            "tenantId": self.tenant_id,
            "state": self.state.value,
            "turns": self.turn_count,
            "matchSource": self.match_source.value if self.match_source else None,
            "appointmentId": self.appointment_ref,
            "frustrationCount": self.frustration_count,
            "configRevision": self.config.revision,
            "createdAt": self.created_at.isoformat(),
            "lastActivityAt": self.last_activity_at.isoformat(),
            "confirmedSlots": sorted(self.confirmed_slots),
            "pendingSlots": sorted(self.pending_slots),
        }
        if detail:
            data["confirmedSlots"] = {k: v.model_dump() for k, v in self.confirmed_slots.items()}
            data["pendingSlots"] = {k: v.model_dump() for k, v in self.pending_slots.items()}
            data["transcript"] = [
                {"speaker": t.speaker, "text": t.text, "timestamp": t.timestamp.isoformat()}
                for t in self.transcript
            ]
        return data
