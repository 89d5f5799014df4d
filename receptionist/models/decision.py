"""Pydantic models for turn input/output and the orchestrator's decision."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Action(str, Enum):
    """The one thing the system does next on a turn."""

    ASK_QUESTION = "ask_question"
    ANSWER_WITH_KNOWLEDGE = "answer_with_knowledge"
    INITIATE_BOOKING = "initiate_booking"
    ESCALATE_TO_HUMAN = "escalate_to_human"
    END_CALL = "end_call"
    NO_OP = "no_op"


# Actions the guardrail filter leaves untouched unless the language model wrote the reply.
SAFE_ACTIONS = frozenset({Action.ESCALATE_TO_HUMAN, Action.END_CALL, Action.NO_OP})


class MatchSource(str, Enum):
    """Which strategy produced the decision (kept for audit)."""

    TRIAGE_TIER_1 = "triage-tier-1"
    TRIAGE_TIER_2 = "triage-tier-2"
    FALLBACK_LLM = "fallback-llm"
    ORCHESTRATOR_DIRECT = "orchestrator-direct"


class Decision(BaseModel):
    """What the orchestrator proposes for this turn, before guardrails."""

    action: Action
    reply_text: str = ""
    match_source: MatchSource = MatchSource.ORCHESTRATOR_DIRECT
    confidence: Optional[float] = None
    scenario_id: Optional[str] = None
    transfer_target: Optional[str] = None
    reason: str = ""  # short internal note for the trace


class TurnRequest(BaseModel):
    """One recognized utterance delivered by the telephony gateway."""

    model_config = ConfigDict(populate_by_name=True)

    call_id: str = Field(alias="callId", min_length=1)
    tenant_id: str = Field(alias="tenantId", min_length=1)
    utterance_text: str = Field(alias="utteranceText", default="")
    turn_seq: Optional[int] = Field(alias="turnSeq", default=None)


class TurnReply(BaseModel):
    """What the telephony gateway should say (or do) next."""

    model_config = ConfigDict(populate_by_name=True)

    reply_text: str = Field(alias="replyText", default="")
    action: Action
    transfer_target: Optional[str] = Field(alias="transferTarget", default=None)
    appointment_id: Optional[str] = Field(alias="appointmentId", default=None)
