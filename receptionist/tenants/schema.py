"""Pydantic models for a tenant's behavior configuration.

A ``TenantConfig`` is validated once when loaded and then frozen: every
call holds the snapshot it started with, so edits made while a call is in
flight never change that call's behavior.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from receptionist.models.decision import Action
from receptionist.tenants.defaults import (
    AFFIRMATIVE_MICRO,
    CONSENT_PHRASES,
    DETECTION_TRIGGERS,
    FILLER_WORDS,
    NEGATIVE_MICRO,
    NEUTRAL_MICRO,
    SLOT_PROMPTS,
)

CURRENT_SCHEMA_VERSION = 1


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


def _clean_phrases(values: Any) -> tuple[str, ...]:
    if not values:
        return ()
    if isinstance(values, str):
        values = [values]
    return tuple(str(v).strip().lower() for v in values if v and str(v).strip())


class Scenario(_Frozen):
    """One curated trigger → response rule in the tenant's knowledge library."""

    id: str
    category: str = "general"
    triggers: tuple[str, ...] = ()           # any-of phrases (Tier 1)
    required_terms: tuple[str, ...] = ()     # all-of terms (Tier 1)
    exclude_terms: tuple[str, ...] = ()      # none-of terms (Tier 1)
    canonical_phrases: tuple[str, ...] = ()  # example phrasings (Tier 2)
    priority: int = 100                      # lower number wins ties
    min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    response_text: str = ""
    response_hint: str = ""
    action: Action = Action.ANSWER_WITH_KNOWLEDGE
    enabled: bool = True

    @field_validator("triggers", "required_terms", "exclude_terms", "canonical_phrases")
    @classmethod
    def _lowercase_terms(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(v.strip().lower() for v in value if v and v.strip())

    @property
    def tier1_eligible(self) -> bool:
        return bool(self.triggers or self.required_terms)


class FeatureFlags(_Frozen):
    pipeline_enabled: bool = True          # kill switch: False → no_op on every turn
    fallback_enabled: bool = True          # False → Tier 3 never called
    scenario_auto_responses: bool = True   # False → triage results are traced only


class TriageSettings(_Frozen):
    tier1_confidence: float = Field(default=0.95, ge=0.0, le=1.0)
    tier2_min_confidence: float = Field(default=0.55, ge=0.0, le=1.0)


class DetectionTriggers(_Frozen):
    """Phrase lists per classifier signal.  Empty lists mean platform defaults."""

    wants_booking: tuple[str, ...] = ()
    describes_problem: tuple[str, ...] = ()
    trust_concern: tuple[str, ...] = ()
    feels_ignored: tuple[str, ...] = ()
    refused_slot: tuple[str, ...] = ()
    emergency: tuple[str, ...] = ()
    pricing: tuple[str, ...] = ()
    wants_human: tuple[str, ...] = ()
    wants_to_end: tuple[str, ...] = ()
    merge_platform_defaults: bool = False

    @model_validator(mode="before")
    @classmethod
    def _apply_platform_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        merge = bool(data.get("merge_platform_defaults", False))
        for signal, platform in DETECTION_TRIGGERS.items():
            own = _clean_phrases(data.get(signal))
            if not own:
                data[signal] = platform
            elif merge:
                data[signal] = tuple(dict.fromkeys(own + platform))
            else:
                data[signal] = own
        return data


class ConsentPolicy(_Frozen):
    require_explicit_confirmation: bool = True
    consent_phrases: tuple[str, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _default_phrases(cls, data: Any) -> Any:
        if isinstance(data, dict) and not _clean_phrases(data.get("consent_phrases")):
            data = {**data, "consent_phrases": CONSENT_PHRASES}
        return data


class Disclosure(_Frozen):
    """Text that must be said once per call when ``action`` is proposed."""

    id: str
    action: Action
    text: str


class GuardrailPolicy(_Frozen):
    allowed_topics: tuple[str, ...] = ()
    price_facts: dict[str, str] = {}       # e.g. {"diagnostic fee": "$89"}
    time_facts: dict[str, str] = {}        # e.g. {"hours": "8am to 6pm"}
    capabilities: tuple[str, ...] = ()     # e.g. ("24/7", "emergency service")
    required_disclosures: tuple[Disclosure, ...] = ()


class BookingPolicy(_Frozen):
    required_slots: tuple[str, ...] = ("name", "address", "problem")
    slot_prompts: dict[str, str] = {}
    confirmation_script: str = (
        "Let me make sure I have this right: {summary}. "
        "Should I go ahead and get that booked for you?"
    )
    consent_script: str = "Would you like me to go ahead and book that appointment?"
    success_script: str = (
        "You're all set. I've booked your appointment and requested {time_window}. "
        "Is there anything else I can help with?"
    )
    already_booked_script: str = (
        "You're already booked with us. Is there anything else I can help with?"
    )
    correction_script: str = "No problem. What should I correct?"
    max_same_question: int = Field(default=2, ge=1)


class EscalationPolicy(_Frozen):
    transfer_target: Optional[str] = None
    transfer_message: str = "Absolutely, one moment while I transfer you to our team."
    price_message: str = (
        "For exact pricing, let me connect you with someone from the office "
        "who can go over the options with you."
    )
    emergency_message: str = (
        "That sounds urgent. Please hold while I connect you with our team right away."
    )
    loop_message: str = (
        "No problem. Let me transfer you to someone on our team who can help get you booked."
    )
    hold_message: str = "Please hold for just a moment while I connect you with our team."
    reassurance_message: str = (
        "I'm sorry about that, I want to get this right for you. "
        "Tell me again what's going on and I'll make sure it's handled."
    )
    trust_message: str = (
        "That's a fair question. Our technicians handle this kind of problem every day. "
        "What's going on with your system?"
    )
    frustration_message: str = (
        "I can tell this has been frustrating. Let me connect you with someone "
        "on our team who can help directly."
    )
    # Frustrated turns (feels ignored or trust concern) before handing off.
    frustration_limit: int = Field(default=3, ge=1)
    closing_message: str = "Thank you for calling. Have a great day!"
    acknowledgement: str = "Okay. What else can I help you with?"
    clarifying_question: str = (
        "I want to make sure I help you with the right thing. "
        "Could you tell me a bit more about what's going on?"
    )


class TenantConfig(_Frozen):
    """The complete, validated behavior configuration of one tenant."""

    schema_version: int = CURRENT_SCHEMA_VERSION
    tenant_id: str
    revision: str = ""
    name: str = ""
    trade: str = ""

    features: FeatureFlags = FeatureFlags()
    scenarios: tuple[Scenario, ...] = ()
    triage: TriageSettings = TriageSettings()
    synonyms: dict[str, str] = {}

    filler_words: tuple[str, ...] = ()
    micro_utterances: tuple[str, ...] = ()
    min_utterance_chars: int = Field(default=2, ge=0)

    detection_triggers: DetectionTriggers = DetectionTriggers()
    consent: ConsentPolicy = ConsentPolicy()
    guardrails: GuardrailPolicy = GuardrailPolicy()
    booking: BookingPolicy = BookingPolicy()
    escalation: EscalationPolicy = EscalationPolicy()

    facts: dict[str, str] = {}
    voice: dict[str, Any] = {}  # passed through to speech synthesis untouched

    @model_validator(mode="before")
    @classmethod
    def _apply_platform_lists(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        # Tenant filler words extend the platform list; micro-utterances replace it.
        data["filler_words"] = tuple(
            dict.fromkeys(FILLER_WORDS + _clean_phrases(data.get("filler_words")))
        )
        data["micro_utterances"] = _clean_phrases(data.get("micro_utterances")) or (
            AFFIRMATIVE_MICRO + NEGATIVE_MICRO + NEUTRAL_MICRO
        )
        return data

    @field_validator("schema_version")
    @classmethod
    def _supported_version(cls, value: int) -> int:
        if value != CURRENT_SCHEMA_VERSION:
            raise ValueError(
                f"unsupported schema_version {value} (expected {CURRENT_SCHEMA_VERSION})"
            )
        return value

    @field_validator("scenarios")
    @classmethod
    def _unique_scenario_ids(cls, value: tuple[Scenario, ...]) -> tuple[Scenario, ...]:
        seen: set[str] = set()
        for scenario in value:
            if scenario.id in seen:
                raise ValueError(f"duplicate scenario id {scenario.id!r}")
            seen.add(scenario.id)
        return value

    def slot_prompt(self, slot: str) -> str:
        """Question used to collect ``slot`` (tenant override, else platform)."""
        return (
            self.booking.slot_prompts.get(slot)
            or SLOT_PROMPTS.get(slot)
            or f"Could you tell me your {slot.replace('_', ' ')}?"
        )
