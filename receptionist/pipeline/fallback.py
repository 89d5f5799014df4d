"""Tier 3 fallback reasoner: one bounded language-model call per turn.

Consulted only when triage found no scenario.  The prompt carries just the
current utterance, the last few transcript lines, known slots, and the
tenant's facts, and forbids invented prices, arrival times, and
capabilities.  The reply must be a JSON decision; anything else is a
``FallbackParseError``.  There is no retry: a failed call is a failed turn
and the orchestrator falls back to a clarifying question.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from receptionist.errors import (
    FallbackParseError,
    FallbackTimeoutError,
    FallbackUnavailableError,
)
from receptionist.llm import LanguageModelClient
from receptionist.models.call import CallSession, SlotValue
from receptionist.models.decision import Action, Decision, MatchSource
from receptionist.pipeline.classifier import Classification
from receptionist.session import redact_text
from receptionist.trace_events import truncate

log = logging.getLogger("receptionist.pipeline.fallback")

FALLBACK_SLOT_CONFIDENCE = 0.6
MAX_UTTERANCE_CHARS = 500
FULL_RESPONSE_LOG_CHARS = 2000

_KNOWN_SLOTS = ("name", "phone", "address", "problem", "urgency", "time_window")


class FallbackDecisionPayload(BaseModel):
    """The JSON object the model must answer with."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    action: Action
    next_prompt: str = Field(alias="nextPrompt", min_length=1)
    extracted_slots: dict[str, str] = Field(alias="extractedSlots", default_factory=dict)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    @field_validator("extracted_slots", mode="before")
    @classmethod
    def _drop_empty_slots(cls, value: Any) -> dict[str, str]:
        if not isinstance(value, dict):
            return {}
        return {
            str(k): str(v).strip()
            for k, v in value.items()
            if k in _KNOWN_SLOTS and v is not None and str(v).strip()
        }


@dataclass
class FallbackOutcome:
    decision: Decision
    slots: dict[str, SlotValue] = field(default_factory=dict)
    latency_ms: int = 0


# ── Parsing ────────────────────────────────────────────────────────


def extract_json_object(text: str) -> dict | None:
    """Find a JSON object in model output: fenced block, bare object, or embedded braces."""
    match = re.search(r"```(?:json)?\s*\n?({.*?})\s*\n?```", text, re.DOTALL)
    if match:
        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError:
            pass

    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        try:
            data = json.loads(text[start:end + 1])
            return data if isinstance(data, dict) else None
        except json.JSONDecodeError:
            return None
    return None


def parse_decision(raw: str, max_raw_chars: int = 500) -> FallbackDecisionPayload:
    """Parse and validate a model response.

    Raises:
        FallbackParseError: no JSON object, or the object is not a decision.
    """
    data = extract_json_object(raw or "")
    if data is None:
        raise FallbackParseError("Response is not valid JSON", truncate(raw, max_raw_chars))
    try:
        return FallbackDecisionPayload.model_validate(data)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in e["loc"]) for e in exc.errors())
        raise FallbackParseError(
            f"Response missing or invalid fields: {fields}", truncate(raw, max_raw_chars)
        ) from exc


# ── Circuit breaker ────────────────────────────────────────────────


class CircuitBreaker:
    """Opens after ``failure_threshold`` consecutive failures for ``cooldown_seconds``."""

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._threshold = failure_threshold
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._failures = 0
        self._opened_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        if self._opened_at is None:
            return False
        if self._clock() - self._opened_at >= self._cooldown:
            # Half-open: let the next call through; one more failure re-opens.
            self._opened_at = None
            self._failures = self._threshold - 1
            return False
        return True

    def record_success(self) -> None:
        self._failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failures += 1
        if self._failures >= self._threshold and self._opened_at is None:
            self._opened_at = self._clock()
            log.warning("Fallback circuit opened after %d consecutive failures", self._failures)


# ── Prompt ─────────────────────────────────────────────────────────


def build_messages(text: str, session: CallSession, classification: Classification) -> list[dict[str, str]]:
    config = session.config
    guardrails = config.guardrails

    def fmt(items: dict[str, str]) -> str:
        return "\n".join(f"- {k}: {v}" for k, v in items.items()) or "- (none)"

    slots = {
        "confirmed": {k: v.value for k, v in session.confirmed_slots.items()},
        "pending": {k: v.value for k, v in session.pending_slots.items()},
    }
    actions = " | ".join(a.value for a in Action)

    system = f"""You are the phone receptionist for {config.name or 'the company'}, a {config.trade or 'home service'} business.
Decide the next action and what to say. You do not book, transfer, or look anything up yourself.

KNOWN SLOTS:
{json.dumps(slots)}

CLASSIFIER SIGNALS: intent={classification.intent} signals={sorted(classification.signals)}

COMPANY FACTS:
{fmt(dict(config.facts))}

PRICES YOU MAY QUOTE:
{fmt(dict(guardrails.price_facts))}

HOURS AND TIMING YOU MAY STATE:
{fmt(dict(guardrails.time_facts))}

ALLOWED TOPICS: {', '.join(guardrails.allowed_topics) or 'the services of this business'}

YOU MUST NOT:
- quote any price, fee, or cost that is not listed above
- promise an arrival time or dispatch window that is not listed above
- claim 24/7, emergency, or any other capability not listed in the company facts
- answer legal, medical, or financial questions (use escalate_to_human)

Keep nextPrompt to one or two short sentences.
Respond ONLY with JSON:
{{"action": "{actions}", "nextPrompt": "...", "extractedSlots": {{"name": "...", "phone": "...", "address": "...", "problem": "...", "urgency": "normal|high|emergency", "time_window": "..."}}, "confidence": 0.0}}"""

    recent = "\n".join(f"{t.speaker}: {t.text}" for t in session.recent_transcript(3))
    user = (
        f'CALLER JUST SAID: "{truncate(text, MAX_UTTERANCE_CHARS)}"\n\n'
        f"RECENT CONVERSATION:\n{recent or '(start of call)'}\n\n"
        "Return ONLY valid JSON."
    )
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


# ── Reasoner ───────────────────────────────────────────────────────


class FallbackReasoner:
    def __init__(
        self,
        client: LanguageModelClient,
        timeout_seconds: float = 2.5,
        max_tokens: int = 400,
        temperature: float = 0.2,
        max_raw_chars: int = 500,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._client = client
        self._timeout = timeout_seconds
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._max_raw_chars = max_raw_chars
        self._breaker = breaker or CircuitBreaker()

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def decide(
        self,
        text: str,
        session: CallSession,
        classification: Classification,
        turn_seq: int,
    ) -> FallbackOutcome:
        """One model call.  Raises a ``FallbackError`` subclass on any failure."""
        if self._breaker.is_open:
            raise FallbackUnavailableError("Circuit open; fallback skipped")

        messages = build_messages(text, session, classification)
        started = time.monotonic()
        try:
            raw = await asyncio.wait_for(
                self._client.complete(messages, self._max_tokens, self._temperature),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            self._breaker.record_failure()
            raise FallbackTimeoutError(
                f"No response within {self._timeout:.1f}s"
            ) from exc
        except (FallbackTimeoutError, FallbackUnavailableError):
            self._breaker.record_failure()
            raise
        latency_ms = int((time.monotonic() - started) * 1000)

        try:
            payload = parse_decision(raw, self._max_raw_chars)
        except FallbackParseError as exc:
            self._breaker.record_failure()
            log.error("Fallback response unparseable (call=%s): %s raw=%r",
                      session.call_id, exc, redact_text(exc.raw_response))
            log.debug("Full fallback response (call=%s): %r",
                      session.call_id, redact_text(truncate(raw, FULL_RESPONSE_LOG_CHARS)))
            raise

        self._breaker.record_success()
        slots = {
            name: SlotValue(
                value=value,
                confidence=min(payload.confidence or FALLBACK_SLOT_CONFIDENCE, FALLBACK_SLOT_CONFIDENCE),
                source="fallback-llm",
                turn_seq=turn_seq,
            )
            for name, value in payload.extracted_slots.items()
        }
        decision = Decision(
            action=payload.action,
            reply_text=payload.next_prompt.strip(),
            match_source=MatchSource.FALLBACK_LLM,
            confidence=payload.confidence,
            reason="fallback",
        )
        log.info("Fallback decision: call=%s action=%s latency=%dms",
                 session.call_id, payload.action.value, latency_ms)
        return FallbackOutcome(decision=decision, slots=slots, latency_ms=latency_ms)
