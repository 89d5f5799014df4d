"""Rule-based slot extraction and the two-stage (pending → confirmed) merge.

Extracted facts always land in ``pending_slots``.  They are promoted to
``confirmed_slots`` only when the caller explicitly confirms them or says
the same thing again.  A confirmed value is never replaced by a candidate
with lower confidence.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from receptionist.models.call import CallSession, SlotValue
from receptionist.pipeline.classifier import Classification

log = logging.getLogger("receptionist.pipeline.slots")

CONFIRMED_CONFIDENCE = 1.0

_NAME_EXPLICIT = re.compile(
    r"\b(?:my name is|my name's|name is|name's)\s+([a-z][a-z'-]*(?:\s+[a-z][a-z'-]*){0,2})",
    re.IGNORECASE,
)
# Intro phrase in any case, the name itself capitalized.
_NAME_INTRO = re.compile(r"\b(?i:this is|i'm|i am)\s+([A-Z][a-z'-]+(?:\s+[A-Z][a-z'-]+){0,2})")
_NAME_STOP = {"and", "i", "my", "the", "at", "from", "calling", "here", "with", "about", "so"}
_NAME_ANSWER_PREFIX = re.compile(r"^(?:it's|it is|i'm|i am|this is|sure|yeah|yes|ok|okay)[,\s]+", re.IGNORECASE)

_STREET_TYPES = (
    r"street|st|avenue|ave|road|rd|drive|dr|lane|ln|boulevard|blvd|court|ct|way|"
    r"place|pl|circle|cir|parkway|pkwy|terrace|ter|trail|trl|highway|hwy"
)
_ADDRESS = re.compile(
    rf"\b(\d{{1,6}}\s+(?:[a-z0-9][\w'.-]*\s+){{0,4}}?(?:{_STREET_TYPES})\b\.?"
    r"(?:[,\s]+(?:apt|apartment|unit|suite|#)\s*[\w-]+)?)",
    re.IGNORECASE,
)
_PHONE = re.compile(r"(?<!\d)(?:\+?1[\s.-]?)?\(?(\d{3})\)?[\s.-]?(\d{3})[\s.-]?(\d{4})(?!\d)")
_TIME_WINDOW = re.compile(
    r"\b((?:(?:tomorrow|today|tonight)(?:\s+(?:morning|afternoon|evening))?)|"
    r"(?:this\s+(?:morning|afternoon|evening|week))|"
    r"(?:(?:next\s+)?(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday)"
    r"(?:\s+(?:morning|afternoon|evening))?)|"
    r"(?:next\s+week)|(?:any\s*time)|(?:as soon as possible|asap))\b",
    re.IGNORECASE,
)
_HIGH_URGENCY = re.compile(r"\b(?:asap|as soon as possible|urgent|urgently|right away|immediately|today)\b", re.IGNORECASE)
_CLAUSE_SPLIT = re.compile(r"[.!?;]+|,\s*(?:but|and|so)\s+")
_CLAUSE_LEAD = re.compile(r"^(?:and|so|well|but|yeah|yes|okay|ok|hi|hello)[,\s]+", re.IGNORECASE)


def _same(a: str, b: str) -> bool:
    def canon(s: str) -> str:
        return " ".join(re.sub(r"[^\w\s]", " ", s.lower()).split())
    return canon(a) == canon(b)


def _clean_name(raw: str) -> Optional[str]:
    words = []
    for w in raw.split():
        if w.lower() in _NAME_STOP:
            break
        words.append(w)
    if not words:
        return None
    return " ".join(w[:1].upper() + w[1:] for w in words)


# ── Extraction ─────────────────────────────────────────────────────


def extract_slots(
    text: str,
    classification: Classification,
    turn_seq: int,
    asked_slot: Optional[str] = None,
) -> dict[str, SlotValue]:
    """Pull candidate slot values out of one utterance.

    ``asked_slot`` is the slot the previous reply asked for; a short
    answer is then taken as that slot's value.
    """
    found: dict[str, SlotValue] = {}

    def put(name: str, value: Optional[str], confidence: float) -> None:
        if value and name not in found:
            found[name] = SlotValue(value=value.strip(), confidence=confidence,
                                    source="rules", turn_seq=turn_seq)

    m = _NAME_EXPLICIT.search(text)
    if m:
        put("name", _clean_name(m.group(1)), 0.85)
    m = _NAME_INTRO.search(text)
    if m:
        put("name", _clean_name(m.group(1)), 0.75)

    m = _ADDRESS.search(text)
    if m:
        put("address", m.group(1).rstrip(".,"), 0.85)

    m = _PHONE.search(text)
    if m:
        put("phone", "-".join(m.groups()), 0.9)

    m = _TIME_WINDOW.search(text)
    if m:
        put("time_window", m.group(1).lower(), 0.8)

    if classification.has("emergency"):
        put("urgency", "emergency", 0.9)
    elif _HIGH_URGENCY.search(text):
        put("urgency", "high", 0.8)

    problem_hits = classification.matches.get("describes_problem")
    if problem_hits:
        put("problem", _problem_clause(text, problem_hits), 0.75)

    # A short direct answer to the question we just asked.  Questions and
    # utterances that raised a signal are not answers.
    stripped = text.strip()
    if (
        asked_slot
        and asked_slot not in found
        and classification.intent == "other"
        and not classification.has("refused_slot")
        and not stripped.endswith("?")
    ):
        answer = stripped.rstrip(".!")
        words = answer.split()
        if asked_slot == "name" and 0 < len(words) <= 4:
            put("name", _clean_name(_NAME_ANSWER_PREFIX.sub("", answer)), 0.7)
        elif asked_slot == "address" and any(ch.isdigit() for ch in answer):
            put("address", _NAME_ANSWER_PREFIX.sub("", answer), 0.7)
        elif asked_slot in ("problem", "time_window") and len(words) >= 2:
            put(asked_slot, _CLAUSE_LEAD.sub("", answer), 0.7)

    return found


def _problem_clause(text: str, hits: list[str]) -> str:
    clauses = [c.strip() for c in _CLAUSE_SPLIT.split(text) if c and c.strip()]
    for clause in clauses:
        lowered = clause.lower()
        if any(hit in lowered for hit in hits):
            return _CLAUSE_LEAD.sub("", clause)
    return text.strip()


# ── Merge ──────────────────────────────────────────────────────────


def merge_candidates(session: CallSession, candidates: dict[str, SlotValue]) -> dict[str, list[str]]:
    """Merge extracted candidates into the session.

    Returns ``{"pending": [...], "promoted": [...], "kept": [...]}`` for the trace.
    """
    changes: dict[str, list[str]] = {"pending": [], "promoted": [], "kept": []}

    for name, candidate in candidates.items():
        confirmed = session.confirmed_slots.get(name)
        pending = session.pending_slots.get(name)

        if confirmed and _same(confirmed.value, candidate.value):
            confirmed.confidence = max(confirmed.confidence, candidate.confidence)
            session.pending_slots.pop(name, None)
            changes["kept"].append(name)
            continue

        if pending and _same(pending.value, candidate.value):
            promoted = SlotValue(
                value=pending.value,
                confidence=max(pending.confidence, candidate.confidence),
                source=pending.source,
                turn_seq=candidate.turn_seq,
            )
            if _promote(session, name, promoted):
                changes["promoted"].append(name)
            else:
                changes["kept"].append(name)
            continue

        session.pending_slots[name] = candidate
        changes["pending"].append(name)

    return changes


def confirm_pending(session: CallSession, turn_seq: int) -> list[str]:
    """Explicit confirmation: promote every pending slot at full confidence."""
    promoted = []
    for name, pending in list(session.pending_slots.items()):
        value = SlotValue(value=pending.value, confidence=CONFIRMED_CONFIDENCE,
                          source="confirmation", turn_seq=turn_seq)
        if _promote(session, name, value):
            promoted.append(name)
    return promoted


def _promote(session: CallSession, name: str, value: SlotValue) -> bool:
    current = session.confirmed_slots.get(name)
    if current is not None and current.confidence > value.confidence:
        log.info("Slot %s not promoted: confirmed value has higher confidence", name)
        return False
    session.confirmed_slots[name] = value
    session.pending_slots.pop(name, None)
    return True


def slot_summary(session: CallSession, names: list[str] | tuple[str, ...]) -> str:
    """Human-readable summary used by the confirmation script."""
    labels = {"name": "name", "address": "address", "problem": "issue",
              "phone": "phone number", "time_window": "preferred time"}
    parts = []
    for name in names:
        value = session.slot_value(name)
        if value:
            parts.append(f"{labels.get(name, name.replace('_', ' '))}: {value}")
    return "; ".join(parts)
