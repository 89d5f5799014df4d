"""Frontline classifier: cheap keyword signals computed on every turn.

No I/O, no model calls.  Intent precedence is
emergency > booking > pricing > troubleshooting > other.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from receptionist.pipeline.matching import apply_synonyms, fold, matched_phrases
from receptionist.tenants.schema import TenantConfig

SIGNALS = (
    "wants_booking",
    "describes_problem",
    "trust_concern",
    "feels_ignored",
    "refused_slot",
    "emergency",
    "pricing",
    "wants_human",
    "wants_to_end",
)

# A correction only counts when the caller leads with it; "no heat" is a problem, not a "no".
_NEGATIVE_LEAD = re.compile(r"^(?:no|nope|nah|not quite|wait)\b")
_NEGATIVE_ANYWHERE = ("that's wrong", "that is wrong", "that's not right", "not correct", "incorrect")


@dataclass
class Classification:
    intent: str = "other"  # booking | troubleshooting | pricing | emergency | other
    signals: set[str] = field(default_factory=set)
    matches: dict[str, list[str]] = field(default_factory=dict)

    def has(self, signal: str) -> bool:
        return signal in self.signals

    def to_trace(self) -> dict:
        return {"intent": self.intent, "signals": sorted(self.signals), "matches": self.matches}


def classify(text: str, config: TenantConfig) -> Classification:
    folded = apply_synonyms(fold(text), config.synonyms)
    triggers = config.detection_triggers
    result = Classification()

    for signal in SIGNALS:
        hits = matched_phrases(folded, getattr(triggers, signal))
        if hits:
            result.signals.add(signal)
            result.matches[signal] = hits

    consent_hits = matched_phrases(folded, config.consent.consent_phrases)
    negative = bool(_NEGATIVE_LEAD.match(folded)) or bool(
        matched_phrases(folded, _NEGATIVE_ANYWHERE)
    )
    if negative:
        result.signals.add("negative")
    elif consent_hits:
        result.signals.add("affirmative")
        result.matches["affirmative"] = consent_hits

    if result.has("emergency"):
        result.intent = "emergency"
    elif result.has("wants_booking"):
        result.intent = "booking"
    elif result.has("pricing"):
        result.intent = "pricing"
    elif result.has("describes_problem") or result.has("trust_concern"):
        result.intent = "troubleshooting"
    return result
