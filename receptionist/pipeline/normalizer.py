"""Turn normalizer: strip filler words and detect micro-utterances.

Speech recognition hands us text like "um, yeah, uh, my AC is, you know,
broken".  Filler words are removed as whole tokens; the remaining text
keeps its original casing.  Short acknowledgements ("yes", "ok", "nope")
are flagged as micro-utterances so the orchestrator can answer them without
running triage or the fallback reasoner.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from receptionist.pipeline.matching import phrase_pattern
from receptionist.tenants.defaults import AFFIRMATIVE_MICRO, NEGATIVE_MICRO
from receptionist.tenants.schema import TenantConfig

_AFFIRMATIVE = frozenset(AFFIRMATIVE_MICRO)
_NEGATIVE = frozenset(NEGATIVE_MICRO)

_SPACE_BEFORE_PUNCT = re.compile(r"\s+([,.!?;:])")
_REPEATED_PUNCT = re.compile(r"([,;:])(?:\s*[,;:])+")
_COMMA_BEFORE_STOP = re.compile(r"[,;:]\s*([.!?])")
_LEADING_PUNCT = re.compile(r"^[\s,.;:!?-]+")
_TRAILING_PUNCT = re.compile(r"[\s,;:-]+$")
_NON_WORD = re.compile(r"[^\w\s']")


@dataclass
class NormalizedTurn:
    """Cleaned utterance plus its micro-utterance classification."""

    text: str
    original: str
    is_micro: bool = False
    polarity: int = 0  # +1 affirmative, -1 negative, 0 neither
    removed_fillers: list[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return micro_key(self.text)


def micro_key(text: str) -> str:
    """Lower-case, punctuation-free, repeated words collapsed ("Yes, yes!" → "yes")."""
    words = _NON_WORD.sub(" ", text.replace("’", "'").lower()).split()
    collapsed: list[str] = []
    for w in words:
        if not collapsed or collapsed[-1] != w:
            collapsed.append(w)
    return " ".join(collapsed)


def _tidy(text: str) -> str:
    text = " ".join(text.split())
    text = _SPACE_BEFORE_PUNCT.sub(r"\1", text)
    text = _REPEATED_PUNCT.sub(r"\1", text)
    text = _COMMA_BEFORE_STOP.sub(r"\1", text)
    text = _LEADING_PUNCT.sub("", text)
    text = _TRAILING_PUNCT.sub("", text)
    return text


def polarity_of(key: str) -> int:
    if key in _AFFIRMATIVE:
        return 1
    if key in _NEGATIVE:
        return -1
    return 0


def normalize(raw_text: str, config: TenantConfig) -> NormalizedTurn:
    original = (raw_text or "").replace("’", "'").replace("‘", "'")
    text = original
    removed: list[str] = []

    # Longest fillers first so "uh huh" goes before "uh".
    for filler in sorted(config.filler_words, key=len, reverse=True):
        pattern = phrase_pattern(filler)
        # Filler matching is case-insensitive; the pattern is built lower-case.
        hits = list(re.finditer(pattern.pattern, text, flags=re.IGNORECASE))
        if hits:
            removed.extend(filler for _ in hits)
            text = re.sub(pattern.pattern, " ", text, flags=re.IGNORECASE)

    text = _tidy(text)
    key = micro_key(text)
    # "uh huh" is both a filler and an acknowledgement; judge polarity on
    # what the caller said when nothing is left after cleaning.
    polarity = polarity_of(key or micro_key(original))
    is_micro = (
        not key
        or key in config.micro_utterances
        or len(key) < config.min_utterance_chars
    )
    return NormalizedTurn(
        text=text,
        original=raw_text or "",
        is_micro=is_micro,
        polarity=polarity,
        removed_fillers=removed,
    )
