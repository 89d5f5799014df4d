"""Whole-word phrase matching shared by the classifier and triage.

A phrase matches only on word boundaries, so "cool" never matches inside
"cooling" and "ac" never matches inside "back".
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterable, Mapping

_WORD = re.compile(r"[a-z0-9$]+(?:['.][a-z0-9]+)*")


def fold(text: str) -> str:
    """Lower-case and straighten typographic quotes."""
    return (text or "").replace("’", "'").replace("‘", "'").lower()


@lru_cache(maxsize=4096)
def phrase_pattern(phrase: str) -> re.Pattern:
    words = fold(phrase).split()
    body = r"\s+".join(re.escape(w) for w in words)
    return re.compile(rf"(?<![\w']){body}(?![\w'])")


def contains_phrase(text: str, phrase: str) -> bool:
    """True if ``phrase`` occurs in already-folded ``text`` as whole words."""
    if not phrase.strip():
        return False
    return phrase_pattern(phrase).search(text) is not None


def matched_phrases(text: str, phrases: Iterable[str]) -> list[str]:
    return [p for p in phrases if contains_phrase(text, p)]


def apply_synonyms(text: str, synonyms: Mapping[str, str]) -> str:
    """Rewrite each synonym to its canonical term (longest synonyms first)."""
    if not synonyms:
        return text
    for term in sorted(synonyms, key=len, reverse=True):
        canonical = fold(synonyms[term])
        text = phrase_pattern(term).sub(canonical, text)
    return text


def tokenize(text: str) -> list[str]:
    return _WORD.findall(fold(text))
