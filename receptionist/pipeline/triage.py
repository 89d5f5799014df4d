"""Scenario triage: Tier 1 keyword rules, then Tier 2 similarity.

Both tiers are local and deterministic.  Tier 1 walks the tenant's enabled
scenarios in ``(priority, position)`` order and takes the first whose rule
matches.  Tier 2 scores the utterance against each scenario's canonical
phrases with a pluggable ``SimilarityScorer``.  If neither tier clears its
threshold the result is "no match" and the orchestrator may consult the
fallback reasoner.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional, Sequence

import numpy as np

from receptionist.models.decision import MatchSource
from receptionist.pipeline.matching import apply_synonyms, contains_phrase, fold, tokenize
from receptionist.tenants.schema import Scenario, TenantConfig

log = logging.getLogger("receptionist.pipeline.triage")

STOP_WORDS = frozenset({
    "a", "an", "the", "i", "im", "i'm", "me", "my", "we", "our", "you", "your",
    "it", "it's", "its", "is", "are", "was", "were", "be", "been", "am",
    "to", "of", "in", "on", "at", "for", "with", "and", "or", "so", "but",
    "do", "does", "did", "have", "has", "had", "just", "can", "could",
    "would", "will", "this", "that", "there", "here", "um", "uh", "like",
    "really", "very", "please", "hi", "hello", "hey",
})


@dataclass
class TriageResult:
    matched: bool = False
    scenario_id: Optional[str] = None
    tier: Optional[int] = None
    confidence: float = 0.0
    matched_terms: list[str] = field(default_factory=list)
    best_scenario_id: Optional[str] = None  # closest Tier 2 candidate, for audit
    best_score: float = 0.0
    scenario: Optional[Scenario] = field(default=None, repr=False)

    @property
    def match_source(self) -> Optional[MatchSource]:
        if not self.matched:
            return None
        return MatchSource.TRIAGE_TIER_1 if self.tier == 1 else MatchSource.TRIAGE_TIER_2

    def to_trace(self) -> dict:
        return {
            "matched": self.matched,
            "scenarioId": self.scenario_id,
            "tier": self.tier,
            "matchedTerms": self.matched_terms,
            "bestScenarioId": self.best_scenario_id,
            "bestScore": round(self.best_score, 4),
        }


# ── Similarity scorers (Tier 2) ────────────────────────────────────


class SimilarityScorer(ABC):
    """Scores an utterance against candidate phrases, each in [0, 1]."""

    @abstractmethod
    def score(self, text: str, phrases: Sequence[str]) -> list[float]:
        ...


@lru_cache(maxsize=2048)
def _features(text: str) -> Counter:
    tokens = [t for t in tokenize(text) if t not in STOP_WORDS]
    grams = tokens + [f"{a} {b}" for a, b in zip(tokens, tokens[1:])]
    return Counter(grams)


class TokenCosineScorer(SimilarityScorer):
    """Cosine similarity over unigram + bigram counts, stop-words removed."""

    def score(self, text: str, phrases: Sequence[str]) -> list[float]:
        query = _features(text)
        if not query:
            return [0.0] * len(phrases)
        scores = []
        for phrase in phrases:
            candidate = _features(phrase)
            vocab = sorted(set(query) | set(candidate))
            a = np.array([query.get(t, 0) for t in vocab], dtype=float)
            b = np.array([candidate.get(t, 0) for t in vocab], dtype=float)
            denom = np.linalg.norm(a) * np.linalg.norm(b)
            scores.append(float(a @ b / denom) if denom else 0.0)
        return scores


# ── Matcher ────────────────────────────────────────────────────────


class TriageMatcher:
    def __init__(self, scorer: SimilarityScorer | None = None) -> None:
        self._scorer = scorer or TokenCosineScorer()

    @staticmethod
    def ordered_scenarios(config: TenantConfig) -> list[Scenario]:
        indexed = [(s.priority, i, s) for i, s in enumerate(config.scenarios) if s.enabled]
        return [s for _, _, s in sorted(indexed, key=lambda t: (t[0], t[1]))]

    def match(self, text: str, config: TenantConfig) -> TriageResult:
        synonyms = config.synonyms
        folded = apply_synonyms(fold(text), synonyms)
        scenarios = self.ordered_scenarios(config)

        def canon(term: str) -> str:
            return apply_synonyms(fold(term), synonyms)

        def excluded(scenario: Scenario) -> bool:
            return any(contains_phrase(folded, canon(t)) for t in scenario.exclude_terms)

        # Tier 1
        for scenario in scenarios:
            if not scenario.tier1_eligible or excluded(scenario):
                continue
            hits = [t for t in scenario.triggers if contains_phrase(folded, canon(t))]
            if scenario.triggers and not hits:
                continue
            if not all(contains_phrase(folded, canon(t)) for t in scenario.required_terms):
                continue
            confidence = config.triage.tier1_confidence
            if confidence < scenario.min_confidence:
                continue
            return TriageResult(
                matched=True, scenario_id=scenario.id, tier=1, confidence=confidence,
                matched_terms=hits + list(scenario.required_terms), scenario=scenario,
            )

        # Tier 2
        best: Optional[tuple[float, Scenario]] = None
        winner: Optional[tuple[float, Scenario]] = None
        for scenario in scenarios:
            if not scenario.canonical_phrases or excluded(scenario):
                continue
            phrases = [canon(p) for p in scenario.canonical_phrases]
            score = max(self._scorer.score(folded, phrases))
            if best is None or score > best[0]:
                best = (score, scenario)
            threshold = max(config.triage.tier2_min_confidence, scenario.min_confidence)
            if score >= threshold and (winner is None or score > winner[0]):
                winner = (score, scenario)

        result = TriageResult()
        if best is not None:
            result.best_score, result.best_scenario_id = best[0], best[1].id
        if winner is not None:
            score, scenario = winner
            result.matched = True
            result.scenario_id = scenario.id
            result.tier = 2
            result.confidence = round(score, 4)
            result.scenario = scenario
        return result
