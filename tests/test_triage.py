"""Tests for Tier 1 / Tier 2 scenario triage."""

import pytest

from receptionist.models.decision import MatchSource
from receptionist.pipeline.triage import SimilarityScorer, TokenCosineScorer, TriageMatcher
from receptionist.tenants.schema import TenantConfig


class FixedScorer(SimilarityScorer):
    """Returns a preset score for any phrase containing a marker."""

    def __init__(self, scores: dict[str, float]) -> None:
        self.scores = scores

    def score(self, text, phrases):
        return [max((s for marker, s in self.scores.items() if marker in p), default=0.0)
                for p in phrases]


class TestTier1:
    def test_trigger_and_required_terms(self, config):
        result = TriageMatcher().match("My AC stopped working", config)
        assert result.matched
        assert result.tier == 1
        assert result.scenario_id == "ac_not_cooling"
        assert result.confidence == pytest.approx(0.95)
        assert result.match_source == MatchSource.TRIAGE_TIER_1
        assert "stopped working" in result.matched_terms

    def test_required_term_missing(self, config):
        result = TriageMatcher(TokenCosineScorer()).match("The dishwasher stopped working", config)
        assert not result.matched or result.scenario_id != "ac_not_cooling"

    def test_exclude_term_blocks_match(self, config):
        result = TriageMatcher().match("The AC in my car stopped working", config)
        assert result.scenario_id != "ac_not_cooling"

    def test_synonym_satisfies_required_term(self, config):
        result = TriageMatcher().match("The air conditioner is not cooling", config)
        assert result.scenario_id == "ac_not_cooling"
        assert result.tier == 1

    def test_word_boundary(self, config):
        # "ac" inside "back" does not satisfy the required term.
        result = TriageMatcher(FixedScorer({})).match("It stopped working out back", config)
        assert not result.matched

    def test_priority_breaks_ties(self, document):
        document["scenarios"][1]["triggers"] = ["stopped working"]
        document["scenarios"][1]["required_terms"] = ["ac"]
        document["scenarios"][1]["priority"] = 1
        config = TenantConfig.model_validate(document)
        result = TriageMatcher().match("My AC stopped working", config)
        assert result.scenario_id == "business_hours"

    def test_position_breaks_equal_priority(self, document):
        document["scenarios"][1].update(triggers=["stopped working"], required_terms=["ac"], priority=10)
        config = TenantConfig.model_validate(document)
        result = TriageMatcher().match("My AC stopped working", config)
        assert result.scenario_id == "ac_not_cooling"

    def test_disabled_scenario_skipped(self, document):
        document["scenarios"][0]["enabled"] = False
        config = TenantConfig.model_validate(document)
        result = TriageMatcher(FixedScorer({})).match("My AC stopped working", config)
        assert not result.matched

    def test_scenario_min_confidence_above_tier1(self, document):
        document["scenarios"][0]["min_confidence"] = 0.99
        config = TenantConfig.model_validate(document)
        result = TriageMatcher(FixedScorer({})).match("My AC stopped working", config)
        assert not result.matched


class TestTier2:
    def test_cosine_match_on_canonical_phrase(self, config):
        result = TriageMatcher().match("when are you open on saturday", config)
        assert result.matched
        assert result.tier == 2
        assert result.scenario_id == "business_hours"
        assert result.match_source == MatchSource.TRIAGE_TIER_2

    def test_below_threshold_is_no_match_with_audit(self, config):
        result = TriageMatcher(FixedScorer({"open": 0.4})).match("hmm something else", config)
        assert not result.matched
        assert result.best_scenario_id == "business_hours"
        assert result.best_score == pytest.approx(0.4)

    def test_threshold_uses_scenario_min_confidence(self, document):
        document["scenarios"][1]["min_confidence"] = 0.9
        config = TenantConfig.model_validate(document)
        result = TriageMatcher(FixedScorer({"open": 0.8})).match("anything", config)
        assert not result.matched

    def test_highest_score_wins(self, config):
        scorer = FixedScorer({"open": 0.7, "warm air": 0.9})
        result = TriageMatcher(scorer).match("anything", config)
        assert result.scenario_id == "ac_not_cooling"
        assert result.tier == 2
        assert result.confidence == pytest.approx(0.9)


class TestTokenCosineScorer:
    def test_identical_after_stop_words(self):
        scorer = TokenCosineScorer()
        assert scorer.score("are your hours", ["the hours"])[0] == pytest.approx(1.0)

    def test_unrelated_is_zero(self):
        assert TokenCosineScorer().score("furnace noise", ["business hours"]) == [0.0]

    def test_empty_query(self):
        assert TokenCosineScorer().score("the a an", ["business hours"]) == [0.0]
