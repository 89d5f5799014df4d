"""Tests for the frontline classifier."""

from receptionist.pipeline.classifier import classify
from receptionist.pipeline.matching import apply_synonyms, contains_phrase
from receptionist.tenants.schema import TenantConfig


class TestPhraseMatching:
    def test_word_boundaries(self):
        assert contains_phrase("it is not cooling", "cooling")
        assert not contains_phrase("it is not cooling", "cool")
        assert not contains_phrase("come around back", "ac")

    def test_multi_word_phrase_tolerates_spacing(self):
        assert contains_phrase("send  someone out", "send someone")

    def test_synonyms_rewrite_longest_first(self):
        text = apply_synonyms("my air conditioner and a/c unit", {"a/c": "ac", "air conditioner": "ac"})
        assert text == "my ac and ac unit"


class TestIntent:
    def test_booking(self, config):
        result = classify("Can you send someone out to look at it?", config)
        assert result.intent == "booking"
        assert result.has("wants_booking")
        assert "send someone" in result.matches["wants_booking"]

    def test_troubleshooting(self, config):
        result = classify("The thermostat is blank and it stopped working", config)
        assert result.intent == "troubleshooting"
        assert result.has("describes_problem")

    def test_pricing(self, config):
        result = classify("How much does a repair cost?", config)
        assert result.intent == "pricing"
        assert result.has("pricing")

    def test_emergency_wins_over_booking(self, config):
        result = classify("I smell gas, please send someone", config)
        assert result.intent == "emergency"
        assert result.has("wants_booking")

    def test_booking_wins_over_pricing(self, config):
        result = classify("I want to book a visit, what's the fee?", config)
        assert result.intent == "booking"

    def test_other(self, config):
        assert classify("Is this Acme?", config).intent == "other"


class TestSignals:
    def test_word_boundary_prevents_false_trigger(self, document):
        document["detection_triggers"] = {"describes_problem": ["cool"]}
        config = TenantConfig.model_validate(document)
        assert not classify("It is cooling fine now", config).has("describes_problem")
        assert classify("It won't cool", config).has("describes_problem")

    def test_feels_ignored_and_trust(self, config):
        result = classify("You're not listening. Are you licensed?", config)
        assert result.has("feels_ignored")
        assert result.has("trust_concern")

    def test_refused_slot(self, config):
        assert classify("I'd rather not say", config).has("refused_slot")

    def test_wants_human_and_end(self, config):
        assert classify("Let me talk to a real person", config).has("wants_human")
        assert classify("That's all, goodbye", config).has("wants_to_end")

    def test_affirmative_uses_consent_phrases(self, config):
        assert classify("Yes, go ahead and book it", config).has("affirmative")

    def test_negative_needs_leading_no(self, config):
        assert classify("No, that's the wrong street", config).has("negative")
        result = classify("There is no heat upstairs", config)
        assert not result.has("negative")
        assert result.has("describes_problem")

    def test_synonyms_applied(self, document):
        document["detection_triggers"] = {"describes_problem": ["ac broke"]}
        config = TenantConfig.model_validate(document)
        assert classify("My A/C broke", config).has("describes_problem")

    def test_trace_payload(self, config):
        payload = classify("How much is a tune up", config).to_trace()
        assert payload["intent"] == "pricing"
        assert payload["signals"] == ["pricing"]
