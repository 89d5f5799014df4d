"""Tests for the tenant configuration schema and ConfigLoader."""

import json

import pytest
from pydantic import ValidationError

from receptionist.errors import TenantConfigError, TenantNotFoundError
from receptionist.models.decision import Action
from receptionist.tenants.defaults import DETECTION_TRIGGERS, FILLER_WORDS
from receptionist.tenants.loader import (
    ConfigLoader,
    FileTenantConfigStore,
    InMemoryTenantConfigStore,
    parse_tenant_config,
)
from receptionist.tenants.schema import TenantConfig


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestSchemaDefaults:
    def test_empty_trigger_lists_use_platform_defaults(self, config):
        assert config.detection_triggers.pricing == DETECTION_TRIGGERS["pricing"]
        assert "how much" in config.detection_triggers.pricing

    def test_tenant_list_replaces_platform_list(self, document):
        document["detection_triggers"] = {"emergency": ["Water Everywhere"]}
        config = TenantConfig.model_validate(document)
        assert config.detection_triggers.emergency == ("water everywhere",)

    def test_merge_platform_defaults_unions_lists(self, document):
        document["detection_triggers"] = {
            "emergency": ["water everywhere"],
            "merge_platform_defaults": True,
        }
        config = TenantConfig.model_validate(document)
        assert "water everywhere" in config.detection_triggers.emergency
        assert "gas leak" in config.detection_triggers.emergency

    def test_tenant_filler_words_extend_platform(self, document):
        document["filler_words"] = ["Basically", "literally"]
        config = TenantConfig.model_validate(document)
        assert "literally" in config.filler_words
        assert set(FILLER_WORDS) <= set(config.filler_words)

    def test_default_consent_phrases(self, config):
        assert "go ahead" in config.consent.consent_phrases
        assert config.consent.require_explicit_confirmation is True

    def test_scenario_terms_lowercased(self, config):
        assert config.scenarios[0].required_terms == ("ac",)

    def test_scenario_action_parsed(self, config):
        assert config.scenarios[0].action == Action.ASK_QUESTION
        assert config.scenarios[1].action == Action.ANSWER_WITH_KNOWLEDGE

    def test_slot_prompt_override_and_default(self, document):
        document["booking"] = {"slot_prompts": {"name": "Who am I speaking with?"}}
        config = TenantConfig.model_validate(document)
        assert config.slot_prompt("name") == "Who am I speaking with?"
        assert "address" in config.slot_prompt("address")
        assert config.slot_prompt("gate_code") == "Could you tell me your gate code?"

    def test_snapshot_is_frozen(self, config):
        with pytest.raises(ValidationError):
            config.name = "Changed"


class TestSchemaValidation:
    def test_rejects_unknown_schema_version(self, document):
        document["schema_version"] = 2
        with pytest.raises(ValidationError):
            TenantConfig.model_validate(document)

    def test_rejects_duplicate_scenario_ids(self, document):
        document["scenarios"].append(dict(document["scenarios"][0]))
        with pytest.raises(ValidationError):
            TenantConfig.model_validate(document)

    def test_rejects_unknown_fields(self, document):
        document["featurez"] = {}
        with pytest.raises(ValidationError):
            TenantConfig.model_validate(document)

    def test_rejects_unknown_action(self, document):
        document["scenarios"][0]["action"] = "small_talk"
        with pytest.raises(ValidationError):
            TenantConfig.model_validate(document)

    def test_parse_wraps_validation_error(self, document):
        document["scenarios"][0]["min_confidence"] = 3
        with pytest.raises(TenantConfigError) as exc_info:
            parse_tenant_config("acme_hvac", document)
        assert "min_confidence" in exc_info.value.reason

    def test_parse_rejects_mismatched_tenant(self, document):
        with pytest.raises(TenantConfigError):
            parse_tenant_config("someone_else", document)


class TestConfigLoader:
    @pytest.mark.asyncio
    async def test_caches_within_ttl(self, document):
        store = InMemoryTenantConfigStore({"acme_hvac": document})
        clock = FakeClock()
        loader = ConfigLoader(store, cache_ttl_seconds=60, clock=clock)

        first = await loader.load("acme_hvac")
        document["name"] = "Renamed"
        store.put("acme_hvac", document)
        clock.now += 30
        assert (await loader.load("acme_hvac")) is first

        clock.now += 31
        refreshed = await loader.load("acme_hvac")
        assert refreshed.name == "Renamed"
        # The earlier snapshot is untouched.
        assert first.name == "Acme Heating & Air"

    @pytest.mark.asyncio
    async def test_invalid_document_is_quarantined(self, document):
        document["schema_version"] = 99
        store = InMemoryTenantConfigStore({"acme_hvac": document})
        clock = FakeClock()
        loader = ConfigLoader(store, cache_ttl_seconds=60, clock=clock)

        with pytest.raises(TenantConfigError):
            await loader.load("acme_hvac")

        # Fixed document is not picked up until the quarantine expires.
        document["schema_version"] = 1
        store.put("acme_hvac", document)
        with pytest.raises(TenantConfigError, match="quarantined"):
            await loader.load("acme_hvac")

        clock.now += 61
        config = await loader.load("acme_hvac")
        assert config.tenant_id == "acme_hvac"

    @pytest.mark.asyncio
    async def test_missing_tenant(self):
        loader = ConfigLoader(InMemoryTenantConfigStore())
        with pytest.raises(TenantNotFoundError):
            await loader.load("nobody")

    @pytest.mark.asyncio
    async def test_cache_evicts_oldest(self, document):
        docs = {}
        for i in range(3):
            d = dict(document, tenant_id=f"t{i}")
            docs[f"t{i}"] = d
        loader = ConfigLoader(InMemoryTenantConfigStore(docs), max_entries=2)
        a = await loader.load("t0")
        await loader.load("t1")
        await loader.load("t2")
        assert (await loader.load("t0")) is not a

    @pytest.mark.asyncio
    async def test_invalidate_forces_reload(self, document):
        store = InMemoryTenantConfigStore({"acme_hvac": document})
        loader = ConfigLoader(store)
        first = await loader.load("acme_hvac")
        loader.invalidate("acme_hvac")
        assert (await loader.load("acme_hvac")) is not first


class TestFileTenantConfigStore:
    @pytest.mark.asyncio
    async def test_reads_json_file(self, tmp_path, document):
        (tmp_path / "acme_hvac.json").write_text(json.dumps(document))
        store = FileTenantConfigStore(tmp_path)
        data = await store.fetch("acme_hvac")
        assert data["name"] == "Acme Heating & Air"

    @pytest.mark.asyncio
    async def test_reads_first_jsonl_line(self, tmp_path, document):
        (tmp_path / "acme_hvac.jsonl").write_text("\n" + json.dumps(document) + "\n{}\n")
        store = FileTenantConfigStore(tmp_path)
        data = await store.fetch("acme_hvac")
        assert data["tenant_id"] == "acme_hvac"

    @pytest.mark.asyncio
    async def test_invalid_json_raises_config_error(self, tmp_path):
        (tmp_path / "broken.json").write_text("{not json")
        store = FileTenantConfigStore(tmp_path)
        with pytest.raises(TenantConfigError):
            await store.fetch("broken")

    @pytest.mark.asyncio
    async def test_path_traversal_rejected(self, tmp_path):
        store = FileTenantConfigStore(tmp_path)
        with pytest.raises(TenantNotFoundError):
            await store.fetch("../etc/passwd")

    @pytest.mark.asyncio
    async def test_bundled_demo_tenant_is_valid(self):
        import os
        directory = os.path.join(os.path.dirname(__file__), "..", "data", "tenants")
        loader = ConfigLoader(FileTenantConfigStore(directory))
        config = await loader.load("demo_hvac")
        assert config.scenarios[0].id == "ac_not_cooling"
        assert config.escalation.transfer_target == "+15555550100"
