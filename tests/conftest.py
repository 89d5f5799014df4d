"""Shared fixtures: a small HVAC tenant and a fully wired orchestrator."""

import copy
import os
import sys
from dataclasses import dataclass
from typing import Optional

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from receptionist.booking.store import InMemoryAppointmentStore
from receptionist.llm import ScriptedLanguageModelClient
from receptionist.pipeline.fallback import FallbackReasoner
from receptionist.pipeline.orchestrator import Orchestrator
from receptionist.session import InMemorySessionStore
from receptionist.tenants.loader import ConfigLoader, InMemoryTenantConfigStore
from receptionist.tenants.schema import TenantConfig
from receptionist.trace_events import MemoryAuditSink

TENANT_ID = "acme_hvac"

BASE_DOCUMENT = {
    "schema_version": 1,
    "tenant_id": TENANT_ID,
    "revision": "r1",
    "name": "Acme Heating & Air",
    "trade": "HVAC",
    "synonyms": {"a/c": "ac", "air conditioner": "ac"},
    "scenarios": [
        {
            "id": "ac_not_cooling",
            "category": "troubleshooting",
            "triggers": ["stopped working", "not cooling", "blowing warm"],
            "required_terms": ["ac"],
            "exclude_terms": ["car"],
            "canonical_phrases": ["my ac is not cooling the house", "ac blowing warm air"],
            "priority": 10,
            "response_text": "Is the unit running at all, or is it just not blowing cold air?",
            "action": "ask_question",
        },
        {
            "id": "business_hours",
            "category": "info",
            "triggers": ["hours", "open today"],
            "canonical_phrases": ["what are your business hours", "when are you open"],
            "priority": 50,
            "response_text": "We're open Monday through Friday, 8am to 6pm.",
            "action": "answer_with_knowledge",
        },
        {
            "id": "schedule_service",
            "category": "booking",
            "triggers": ["schedule a service", "book an appointment"],
            "priority": 30,
            "action": "initiate_booking",
        },
    ],
    "escalation": {"transfer_target": "+15555550100"},
    "facts": {"hours": "Monday-Friday 8am to 6pm"},
}


class FakeSettings:
    """Stands in for ``receptionist.auth.settings`` in auth tests."""

    def __init__(self, admin_api_key="", debug=False):
        self.admin_api_key = admin_api_key
        self.debug = debug


@pytest.fixture
def document():
    """A fresh, mutable copy of the base tenant document."""
    return copy.deepcopy(BASE_DOCUMENT)


@pytest.fixture
def config(document):
    return TenantConfig.model_validate(document)


@dataclass
class Harness:
    orchestrator: Orchestrator
    configs: InMemoryTenantConfigStore
    sessions: InMemorySessionStore
    appointments: InMemoryAppointmentStore
    sink: MemoryAuditSink
    llm: Optional[ScriptedLanguageModelClient]


@pytest.fixture
def make_harness(document):
    """Build an orchestrator around in-memory stores.

    Pass ``llm`` to enable the fallback reasoner with a scripted client.
    """

    def _make(doc=None, llm=None, fallback_timeout=0.5):
        configs = InMemoryTenantConfigStore({TENANT_ID: doc or document})
        sessions = InMemorySessionStore()
        appointments = InMemoryAppointmentStore()
        sink = MemoryAuditSink()
        fallback = FallbackReasoner(llm, timeout_seconds=fallback_timeout) if llm else None
        orchestrator = Orchestrator(
            ConfigLoader(configs),
            sessions,
            appointments,
            fallback=fallback,
            audit_sink=sink,
        )
        return Harness(orchestrator, configs, sessions, appointments, sink, llm)

    return _make
