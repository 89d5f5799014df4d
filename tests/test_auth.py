"""Tests for admin API authentication and call id validation."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from fastapi import HTTPException, WebSocketException
from fastapi.security import HTTPAuthorizationCredentials

from conftest import FakeSettings
from receptionist.auth import require_admin_token, require_admin_ws, valid_call_id

# ── Tests: HTTP guard ──────────────────────────────────────────────

class TestRequireAdminToken:
    """Test the require_admin_token dependency directly."""

    async def test_rejects_no_token_when_key_set(self, monkeypatch):
        monkeypatch.setattr("receptionist.auth.settings", FakeSettings(admin_api_key="secret"))
        with pytest.raises(HTTPException) as exc_info:
            await require_admin_token(credentials=None)
        assert exc_info.value.status_code == 401

    async def test_rejects_wrong_token(self, monkeypatch):
        monkeypatch.setattr("receptionist.auth.settings", FakeSettings(admin_api_key="secret"))
        creds = HTTPAuthorizationCredentials(scheme="Bearer", credentials="wrong")
        with pytest.raises(HTTPException) as exc_info:
            await require_admin_token(credentials=creds)
        assert exc_info.value.status_code == 401

    async def test_allows_correct_token(self, monkeypatch):
        monkeypatch.setattr("receptionist.auth.settings", FakeSettings(admin_api_key="secret"))
        creds = HTTPAuthorizationCredentials(scheme="Bearer", credentials="secret")
        # Should not raise
        await require_admin_token(credentials=creds)

    async def test_allows_no_key_debug_mode(self, monkeypatch):
        monkeypatch.setattr("receptionist.auth.settings", FakeSettings(admin_api_key="", debug=True))
        # No key + debug = allow without any credentials
        await require_admin_token(credentials=None)

    async def test_rejects_no_key_production(self, monkeypatch):
        monkeypatch.setattr("receptionist.auth.settings", FakeSettings(admin_api_key="", debug=False))
        with pytest.raises(HTTPException) as exc_info:
            await require_admin_token(credentials=None)
        assert exc_info.value.status_code == 403


# ── Tests: WebSocket guard ─────────────────────────────────────────

class TestRequireAdminWs:
    async def test_rejects_wrong_token(self, monkeypatch):
        monkeypatch.setattr("receptionist.auth.settings", FakeSettings(admin_api_key="secret"))
        with pytest.raises(WebSocketException) as exc_info:
            await require_admin_ws(token="nope")
        assert exc_info.value.code == 4001

    async def test_rejects_no_key_production(self, monkeypatch):
        monkeypatch.setattr("receptionist.auth.settings", FakeSettings())
        with pytest.raises(WebSocketException) as exc_info:
            await require_admin_ws(token="")
        assert exc_info.value.code == 4003

    async def test_allows_correct_token(self, monkeypatch):
        monkeypatch.setattr("receptionist.auth.settings", FakeSettings(admin_api_key="secret"))
        await require_admin_ws(token="secret")


# ── Tests: Input validation ─────────────────────────────────────

class TestCallIdValidation:
    """valid_call_id rejects path traversal and unsafe characters."""

    def test_valid_telephony_ids(self):
        assert valid_call_id("CA1234567890abcdef")
        assert valid_call_id("call-1")
        assert valid_call_id("sip:abc.123")

    def test_rejects_slashes(self):
        assert not valid_call_id("foo/bar")
        assert not valid_call_id("../../etc/passwd")

    def test_rejects_empty(self):
        assert not valid_call_id("")

    def test_rejects_too_long(self):
        assert not valid_call_id("a" * 129)

    def test_rejects_spaces_and_specials(self):
        assert not valid_call_id("foo bar")
        assert not valid_call_id("foo;rm -rf /")
