"""Authentication dependencies for the call inspection endpoints.

Two guards:
  - require_admin_token()  HTTP endpoints (Bearer token in Authorization header)
  - require_admin_ws()     WebSocket endpoints (?token= query param)

Behavior matrix:
  ADMIN_API_KEY set + valid token   → allow
  ADMIN_API_KEY set + wrong/missing → 401 Unauthorized (WS close 4001)
  ADMIN_API_KEY empty + DEBUG=true  → allow (local dev convenience)
  ADMIN_API_KEY empty + DEBUG=false → 403 Forbidden (WS close 4003)

The telephony endpoints (``/turns``, ``/calls/{id}/end``) are not guarded
here; they sit behind the gateway's own network boundary.
"""

from __future__ import annotations

import hmac
import logging
import re

from fastapi import Depends, HTTPException, Query, WebSocketException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from receptionist.config import settings

log = logging.getLogger("receptionist.auth")

_bearer_scheme = HTTPBearer(auto_error=False)

_CALL_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:-]{1,128}$")


def valid_call_id(value: str) -> bool:
    return bool(_CALL_ID_PATTERN.match(value or ""))


def _check(token: str | None) -> int | None:
    """Return None when access is allowed, else the HTTP status to deny with."""
    key = settings.admin_api_key
    if not key:
        return None if settings.debug else status.HTTP_403_FORBIDDEN
    if token is None or not hmac.compare_digest(token, key):
        return status.HTTP_401_UNAUTHORIZED
    return None


async def require_admin_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """FastAPI dependency: protect HTTP admin endpoints with bearer token."""
    denied = _check(credentials.credentials if credentials else None)
    if denied == status.HTTP_403_FORBIDDEN:
        raise HTTPException(
            status_code=denied,
            detail="Admin API key not configured. Set ADMIN_API_KEY in .env.",
        )
    if denied == status.HTTP_401_UNAUTHORIZED:
        log.warning("Rejected admin request with missing or invalid token")
        raise HTTPException(
            status_code=denied,
            detail="Invalid or missing admin token.",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_admin_ws(token: str = Query(default="")) -> None:
    """WebSocket auth. Browsers can't send headers, so use ?token= query param."""
    denied = _check(token or None)
    if denied == status.HTTP_403_FORBIDDEN:
        raise WebSocketException(code=4003, reason="Admin API key not configured")
    if denied == status.HTTP_401_UNAUTHORIZED:
        raise WebSocketException(code=4001, reason="Unauthorized")
