"""Call session storage and the idle-session reaper.

A session is created on a call's first utterance, saved once per turn, and
removed by the reaper once it has been idle past the timeout or a short
while after the call ended, whichever comes first.
"""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from receptionist.models.call import CallSession, CallState

log = logging.getLogger("receptionist.session")


def redact_pii(value: str) -> str:
    """Mask PII for logging: first 3 and last 2 chars only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]


_DIGIT_RUN = re.compile(r"\d[\d\s().-]{5,}\d")


def redact_text(text: str) -> str:
    """Mask phone-number-like digit runs inside free text."""
    return _DIGIT_RUN.sub(lambda m: redact_pii(m.group(0)), text or "")


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


# ── Stores ─────────────────────────────────────────────────────────


class SessionStore(ABC):
    """Persistence for ``CallSession`` objects, keyed by call id."""

    @abstractmethod
    async def get(self, call_id: str) -> Optional[CallSession]:
        """Return the live session or None.  Expired sessions are not returned."""

    @abstractmethod
    async def save(self, session: CallSession) -> None:
        """Persist the session and push its expiry forward."""

    @abstractmethod
    async def delete(self, call_id: str) -> None:
        ...

    @abstractmethod
    async def mark_ended(self, call_id: str) -> bool:
        """Flag the call as ended; the session is purged after the post-end TTL."""

    @abstractmethod
    async def purge_expired(self) -> list[str]:
        """Delete every expired session and return their call ids."""

    @abstractmethod
    async def call_ids(self) -> list[str]:
        ...


class InMemorySessionStore(SessionStore):
    """Process-local store.  Copies on the way in and out, like a real backend."""

    def __init__(
        self,
        idle_timeout_seconds: float = 300.0,
        post_end_ttl_seconds: float = 60.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._idle = timedelta(seconds=idle_timeout_seconds)
        self._post_end = timedelta(seconds=post_end_ttl_seconds)
        self._clock = clock
        self._sessions: dict[str, CallSession] = {}

    def _expired(self, session: CallSession, now: datetime) -> bool:
        return session.expires_at is not None and session.expires_at <= now

    @staticmethod
    def _copy(session: CallSession) -> CallSession:
        # The tenant snapshot is frozen; share it instead of copying it.
        return session.model_copy(update={"config": session.config}, deep=True)

    async def get(self, call_id: str) -> Optional[CallSession]:
        session = self._sessions.get(call_id)
        if session is None or self._expired(session, self._clock()):
            return None
        return self._copy(session)

    async def save(self, session: CallSession) -> None:
        now = self._clock()
        session.last_activity_at = now
        expires_at = now + self._idle
        if session.ended_at is not None:
            expires_at = min(expires_at, session.ended_at + self._post_end)
        session.expires_at = expires_at
        self._sessions[session.call_id] = self._copy(session)

    async def delete(self, call_id: str) -> None:
        self._sessions.pop(call_id, None)

    async def mark_ended(self, call_id: str) -> bool:
        session = self._sessions.get(call_id)
        if session is None:
            return False
        now = self._clock()
        if session.ended_at is None:
            session.ended_at = now
        if session.state in (CallState.NEW, CallState.IN_PROGRESS):
            session.state = CallState.ENDED
        limit = session.ended_at + self._post_end
        if session.expires_at is None or session.expires_at > limit:
            session.expires_at = limit
        log.info("Call ended: %s (purge after %s)", call_id, limit.isoformat())
        return True

    async def purge_expired(self) -> list[str]:
        now = self._clock()
        expired = [cid for cid, s in self._sessions.items() if self._expired(s, now)]
        for call_id in expired:
            del self._sessions[call_id]
        if expired:
            log.info("Purged %d expired session(s)", len(expired))
        return expired

    async def call_ids(self) -> list[str]:
        now = self._clock()
        return [cid for cid, s in self._sessions.items() if not self._expired(s, now)]


# ── Reaper ─────────────────────────────────────────────────────────


class SessionReaper:
    """Background task that purges expired sessions on a fixed interval.

    ``on_purge`` receives the purged call ids (used to drop trace hubs).
    """

    def __init__(
        self,
        store: SessionStore,
        interval_seconds: float = 15.0,
        on_purge: Optional[Callable[[list[str]], None]] = None,
    ) -> None:
        self._store = store
        self._interval = interval_seconds
        self._on_purge = on_purge
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="session-reaper")
        log.info("Session reaper started (interval=%.1fs)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("Session reaper stopped")

    async def run_once(self) -> list[str]:
        purged = await self._store.purge_expired()
        if purged and self._on_purge is not None:
            self._on_purge(purged)
        return purged

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.run_once()
            except Exception:
                log.exception("Session reaper pass failed")
