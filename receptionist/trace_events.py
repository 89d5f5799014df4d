"""Per-turn trace events: session log, durable audit sink, live subscribers.

Every pipeline stage emits one event.  The event is appended to the call's
session synchronously, written to the audit sink in the background (a slow
or broken sink never delays the reply), and pushed to any live WebSocket
subscribers.  Only the final ``decision_complete`` event is awaited, with a
short timeout.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Optional, TypedDict

from receptionist.models.call import CallSession

log = logging.getLogger("receptionist.trace_events")


class TraceEvent(TypedDict):
    callId: str
    tenantId: str
    turnSeq: int
    stage: str         # normalize | classify | triage | fallback | decide | guardrail | book | error | duplicate_turn | decision_complete
    action: Optional[str]
    confidence: Optional[float]
    matchSource: Optional[str]
    timestampMs: int
    data: dict


def truncate(text: str, limit: int) -> str:
    if text is None:
        return ""
    return text if len(text) <= limit else text[:limit] + "…"


def build_event(
    call_id: str,
    tenant_id: str,
    turn_seq: int,
    stage: str,
    action: Optional[str] = None,
    confidence: Optional[float] = None,
    match_source: Optional[str] = None,
    data: Optional[dict[str, Any]] = None,
    clock: Callable[[], float] = time.time,
) -> TraceEvent:
    return {
        "callId": call_id,
        "tenantId": tenant_id,
        "turnSeq": turn_seq,
        "stage": stage,
        "action": action,
        "confidence": confidence,
        "matchSource": match_source,
        "timestampMs": int(clock() * 1000),
        "data": data or {},
    }


async def write_event(sink: AuditSink, event: TraceEvent, timeout: float) -> None:
    """Write one event straight to the sink, bounded, never raising.

    For events that have no session to live on (the session could not be
    loaded at all).
    """
    try:
        await asyncio.wait_for(sink.write(event), timeout=timeout)
    except asyncio.TimeoutError:
        log.warning("Audit write timed out for call %s stage %s", event["callId"], event["stage"])
    except Exception as e:
        log.error("Audit sink write failed (call=%s stage=%s): %s",
                  event["callId"], event["stage"], e)


# ── Audit sinks ────────────────────────────────────────────────────


class AuditSink(ABC):
    """Durable destination for trace events."""

    @abstractmethod
    async def write(self, event: TraceEvent) -> None:
        ...


class MemoryAuditSink(AuditSink):
    def __init__(self) -> None:
        self.events: list[TraceEvent] = []

    async def write(self, event: TraceEvent) -> None:
        self.events.append(event)


class JsonlAuditSink(AuditSink):
    """Append one JSON line per event to a file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    async def write(self, event: TraceEvent) -> None:
        line = json.dumps(event, default=str) + "\n"
        async with self._lock:
            await asyncio.to_thread(self._append, line)

    def _append(self, line: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as f:
            f.write(line)


# ── Live broadcast ─────────────────────────────────────────────────


class TraceBroadcaster:
    """Per-call event broadcaster using asyncio.Queue per subscriber."""

    def __init__(self, call_id: str, maxsize: int = 200) -> None:
        self._call_id = call_id
        self._maxsize = maxsize
        self._subscribers: list[asyncio.Queue[TraceEvent]] = []

    def subscribe(self) -> asyncio.Queue[TraceEvent]:
        q: asyncio.Queue[TraceEvent] = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers.append(q)
        log.info("Trace subscriber added for call %s (total: %d)",
                 self._call_id, len(self._subscribers))
        return q

    def unsubscribe(self, q: asyncio.Queue[TraceEvent]) -> None:
        if q in self._subscribers:
            self._subscribers.remove(q)
        log.info("Trace subscriber removed for call %s (total: %d)",
                 self._call_id, len(self._subscribers))

    def publish(self, event: TraceEvent) -> None:
        for q in self._subscribers:
            if q.full():
                # Drop oldest event to make room
                q.get_nowait()
            q.put_nowait(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


_broadcasters: dict[str, TraceBroadcaster] = {}


def get_broadcaster(call_id: str) -> TraceBroadcaster:
    """Get or create a broadcaster for a call."""
    if call_id not in _broadcasters:
        _broadcasters[call_id] = TraceBroadcaster(call_id)
    return _broadcasters[call_id]


def find_broadcaster(call_id: str) -> TraceBroadcaster | None:
    return _broadcasters.get(call_id)


def remove_broadcasters(call_ids: list[str]) -> None:
    """Drop broadcasters of purged calls."""
    for call_id in call_ids:
        if _broadcasters.pop(call_id, None) is not None:
            log.info("TraceBroadcaster removed for call %s", call_id)


# ── Emitter ────────────────────────────────────────────────────────

_pending_writes: set[asyncio.Task] = set()


async def flush_pending(timeout: float = 5.0) -> None:
    """Wait for background audit writes (shutdown, tests)."""
    loop = asyncio.get_running_loop()
    tasks = [t for t in _pending_writes if t.get_loop() is loop]
    if tasks:
        await asyncio.wait(tasks, timeout=timeout)


class TraceEmitter:
    """Emits the events of one turn of one call."""

    def __init__(
        self,
        session: CallSession,
        turn_seq: int,
        sink: AuditSink,
        final_write_timeout: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session = session
        self._turn_seq = turn_seq
        self._sink = sink
        self._final_timeout = final_write_timeout
        self._clock = clock

    def _build(
        self,
        stage: str,
        action: Optional[str],
        confidence: Optional[float],
        match_source: Optional[str],
        data: dict[str, Any],
    ) -> TraceEvent:
        return build_event(
            self._session.call_id, self._session.tenant_id, self._turn_seq, stage,
            action, confidence, match_source, data, self._clock,
        )

    def _record(self, event: TraceEvent) -> None:
        self._session.trace_events.append(dict(event))
        broadcaster = find_broadcaster(self._session.call_id)
        if broadcaster is not None:
            broadcaster.publish(event)

    def emit(
        self,
        stage: str,
        action: Optional[str] = None,
        confidence: Optional[float] = None,
        match_source: Optional[str] = None,
        **data: Any,
    ) -> TraceEvent:
        """Record an event and write it to the sink without waiting."""
        event = self._build(stage, action, confidence, match_source, data)
        self._record(event)
        task = asyncio.create_task(self._write(event))
        _pending_writes.add(task)
        task.add_done_callback(_pending_writes.discard)
        return event

    async def emit_final(
        self,
        action: Optional[str] = None,
        confidence: Optional[float] = None,
        match_source: Optional[str] = None,
        **data: Any,
    ) -> TraceEvent:
        """Record ``decision_complete`` and wait (bounded) for the sink."""
        event = self._build("decision_complete", action, confidence, match_source, data)
        self._record(event)
        try:
            await asyncio.wait_for(self._write(event), timeout=self._final_timeout)
        except asyncio.TimeoutError:
            log.warning("Audit write timed out for call %s turn %s",
                        self._session.call_id, self._turn_seq)
        return event

    async def _write(self, event: TraceEvent) -> None:
        try:
            await self._sink.write(event)
        except Exception as e:
            log.error("Audit sink write failed (call=%s stage=%s): %s",
                      event["callId"], event["stage"], e)
