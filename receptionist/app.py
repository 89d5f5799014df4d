"""FastAPI application: the telephony-facing turn API plus call inspection.

Endpoints:

  POST /turns                        One recognized utterance → next reply
  POST /calls/{call_id}/end          Telephony reports the call hung up
  GET  /calls/{call_id}              Session summary (admin)
  GET  /calls/{call_id}/trace        Trace events recorded so far (admin)
  WS   /calls/{call_id}/trace/stream Live trace events (admin, ?token=)
  GET  /health                       Health check

The telephony gateway owns audio: it sends recognized text to ``/turns``
and speaks (or transfers on) whatever comes back.
"""

from __future__ import annotations

# Load .env into os.environ before settings-dependent imports.
from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-20s %(levelname)-7s %(message)s",
)

from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from receptionist import __version__
from receptionist.auth import require_admin_token, require_admin_ws, valid_call_id
from receptionist.booking.store import InMemoryAppointmentStore
from receptionist.config import Settings, settings
from receptionist.llm import HttpLanguageModelClient, LanguageModelClient
from receptionist.models.decision import TurnRequest
from receptionist.pipeline.fallback import CircuitBreaker, FallbackReasoner
from receptionist.pipeline.orchestrator import Orchestrator
from receptionist.session import InMemorySessionStore, SessionReaper
from receptionist.tenants.loader import ConfigLoader, FileTenantConfigStore
from receptionist.trace_events import (
    JsonlAuditSink,
    MemoryAuditSink,
    flush_pending,
    get_broadcaster,
    remove_broadcasters,
)

log = logging.getLogger("receptionist.app")

_START_TIME = time.time()


def build_orchestrator(
    cfg: Settings,
    llm_client: Optional[LanguageModelClient] = None,
) -> Orchestrator:
    """Wire the default in-process stores and the fallback reasoner from settings."""
    loader = ConfigLoader(
        FileTenantConfigStore(cfg.tenant_config_dir),
        cache_ttl_seconds=cfg.tenant_config_cache_ttl_seconds,
        max_entries=cfg.tenant_config_cache_max_entries,
    )
    sessions = InMemorySessionStore(
        idle_timeout_seconds=cfg.session_idle_timeout_seconds,
        post_end_ttl_seconds=cfg.session_post_end_ttl_seconds,
    )
    if llm_client is None and cfg.llm_api_key:
        llm_client = HttpLanguageModelClient(
            cfg.llm_service_url, cfg.llm_api_key, cfg.llm_model, cfg.llm_timeout_seconds,
        )
    fallback = None
    if llm_client is not None:
        fallback = FallbackReasoner(
            llm_client,
            timeout_seconds=cfg.llm_timeout_seconds,
            max_tokens=cfg.llm_max_tokens,
            temperature=cfg.llm_temperature,
            max_raw_chars=cfg.trace_raw_response_max_chars,
            breaker=CircuitBreaker(
                cfg.llm_breaker_failure_threshold, cfg.llm_breaker_cooldown_seconds,
            ),
        )
    sink = JsonlAuditSink(cfg.audit_log_path) if cfg.audit_log_path else MemoryAuditSink()
    return Orchestrator(
        loader,
        sessions,
        InMemoryAppointmentStore(),
        fallback=fallback,
        audit_sink=sink,
        final_write_timeout=cfg.trace_final_write_timeout_seconds,
    )


def create_app(
    orchestrator: Optional[Orchestrator] = None,
    cfg: Optional[Settings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    cfg = cfg or settings
    orchestrator = orchestrator or build_orchestrator(cfg)
    reaper = SessionReaper(
        orchestrator.sessions,
        interval_seconds=cfg.session_reaper_interval_seconds,
        on_purge=remove_broadcasters,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for warning in cfg.validate_startup():
            log.warning(warning)
        reaper.start()
        yield
        await reaper.stop()
        await flush_pending()

    app = FastAPI(
        title="Receptionist",
        description="Per-call turn orchestration for multi-tenant phone answering",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.reaper = reaper

    async def _session_or_404(call_id: str):
        if not valid_call_id(call_id):
            raise HTTPException(status_code=400, detail="Invalid call id")
        session = await orchestrator.get_session(call_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Call not found")
        return session

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({"status": "ok", "uptime": uptime})

    # ── Telephony ──────────────────────────────────────────────

    @app.post("/turns")
    async def handle_turn(turn: TurnRequest) -> JSONResponse:
        """Process one caller utterance.  Always answers 200 with a reply."""
        reply = await orchestrator.handle_turn(turn)
        return JSONResponse(reply.model_dump(mode="json", by_alias=True, exclude_none=True))

    @app.post("/calls/{call_id}/end")
    async def end_call(call_id: str) -> JSONResponse:
        if not valid_call_id(call_id):
            raise HTTPException(status_code=400, detail="Invalid call id")
        if not await orchestrator.end_call(call_id):
            raise HTTPException(status_code=404, detail="Call not found")
        return JSONResponse({"callId": call_id, "ended": True})

    # ── Call inspection (admin) ────────────────────────────────

    @app.get("/calls/{call_id}", dependencies=[Depends(require_admin_token)])
    async def get_call(call_id: str) -> JSONResponse:
        session = await _session_or_404(call_id)
        return JSONResponse(session.to_dict(detail=True))

    @app.get("/calls/{call_id}/trace", dependencies=[Depends(require_admin_token)])
    async def get_trace(call_id: str) -> JSONResponse:
        session = await _session_or_404(call_id)
        return JSONResponse({
            "callId": call_id,
            "events": session.trace_events,
            "count": len(session.trace_events),
        })

    @app.websocket("/calls/{call_id}/trace/stream")
    async def trace_stream(
        websocket: WebSocket,
        call_id: str,
        _auth: None = Depends(require_admin_ws),
    ) -> None:
        """Stream trace events of a live call as they are emitted."""
        if not valid_call_id(call_id) or await orchestrator.get_session(call_id) is None:
            await websocket.close(code=4004, reason="Call not found")
            return

        await websocket.accept()
        broadcaster = get_broadcaster(call_id)
        queue = broadcaster.subscribe()

        async def forward() -> None:
            while True:
                event = await queue.get()
                await websocket.send_json(event)

        sender = asyncio.create_task(forward())
        try:
            # Inbound messages are ignored; receiving detects the disconnect.
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            sender.cancel()
            broadcaster.unsubscribe(queue)

    return app


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


def main() -> None:
    import uvicorn

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )
    uvicorn.run(
        "receptionist.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
    )


if __name__ == "__main__":
    main()
