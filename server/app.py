# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP host for heal (FastAPI).

Multi-session: each preview gets its own PreviewSession with its own
breaker and orchestrator. Sandboxes post envelopes to
/sessions/{id}/events; operators read stats and history, reset the
breaker, and follow repair activity over SSE.

Inbound events are untrusted. The events endpoint never answers with a
validation error; it reports {"accepted": false} and moves on.

Operator actions (reset, delete) require `Authorization: Bearer <key>`
when a key is configured (HEAL_API_KEY).
"""

import sys
import os
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
import json as json_mod
import logging
import queue as _queue_mod
import threading
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from starlette.responses import StreamingResponse
from pydantic import BaseModel

from repair import RepairListener
from session import PreviewSession, SessionRegistry

log = logging.getLogger("heal.server")

MAX_EVENT_BYTES = 256 * 1024
MAX_SSE_SUBSCRIBERS = 1000


# --- Request models ---

class CreateSessionRequest(BaseModel):
    files: dict[str, str] = {}
    active_file: str | None = None
    last_operation: str = ""


class UpdateFilesRequest(BaseModel):
    files: dict[str, str] = {}
    replace: bool = False
    active_file: str | None = None
    last_operation: str | None = None


class StreamListener(RepairListener):
    """Forwards repair notifications for one session to the SSE bus."""

    def __init__(self, publish, session_id: str):
        self.publish = publish
        self.session_id = session_id

    def on_start(self, request):
        self.publish(self.session_id, "repair_started", {
            "attempt_id": request.attempt_id,
            "kind": request.error.kind.value,
        })

    def on_success(self, request, patches):
        self.publish(self.session_id, "repair_succeeded", {
            "attempt_id": request.attempt_id,
            "files": [p.path for p in patches],
        })

    def on_error(self, request, reason):
        self.publish(self.session_id, "repair_failed", {
            "attempt_id": request.attempt_id,
            "reason": reason,
        })

    def on_circuit_breaker_tripped(self, reason, stats):
        self.publish(self.session_id, "breaker_tripped", {"reason": reason, "stats": stats})

    def on_skipped(self, error, reason):
        self.publish(self.session_id, "error_skipped", {"kind": error.kind.value, "reason": reason})


# --- App factory ---

def create_app(
    registry: SessionRegistry | None = None,
    api_key: str | None = None,
) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    If api_key is not provided, HEAL_API_KEY is used; an empty key leaves
    operator endpoints open.
    """
    _registry = registry or SessionRegistry()
    _api_key = api_key if api_key is not None else os.environ.get("HEAL_API_KEY", "")

    @asynccontextmanager
    async def lifespan(app):
        yield
        await _registry.close_all()

    app = FastAPI(title="heal", version="1.0", lifespan=lifespan)

    # --- SSE event bus ---
    # Use threading.Queue for cross-thread safety (TestClient uses threads)
    _sse_subscribers: dict[str, list[_queue_mod.Queue]] = {}
    _sse_lock = threading.Lock()

    def _sse_publish(session_id: str, event_type: str, data: dict):
        """Push an event to every subscriber of one session."""
        payload = {"event": event_type, "session_id": session_id, **data}
        with _sse_lock:
            queues = _sse_subscribers.get(session_id, [])
            dead = []
            for q in queues:
                try:
                    q.put_nowait(payload)
                except _queue_mod.Full:
                    dead.append(q)
            for q in dead:
                queues.remove(q)

    # Expose for testing
    app.state.registry = _registry
    app.state.sse_publish = _sse_publish

    # --- Helpers ---

    def _session(session_id: str) -> PreviewSession:
        session = _registry.get(session_id)
        if session is None:
            raise HTTPException(404, "Session not found")
        return session

    def _require_operator(request: Request):
        if not _api_key:
            return
        auth = request.headers.get("authorization", "")
        if not auth:
            raise HTTPException(401, "Operator key required (Authorization: Bearer ...)")
        if auth != f"Bearer {_api_key}":
            raise HTTPException(403, "Invalid operator key")

    # --- Sessions ---

    @app.get("/health")
    async def health():
        return {"ok": True, "sessions": len(_registry)}

    @app.post("/sessions")
    async def create_session(req: CreateSessionRequest):
        try:
            session = _registry.create(files=req.files)
        except RuntimeError as e:
            raise HTTPException(503, str(e))
        if req.active_file:
            session.set_active_file(req.active_file)
        if req.last_operation:
            session.set_last_operation(req.last_operation)
        if session.orchestrator is not None:
            session.orchestrator.add_listener(StreamListener(_sse_publish, session.id))
        log.info("session %s created (%d files)", session.id, len(req.files))
        return {"session_id": session.id, "events_url": f"/sessions/{session.id}/events"}

    @app.get("/sessions")
    async def list_sessions():
        return {"sessions": [
            {"id": s.id, "created_at": s.created_at, "sandbox_alive": s.sandbox_alive}
            for s in _registry.list()
        ]}

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str):
        return _session(session_id).snapshot(redact=True)

    @app.delete("/sessions/{session_id}")
    async def delete_session(session_id: str, request: Request):
        _require_operator(request)
        _session(session_id)
        await _registry.close(session_id)
        _sse_publish(session_id, "session_closed", {})
        return {"closed": session_id}

    # --- Sandbox events ---

    @app.post("/sessions/{session_id}/events", status_code=202)
    async def post_event(session_id: str, request: Request):
        """Untrusted inbound envelope. Always 202; malformed input is dropped."""
        session = _session(session_id)
        body = await request.body()
        if len(body) > MAX_EVENT_BYTES:
            session.channel.received += 1
            session.channel.rejected += 1
            return {"accepted": False}
        return {"accepted": session.deliver(body)}

    # --- File set ---

    @app.put("/sessions/{session_id}/files")
    async def update_files(session_id: str, req: UpdateFilesRequest):
        session = _session(session_id)
        session.update_files(req.files, replace=req.replace)
        if req.active_file is not None:
            session.set_active_file(req.active_file)
        if req.last_operation is not None:
            session.set_last_operation(req.last_operation)
        return {"files": sorted(session.context.files)}

    # --- Breaker / history ---

    @app.get("/sessions/{session_id}/stats")
    async def session_stats(session_id: str):
        return _session(session_id).stats()

    @app.post("/sessions/{session_id}/reset")
    async def reset_breaker(session_id: str, request: Request):
        _require_operator(request)
        session = _session(session_id)
        if session.orchestrator is not None:
            session.orchestrator.reset_circuit_breaker()
        else:
            session.breaker.reset()
        _sse_publish(session_id, "breaker_reset", {})
        return session.breaker.stats()

    @app.get("/sessions/{session_id}/history")
    async def session_history(session_id: str):
        return {"history": _session(session_id).history(redact=True)}

    @app.get("/sessions/{session_id}/stream")
    async def stream_session(session_id: str):
        """SSE feed of repair activity for one session.

        Usage:
            curl -N http://localhost:8000/sessions/<id>/stream

        Events:
            data: {"event": "repair_started", "attempt_id": 1, "kind": "script", ...}
            data: {"event": "repair_succeeded", "attempt_id": 1, "files": ["app.py"], ...}
            data: {"event": "repair_failed", "attempt_id": 2, "reason": "...", ...}
            data: {"event": "breaker_tripped", "reason": "...", "stats": {...}, ...}
        """
        _session(session_id)
        q = _queue_mod.Queue(maxsize=256)
        with _sse_lock:
            total = sum(len(v) for v in _sse_subscribers.values())
            if total >= MAX_SSE_SUBSCRIBERS:
                raise HTTPException(503, "Too many SSE subscribers")
            _sse_subscribers.setdefault(session_id, []).append(q)

        async def event_generator():
            try:
                while True:
                    try:
                        event = await asyncio.to_thread(q.get, True, 15.0)
                        yield f"data: {json_mod.dumps(event)}\n\n"
                        if event.get("event") == "session_closed":
                            break
                    except _queue_mod.Empty:
                        yield ": keepalive\n\n"
            finally:
                with _sse_lock:
                    queues = _sse_subscribers.get(session_id, [])
                    if q in queues:
                        queues.remove(q)
                    if not queues:
                        _sse_subscribers.pop(session_id, None)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    return app
