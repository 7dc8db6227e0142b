"""FastAPI status API for sessions and setup dialogs."""

import logging
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Log slow requests."""

    def __init__(self, app, config: Optional[dict] = None):
        super().__init__(app)
        server_config = (config or {}).get("server", {})
        self.slow_threshold = server_config.get("slow_request_threshold_seconds", 1.0)
        self.timing_threshold = server_config.get("request_timing_threshold_seconds", 0.1)

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start

        if elapsed > self.slow_threshold:
            logger.warning(f"SLOW REQUEST: {request.method} {request.url.path} took {elapsed:.2f}s")
        elif elapsed > self.timing_threshold:
            logger.info(f"Request: {request.method} {request.url.path} took {elapsed*1000:.0f}ms")

        return response


class SessionResponse(BaseModel):
    """One active session."""
    session_ref: str
    thread_key: str
    target: str
    project_label: str
    command: str
    prompt: str = ""
    state: str
    started_at: str
    transcript_length: int
    exit_code: Optional[int] = None


class SessionInputRequest(BaseModel):
    """Input to write to a session's process."""
    text: str


class FlowResponse(BaseModel):
    """One in-progress setup dialog."""
    kind: str
    step: str
    thread_key: str
    owner_ref: Optional[str] = None
    created_at: str
    last_activity: Optional[str] = None
    machine: Optional[str] = None
    repo_path: Optional[str] = None
    project: Optional[str] = None
    repo_mode: Optional[str] = None
    task_name: Optional[str] = None


def create_app(
    session_manager=None,
    flow_store=None,
    config: Optional[dict] = None,
    lifespan=None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        session_manager: SessionManager instance
        flow_store: ConversationFlowStore instance
        config: Configuration dictionary
        lifespan: Optional ASGI lifespan context manager

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Remote Session Relay",
        description="Status API for relayed remote sessions",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.config = config or {}
    app.add_middleware(RequestTimingMiddleware, config=config)

    app.state.session_manager = session_manager
    app.state.flow_store = flow_store

    def require_session_manager():
        if not app.state.session_manager:
            raise HTTPException(status_code=503, detail="Session manager not configured")
        return app.state.session_manager

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        sm = app.state.session_manager
        store = app.state.flow_store
        return {
            "status": "healthy",
            "sessions": len(sm.list_sessions()) if sm else 0,
            "flows": len(store) if store is not None else 0,
        }

    @app.get("/sessions", response_model=list[SessionResponse])
    async def list_sessions():
        sm = require_session_manager()
        return [SessionResponse(**session.to_dict()) for session in sm.list_sessions()]

    @app.get("/sessions/{thread_key}", response_model=SessionResponse)
    async def get_session(thread_key: str):
        sm = require_session_manager()
        session = sm.get(thread_key)
        if not session:
            raise HTTPException(status_code=404, detail="Session not found")
        return SessionResponse(**session.to_dict())

    @app.post("/sessions/{thread_key}/input")
    async def send_input(thread_key: str, request: SessionInputRequest):
        sm = require_session_manager()
        if not sm.has(thread_key):
            raise HTTPException(status_code=404, detail="Session not found")
        if not await sm.send_input(thread_key, request.text):
            raise HTTPException(status_code=409, detail="Session is not accepting input")
        return {"status": "delivered", "thread_key": thread_key}

    @app.delete("/sessions/{thread_key}")
    async def cancel_session(thread_key: str):
        sm = require_session_manager()
        if not sm.has(thread_key):
            raise HTTPException(status_code=404, detail="Session not found")
        killed = await sm.cancel(thread_key)
        logger.info(f"Cancel via API for {thread_key}: killed={killed}")
        return {"status": "killed" if killed else "not running", "thread_key": thread_key}

    @app.get("/flows", response_model=list[FlowResponse])
    async def list_flows():
        if app.state.flow_store is None:
            raise HTTPException(status_code=503, detail="Flow store not configured")
        return [FlowResponse(**flow.to_dict()) for flow in app.state.flow_store.list_flows()]

    return app
