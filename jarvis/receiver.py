"""FastAPI webhook receiver for OMI transcripts, plus health and status routes.

Build the app with create_app(); uvicorn runs it as a factory:

    uvicorn jarvis.receiver:create_app --factory
"""

import hmac
import logging
import sqlite3
import time
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from jarvis import __version__
from jarvis.actions import ActionService, ConflictError
from jarvis.api import router as api_router
from jarvis.assistant import ReplySynthesizer
from jarvis.buffer import SessionBufferManager
from jarvis.config import config_warnings, load_config
from jarvis.crypto import SecretBox
from jarvis.database import JarvisDB
from jarvis.models import StatusResponse, WebhookPayload
from jarvis.omi import OmiClient
from jarvis.security import CsrfTokenStore, FailedAttemptTracker

logger = logging.getLogger(__name__)

READY_TIMEOUT = 1.5


def _check_webhook_auth(request: Request, secret: str) -> str | None:
    """Validate webhook auth via Authorization header or ?token= query param.
    Returns None if OK, or an error reason string if rejected."""
    if not secret:
        return None
    auth_header = request.headers.get("Authorization", "")
    if hmac.compare_digest(auth_header.encode(), f"Bearer {secret}".encode()):
        return None
    token_param = request.query_params.get("token", "")
    if token_param and hmac.compare_digest(token_param.encode(), secret.encode()):
        return None
    return "invalid_webhook_auth"


def create_app(config: dict | None = None, db: JarvisDB | None = None, clock=time.time,
               http_transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    """Assemble the Jarvis app and its services.

    Args:
        config: Effective config; loaded from file/env when omitted.
        db: Store to use; opened from config["database"]["path"] when omitted.
        clock: Epoch-seconds clock shared by buffers, CSRF and lockout tracking.
        http_transport: httpx transport for outbound calls (tests inject a mock).
    """
    config = config or load_config()
    db = db or JarvisDB(config["database"]["path"])
    sec = config["security"]

    buffers = SessionBufferManager.from_config(config, db=db, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for warning in config_warnings(config):
            logger.warning(warning)
        buffers.start()
        logger.info(f"Jarvis receiver started ({config.get('environment')})")
        yield
        await buffers.stop()

    app = FastAPI(title="Jarvis Receiver", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.config = config
    app.state.db = db
    app.state.clock = clock
    app.state.started_at = clock()
    app.state.buffers = buffers
    app.state.actions = ActionService(db, clock=clock)
    app.state.synthesizer = ReplySynthesizer(config["assistant"], db=db, transport=http_transport)
    app.state.omi = OmiClient(config["omi"]["api_base_url"], transport=http_transport)
    app.state.secret_box = SecretBox(sec["encryption_key"], sec.get("encryption_key_prev", ""))
    app.state.csrf = CsrfTokenStore(ttl=sec["csrf_token_ttl"], clock=clock)
    app.state.attempts = FailedAttemptTracker(
        max_attempts=sec["max_failed_attempts"], lockout_duration=sec["lockout_duration"], clock=clock)

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException):
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code)

    @app.exception_handler(sqlite3.Error)
    async def database_error(request: Request, exc: sqlite3.Error):
        logger.error(f"Database error during {request.method} {request.url.path}: {exc}")
        return JSONResponse({"error": "A database error occurred. Please try again later."}, status_code=500)

    @app.exception_handler(ConflictError)
    async def conflict_error(request: Request, exc: ConflictError):
        logger.warning(f"{exc}")
        return JSONResponse({"error": "The record was modified concurrently. Please retry."}, status_code=409)

    @app.post("/webhook")
    async def webhook(request: Request):
        """Receive transcript segments from OMI.

        OMI sends: POST /webhook?session_id=abc&uid=USER_ID
        Body: {"session_id": "...", "uid": "...",
               "segments": [{"text": "...", "start": 10.0, "is_user": false}]}

        Returns 200 with a notification prompt when a wake-word flush fires,
        200 {} for a plain flush and 202 {} when the buffer is not yet due.
        """
        auth_error = _check_webhook_auth(request, sec.get("webhook_secret", ""))
        if auth_error:
            logger.warning(f"[WEBHOOK AUTH] Rejected request: {auth_error}")
            return JSONResponse({"message": "Unauthorized"}, status_code=401)

        try:
            data = await request.json()
        except (ValueError, UnicodeDecodeError):
            return JSONResponse({"message": "Invalid JSON body"}, status_code=400)
        if isinstance(data, list):
            data = {"segments": data}
        try:
            payload = WebhookPayload.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Rejected webhook payload: {e.error_count()} validation errors")
            return JSONResponse({"message": "Invalid webhook payload"}, status_code=400)

        session_id = payload.session_id or request.query_params.get("session_id")
        if not session_id:
            logger.error("No session_id provided")
            return JSONResponse({"message": "No session_id provided"}, status_code=400)
        session_id = str(session_id)
        uid = str(payload.uid or request.query_params.get("uid") or session_id)
        segments = [s.model_dump() for s in payload.segments or []]

        result = await buffers.ingest(session_id, uid, segments)
        if result.notification:
            return JSONResponse(result.notification, status_code=200)
        if result.flushed:
            return JSONResponse({}, status_code=200)
        return JSONResponse({}, status_code=202)

    @app.get("/webhook/setup-status")
    async def setup_status():
        return {"is_setup_completed": True}

    @app.get("/status", response_model=StatusResponse)
    async def status():
        """Current buffer and store status."""
        try:
            database_sessions = db.count_sessions_since(clock() - 3600)
        except sqlite3.Error as e:
            logger.error(f"Error getting status: {e}")
            database_sessions = 0
        return {
            "active_sessions": buffers.active_sessions,
            "database_sessions": database_sessions,
            "uptime": clock() - app.state.started_at,
        }

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    @app.get("/readyz")
    async def readyz():
        """Ready when the store answers and, if configured, its health URL does too."""
        try:
            db.ping()
        except sqlite3.Error as e:
            logger.warning(f"Readiness check failed: {e}")
            return JSONResponse({"ready": False}, status_code=503)

        health_url = config["database"].get("store_health_url")
        if health_url:
            try:
                async with httpx.AsyncClient(transport=http_transport, timeout=READY_TIMEOUT) as c:
                    r = await c.get(health_url)
                r.raise_for_status()
            except httpx.HTTPError as e:
                logger.warning(f"Readiness check failed: {e}")
                return JSONResponse({"ready": False}, status_code=503)
        return {"ready": True}

    app.include_router(api_router)
    return app
