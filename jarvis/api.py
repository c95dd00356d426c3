"""REST endpoints behind the Jarvis control panel (/api/*).

Shared services are read from ``request.app.state`` (see receiver.create_app).
Database errors are left to propagate; the app-level handler turns them into
a generic 500.
"""

import logging
import sqlite3

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request

from jarvis.assistant import NoChatModelError, get_salutation
from jarvis.crypto import validate_omi_api_key
from jarvis.models import ChatResponse
from jarvis.omi import memory_to_transcript
from jarvis.security import log_audit_event, read_json, request_uid, sanitize_text, validate_action

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

CHAT_PREFIX = "CHAT-"
_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, r = divmod(n, 36)
        digits.append(_BASE36[r])
    return "".join(reversed(digits))


def new_chat_session_id(uid: str, now: float) -> str:
    return f"{CHAT_PREFIX}{uid}-{_base36(int(now * 1000))}"


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def require_csrf(request: Request, uid: str = Depends(request_uid)) -> str:
    """Dependency: consume the X-CSRF-Token header for this uid or fail with 403."""
    if not request.app.state.csrf.validate(uid, request.headers.get("x-csrf-token")):
        raise HTTPException(status_code=403, detail="Invalid or missing CSRF token")
    return uid


# --- Transcripts & analytics ---

@router.get("/transcripts")
async def transcripts(request: Request, uid: str = Depends(request_uid)):
    """OMI memories when the user linked a key, otherwise local sessions."""
    state = request.app.state
    settings = state.db.get_user_settings(uid)

    if settings and settings["omi_enabled"] and settings["omi_api_key_encrypted"]:
        api_key = state.secret_box.decrypt(settings["omi_api_key_encrypted"])
        if api_key:
            try:
                memories = await state.omi.fetch_memories(api_key)
            except httpx.HTTPError as e:
                logger.error(f"Error fetching from OMI API: {e}")
                memories = None
            if memories is not None:
                state.db.update_user_settings(uid, key_last_used=state.clock())
                logger.info(f"Fetched {len(memories)} memories from OMI for {uid}")
                return [memory_to_transcript(m) for m in memories]

    sessions = state.db.get_sessions(uid, limit=50)
    return [
        {
            "id": s["id"],
            "text": " ".join(m.get("text", "") for m in s.get("messages") or []),
            "messages": s.get("messages") or [],
            "created": s.get("created_at"),
            "session_id": s["session_id"],
            "source": "jarvis_chat",
        }
        for s in sessions
    ]


@router.get("/analytics")
def analytics(request: Request, uid: str = Depends(request_uid)):
    return request.app.state.actions.analytics(uid)


# --- Actions ---

@router.get("/actions")
def list_actions(request: Request, uid: str = Depends(request_uid)):
    return request.app.state.actions.list_actions(uid)


@router.post("/actions")
async def create_action(request: Request, uid: str = Depends(request_uid)):
    body = await read_json(request)
    action_type, text = validate_action(body)
    return request.app.state.actions.create_action(uid, action_type, text, date=body.get("date"))


@router.put("/actions/{action_id}")
async def update_action(action_id: str, request: Request, uid: str = Depends(request_uid)):
    body = await read_json(request)
    goal = request.app.state.actions.update_action(uid, action_id, bool(body.get("completed")))
    if goal is None:
        raise HTTPException(status_code=404, detail="Action not found")
    return goal


@router.delete("/actions/{action_id}")
def delete_action(action_id: str, request: Request, uid: str = Depends(request_uid)):
    request.app.state.actions.delete_action(uid, action_id)
    return {"success": True}


@router.get("/smart-actions")
async def smart_actions(request: Request, uid: str = Depends(request_uid)):
    state = request.app.state
    return await state.actions.smart_actions(uid, state.synthesizer)


@router.get("/insights")
async def insights(request: Request, uid: str = Depends(request_uid)):
    state = request.app.state
    return await state.actions.insights(uid, state.synthesizer)


# --- Preferences ---

@router.get("/preferences")
def get_preferences(request: Request, uid: str = Depends(request_uid)):
    return {"salutation": get_salutation(request.app.state.db, uid)}


@router.post("/preferences")
async def set_preferences(request: Request, uid: str = Depends(request_uid)):
    body = await read_json(request)
    if not body.get("salutation"):
        raise HTTPException(status_code=400, detail="Salutation is required")
    return {"salutation": request.app.state.actions.set_salutation(uid, body["salutation"])}


# --- Chat ---

def _get_or_create_chat_session(db, session_id: str, uid: str, now: float) -> dict:
    return db.get_session(session_id) or db.create_session(session_id, now, uid=uid)


@router.get("/chat/history")
def chat_history(request: Request, uid: str = Depends(request_uid)):
    """Messages for a chat session, or the user's latest one if none is named."""
    state = request.app.state
    session_id = request.query_params.get("session_id")
    try:
        if not session_id:
            latest = state.db.get_sessions(uid, limit=1, prefix=CHAT_PREFIX)
            session = latest[0] if latest else {}
            return {"session_id": session.get("session_id"), "messages": session.get("messages") or []}
        session = _get_or_create_chat_session(state.db, session_id, uid, state.clock())
        return {"session_id": session["session_id"], "messages": session.get("messages") or []}
    except sqlite3.Error as e:
        logger.error(f"Error fetching chat history: {e}")
        return {"session_id": None, "messages": []}


@router.post("/chat/message", response_model=ChatResponse)
async def chat_message(request: Request, uid: str = Depends(request_uid)):
    """Append the user's message and Jarvis' reply to a chat session.

    Store failures degrade to a canned exchange so the chat UI keeps working.
    """
    state = request.app.state
    body = await read_json(request)
    text = sanitize_text(body.get("text") or body.get("message"))
    if not text:
        raise HTTPException(status_code=400, detail="Text is required")

    now = state.clock()
    session_id = str(body.get("session_id") or "") or new_chat_session_id(uid, now)
    try:
        async with state.buffers.session_lock(session_id):
            session = _get_or_create_chat_session(state.db, session_id, uid, now)
            messages = list(session.get("messages") or [])
            messages.append({"text": text, "timestamp": now, "is_user": True})

            try:
                reply = await state.synthesizer.generate_reply(messages, uid)
            except NoChatModelError as e:
                logger.warning(f"Reply generation failed, using fallback: {e}")
                reply = state.config["assistant"].get("reply_fallback") or "Acknowledged."
            messages.append({"text": reply, "timestamp": now + 0.1, "is_user": False})

            try:
                state.db.update_session(session_id, messages, state.clock(), uid=uid)
            except sqlite3.Error as e:
                logger.error(f"Persist chat failed (non-fatal): {e}")
        return {"session_id": session_id, "messages": messages}
    except sqlite3.Error as e:
        logger.error(f"Error sending chat message: {e}")
        return {
            "session_id": str(body["session_id"]) if body.get("session_id") else None,
            "messages": [
                {"text": text, "timestamp": now, "is_user": True},
                {"text": "Understood. Let's continue.", "timestamp": now + 0.1, "is_user": False},
            ],
        }


# --- OMI key management ---

@router.get("/csrf-token")
def csrf_token(request: Request, uid: str = Depends(request_uid)):
    return {"token": request.app.state.csrf.issue(uid)}


@router.get("/omi/settings")
def omi_settings(request: Request, uid: str = Depends(request_uid)):
    settings = request.app.state.db.get_user_settings(uid)
    if not settings:
        return {"omi_enabled": False, "has_key": False}
    return {
        "omi_enabled": settings["omi_enabled"],
        "has_key": bool(settings["key_added_at"]),
        "key_added_at": settings["key_added_at"],
        "key_last_used": settings["key_last_used"],
    }


@router.post("/omi/key")
async def save_omi_key(request: Request, uid: str = Depends(request_uid)):
    """Validate an OMI API key and, unless test_only, store it encrypted."""
    state = request.app.state
    body = await read_json(request)
    api_key = body.get("api_key")
    test_only = bool(body.get("test_only"))
    ip = _client_ip(request)

    if not test_only and not state.csrf.validate(uid, request.headers.get("x-csrf-token")):
        raise HTTPException(status_code=403, detail="Invalid or missing CSRF token")

    if state.attempts.is_locked_out(uid):
        log_audit_event("OMI_KEY_LOCKOUT", uid, ip=ip)
        raise HTTPException(status_code=429, detail="Too many failed attempts. Please try again later.")

    if not api_key:
        raise HTTPException(status_code=400, detail="API key required")

    if not validate_omi_api_key(api_key):
        state.attempts.record_failure(uid)
        log_audit_event("OMI_KEY_INVALID", uid, ip=ip)
        raise HTTPException(status_code=400, detail="Invalid API key format")

    api_key = api_key.strip()
    try:
        status = await state.omi.probe_key(api_key)
    except httpx.HTTPError as e:
        logger.error(f"Error validating OMI key: {e}")
        raise HTTPException(status_code=500, detail="Failed to validate API key")

    if not 200 <= status < 300:
        state.attempts.record_failure(uid)
        log_audit_event("OMI_KEY_TEST_FAILED", uid, ip=ip, status=status)
        raise HTTPException(status_code=400, detail="Invalid or unauthorized API key")

    state.attempts.clear(uid)

    if test_only:
        log_audit_event("OMI_KEY_VALIDATION_PASSED", uid, ip=ip)
        return {"success": True, "message": "API key validation successful", "validated_only": True}

    encrypted = state.secret_box.encrypt(api_key)
    if not encrypted:
        logger.error("Cannot store OMI key: encryption is not configured")
        raise HTTPException(status_code=500, detail="Failed to save API key")

    state.db.upsert_user_settings(uid, omi_api_key_encrypted=encrypted, omi_enabled=1,
                                  key_added_at=state.clock())
    log_audit_event("OMI_KEY_ADDED", uid, ip=ip)
    return {"success": True, "message": "OMI API key saved successfully"}


@router.delete("/omi/key")
def delete_omi_key(request: Request, uid: str = Depends(require_csrf)):
    request.app.state.db.update_user_settings(
        uid, omi_api_key_encrypted=None, omi_enabled=0, key_added_at=None, key_last_used=None)
    log_audit_event("OMI_KEY_REMOVED", uid, ip=_client_ip(request))
    return {"success": True, "message": "OMI API key removed successfully"}


@router.patch("/omi/toggle")
async def toggle_omi(request: Request, uid: str = Depends(require_csrf)):
    body = await read_json(request)
    enabled = bool(body.get("enabled"))
    request.app.state.db.update_user_settings(uid, omi_enabled=int(enabled))
    log_audit_event("OMI_TOGGLE", uid, ip=_client_ip(request), enabled=enabled)
    return {"success": True, "omi_enabled": enabled}
