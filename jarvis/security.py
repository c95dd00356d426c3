"""Request validation, CSRF tokens, key-attempt lockout and audit logging."""

import json
import logging
import re
import secrets
import time
from datetime import datetime, timezone

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("jarvis.audit")

UID_MIN_LEN = 3
UID_MAX_LEN = 50
MAX_TEXT_LEN = 5000
MAX_ACTION_TEXT_LEN = 500
ACTION_TYPES = ("task", "reminder", "goal", "event", "note")

_UID_STRIP = re.compile(r"[^a-zA-Z0-9_-]")
_SECRET_FIELDS = ("apiKey", "api_key", "key", "secret", "token")


# --- Input validation ---

def validate_uid(uid) -> str:
    """Validate a caller-supplied uid and strip it to [A-Za-z0-9_-].

    Raises:
        HTTPException: 400 if the uid is missing, not a string, or outside 3-50 chars.
    """
    if not uid or not isinstance(uid, str) or not (UID_MIN_LEN <= len(uid) <= UID_MAX_LEN):
        raise HTTPException(status_code=400, detail="Invalid user ID format")
    return _UID_STRIP.sub("", uid)


async def read_json(request: Request) -> dict:
    """Request body as a dict; empty or malformed bodies read as {}."""
    try:
        body = await request.json()
    except (ValueError, UnicodeDecodeError):
        return {}
    return body if isinstance(body, dict) else {}


async def request_uid(request: Request) -> str:
    """FastAPI dependency: uid from the JSON body, else the query string."""
    uid = None
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        uid = (await read_json(request)).get("uid")
    if not uid:
        uid = request.query_params.get("uid")
    return validate_uid(uid)


def sanitize_text(text) -> str:
    """Light cleanup for chat text: drop angle brackets, trim, cap length."""
    if not text or not isinstance(text, str):
        return ""
    return text.replace("<", "").replace(">", "").strip()[:MAX_TEXT_LEN]


def sanitize_user_input(text) -> str:
    """Stricter cleanup for stored text: also removes quote characters."""
    if not text or not isinstance(text, str):
        return ""
    return re.sub(r"[<>'\"]", "", text).strip()[:MAX_TEXT_LEN]


def validate_action(body: dict) -> tuple[str, str]:
    """Validate an action payload.

    Returns:
        (type, sanitized text); type defaults to "task".

    Raises:
        HTTPException: 400 on missing/oversized text or an unknown type.
    """
    text = body.get("text")
    if not text or not isinstance(text, str) or len(text) > MAX_ACTION_TEXT_LEN:
        raise HTTPException(status_code=400, detail="Invalid action text")
    action_type = body.get("type")
    if action_type and action_type not in ACTION_TYPES:
        raise HTTPException(status_code=400, detail="Invalid action type")
    return action_type or "task", sanitize_user_input(text)


# --- CSRF ---

class CsrfTokenStore:
    """Single-use CSRF tokens bound to a uid.

    Args:
        ttl: Token lifetime in seconds.
        clock: Callable returning epoch seconds.
    """

    def __init__(self, ttl: float = 900, clock=time.time):
        self.ttl = ttl
        self.clock = clock
        self._tokens: dict[str, float] = {}

    def issue(self, uid: str) -> str:
        now = self.clock()
        token = secrets.token_hex(32)
        self._tokens[f"{uid}:{token}"] = now + self.ttl
        for key in [k for k, exp in self._tokens.items() if exp < now]:
            del self._tokens[key]
        return token

    def validate(self, uid: str, token: str | None) -> bool:
        """Check and consume a token. A token validates at most once."""
        if not token:
            return False
        key = f"{uid}:{token}"
        expiry = self._tokens.get(key)
        if expiry is None or expiry < self.clock():
            return False
        del self._tokens[key]
        return True

    def __len__(self):
        return len(self._tokens)


# --- Failed key attempts ---

class FailedAttemptTracker:
    """Locks a uid out of key management after repeated failures.

    Args:
        max_attempts: Failures that trigger a lockout.
        lockout_duration: Lockout length in seconds.
        clock: Callable returning epoch seconds.
    """

    def __init__(self, max_attempts: int = 3, lockout_duration: float = 1800, clock=time.time):
        self.max_attempts = max_attempts
        self.lockout_duration = lockout_duration
        self.clock = clock
        self._attempts: dict[str, dict] = {}

    def record_failure(self, uid: str) -> bool:
        """Count a failure. Returns False once the uid is (or becomes) locked out."""
        now = self.clock()
        entry = self._attempts.setdefault(uid, {"count": 0, "locked_until": 0.0})
        if now < entry["locked_until"]:
            return False
        entry["count"] += 1
        if entry["count"] >= self.max_attempts:
            entry["locked_until"] = now + self.lockout_duration
            entry["count"] = 0
            logger.warning(f"Key management locked for {uid} after {self.max_attempts} failed attempts")
            return False
        return True

    def clear(self, uid: str):
        self._attempts.pop(uid, None)

    def is_locked_out(self, uid: str) -> bool:
        entry = self._attempts.get(uid)
        return bool(entry) and self.clock() < entry["locked_until"]


# --- Audit ---

def log_audit_event(event: str, uid: str, ip: str | None = None, **metadata):
    """Emit one JSON audit line on the jarvis.audit logger, secrets removed."""
    clean = {k: v for k, v in metadata.items() if k not in _SECRET_FIELDS}
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
        "uid": uid,
        "ip": ip,
        "metadata": clean,
    }
    audit_logger.info(json.dumps(entry, default=str))
