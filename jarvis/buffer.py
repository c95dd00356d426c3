"""Per-session transcript buffering, silence detection and flush scheduling.

Each OMI session gets a SessionBuffer that coalesces streaming segments into
messages. The buffer moves between three states:

    IDLE       no buffered messages
    BUFFERING  messages waiting for the next analysis flush
    SILENT     the speaker went quiet for longer than the silence threshold;
               flushing is suppressed until enough new words arrive

A flush happens once the analysis interval has elapsed since the previous
one. If any buffered message mentions the wake word the flush yields a
notification prompt for the device; either way the buffer is emptied.
"""

import asyncio
import logging
import re
import sqlite3
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum

from jarvis.prompts import create_notification_prompt

logger = logging.getLogger(__name__)

WAKE_PATTERN = re.compile(r"[jhy]arvis", re.IGNORECASE)

# Timing defaults (seconds)
ANALYSIS_INTERVAL = 30
SILENCE_THRESHOLD = 120
MIN_WORDS_AFTER_SILENCE = 5
MERGE_WINDOW = 2.0
CLEANUP_INTERVAL = 300
SESSION_TTL = 3600
STORE_RETENTION = 86400


class SessionState(str, Enum):
    IDLE = "idle"
    BUFFERING = "buffering"
    SILENT = "silent"


@dataclass
class Message:
    text: str
    timestamp: float
    is_user: bool = False

    def to_dict(self) -> dict:
        return {"text": self.text, "timestamp": self.timestamp, "is_user": self.is_user}

    @classmethod
    def from_dict(cls, d: dict) -> "Message":
        return cls(text=str(d.get("text", "")), timestamp=float(d.get("timestamp") or 0.0),
                   is_user=bool(d.get("is_user", False)))


@dataclass
class SessionBuffer:
    session_id: str
    last_analysis_time: float
    last_activity: float
    messages: list[Message] = field(default_factory=list)
    words_after_silence: int = 0
    state: SessionState = SessionState.IDLE

    @property
    def silence_detected(self) -> bool:
        return self.state is SessionState.SILENT

    def settle(self):
        """Recompute IDLE/BUFFERING from the message list. SILENT is sticky."""
        if self.state is not SessionState.SILENT:
            self.state = SessionState.BUFFERING if self.messages else SessionState.IDLE

    def clear(self):
        self.messages = []
        self.settle()


@dataclass
class IngestResult:
    """Outcome of feeding one webhook payload into a session buffer."""
    flushed: bool = False
    notification: dict | None = None


class SessionBufferManager:
    """Owns every in-memory SessionBuffer and its persisted mirror.

    Args:
        db: JarvisDB used for best-effort persistence. May be None for a
            memory-only manager.
        clock: Callable returning the current epoch time in seconds.
        analysis_interval: Seconds between analysis flushes.
        silence_threshold: Seconds of inactivity that count as silence.
        min_words_after_silence: Words needed to leave the silent state.
        merge_window: Max timestamp gap for merging into the last message.
        cleanup_interval: Seconds between eviction sweeps.
        session_ttl: Idle seconds before a buffer is evicted from memory.
        store_retention: Age in seconds after which stored rows are deleted.
    """

    def __init__(self, db=None, clock=time.time, analysis_interval=ANALYSIS_INTERVAL,
                 silence_threshold=SILENCE_THRESHOLD, min_words_after_silence=MIN_WORDS_AFTER_SILENCE,
                 merge_window=MERGE_WINDOW, cleanup_interval=CLEANUP_INTERVAL,
                 session_ttl=SESSION_TTL, store_retention=STORE_RETENTION):
        self.db = db
        self.clock = clock
        self.analysis_interval = analysis_interval
        self.silence_threshold = silence_threshold
        self.min_words_after_silence = min_words_after_silence
        self.merge_window = merge_window
        self.cleanup_interval = cleanup_interval
        self.session_ttl = session_ttl
        self.store_retention = store_retention

        self.buffers: dict[str, SessionBuffer] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: dict[str, int] = {}
        self._sweep_task: asyncio.Task | None = None

    @classmethod
    def from_config(cls, cfg: dict, db=None, clock=time.time) -> "SessionBufferManager":
        b = cfg.get("buffer", {})
        return cls(
            db=db, clock=clock,
            analysis_interval=b.get("analysis_interval", ANALYSIS_INTERVAL),
            silence_threshold=b.get("silence_threshold", SILENCE_THRESHOLD),
            min_words_after_silence=b.get("min_words_after_silence", MIN_WORDS_AFTER_SILENCE),
            merge_window=b.get("merge_window", MERGE_WINDOW),
            cleanup_interval=b.get("cleanup_interval", CLEANUP_INTERVAL),
            session_ttl=b.get("session_ttl", SESSION_TTL),
            store_retention=b.get("store_retention", STORE_RETENTION),
        )

    @property
    def active_sessions(self) -> int:
        return len(self.buffers)

    @asynccontextmanager
    async def session_lock(self, session_id: str):
        """Hold the per-session lock for the duration of the block.

        Chat appends await a reply provider while holding it, so concurrent
        messages to one chat session queue up here. Webhook ingest never
        awaits inside the block and only takes the lock to stay ordered with
        those appends. The entry is dropped once nobody holds or waits on it
        and the session has no buffer.
        """
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._lock_holders[session_id] = self._lock_holders.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_holders[session_id] - 1
            if remaining:
                self._lock_holders[session_id] = remaining
            else:
                del self._lock_holders[session_id]
                if session_id not in self.buffers:
                    del self._locks[session_id]

    # --- Buffer lifecycle ---

    def get_buffer(self, session_id: str) -> SessionBuffer:
        """Return the session's buffer, loading or creating it as needed.

        An existing buffer that has been idle past the silence threshold is
        switched to SILENT and its messages dropped. A buffer restored from
        the store resumes its analysis timer from the row's last activity.
        """
        now = self.clock()
        buf = self.buffers.get(session_id)

        if buf is not None:
            if now - buf.last_activity > self.silence_threshold:
                buf.state = SessionState.SILENT
                buf.words_after_silence = 0
                buf.messages = []
                logger.info(f"Silence detected for session {session_id}, messages cleared")
            buf.last_activity = now
            return buf

        buf = SessionBuffer(session_id=session_id, last_analysis_time=now, last_activity=now)
        if self.db is not None:
            try:
                row = self.db.get_session(session_id)
                if row:
                    buf.messages = [Message.from_dict(m) for m in row.get("messages") or []]
                    buf.last_analysis_time = row.get("last_activity") or now
                else:
                    self.db.create_session(session_id, last_activity=now)
            except sqlite3.Error as e:
                logger.error(f"Error loading session {session_id} from database: {e}")
        buf.settle()
        self.buffers[session_id] = buf
        return buf

    def add_segment(self, buf: SessionBuffer, text: str, timestamp: float, is_user: bool = False):
        """Feed one transcript segment into a buffer.

        While SILENT, word counts accumulate; reaching the minimum ends the
        silent period and restarts the analysis timer. The segment is then
        merged into the last message when the speaker matches and the
        timestamps are within the merge window, otherwise appended.
        """
        text = (text or "").strip()
        if not text:
            return

        if buf.state is SessionState.SILENT:
            buf.words_after_silence += len(text.split())
            if buf.words_after_silence >= self.min_words_after_silence:
                buf.state = SessionState.IDLE
                buf.last_analysis_time = self.clock()
                logger.info(f"Silence period ended for session {buf.session_id}, starting fresh conversation")

        last = buf.messages[-1] if buf.messages else None
        if last is not None and last.is_user == is_user and abs(last.timestamp - timestamp) < self.merge_window:
            last.text += " " + text
        else:
            buf.messages.append(Message(text=text, timestamp=timestamp, is_user=is_user))
        buf.settle()

    def is_due(self, buf: SessionBuffer) -> bool:
        return (self.clock() - buf.last_analysis_time >= self.analysis_interval
                and bool(buf.messages)
                and not buf.silence_detected)

    def flush(self, buf: SessionBuffer) -> dict | None:
        """End the current buffering epoch.

        Returns:
            Notification payload if any message matched the wake pattern, else None.
        """
        messages = sorted(buf.messages, key=lambda m: m.timestamp)
        notification = None
        if any(WAKE_PATTERN.search(m.text) for m in messages):
            notification = create_notification_prompt(messages)
            logger.info(f"Notification generated for session {buf.session_id}")
        buf.last_analysis_time = self.clock()
        buf.clear()
        return notification

    def save_buffer(self, session_id: str, uid: str | None = None):
        """Persist the buffer and make sure the owning user row exists. Never raises."""
        buf = self.buffers.get(session_id)
        if buf is None or self.db is None:
            return
        messages = [m.to_dict() for m in buf.messages]
        try:
            if not self.db.update_session(session_id, messages, buf.last_activity, uid=uid):
                self.db.create_session(session_id, buf.last_activity, uid=uid, messages=messages)
            self.db.ensure_user(uid or session_id)
        except sqlite3.Error as e:
            logger.error(f"Error saving buffer for session {session_id}: {e}")

    async def ingest(self, session_id: str, uid: str | None, segments: list[dict]) -> IngestResult:
        """Apply a webhook payload to a session and persist the result.

        Args:
            session_id: OMI session identifier.
            uid: Owning user; defaults to the session id.
            segments: Dicts with text, optional start and is_user.

        Returns:
            IngestResult telling whether a flush happened and any notification.
        """
        uid = uid or session_id
        async with self.session_lock(session_id):
            buf = self.get_buffer(session_id)
            now = self.clock()
            for seg in segments:
                if not isinstance(seg, dict):
                    continue
                self.add_segment(buf, seg.get("text") or "", float(seg.get("start") or now),
                                 bool(seg.get("is_user", False)))

            result = IngestResult()
            if self.is_due(buf):
                result.flushed = True
                result.notification = self.flush(buf)
            self.save_buffer(session_id, uid)
        return result

    # --- Eviction ---

    def cleanup_old_sessions(self) -> list[str]:
        """Evict idle buffers from memory and prune expired rows from the store."""
        now = self.clock()
        expired = [sid for sid, b in self.buffers.items() if now - b.last_activity > self.session_ttl]
        for sid in expired:
            del self.buffers[sid]
            if sid not in self._lock_holders:
                self._locks.pop(sid, None)
            logger.info(f"Session {sid} removed due to inactivity")
        self.cleanup_store(now)
        return expired

    def cleanup_store(self, now: float | None = None) -> int:
        if self.db is None:
            return 0
        cutoff = (self.clock() if now is None else now) - self.store_retention
        try:
            deleted = self.db.delete_sessions_before(cutoff)
        except sqlite3.Error as e:
            logger.error(f"Error cleaning up old sessions from database: {e}")
            return 0
        if deleted:
            logger.info(f"Deleted {deleted} stored sessions older than {self.store_retention}s")
        return deleted

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.cleanup_old_sessions()
            except Exception as e:
                logger.error(f"Session sweep failed: {e}", exc_info=True)

    def start(self):
        """Start the periodic eviction sweep on the running loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self):
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
