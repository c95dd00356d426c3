"""SQLite persistence layer for Jarvis."""

import json
import logging
import os
import sqlite3
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

USER_SETTINGS_FIELDS = ("omi_api_key_encrypted", "omi_enabled", "key_added_at", "key_last_used")


class JarvisDB:
    def __init__(self, db_path: str = None):
        if db_path is None:
            db_path = str(Path(__file__).parent.parent / "data" / "jarvis.db")
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def _create_tables(self):
        with self._lock:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT UNIQUE NOT NULL,
                    uid TEXT,
                    messages TEXT NOT NULL DEFAULT '[]',
                    last_activity REAL NOT NULL,
                    created_at REAL DEFAULT (strftime('%s', 'now'))
                );
                CREATE INDEX IF NOT EXISTS idx_sessions_uid ON sessions(uid);
                CREATE INDEX IF NOT EXISTS idx_sessions_last_activity ON sessions(last_activity);

                -- goals and analytics are whole-document columns; version guards
                -- read-modify-write cycles against concurrent writers
                CREATE TABLE IF NOT EXISTS users (
                    uid TEXT PRIMARY KEY,
                    goals TEXT NOT NULL DEFAULT '[]',
                    analytics TEXT NOT NULL DEFAULT '{}',
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at REAL DEFAULT (strftime('%s', 'now'))
                );

                CREATE TABLE IF NOT EXISTS user_settings (
                    uid TEXT PRIMARY KEY,
                    omi_api_key_encrypted TEXT,
                    omi_enabled INTEGER DEFAULT 0,
                    key_added_at REAL,
                    key_last_used REAL
                );
            """)
            self._conn.commit()

    # --- Sessions ---

    def get_session(self, session_id: str) -> dict | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
        return self._row_to_dict(row) if row else None

    def create_session(self, session_id: str, last_activity: float, uid: str = None,
                       messages: list = None) -> dict:
        """Insert a session row unless one exists, then return the stored row."""
        with self._lock:
            self._conn.execute("""
                INSERT INTO sessions (session_id, uid, messages, last_activity, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO NOTHING
            """, (session_id, uid, json.dumps(messages or []), last_activity, last_activity))
            self._conn.commit()
            row = self._conn.execute(
                "SELECT * FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
        return self._row_to_dict(row)

    def update_session(self, session_id: str, messages: list, last_activity: float,
                       uid: str = None) -> bool:
        with self._lock:
            cur = self._conn.execute("""
                UPDATE sessions SET messages = ?, last_activity = ?, uid = COALESCE(?, uid)
                WHERE session_id = ?
            """, (json.dumps(messages), last_activity, uid, session_id))
            self._conn.commit()
            return cur.rowcount > 0

    def get_sessions(self, uid: str, limit: int = None, prefix: str = None) -> list[dict]:
        q = "SELECT * FROM sessions WHERE uid = ?"
        params: list = [uid]
        if prefix:
            q += " AND session_id LIKE ?"
            params.append(f"{prefix}%")
        q += " ORDER BY created_at DESC, id DESC"
        if limit:
            q += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(q, params).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def list_sessions(self, limit: int = 50) -> list[dict]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM sessions ORDER BY last_activity DESC LIMIT ?", (limit,)).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def count_sessions_since(self, since: float) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS c FROM sessions WHERE last_activity >= ?", (since,)).fetchone()
        return row["c"]

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            cur = self._conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
            self._conn.commit()
            return cur.rowcount > 0

    def delete_sessions_before(self, cutoff: float) -> int:
        with self._lock:
            cur = self._conn.execute("DELETE FROM sessions WHERE last_activity < ?", (cutoff,))
            self._conn.commit()
            return cur.rowcount

    # --- Users (goals + analytics) ---

    def get_user(self, uid: str) -> dict | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM users WHERE uid = ?", (uid,)).fetchone()
        return self._row_to_dict(row) if row else None

    def ensure_user(self, uid: str):
        with self._lock:
            self._conn.execute("INSERT OR IGNORE INTO users (uid) VALUES (?)", (uid,))
            self._conn.commit()

    def save_goals(self, uid: str, goals: list, expected_version: int | None) -> bool:
        """Write the goals array if the row is still at expected_version.

        expected_version=None means the caller saw no row; the write then only
        succeeds if nobody created one in the meantime.
        """
        return self._write_user_document(uid, "goals", goals, expected_version)

    def save_analytics(self, uid: str, analytics: dict, expected_version: int | None) -> bool:
        return self._write_user_document(uid, "analytics", analytics, expected_version)

    def _write_user_document(self, uid: str, column: str, value, expected_version: int | None) -> bool:
        payload = json.dumps(value)
        with self._lock:
            if expected_version is None:
                cur = self._conn.execute(
                    f"INSERT INTO users (uid, {column}, version) VALUES (?, ?, 1) "
                    f"ON CONFLICT(uid) DO NOTHING", (uid, payload))
            else:
                cur = self._conn.execute(
                    f"UPDATE users SET {column} = ?, version = version + 1 "
                    f"WHERE uid = ? AND version = ?", (payload, uid, expected_version))
            self._conn.commit()
            return cur.rowcount > 0

    # --- User settings (OMI key) ---

    def get_user_settings(self, uid: str) -> dict | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM user_settings WHERE uid = ?", (uid,)).fetchone()
        if not row:
            return None
        d = dict(row)
        d["omi_enabled"] = bool(d["omi_enabled"])
        return d

    def upsert_user_settings(self, uid: str, **fields):
        cols = [k for k in fields if k in USER_SETTINGS_FIELDS]
        if not cols:
            return
        values = [fields[k] for k in cols]
        updates = ", ".join(f"{k}=excluded.{k}" for k in cols)
        with self._lock:
            self._conn.execute(f"""
                INSERT INTO user_settings (uid, {', '.join(cols)})
                VALUES (?, {', '.join('?' for _ in cols)})
                ON CONFLICT(uid) DO UPDATE SET {updates}
            """, [uid, *values])
            self._conn.commit()

    def update_user_settings(self, uid: str, **fields) -> bool:
        cols = [k for k in fields if k in USER_SETTINGS_FIELDS]
        if not cols:
            return False
        sets = ", ".join(f"{k} = ?" for k in cols)
        with self._lock:
            cur = self._conn.execute(
                f"UPDATE user_settings SET {sets} WHERE uid = ?", [*(fields[k] for k in cols), uid])
            self._conn.commit()
            return cur.rowcount > 0

    # --- Health & Audit ---

    def ping(self) -> bool:
        with self._lock:
            self._conn.execute("SELECT 1").fetchone()
        return True

    def audit(self) -> dict:
        """Return row counts per table and storage size."""
        counts = {}
        with self._lock:
            for table in ("sessions", "users", "user_settings"):
                row = self._conn.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()
                counts[table] = row["c"]
        try:
            counts["storage_bytes"] = os.path.getsize(self._db_path)
        except OSError:
            counts["storage_bytes"] = 0
        return counts

    # --- Helpers ---

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> dict:
        d = dict(row)
        # Parse JSON fields
        for k in ("messages", "goals", "analytics"):
            if k in d and isinstance(d[k], str):
                try:
                    d[k] = json.loads(d[k])
                except (json.JSONDecodeError, TypeError):
                    d[k] = [] if k != "analytics" else {}
        return d

    def close(self):
        self._conn.close()
