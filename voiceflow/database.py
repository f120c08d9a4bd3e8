"""SQLite persistence layer for VoiceFlow."""

import logging
import sqlite3
import threading
import time
from pathlib import Path

from voiceflow.models import CalendarEvent, CalendarIntegration, ProviderEvent, to_iso

logger = logging.getLogger(__name__)

# columns callers may change through update_integration()
_INTEGRATION_FIELDS = ("access_token", "refresh_token", "token_expiry", "calendar_id", "enabled")


class VoiceFlowDB:
    def __init__(self, db_path: str = None):
        if db_path is None:
            db_path = str(Path(__file__).parent.parent / "data" / "voiceflow.db")
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()

    def _create_tables(self):
        with self._lock:
            c = self._conn
            c.executescript("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL DEFAULT (strftime('%s', 'now'))
                );
                CREATE TABLE IF NOT EXISTS calendar_integrations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    provider TEXT NOT NULL,  -- 'google', 'outlook', 'apple'
                    access_token TEXT NOT NULL,
                    refresh_token TEXT,
                    token_expiry REAL,
                    calendar_id TEXT,
                    enabled INTEGER DEFAULT 1,
                    created_at REAL DEFAULT (strftime('%s', 'now')),
                    updated_at REAL DEFAULT (strftime('%s', 'now'))
                );
                CREATE TABLE IF NOT EXISTS calendar_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    integration_id INTEGER NOT NULL
                        REFERENCES calendar_integrations(id) ON DELETE CASCADE,
                    user_id INTEGER,
                    external_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    start_time TEXT,  -- ISO-8601 UTC
                    end_time TEXT,
                    all_day INTEGER DEFAULT 0,
                    location TEXT,
                    url TEXT,
                    last_synced REAL
                );
                CREATE TABLE IF NOT EXISTS notes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER,
                    title TEXT NOT NULL,
                    content TEXT NOT NULL,
                    category TEXT DEFAULT 'work',
                    extracted_tasks INTEGER DEFAULT 0,  -- number of tasks created from this note
                    timestamp REAL DEFAULT (strftime('%s', 'now'))
                );
                CREATE TABLE IF NOT EXISTS tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER,
                    title TEXT NOT NULL,
                    description TEXT,
                    completed INTEGER DEFAULT 0,
                    due_date TEXT,
                    category TEXT DEFAULT 'work',
                    priority TEXT DEFAULT 'medium',
                    created_at REAL DEFAULT (strftime('%s', 'now'))
                );
                CREATE INDEX IF NOT EXISTS idx_integrations_user ON calendar_integrations(user_id, provider);
                CREATE INDEX IF NOT EXISTS idx_events_integration ON calendar_events(integration_id);
                CREATE INDEX IF NOT EXISTS idx_events_user_start ON calendar_events(user_id, start_time);
            """)
            c.commit()

        self._init_default_settings()

    # --- Settings ---

    SETTING_DEFAULTS = {
        'always_listening': 'true',
        'wake_word': 'hey assistant',
        'voice_gender': 'female',
        'save_conversations': 'true',
    }

    def _init_default_settings(self):
        with self._lock:
            for key, value in self.SETTING_DEFAULTS.items():
                self._conn.execute(
                    "INSERT OR IGNORE INTO settings (key, value) VALUES (?, ?)",
                    (key, value))
            self._conn.commit()

    def get_setting(self, key: str, default=None) -> str | None:
        with self._lock:
            row = self._conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        if row:
            return row["value"]
        return default

    def get_bool_setting(self, key: str, default: bool = False) -> bool:
        value = self.get_setting(key)
        if value is None:
            return default
        return value.strip().lower() in ("1", "true", "yes", "on")

    def set_setting(self, key: str, value: str):
        with self._lock:
            self._conn.execute("""
                INSERT INTO settings (key, value, updated_at) VALUES (?, ?, strftime('%s', 'now'))
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, value))
            self._conn.commit()

    def get_all_settings(self) -> dict:
        with self._lock:
            rows = self._conn.execute("SELECT key, value FROM settings").fetchall()
        return {r["key"]: r["value"] for r in rows}

    # --- Calendar integrations ---

    def create_integration(self, user_id: int, provider: str, access_token: str,
                           refresh_token: str = None, token_expiry: float = None,
                           calendar_id: str = None, enabled: bool = True) -> CalendarIntegration:
        now = time.time()
        with self._lock:
            cur = self._conn.execute("""
                INSERT INTO calendar_integrations (user_id, provider, access_token, refresh_token,
                    token_expiry, calendar_id, enabled, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (user_id, provider, access_token, refresh_token, token_expiry,
                  calendar_id, int(enabled), now, now))
            self._conn.commit()
            integration_id = cur.lastrowid
        return self.get_integration(integration_id)

    def get_integration(self, integration_id: int) -> CalendarIntegration | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM calendar_integrations WHERE id = ?", (integration_id,)).fetchone()
        return self._row_to_integration(row) if row else None

    def get_integrations(self, user_id: int) -> list[CalendarIntegration]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM calendar_integrations WHERE user_id = ? ORDER BY id",
                (user_id,)).fetchall()
        return [self._row_to_integration(r) for r in rows]

    def find_integration(self, user_id: int, provider: str) -> CalendarIntegration | None:
        """First integration row for (user_id, provider), or None."""
        with self._lock:
            row = self._conn.execute("""
                SELECT * FROM calendar_integrations
                WHERE user_id = ? AND provider = ? ORDER BY id LIMIT 1
            """, (user_id, provider)).fetchone()
        return self._row_to_integration(row) if row else None

    def update_integration(self, integration_id: int, **kwargs) -> CalendarIntegration | None:
        updates = {k: v for k, v in kwargs.items() if k in _INTEGRATION_FIELDS}
        if "enabled" in updates:
            updates["enabled"] = int(bool(updates["enabled"]))
        if updates:
            assignments = ", ".join(f"{k} = ?" for k in updates)
            with self._lock:
                self._conn.execute(
                    f"UPDATE calendar_integrations SET {assignments}, updated_at = ? WHERE id = ?",
                    (*updates.values(), time.time(), integration_id))
                self._conn.commit()
        return self.get_integration(integration_id)

    def delete_integration(self, integration_id: int) -> bool:
        """Delete an integration and its events atomically."""
        with self._lock, self._conn:
            self._conn.execute(
                "DELETE FROM calendar_events WHERE integration_id = ?", (integration_id,))
            cur = self._conn.execute(
                "DELETE FROM calendar_integrations WHERE id = ?", (integration_id,))
            return cur.rowcount > 0

    # --- Calendar events ---

    def replace_events(self, integration: CalendarIntegration,
                       events: list[ProviderEvent]) -> int:
        """Replace every stored event of an integration in a single transaction.

        Args:
            integration: Owner of the events.
            events: Freshly fetched provider events.

        Returns:
            Number of events written.
        """
        now = time.time()
        rows = [
            (integration.id, integration.user_id, e.external_id, e.title, e.description,
             to_iso(e.start_time), to_iso(e.end_time), int(e.all_day), e.location, e.url, now)
            for e in events
        ]
        with self._lock, self._conn:
            self._conn.execute(
                "DELETE FROM calendar_events WHERE integration_id = ?", (integration.id,))
            self._conn.executemany("""
                INSERT INTO calendar_events (integration_id, user_id, external_id, title,
                    description, start_time, end_time, all_day, location, url, last_synced)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, rows)
        return len(rows)

    def get_events(self, user_id: int, integration_id: int = None) -> list[CalendarEvent]:
        q = """
            SELECT e.*, i.provider AS provider FROM calendar_events e
            JOIN calendar_integrations i ON i.id = e.integration_id
            WHERE e.user_id = ?
        """
        params = [user_id]
        if integration_id is not None:
            q += " AND e.integration_id = ?"
            params.append(integration_id)
        q += " ORDER BY e.start_time, e.id"
        with self._lock:
            rows = self._conn.execute(q, params).fetchall()
        return [self._row_to_event(r) for r in rows]

    def count_events(self, integration_id: int) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM calendar_events WHERE integration_id = ?",
                (integration_id,)).fetchone()
        return row["n"]

    # --- Notes / tasks ---

    def save_note(self, user_id: int, title: str, content: str, category: str = "work",
                  extracted_tasks: int = 0) -> dict:
        with self._lock:
            cur = self._conn.execute("""
                INSERT INTO notes (user_id, title, content, category, extracted_tasks, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (user_id, title, content, category,
                  extracted_tasks, time.time()))
            self._conn.commit()
            row = self._conn.execute("SELECT * FROM notes WHERE id = ?", (cur.lastrowid,)).fetchone()
        return self._row_to_dict(row)

    def save_task(self, user_id: int, title: str, description: str = None,
                  due_date: str = None, category: str = "work",
                  priority: str = "medium") -> dict:
        with self._lock:
            cur = self._conn.execute("""
                INSERT INTO tasks (user_id, title, description, due_date, category, priority, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (user_id, title, description, due_date, category, priority, time.time()))
            self._conn.commit()
            row = self._conn.execute("SELECT * FROM tasks WHERE id = ?", (cur.lastrowid,)).fetchone()
        return self._row_to_dict(row)

    def get_tasks(self, user_id: int, limit: int = 50) -> list[dict]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM tasks WHERE user_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                (user_id, limit)).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def get_notes(self, user_id: int, limit: int = 50) -> list[dict]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM notes WHERE user_id = ? ORDER BY timestamp DESC, id DESC LIMIT ?",
                (user_id, limit)).fetchall()
        return [self._row_to_dict(r) for r in rows]

    # --- Helpers ---

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> dict:
        d = dict(row)
        if "completed" in d:
            d["completed"] = bool(d["completed"])
        return d

    @staticmethod
    def _row_to_integration(row: sqlite3.Row) -> CalendarIntegration:
        d = dict(row)
        d["enabled"] = bool(d["enabled"])
        return CalendarIntegration(**d)

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> CalendarEvent:
        d = dict(row)
        d["all_day"] = bool(d["all_day"])
        return CalendarEvent(**d)

    def close(self):
        self._conn.close()
