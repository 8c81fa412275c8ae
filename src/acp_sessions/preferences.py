"""Per-agent authentication preferences.

Remembers, for each agent, either the auth method that last worked or that
the agent accepted session creation without explicit authentication (for
example after the user logged in through the agent's own CLI).

Uses SQLite for persistence across app restarts.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

log = logging.getLogger(__name__)

SKIP_AUTH = "__skip_auth__"


class AuthPreferenceStore:
    """Stores the preferred auth method per agent name."""

    def __init__(self, db_path: Path | None = None):
        # Use XDG cache dir or fallback to home
        if db_path is None:
            cache_dir = Path.home() / ".cache" / "acp-sessions"
            cache_dir.mkdir(parents=True, exist_ok=True)
            db_path = cache_dir / "preferences.db"

        self.db_path = db_path
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS auth_preferences (
                    agent_name TEXT PRIMARY KEY,
                    method_id TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """
            )
            conn.commit()
        log.info(f"Preference database initialized at: {self.db_path}")

    def _get(self, agent_name: str) -> str | None:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "SELECT method_id FROM auth_preferences WHERE agent_name = ?",
                (agent_name,),
            )
            row = cursor.fetchone()
        return row[0] if row else None

    def _set(self, agent_name: str, method_id: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO auth_preferences (agent_name, method_id, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(agent_name) DO UPDATE SET
                    method_id = excluded.method_id,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (agent_name, method_id),
            )
            conn.commit()

    def get_auth_preference(self, agent_name: str) -> str | None:
        """Get the saved auth method id, or None if there is none or auth is skipped."""
        method_id = self._get(agent_name)
        if method_id == SKIP_AUTH:
            return None
        return method_id

    def should_skip_auth(self, agent_name: str) -> bool:
        return self._get(agent_name) == SKIP_AUTH

    def save_auth_preference(self, agent_name: str, method_id: str) -> None:
        self._set(agent_name, method_id)
        log.info(f"💾 Saved auth method {method_id} for {agent_name}")

    def save_skip_auth(self, agent_name: str) -> None:
        self._set(agent_name, SKIP_AUTH)
        log.info(f"💾 {agent_name} works without explicit auth")

    def clear_auth_preference(self, agent_name: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM auth_preferences WHERE agent_name = ? RETURNING method_id",
                (agent_name,),
            )
            row = cursor.fetchone()
            conn.commit()

        if row:
            log.info(f"🗑️  Cleared auth preference {row[0]} for {agent_name}")


# Global preference store instance
_store: AuthPreferenceStore | None = None


def get_auth_preferences() -> AuthPreferenceStore:
    """Get the global preference store."""
    global _store
    if _store is None:
        _store = AuthPreferenceStore()
    return _store
