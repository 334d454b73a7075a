"""SQLiteStateStore: primary ledger backend using stdlib sqlite3."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path

from ..core.store import StateStore
from ..types import ConversationBudgetState
from .helpers import dt_to_str

logger = logging.getLogger(__name__)

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS budget_state (
    conversation_id TEXT PRIMARY KEY,
    version INTEGER NOT NULL,
    record TEXT NOT NULL,
    saved_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_budget_state_saved_at ON budget_state(saved_at);
"""


class SQLiteStateStore(StateStore):
    """One row per conversation holding the flat ledger record as JSON."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._ensure_schema()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
        return self._conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        conn.executescript(SCHEMA_SQL)

    def save_state(self, state: ConversationBudgetState) -> None:
        record = state.to_record()
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                """INSERT OR REPLACE INTO budget_state
                (conversation_id, version, record, saved_at)
                VALUES (?, ?, ?, ?)""",
                (
                    state.conversation_id,
                    state.version,
                    json.dumps(record),
                    dt_to_str(state.saved_at),
                ),
            )
            conn.commit()

    def load_state(self, conversation_id: str) -> ConversationBudgetState | None:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT * FROM budget_state WHERE conversation_id = ?", (conversation_id,)
            ).fetchone()
        if not row:
            return None
        try:
            record = json.loads(row["record"])
        except json.JSONDecodeError:
            logger.warning("Corrupt ledger record for %s, ignoring", conversation_id)
            return None
        record.setdefault("conversation_id", row["conversation_id"])
        record.setdefault("version", row["version"])
        record.setdefault("saved_at", row["saved_at"])
        return ConversationBudgetState.from_record(record)

    def delete_state(self, conversation_id: str) -> bool:
        with self._lock:
            conn = self._get_conn()
            cursor = conn.execute(
                "DELETE FROM budget_state WHERE conversation_id = ?", (conversation_id,)
            )
            conn.commit()
        return cursor.rowcount > 0

    def list_conversations(self) -> list[str]:
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT conversation_id FROM budget_state ORDER BY saved_at DESC"
            ).fetchall()
        return [row["conversation_id"] for row in rows]

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None
