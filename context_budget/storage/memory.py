"""MemoryStateStore: process-local ledgers for tests and embedding hosts."""

from __future__ import annotations

import threading

from ..core.store import StateStore
from ..types import ConversationBudgetState


class MemoryStateStore(StateStore):
    def __init__(self) -> None:
        self._records: dict[str, dict] = {}
        self._lock = threading.Lock()

    def save_state(self, state: ConversationBudgetState) -> None:
        with self._lock:
            self._records[state.conversation_id] = state.to_record()

    def load_state(self, conversation_id: str) -> ConversationBudgetState | None:
        with self._lock:
            record = self._records.get(conversation_id)
        if record is None:
            return None
        return ConversationBudgetState.from_record(dict(record))

    def delete_state(self, conversation_id: str) -> bool:
        with self._lock:
            return self._records.pop(conversation_id, None) is not None

    def list_conversations(self) -> list[str]:
        with self._lock:
            items = sorted(self._records.items(), key=lambda kv: kv[1]["saved_at"], reverse=True)
        return [conversation_id for conversation_id, _ in items]
