"""StateStore abstract base class: per-conversation ledger persistence."""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..types import ConversationBudgetState


class StateStore(ABC):
    """Pluggable storage backend for eviction ledgers, keyed by conversation id."""

    @abstractmethod
    def save_state(self, state: ConversationBudgetState) -> None:
        """Store a ledger. Upsert on conversation_id."""

    @abstractmethod
    def load_state(self, conversation_id: str) -> ConversationBudgetState | None:
        """Retrieve a ledger. None if not found or unreadable."""

    @abstractmethod
    def delete_state(self, conversation_id: str) -> bool:
        """Delete a ledger. Returns True if deleted."""

    @abstractmethod
    def list_conversations(self) -> list[str]:
        """Conversation ids with a persisted ledger, most recently saved first."""

    def close(self) -> None:
        """Release any held resources."""
