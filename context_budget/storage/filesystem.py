"""FilesystemStateStore: one YAML file per conversation ledger."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

import yaml

from ..core.store import StateStore
from ..types import ConversationBudgetState
from .helpers import conversation_stem, str_to_dt

logger = logging.getLogger(__name__)


class FilesystemStateStore(StateStore):
    """Store ledgers as ``<root>/<stem>-<digest>.yaml``, one per conversation."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, conversation_id: str) -> Path:
        return self.root / f"{conversation_stem(conversation_id)}.yaml"

    def save_state(self, state: ConversationBudgetState) -> None:
        path = self._path(state.conversation_id)
        tmp = path.with_suffix(".yaml.tmp")
        tmp.write_text(yaml.safe_dump(state.to_record(), default_flow_style=False, sort_keys=False))
        tmp.replace(path)

    def _read(self, path: Path) -> dict | None:
        try:
            data = yaml.safe_load(path.read_text())
        except (yaml.YAMLError, OSError) as e:
            logger.warning("Unreadable ledger %s: %s", path, e)
            return None
        if not isinstance(data, dict) or "conversation_id" not in data:
            return None
        return data

    def load_state(self, conversation_id: str) -> ConversationBudgetState | None:
        path = self._path(conversation_id)
        if not path.is_file():
            return None
        data = self._read(path)
        if data is None:
            return None
        if data["conversation_id"] != conversation_id:
            logger.warning(
                "Ledger %s belongs to %r, not %r; ignoring",
                path, data["conversation_id"], conversation_id,
            )
            return None
        return ConversationBudgetState.from_record(data)

    def delete_state(self, conversation_id: str) -> bool:
        path = self._path(conversation_id)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def list_conversations(self) -> list[str]:
        entries = []
        for path in self.root.glob("*.yaml"):
            data = self._read(path)
            if data is None:
                continue
            # safe_load already turns ISO timestamps into datetimes
            saved_at = data.get("saved_at")
            if isinstance(saved_at, str):
                saved_at = str_to_dt(saved_at)
            sort_key = saved_at.timestamp() if isinstance(saved_at, datetime) else 0.0
            entries.append((sort_key, data["conversation_id"]))
        entries.sort(reverse=True)
        return [conversation_id for _, conversation_id in entries]
