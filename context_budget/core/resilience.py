"""ChangeResilienceMonitor: reconcile the ledger with out-of-band history edits."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Sequence

from ..types import ConversationBudgetState, DeletionReport, Message
from .calibration import CalibrationStateMachine

logger = logging.getLogger(__name__)


@dataclass
class HistorySnapshot:
    length: int = 0
    hashes: list[str] = field(default_factory=list)


class ChangeResilienceMonitor:
    """Compares message count and per-index hashes against the last snapshot.

    Deletions at or before the cutoff shift it back and count toward the
    deletion tolerance; deletions in the live tail are free.
    """

    def __init__(self, calibration: CalibrationStateMachine, deletion_tolerance: int = 3) -> None:
        self.calibration = calibration
        self.deletion_tolerance = deletion_tolerance
        self._snapshots: dict[str, HistorySnapshot] = {}

    def snapshot(self, conversation_id: str, messages: Sequence[Message]) -> None:
        self._snapshots[conversation_id] = HistorySnapshot(
            length=len(messages),
            hashes=[m.content_hash for m in messages],
        )

    def has_snapshot(self, conversation_id: str) -> bool:
        return conversation_id in self._snapshots

    def forget(self, conversation_id: str) -> None:
        self._snapshots.pop(conversation_id, None)

    def handle_deletion(
        self,
        state: ConversationBudgetState,
        messages: Sequence[Message],
        max_cutoff: int | None = None,
    ) -> DeletionReport:
        conversation_id = state.conversation_id
        previous = self._snapshots.get(conversation_id)
        report = DeletionReport(cutoff_before=state.cutoff_index, cutoff_after=state.cutoff_index)
        if previous is None:
            self.snapshot(conversation_id, messages)
            return report

        deleted = previous.length - len(messages)
        if deleted <= 0:
            self.snapshot(conversation_id, messages)
            return report

        report.deleted_count = deleted
        cutoff = state.cutoff_index
        if cutoff > 0:
            old_hash = previous.hashes[cutoff] if cutoff < len(previous.hashes) else None
            new_hash = messages[cutoff].content_hash if cutoff < len(messages) else None
            if cutoff >= len(messages):
                report.impactful_deletions = deleted
                logger.debug("Cutoff %d beyond history (%d messages)", cutoff, len(messages))
            elif old_hash and new_hash and old_hash != new_hash:
                report.impactful_deletions = deleted
                logger.debug("Anchor message at cutoff %d changed", cutoff)

        if report.impactful_deletions:
            cutoff = max(0, cutoff - report.impactful_deletions)
            state.deletion_count += report.impactful_deletions
        if max_cutoff is not None and cutoff > max_cutoff:
            cutoff = max(max_cutoff, 0)
        state.cutoff_index = cutoff
        report.cutoff_after = cutoff

        logger.debug(
            "Deleted %d message(s): %d impactful, cutoff %d -> %d, deletion count %d/%d",
            deleted, report.impactful_deletions, report.cutoff_before, cutoff,
            state.deletion_count, self.deletion_tolerance,
        )

        if state.deletion_count >= self.deletion_tolerance:
            self.calibration.soft_recalibrate(state, "deletion tolerance exceeded")
            report.soft_recalibrated = True

        remaining = Counter(m.content_hash for m in messages)
        for old in previous.hashes:
            if remaining[old] > 0:
                remaining[old] -= 1
            else:
                report.deleted_hashes.append(old)

        self.snapshot(conversation_id, messages)
        return report

    def detect_edits(self, conversation_id: str, messages: Sequence[Message]) -> list[int]:
        """Mark summaries of in-place-edited messages stale. Returns edited indices.

        A shrunken history is left for ``handle_deletion``; the snapshot is
        not replaced in that case.
        """
        previous = self._snapshots.get(conversation_id)
        edited: list[int] = []
        if previous is not None and len(messages) < previous.length:
            return edited
        if previous is not None:
            for i in range(previous.length):
                message = messages[i]
                if previous.hashes[i] == message.content_hash:
                    continue
                edited.append(i)
                ann = message.annotations
                if ann.summary and ann.summary_hash != message.content_hash:
                    ann.needs_summary = True
                    logger.debug("Message %d edited, summary marked stale", i)
                if ann.vectorized and ann.vector_hash != message.content_hash:
                    ann.vectorized = False
        self.snapshot(conversation_id, messages)
        return edited
