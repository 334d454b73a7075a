"""EvictionController: batch-wise cutoff advancement and retraction."""

from __future__ import annotations

import logging

from ..types import EvictionConfig, EvictionDecision
from .budget import BudgetEstimator

logger = logging.getLogger(__name__)


class EvictionController:
    """Decides the cutoff index once per generation cycle.

    A single call either advances or retracts the cutoff, never both.
    The most recent ``min_messages_to_keep`` messages are never evicted.
    """

    def __init__(self, config: EvictionConfig) -> None:
        self.config = config

    def max_cutoff(self, message_count: int) -> int:
        return max(message_count - self.config.min_messages_to_keep, 0)

    def decide(
        self,
        budget: BudgetEstimator,
        cutoff_index: int,
        target_tokens: int,
        allow_retract: bool = False,
    ) -> EvictionDecision:
        max_index = self.max_cutoff(budget.message_count)
        previous = cutoff_index
        current = max(0, min(cutoff_index, max_index))
        if current != cutoff_index:
            logger.debug("Cutoff %d clamped to %d (floor %d)", cutoff_index, current, max_index)

        total = budget.estimate_total(current)
        logger.debug(
            "Eviction check: cutoff=%d total=%d target=%d factor=%.3f non_chat=%d memory=%d",
            current, total, target_tokens, budget.correction_factor,
            budget.non_chat_tokens, budget.memory_tokens,
        )

        if total <= target_tokens:
            if allow_retract:
                retracted, retracted_total = self._retract(budget, current, target_tokens)
                if retracted < current:
                    logger.debug("Retracted cutoff %d -> %d (%d tokens)", current, retracted, retracted_total)
                    return EvictionDecision(
                        previous_cutoff=previous,
                        cutoff_index=retracted,
                        direction="retract",
                        estimated_total=retracted_total,
                    )
            return EvictionDecision(
                previous_cutoff=previous,
                cutoff_index=current,
                direction="none" if current == previous else "retract",
                estimated_total=total,
            )

        next_index, total = self._advance(budget, current, max_index, target_tokens, total)
        final = max(next_index, current)
        floor_hit = final >= max_index and total > target_tokens
        if floor_hit:
            logger.debug("Eviction floor reached at %d, still %d over target", final, total - target_tokens)
        logger.debug("Advanced cutoff %d -> %d (%d tokens)", current, final, total)
        return EvictionDecision(
            previous_cutoff=previous,
            cutoff_index=final,
            direction="advance" if final > previous else "none",
            estimated_total=budget.estimate_total(final),
            floor_hit=floor_hit,
        )

    def _advance(
        self,
        budget: BudgetEstimator,
        current: int,
        max_index: int,
        target_tokens: int,
        total: int,
    ) -> tuple[int, int]:
        batch = self.config.batch_size
        next_index = current
        while total > target_tokens and next_index < max_index:
            step_end = min(next_index + batch, max_index)
            candidate = budget.estimate_total(step_end)

            if candidate <= target_tokens:
                if self.config.snap_to_batch:
                    return step_end, candidate
                # Smallest index within this batch that satisfies the budget
                for i in range(next_index, step_end):
                    total = budget.estimate_total(i + 1)
                    next_index = i + 1
                    if total <= target_tokens:
                        break
                return next_index, total

            total = candidate
            next_index = step_end
        return next_index, total

    def _retract(
        self,
        budget: BudgetEstimator,
        current: int,
        target_tokens: int,
    ) -> tuple[int, int]:
        """Move back whole batches while comfortably under target."""
        ceiling = target_tokens * self.config.retract_headroom
        candidate = current
        candidate_total = budget.estimate_total(current)
        while candidate > 0:
            previous = max(candidate - self.config.batch_size, 0)
            previous_total = budget.estimate_total(previous)
            if previous_total > ceiling:
                break
            candidate, candidate_total = previous, previous_total
        return candidate, candidate_total
