"""BudgetEstimator: estimated prompt cost for a candidate cutoff index."""

from __future__ import annotations

import math
from typing import Sequence

from ..types import BudgetBreakdown, EvictionConfig, Message
from .token_estimator import TokenEstimator


def summary_eligible(
    message: Message,
    estimator: TokenEstimator,
    config: EvictionConfig,
) -> bool:
    """Whether a lagging message's summary is counted and injected.

    Pinned messages always qualify. Very short messages are dropped
    rather than summarized.
    """
    ann = message.annotations
    if ann.pinned:
        return True
    if ann.user_excluded:
        return False
    if message.is_user and not config.include_user_messages:
        return False
    if message.is_thought:
        return False
    if message.is_system and not config.include_system_messages:
        return False
    return estimator.estimate(message.content) >= config.message_length_threshold


class BudgetEstimator:
    """Estimates total prompt tokens for any cutoff over one message snapshot.

    Per-message live and lagging costs are computed once; ``chat_tokens()``
    is then O(1) through prefix sums, so the eviction scan can probe every
    index of a batch cheaply.
    """

    def __init__(
        self,
        messages: Sequence[Message],
        estimator: TokenEstimator,
        config: EvictionConfig,
        correction_factor: float = 1.0,
        non_chat_tokens: int = 0,
        memory_tokens: int = 0,
        separator_tokens: int = 0,
        message_tokens: dict[int, int] | None = None,
    ) -> None:
        self.message_count = len(messages)
        self.correction_factor = correction_factor
        self.non_chat_tokens = non_chat_tokens
        self.memory_tokens = memory_tokens
        self.map_hits = 0

        n = len(messages)
        live = [0] * n
        lagging = [0] * n
        for i, message in enumerate(messages):
            if message.is_system:
                continue
            raw = None
            if message_tokens is not None:
                raw = message_tokens.get(i)
            if raw is None:
                raw = estimator.estimate_message(message)
            else:
                self.map_hits += 1
            live[i] = math.floor(raw * correction_factor)
            summary = message.annotations.summary
            if summary and summary_eligible(message, estimator, config):
                lagging[i] = estimator.estimate(summary) + separator_tokens

        # _lag_prefix[k] = sum(lagging[:k]); _live_suffix[k] = sum(live[k:])
        self._lag_prefix = [0] * (n + 1)
        for i in range(n):
            self._lag_prefix[i + 1] = self._lag_prefix[i] + lagging[i]
        self._live_suffix = [0] * (n + 1)
        for i in range(n - 1, -1, -1):
            self._live_suffix[i] = self._live_suffix[i + 1] + live[i]
        self._live = live

    def _clamp(self, cutoff: int) -> int:
        return max(0, min(cutoff, self.message_count))

    def live_tokens(self, cutoff: int) -> int:
        return self._live_suffix[self._clamp(cutoff)]

    def summary_tokens(self, cutoff: int) -> int:
        return self._lag_prefix[self._clamp(cutoff)]

    def chat_tokens(self, cutoff: int) -> int:
        return self.live_tokens(cutoff) + self.summary_tokens(cutoff)

    def estimate_total(self, cutoff: int) -> int:
        return self.chat_tokens(cutoff) + self.non_chat_tokens + self.memory_tokens

    def breakdown(self, cutoff: int) -> BudgetBreakdown:
        return BudgetBreakdown(
            cutoff_index=self._clamp(cutoff),
            live_chat_tokens=self.live_tokens(cutoff),
            summary_tokens=self.summary_tokens(cutoff),
            non_chat_tokens=self.non_chat_tokens,
            memory_tokens=self.memory_tokens,
        )
