"""Build the summary and memory injection blocks handed to the host."""

from __future__ import annotations

from typing import Sequence

from ..types import (
    EvictionConfig,
    InjectionBlock,
    InjectionConfig,
    Message,
    SummarizationConfig,
)
from .budget import summary_eligible
from .token_estimator import TokenEstimator

SUMMARY_KEY = "context_budget_summaries"
MEMORY_KEY = "context_budget_memories"


def summary_indices(
    messages: Sequence[Message],
    cutoff_index: int,
    estimator: TokenEstimator,
    config: EvictionConfig,
) -> list[int]:
    """Lagging messages whose summary is injected."""
    return [
        i for i in range(min(cutoff_index, len(messages)))
        if messages[i].annotations.summary
        and summary_eligible(messages[i], estimator, config)
    ]


def _block(key: str, text: str, injection: InjectionConfig, estimator: TokenEstimator) -> InjectionBlock:
    return InjectionBlock(
        key=key,
        text=text,
        position=injection.position,
        depth=injection.depth,
        role=injection.role,
        tokens=estimator.estimate(text) if text else 0,
    )


def build_summary_injection(
    messages: Sequence[Message],
    cutoff_index: int,
    estimator: TokenEstimator,
    eviction: EvictionConfig,
    summarization: SummarizationConfig,
) -> InjectionBlock:
    indices = summary_indices(messages, cutoff_index, estimator, eviction)
    text = ""
    if indices:
        joined = "".join(summarization.separator + messages[i].annotations.summary for i in indices)
        text = summarization.template.replace("{summaries}", joined)
    return _block(SUMMARY_KEY, text, summarization.injection, estimator)


def build_memory_injection(
    text: str,
    injection: InjectionConfig,
    estimator: TokenEstimator,
) -> InjectionBlock:
    return _block(MEMORY_KEY, text, injection, estimator)
