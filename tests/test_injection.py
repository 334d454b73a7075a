"""Tests for summary and memory injection blocks."""

from context_budget.core.injection import (
    MEMORY_KEY,
    SUMMARY_KEY,
    build_memory_injection,
    build_summary_injection,
    summary_indices,
)
from context_budget.types import (
    EvictionConfig,
    InjectionConfig,
    Message,
    SummarizationConfig,
)

from tests.conftest import make_messages


def _summarized(count: int = 30) -> list:
    messages = make_messages(count)
    for i, m in enumerate(messages):
        m.annotations.summary = f"Note {i}."
    return messages


class TestSummaryIndices:
    def test_only_below_cutoff(self, estimator):
        messages = _summarized()
        assert summary_indices(messages, 5, estimator, EvictionConfig()) == [0, 1, 2, 3, 4]

    def test_skips_unsummarized_and_short(self, estimator):
        messages = _summarized()
        messages[1].annotations.summary = None
        messages[2] = Message(role="user", content="ok")
        messages[2].annotations.summary = "User: Agreed."
        assert summary_indices(messages, 4, estimator, EvictionConfig()) == [0, 3]

    def test_user_exclusion_and_pin(self, estimator):
        messages = _summarized()
        messages[0].annotations.user_excluded = True
        short = Message(role="assistant", content="sure")
        short.annotations.summary = "Assistant: Agreed."
        short.annotations.pinned = True
        messages[1] = short
        assert summary_indices(messages, 3, estimator, EvictionConfig()) == [1, 2]

    def test_user_messages_can_be_left_out(self, estimator):
        messages = _summarized()
        config = EvictionConfig(include_user_messages=False)
        assert summary_indices(messages, 6, estimator, config) == [1, 3, 5]

    def test_cutoff_past_history(self, estimator):
        messages = _summarized(3)
        assert summary_indices(messages, 50, estimator, EvictionConfig()) == [0, 1, 2]


class TestBuildSummaryInjection:
    def test_template_and_separator(self, estimator):
        messages = _summarized()
        summarization = SummarizationConfig(template="<ctx>{summaries}</ctx>", separator="\n- ")
        block = build_summary_injection(messages, 2, estimator, EvictionConfig(), summarization)
        assert block.key == SUMMARY_KEY
        assert block.text == "<ctx>\n- Note 0.\n- Note 1.</ctx>"
        assert block.tokens == estimator.estimate(block.text)

    def test_empty_when_nothing_evicted(self, estimator):
        block = build_summary_injection(_summarized(), 0, estimator, EvictionConfig(), SummarizationConfig())
        assert block.text == ""
        assert block.tokens == 0

    def test_position_from_config(self, estimator):
        summarization = SummarizationConfig(
            injection=InjectionConfig(position="in_chat", depth=2, role="user"),
        )
        block = build_summary_injection(_summarized(), 1, estimator, EvictionConfig(), summarization)
        assert block.position == "in_chat"
        assert block.depth == 2
        assert block.role == "user"


class TestBuildMemoryInjection:
    def test_block(self, estimator):
        block = build_memory_injection("one two three", InjectionConfig(position="in_chat", depth=3), estimator)
        assert block.key == MEMORY_KEY
        assert block.depth == 3
        assert block.tokens == 3

    def test_empty(self, estimator):
        assert build_memory_injection("", InjectionConfig(), estimator).tokens == 0
