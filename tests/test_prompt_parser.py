"""Tests for raw-prompt decomposition."""

import pytest

from context_budget.core.prompt_parser import PromptParser, normalize_raw_prompt
from context_budget.types import LLAMA3_ROLE_HEADERS, Message

from tests.conftest import build_raw_prompt, make_messages


@pytest.fixture
def parser(estimator):
    return PromptParser(estimator)


class TestNormalize:
    def test_none(self):
        assert normalize_raw_prompt(None) is None

    def test_string_passthrough(self):
        assert normalize_raw_prompt("hello") == "hello"

    def test_chat_completion_list(self):
        raw = [{"role": "system", "content": "be nice"}, {"role": "user", "content": "hi"}]
        assert normalize_raw_prompt(raw) == "be nice\nhi"


class TestSegments:
    def test_no_headers_returns_none(self, parser):
        assert parser.segments("just some plain text") is None
        assert parser.segments("") is None

    def test_splits_on_headers(self, parser):
        messages = make_messages(4)
        raw = build_raw_prompt(messages, non_chat_words=100)
        segments = parser.segments(raw)
        assert [s.role for s in segments] == ["user", "assistant", "user", "assistant"]
        assert all(s.token_count == 50 for s in segments)

    def test_system_segments_skipped(self, parser):
        raw = (
            LLAMA3_ROLE_HEADERS["system"] + " rules go here "
            + LLAMA3_ROLE_HEADERS["user"] + " hello there "
        )
        segments = parser.segments(raw)
        assert len(segments) == 1
        assert segments[0].role == "user"
        assert segments[0].token_count == 3

    def test_custom_header_pattern(self, estimator):
        parser = PromptParser(estimator, header_pattern=r"### (user|assistant):")
        segments = parser.segments("preamble ### user: hi there ### assistant: ok")
        assert [s.role for s in segments] == ["user", "assistant"]


class TestMeasure:
    def test_measure_totals(self, parser):
        messages = make_messages(4)
        raw = build_raw_prompt(messages, non_chat_words=100)
        m = parser.measure(raw)
        assert m.total_tokens == 300
        assert m.chat_tokens == 200
        assert m.non_chat_tokens == 100
        assert m.segment_count == 4
        assert m.message_tokens is None

    def test_measure_empty(self, parser):
        assert parser.measure(None) is None
        assert parser.measure("") is None

    def test_measure_without_headers(self, parser):
        m = parser.measure("no headers at all")
        assert m.total_tokens == 4
        assert m.chat_tokens == 0
        assert m.non_chat_tokens == 4


class TestMessageTokenMap:
    def test_maps_in_order(self, parser):
        messages = make_messages(4)
        raw = build_raw_prompt(messages, non_chat_words=10)
        mapping = parser.message_token_map(raw, messages)
        assert mapping == {0: 50, 1: 50, 2: 50, 3: 50}

    def test_skips_excluded_and_system(self, parser):
        messages = make_messages(6)
        messages.insert(0, Message(role="system", content="system note"))
        messages[1].annotations.excluded = True
        messages[2].annotations.excluded = True
        raw = build_raw_prompt(messages, non_chat_words=10)
        mapping = parser.message_token_map(raw, messages)
        assert sorted(mapping) == [3, 4, 5, 6]

    def test_partial_prompt_stops_early(self, parser):
        messages = make_messages(4)
        raw = build_raw_prompt(messages[:2], non_chat_words=10)
        mapping = parser.message_token_map(raw, messages)
        assert sorted(mapping) == [0, 1]

    def test_role_mismatch_skips_segment(self, parser):
        messages = [Message(role="assistant", content="only reply")]
        raw = (
            LLAMA3_ROLE_HEADERS["user"] + " stray user "
            + LLAMA3_ROLE_HEADERS["assistant"] + " only reply "
        )
        assert parser.message_token_map(raw, messages) == {0: 3}
