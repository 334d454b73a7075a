"""Shared fixtures for context-budget tests."""

from __future__ import annotations

import tempfile
import threading
from pathlib import Path

import pytest

from context_budget.config import load_config
from context_budget.core.cancellation import CancellationToken
from context_budget.core.token_estimator import TokenEstimator
from context_budget.core.vector_store import InMemoryVectorStore
from context_budget.types import (
    LLAMA3_ROLE_HEADERS,
    ContextBudgetConfig,
    Message,
)


def word_count(text: str) -> int:
    """Deterministic test tokenizer: one token per whitespace-separated word."""
    return len(text.split())


def make_message(index: int, role: str | None = None, words: int = 49) -> Message:
    """A message of exactly *words* tokens under ``word_count``."""
    if role is None:
        role = "user" if index % 2 == 0 else "assistant"
    content = " ".join([f"m{index}"] + ["word"] * (words - 1))
    return Message(role=role, content=content)


def make_messages(count: int, start: int = 0, words: int = 49) -> list[Message]:
    return [make_message(i, words=words) for i in range(start, start + count)]


def build_raw_prompt(messages: list[Message], non_chat_words: int = 3500) -> str:
    """Llama-3 style prompt: a system block plus every non-excluded message."""
    parts = ["sys " * non_chat_words + "\n"]
    for message in messages:
        if message.is_system or message.annotations.excluded:
            continue
        parts.append(LLAMA3_ROLE_HEADERS[message.role] + " " + message.content + " ")
    return "".join(parts)


class FakeHost:
    """In-process conversation host with a word-count tokenizer."""

    def __init__(self, messages: list[Message] | None = None, max_context: int = 16000):
        self.history: list[Message] = messages if messages is not None else []
        self.max_context = max_context
        self.raw_prompt: str | list | None = None

    def token_count(self, text: str) -> int:
        return word_count(text)

    def max_context_size(self) -> int:
        return self.max_context

    def messages(self) -> list[Message]:
        return self.history

    def last_realized_prompt(self):
        return self.raw_prompt

    def render(self, non_chat_words: int = 3500) -> str:
        """Realize a prompt from the current exclusion flags."""
        self.raw_prompt = build_raw_prompt(self.history, non_chat_words)
        return self.raw_prompt


class MockLLMProvider:
    """Mock LLM provider returning canned summaries (no API calls)."""

    def __init__(self, response: str | None = None, fail_on: set[int] | None = None):
        self.calls: list[dict] = []
        self.response = response or "Assistant: Shared the plan for the next step."
        self.fail_on = fail_on or set()
        self._lock = threading.Lock()

    def complete(
        self,
        system: str,
        user: str,
        max_tokens: int,
        cancel: CancellationToken | None = None,
    ) -> str:
        with self._lock:
            self.calls.append({"system": system, "user": user, "max_tokens": max_tokens})
            call_number = len(self.calls)
        if call_number in self.fail_on:
            raise RuntimeError(f"provider failure on call {call_number}")
        return self.response


class BlockingLLMProvider(MockLLMProvider):
    """Blocks on the Nth call until cancelled, signalling when it starts."""

    def __init__(self, block_on: int = 3, response: str | None = None):
        super().__init__(response=response)
        self.block_on = block_on
        self.started = threading.Event()

    def complete(self, system, user, max_tokens, cancel=None):
        with self._lock:
            self.calls.append({"system": system, "user": user, "max_tokens": max_tokens})
            call_number = len(self.calls)
        if call_number == self.block_on:
            self.started.set()
            if cancel is not None:
                cancel.wait(5)
        return self.response


class FakeEmbedder:
    """Bag-of-keywords embedder: each axis counts one keyword."""

    KEYWORDS = ("dragon", "castle", "river", "sword", "forest", "king")

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[str] = []

    def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail:
            raise RuntimeError("embedding service down")
        lowered = text.lower()
        vector = [float(lowered.count(k)) for k in self.KEYWORDS]
        if not any(vector):
            vector[-1] = 0.01
        return vector


class FakeProfileSwitcher:
    def __init__(self, current: str = "main"):
        self._current = current
        self.switches: list[str] = []

    def current(self) -> str:
        return self._current

    def switch(self, name: str) -> None:
        self.switches.append(name)
        self._current = name


@pytest.fixture
def estimator() -> TokenEstimator:
    return TokenEstimator(word_count, LLAMA3_ROLE_HEADERS)


@pytest.fixture
def sample_config() -> ContextBudgetConfig:
    return load_config(config_dict={
        "eviction": {
            "target_token_budget": 8000,
            "batch_size": 20,
            "min_messages_to_keep": 10,
            "snap_to_batch": True,
        },
        "storage": {"backend": "memory"},
    })


@pytest.fixture
def fake_host() -> FakeHost:
    return FakeHost(make_messages(100))


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def tmp_store_dir():
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def tmp_sqlite_db(tmp_store_dir):
    return tmp_store_dir / "test_state.db"
