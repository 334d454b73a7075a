"""SummarizationQueue: cancellable, strictly sequential background summarizer.

One worker thread drains a FIFO of message indices. ``stop()`` clears the
queue, cancels the in-flight call, and the worker discards its result, so
a cancelled message keeps ``needs_summary = True``.
"""

from __future__ import annotations

import logging
import re
import threading
from collections import deque
from typing import Callable, Iterable

from ..types import (
    LLMProvider,
    Message,
    ProfileSwitcher,
    QueueStatus,
    SummarizationConfig,
)
from .cancellation import CancellationToken, CancelledError

logger = logging.getLogger(__name__)

THINK_BLOCK_RE = re.compile(r"<think>.*?</think>", re.IGNORECASE | re.DOTALL)
ORPHAN_THINK_RE = re.compile(r"</?think>", re.IGNORECASE)
WORD_COUNT_RE = re.compile(r"\s*\(\d+\s*words?\)\s*", re.IGNORECASE)

# Reasoning preambles that start a new line; everything from here on is dropped.
REASONING_PATTERNS = [
    re.compile(r"\n\s*" + p, re.IGNORECASE)
    for p in (
        r"Hmm,",
        r"Let me",
        r"Looking at",
        r"I need to",
        r"First,",
        r"The (user|message|speaker)",
        r"Breaking down",
        r"I'll",
        r"I think",
        r"Now,",
        r"For the",
        r"This (captures|covers|summarizes)",
        r"Perfect!",
        r"That's",
        r"\(\d+\s*words?\)",
        r"I've",
        r"Analyzing",
        r"The key",
    )
]
META_PARAGRAPH_PREFIXES = ("hmm", "let me", "i need")
SENTENCE_ENDINGS = ".!?…\"'*”)"


def trim_to_sentence_end(text: str) -> str:
    """Cut *text* back to its last sentence-ending character, if any."""
    for i in range(len(text) - 1, -1, -1):
        if text[i] in SENTENCE_ENDINGS:
            return text[: i + 1].rstrip()
    return text


def clean_summary_output(text: str, speaker_label: str = "", max_chars: int = 300) -> str:
    """Strip reasoning and meta-commentary and keep one bounded sentence."""
    if not text:
        return ""

    cleaned = THINK_BLOCK_RE.sub("", text.strip()).strip()
    orphan = ORPHAN_THINK_RE.search(cleaned)
    if orphan:
        cleaned = cleaned[: orphan.start()].strip()

    for pattern in REASONING_PATTERNS:
        match = pattern.search(cleaned)
        if match:
            cleaned = cleaned[: match.start()].strip()

    cleaned = WORD_COUNT_RE.sub(" ", cleaned).strip()

    for para in re.split(r"\n\n+", cleaned):
        para = para.strip()
        if len(para) > 10 and not para.lower().startswith(META_PARAGRAPH_PREFIXES):
            cleaned = para
            break

    first_line = cleaned.split("\n")[0].strip()
    if len(first_line) > 10:
        cleaned = first_line

    cleaned = re.sub(r"^[\"']|[\"']$", "", cleaned).strip()

    if speaker_label and cleaned and ":" not in cleaned:
        cleaned = f"{speaker_label} {cleaned}"

    if len(cleaned) > max_chars:
        cleaned = trim_to_sentence_end(cleaned[:max_chars])
    return cleaned


def _fill(template: str, values: dict[str, str]) -> str:
    # str.format would choke on braces inside message text
    for key, value in values.items():
        template = template.replace("{" + key + "}", value)
    return template


class SummarizationQueue:
    """FIFO of message indices summarized one at a time on a worker thread."""

    def __init__(
        self,
        provider: LLMProvider | None,
        config: SummarizationConfig,
        messages: Callable[[], list[Message]],
        profile_switcher: ProfileSwitcher | None = None,
    ) -> None:
        self.provider = provider
        self.config = config
        self._messages = messages
        self.profile_switcher = profile_switcher
        self._queue: deque[int] = deque()
        self._lock = threading.Lock()
        self._worker: threading.Thread | None = None
        self._cancel: CancellationToken | None = None
        self._status = QueueStatus.IDLE
        self._idle = threading.Event()
        self._idle.set()

    @property
    def status(self) -> QueueStatus:
        return self._status

    @property
    def active(self) -> bool:
        return self._status != QueueStatus.IDLE

    def queued_indices(self) -> set[int]:
        with self._lock:
            return set(self._queue)

    def enqueue(self, indices: Iterable[int]) -> int:
        """Append indices not already queued; start the worker if idle.

        Indices added while a stop is draining are held and picked up by a
        fresh worker once the stopped one exits. Returns the number added.
        """
        if self.provider is None:
            logger.debug("No summarization provider configured, skipping enqueue")
            return 0
        with self._lock:
            pending = set(self._queue)
            added = 0
            for index in indices:
                if index not in pending:
                    self._queue.append(index)
                    pending.add(index)
                    added += 1
            if added and self._status == QueueStatus.IDLE:
                self._start_worker()
            elif added and self._status == QueueStatus.STOPPING:
                logger.debug("Queue is stopping, holding %d index(es) for the next worker", added)
        if added:
            logger.debug("Enqueued %d message(s) for summarization", added)
        return added

    def _start_worker(self) -> None:
        # Caller holds self._lock
        self._status = QueueStatus.ACTIVE
        self._cancel = CancellationToken()
        self._idle.clear()
        self._worker = threading.Thread(
            target=self._run, args=(self._cancel,),
            name="context-budget-summarizer", daemon=True,
        )
        self._worker.start()

    def stop(self) -> None:
        """Clear the queue and abort the in-flight item. Idempotent."""
        with self._lock:
            if self._status == QueueStatus.IDLE:
                return
            self._queue.clear()
            if self._status == QueueStatus.STOPPING:
                return
            self._status = QueueStatus.STOPPING
            cancel = self._cancel
        logger.info("Summarization queue stopping")
        if cancel is not None:
            cancel.cancel()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the worker is idle. Returns False on timeout."""
        return self._idle.wait(timeout)

    def _run(self, cancel: CancellationToken) -> None:
        try:
            while not cancel.cancelled:
                with self._lock:
                    if not self._queue:
                        break
                    index = self._queue.popleft()
                try:
                    self.summarize_message(index, cancel)
                except Exception as e:
                    logger.error("Summarization of message %d failed: %s", index, e)
        finally:
            with self._lock:
                self._worker = None
                self._cancel = None
                if self._queue:
                    logger.debug("Restarting worker for %d held index(es)", len(self._queue))
                    self._start_worker()
                else:
                    self._status = QueueStatus.IDLE
                    self._idle.set()
                    logger.debug("Summarization queue idle")

    def summarize_message(self, index: int, cancel: CancellationToken | None = None) -> bool:
        """Summarize one message in place. Returns True if a summary was stored."""
        cancel = cancel or CancellationToken()
        messages = self._messages()
        if index < 0 or index >= len(messages):
            logger.debug("Message %d no longer exists, skipping", index)
            return False
        message = messages[index]
        if message.is_system or cancel.cancelled:
            return False

        cfg = self.config
        speaker = cfg.user_name if message.is_user else cfg.assistant_name
        speaker_label = f"{speaker}:"
        content_hash = message.content_hash
        prompt = _fill(cfg.prompt, {
            "message": message.content,
            "words": str(cfg.max_words),
            "user": cfg.user_name,
            "char": cfg.assistant_name,
        })

        original_profile = None
        try:
            try:
                original_profile = self._switch_profile()
                result = self.provider.complete(
                    system="", user=prompt, max_tokens=cfg.max_tokens, cancel=cancel,
                )
            except CancelledError:
                logger.debug("Summarization cancelled for message %d", index)
                return False
            except Exception as e:
                if cancel.cancelled:
                    logger.debug("Summarization aborted for message %d", index)
                    return False
                logger.error("Failed to summarize message %d: %s", index, e)
                message.annotations.error = str(e)
                return False

            if cancel.cancelled:
                logger.debug("Discarding summary for message %d after stop", index)
                return False
            if not result or not result.strip():
                logger.warning("Empty summary returned for message %d", index)
                return False

            raw = result.strip()
            if not raw.startswith(speaker_label):
                raw = f"{speaker_label} {raw}"
            summary = clean_summary_output(raw, speaker_label, cfg.max_chars)
            if not summary:
                logger.warning("Summary for message %d was empty after cleaning", index)
                return False
            if len(summary) < 10:
                logger.debug("Summary for message %d is very short (%d chars)", index, len(summary))

            ann = message.annotations
            ann.summary = summary
            ann.needs_summary = False
            ann.summary_hash = content_hash
            ann.error = None
            logger.debug("Summarized message %d: %r", index, summary)
        finally:
            self._restore_profile(original_profile)
        return True

    def _switch_profile(self) -> str | None:
        """Switch to the summary profile; returns the profile to restore, if any."""
        target = self.config.profile
        if not target or self.profile_switcher is None:
            return None
        current = self.profile_switcher.current()
        if current == target:
            return None
        logger.debug("Switching profile %r -> %r for summarization", current, target)
        self.profile_switcher.switch(target)
        return current

    def _restore_profile(self, original: str | None) -> None:
        if original is None:
            return
        logger.debug("Restoring profile %r", original)
        try:
            self.profile_switcher.switch(original)
        except Exception as e:
            logger.error("Failed to restore profile %r: %s", original, e)
