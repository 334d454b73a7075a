"""Decompose a realized raw prompt into per-role chat segments."""

from __future__ import annotations

import logging
import re
from typing import Sequence

from ..types import LLAMA3_HEADER_PATTERN, Message, PromptMeasurement, PromptSegment, RawPrompt
from .token_estimator import TokenEstimator

logger = logging.getLogger(__name__)

CHAT_ROLES = ("user", "assistant")


def normalize_raw_prompt(raw_prompt: RawPrompt | None) -> str | None:
    """Chat-completion prompts arrive as a list of ``{role, content}`` dicts."""
    if raw_prompt is None:
        return None
    if isinstance(raw_prompt, list):
        parts = []
        for item in raw_prompt:
            if isinstance(item, dict):
                parts.append(str(item.get("content", "")))
            else:
                parts.append(str(item))
        return "\n".join(parts)
    return raw_prompt


class PromptParser:
    """Splits raw prompts on role headers and maps segments onto messages."""

    def __init__(
        self,
        estimator: TokenEstimator,
        header_pattern: str = LLAMA3_HEADER_PATTERN,
    ) -> None:
        self.estimator = estimator
        self._header_re = re.compile(header_pattern)

    def segments(self, raw_prompt: RawPrompt | None) -> list[PromptSegment] | None:
        """User/assistant segments in prompt order, or None when no headers match."""
        text = normalize_raw_prompt(raw_prompt)
        if not text:
            return None

        matches = list(self._header_re.finditer(text))
        if not matches:
            logger.debug("No role headers found in raw prompt (%d chars)", len(text))
            return None

        result: list[PromptSegment] = []
        for i, match in enumerate(matches):
            role = match.group(1)
            if role not in CHAT_ROLES:
                continue
            end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
            segment = text[match.start():end]
            result.append(PromptSegment(role=role, token_count=self.estimator.estimate(segment)))
        return result

    def message_token_map(
        self,
        raw_prompt: RawPrompt | None,
        messages: Sequence[Message],
    ) -> dict[int, int] | None:
        """Map message index -> actual prompt tokens, matching roles in order.

        System messages and messages excluded from that prompt are skipped;
        segments whose role does not match the next message are passed over.
        """
        segments = self.segments(raw_prompt)
        if not segments:
            return None

        mapping: dict[int, int] = {}
        seg_idx = 0
        for i, message in enumerate(messages):
            if seg_idx >= len(segments):
                break
            if message.is_system or message.annotations.excluded:
                continue
            expected = "user" if message.is_user else "assistant"
            while seg_idx < len(segments) and segments[seg_idx].role != expected:
                seg_idx += 1
            if seg_idx >= len(segments):
                break
            mapping[i] = segments[seg_idx].token_count
            seg_idx += 1

        logger.debug("Prompt token map: %d entries from %d segments", len(mapping), len(segments))
        return mapping

    def measure(
        self,
        raw_prompt: RawPrompt | None,
        messages: Sequence[Message] | None = None,
    ) -> PromptMeasurement | None:
        """Total, chat, and (optionally) per-message tokens of a realized prompt."""
        text = normalize_raw_prompt(raw_prompt)
        if not text:
            return None
        total = self.estimator.estimate(text)
        segments = self.segments(text) or []
        chat = sum(seg.token_count for seg in segments)
        message_tokens = None
        if messages is not None:
            message_tokens = self.message_token_map(text, messages)
        return PromptMeasurement(
            total_tokens=total,
            chat_tokens=chat,
            segment_count=len(segments),
            message_tokens=message_tokens,
        )
