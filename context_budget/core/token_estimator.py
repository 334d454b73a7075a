"""TokenEstimator: cached span and message token counts over an external counter."""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Callable, Sequence

from ..types import Message, content_hash

SEPARATOR_PROBE = "This is a test."
DEFAULT_CACHE_SIZE = 4096


class TokenEstimator:
    """Wraps the host's token counter.

    Counts are cached by content hash; the counter must be deterministic
    for identical input.
    """

    def __init__(
        self,
        counter: Callable[[str], int],
        role_headers: dict[str, str] | None = None,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> None:
        self._counter = counter
        self._role_headers = role_headers or {}
        self._cache_size = cache_size
        self._cache: OrderedDict[str, int] = OrderedDict()
        self._role_overhead: dict[str, int] = {}
        self._separator_overhead: dict[str, int] = {}
        self._lock = threading.Lock()

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        key = content_hash(text)
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
                return cached
        count = max(int(self._counter(text)), 0)
        with self._lock:
            self._cache[key] = count
            if len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)
        return count

    def role_overhead(self, role: str) -> int:
        """Framing cost of one role header, cached per role."""
        overhead = self._role_overhead.get(role)
        if overhead is None:
            header = self._role_headers.get(role, "")
            overhead = self.estimate(header) if header else 0
            self._role_overhead[role] = overhead
        return overhead

    def estimate_message(self, message: Message) -> int:
        return self.estimate(message.content) + self.role_overhead(message.role)

    def estimate_span(
        self,
        messages: Sequence[Message],
        role_header_overhead: int | None = None,
    ) -> int:
        """Sum of message costs plus per-message framing.

        ``role_header_overhead`` overrides the per-role header estimate with a
        fixed cost per message.
        """
        total = 0
        for message in messages:
            total += self.estimate(message.content)
            if role_header_overhead is None:
                total += self.role_overhead(message.role)
            else:
                total += role_header_overhead
        return total

    def separator_overhead(self, separator: str) -> int:
        """Marginal cost of joining two items with *separator*."""
        overhead = self._separator_overhead.get(separator)
        if overhead is None:
            joined = self.estimate(SEPARATOR_PROBE + separator + SEPARATOR_PROBE)
            overhead = max(joined - 2 * self.estimate(SEPARATOR_PROBE), 0)
            self._separator_overhead[separator] = overhead
        return overhead
