"""LLM Provider base class with shared retry logic."""

from __future__ import annotations

from abc import ABC, abstractmethod

import httpx

from ..core.cancellation import CancellationToken, CancelledError
from ..types import LLMProviderError

MAX_RETRIES = 3
RETRY_BACKOFF = [1.0, 2.0, 4.0]


class BaseProvider(ABC):
    """Abstract base for LLM providers. Subclasses override hook methods;
    the retry loop in ``complete()`` is shared."""

    _timeout: float = 60.0

    def __init__(self) -> None:
        self.last_usage: dict = {}

    # -- hook methods subclasses must implement --

    @abstractmethod
    def _provider_name(self) -> str: ...

    @abstractmethod
    def _get_url(self) -> str: ...

    @abstractmethod
    def _get_headers(self) -> dict: ...

    @abstractmethod
    def _build_payload(self, system: str, user: str, max_tokens: int) -> dict: ...

    @abstractmethod
    def _extract_text(self, data: dict) -> str: ...

    # -- shared retry logic --

    def _backoff(self, attempt: int, cancel: CancellationToken | None) -> None:
        """Sleep before the next attempt; a cancel cuts the wait short."""
        if attempt >= MAX_RETRIES - 1:
            return
        if cancel is None:
            cancel = CancellationToken()
        if cancel.wait(RETRY_BACKOFF[attempt]):
            raise CancelledError(f"{self._provider_name()} request cancelled")

    def complete(
        self,
        system: str,
        user: str,
        max_tokens: int,
        cancel: CancellationToken | None = None,
    ) -> str:
        """Send a completion request with automatic retry on transient errors."""
        url = self._get_url()
        headers = self._get_headers()
        payload = self._build_payload(system, user, max_tokens)

        last_error: Exception | None = None

        for attempt in range(MAX_RETRIES):
            if cancel is not None:
                cancel.raise_if_cancelled()
            try:
                with httpx.Client(timeout=self._timeout) as client:
                    # Closing the client aborts the request in flight
                    remove = cancel.add_callback(client.close) if cancel is not None else None
                    try:
                        response = client.post(url, headers=headers, json=payload)
                    finally:
                        if remove is not None:
                            remove()

                if response.status_code == 200:
                    data = response.json()
                    self.last_usage = data.get("usage", {})
                    return self._extract_text(data)

                if response.status_code == 429 or response.status_code >= 500:
                    last_error = LLMProviderError(
                        f"HTTP {response.status_code}: {response.text}",
                        provider=self._provider_name(),
                        status_code=response.status_code,
                    )
                    self._backoff(attempt, cancel)
                    continue

                raise LLMProviderError(
                    f"HTTP {response.status_code}: {response.text}",
                    provider=self._provider_name(),
                    status_code=response.status_code,
                )

            except (httpx.HTTPError, RuntimeError) as e:
                if cancel is not None and cancel.cancelled:
                    raise CancelledError(f"{self._provider_name()} request aborted") from e
                if not isinstance(e, httpx.HTTPError):
                    raise
                last_error = LLMProviderError(
                    f"HTTP error: {e}",
                    provider=self._provider_name(),
                )
                self._backoff(attempt, cancel)
                continue

        raise last_error or LLMProviderError(
            "Max retries exceeded", provider=self._provider_name()
        )


# Re-exports for callers that type against the protocol
from ..types import LLMProvider  # noqa: E402, F401

__all__ = ["BaseProvider", "LLMProvider", "LLMProviderError"]
