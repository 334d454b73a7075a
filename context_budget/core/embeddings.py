"""Embedding back-ends: OpenAI-compatible HTTP endpoint or local sentence-transformers."""

from __future__ import annotations

import logging
import threading

import httpx

from ..types import Embedder, MemoryConfig, VectorStoreError

logger = logging.getLogger(__name__)

_MODEL_NOT_LOADED = object()  # sentinel for lazy model loading


class HTTPEmbedder:
    """POSTs ``{input, model}`` and reads ``data[0].embedding`` or ``embedding``.

    Works with OpenAI, KoboldCPP, llama.cpp server, and similar endpoints.
    """

    def __init__(
        self,
        url: str,
        api_key: str = "",
        model: str = "text-embedding",
        timeout: float = 30.0,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    def embed(self, text: str) -> list[float]:
        if not self.url:
            raise VectorStoreError("No embedding URL configured")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    self.url, headers=headers, json={"input": text, "model": self.model},
                )
        except httpx.HTTPError as e:
            raise VectorStoreError(f"Embedding request failed: {e}") from e

        if response.status_code != 200:
            raise VectorStoreError(
                f"HTTP {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        data = response.json()
        items = data.get("data")
        if items and isinstance(items, list) and items[0].get("embedding"):
            return items[0]["embedding"]
        if data.get("embedding"):
            return data["embedding"]
        raise VectorStoreError("Unexpected embedding response format")


class SentenceTransformerEmbedder:
    """Local embedding model, loaded on first use."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2") -> None:
        self.model_name = model_name
        self._model = _MODEL_NOT_LOADED
        self._lock = threading.Lock()

    def _get_model(self):
        with self._lock:
            if self._model is _MODEL_NOT_LOADED:
                try:
                    from sentence_transformers import SentenceTransformer
                except ImportError as e:
                    raise VectorStoreError(
                        "sentence-transformers not installed. "
                        "Install with: pip install context-budget[embeddings]"
                    ) from e
                logger.debug("Loading embedding model %s", self.model_name)
                self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed(self, text: str) -> list[float]:
        model = self._get_model()
        return model.encode([text], convert_to_numpy=True, show_progress_bar=False).tolist()[0]


def build_embedder(config: MemoryConfig) -> Embedder:
    if config.embedding_provider == "sentence-transformers":
        return SentenceTransformerEmbedder(config.embedding_model)
    return HTTPEmbedder(
        url=config.embedding_url,
        api_key=config.embedding_api_key,
        model=config.embedding_model,
        timeout=config.timeout,
    )
