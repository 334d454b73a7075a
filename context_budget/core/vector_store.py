"""VectorStore abstract base class plus Qdrant (REST via httpx) and in-memory back-ends."""

from __future__ import annotations

import logging
import re
import threading
import time
from abc import ABC, abstractmethod

import httpx

from ..types import VectorPoint, VectorStoreError
from .math_utils import cosine_similarity

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BACKOFF = [1.0, 2.0, 4.0]

_UNSAFE_COLLECTION_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def collection_name(base: str, conversation_id: str | None, per_conversation: bool) -> str:
    """Base collection name, optionally suffixed with a sanitized conversation id."""
    if not per_conversation or not conversation_id:
        return base
    return f"{base}_{_UNSAFE_COLLECTION_CHARS.sub('_', conversation_id)}"


class VectorStore(ABC):
    """Pluggable vector store for per-message memory points."""

    @abstractmethod
    def ensure_collection(self, collection: str, dimension: int) -> None:
        """Create the collection (cosine distance) if it does not exist."""

    @abstractmethod
    def upsert(self, collection: str, points: list[VectorPoint]) -> None:
        """Insert or replace points by id."""

    @abstractmethod
    def search(
        self,
        collection: str,
        vector: list[float],
        limit: int,
        score_threshold: float = 0.0,
    ) -> list[VectorPoint]:
        """Nearest points with score >= threshold, best first."""

    @abstractmethod
    def delete_points(self, collection: str, point_ids: list[str]) -> None:
        """Delete points by id."""

    @abstractmethod
    def delete_by_hash(self, collection: str, message_hash: str, conversation_id: str) -> None:
        """Delete every point carrying this message hash for a conversation."""

    @abstractmethod
    def delete_collection(self, collection: str) -> None:
        """Drop a whole collection. Missing collections are not an error."""


class QdrantVectorStore(VectorStore):
    """Qdrant REST API client."""

    def __init__(self, url: str = "http://localhost:6333", timeout: float = 30.0) -> None:
        self.url = url.rstrip("/")
        self.timeout = timeout
        self._known_collections: set[str] = set()

    def _request(self, method: str, path: str, body: dict | None = None) -> httpx.Response:
        """Send a request, retrying 429/5xx and transport errors."""
        url = f"{self.url}{path}"
        last_error: VectorStoreError | None = None

        for attempt in range(MAX_RETRIES):
            try:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.request(method, url, json=body)

                if response.status_code == 429 or response.status_code >= 500:
                    last_error = VectorStoreError(
                        f"HTTP {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                    if attempt < MAX_RETRIES - 1:
                        time.sleep(RETRY_BACKOFF[attempt])
                    continue
                return response

            except httpx.HTTPError as e:
                last_error = VectorStoreError(f"HTTP error: {e}")
                if attempt < MAX_RETRIES - 1:
                    time.sleep(RETRY_BACKOFF[attempt])
                continue

        raise last_error or VectorStoreError("Max retries exceeded")

    def _check(self, response: httpx.Response, action: str) -> None:
        if response.status_code != 200:
            raise VectorStoreError(
                f"{action} failed: HTTP {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

    def ensure_collection(self, collection: str, dimension: int) -> None:
        if collection in self._known_collections:
            return
        response = self._request("GET", f"/collections/{collection}")
        if response.status_code == 200:
            self._known_collections.add(collection)
            return
        logger.debug("Creating collection %s with %d dimensions", collection, dimension)
        response = self._request(
            "PUT", f"/collections/{collection}",
            {"vectors": {"size": dimension, "distance": "Cosine"}},
        )
        self._check(response, "Create collection")
        self._known_collections.add(collection)

    def upsert(self, collection: str, points: list[VectorPoint]) -> None:
        body = {
            "points": [
                {"id": p.id, "vector": p.vector, "payload": p.payload} for p in points
            ],
        }
        response = self._request("PUT", f"/collections/{collection}/points", body)
        self._check(response, "Upsert")
        logger.debug("Upserted %d point(s) to %s", len(points), collection)

    def search(
        self,
        collection: str,
        vector: list[float],
        limit: int,
        score_threshold: float = 0.0,
    ) -> list[VectorPoint]:
        body = {
            "vector": vector,
            "limit": limit,
            "score_threshold": score_threshold,
            "with_payload": True,
        }
        response = self._request("POST", f"/collections/{collection}/points/search", body)
        if response.status_code == 404:
            # Nothing has been vectorized for this conversation yet
            return []
        self._check(response, "Search")
        results = response.json().get("result") or []
        return [
            VectorPoint(id=str(r.get("id")), payload=r.get("payload") or {}, score=float(r.get("score", 0.0)))
            for r in results
        ]

    def delete_points(self, collection: str, point_ids: list[str]) -> None:
        if not point_ids:
            return
        response = self._request(
            "POST", f"/collections/{collection}/points/delete", {"points": point_ids},
        )
        self._check(response, "Delete points")
        logger.debug("Deleted %d point(s) from %s", len(point_ids), collection)

    def delete_by_hash(self, collection: str, message_hash: str, conversation_id: str) -> None:
        body = {
            "filter": {
                "must": [
                    {"key": "message_hash", "match": {"value": message_hash}},
                    {"key": "conversation_id", "match": {"value": conversation_id}},
                ],
            },
        }
        response = self._request("POST", f"/collections/{collection}/points/delete", body)
        self._check(response, "Delete by hash")

    def delete_collection(self, collection: str) -> None:
        response = self._request("DELETE", f"/collections/{collection}")
        if response.status_code not in (200, 404):
            self._check(response, "Delete collection")
        self._known_collections.discard(collection)


class InMemoryVectorStore(VectorStore):
    """Process-local store with brute-force cosine search."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, VectorPoint]] = {}
        self._dimensions: dict[str, int] = {}
        self._lock = threading.Lock()

    def ensure_collection(self, collection: str, dimension: int) -> None:
        with self._lock:
            if collection not in self._collections:
                self._collections[collection] = {}
                self._dimensions[collection] = dimension

    def upsert(self, collection: str, points: list[VectorPoint]) -> None:
        with self._lock:
            if collection not in self._collections:
                raise VectorStoreError(f"Collection {collection} does not exist", status_code=404)
            for point in points:
                self._collections[collection][point.id] = point

    def search(
        self,
        collection: str,
        vector: list[float],
        limit: int,
        score_threshold: float = 0.0,
    ) -> list[VectorPoint]:
        with self._lock:
            points = list(self._collections.get(collection, {}).values())
        scored = []
        for point in points:
            score = cosine_similarity(vector, point.vector or [])
            if score >= score_threshold:
                scored.append(VectorPoint(id=point.id, payload=dict(point.payload), score=score))
        scored.sort(key=lambda p: p.score, reverse=True)
        return scored[:limit]

    def delete_points(self, collection: str, point_ids: list[str]) -> None:
        with self._lock:
            points = self._collections.get(collection, {})
            for point_id in point_ids:
                points.pop(point_id, None)

    def delete_by_hash(self, collection: str, message_hash: str, conversation_id: str) -> None:
        with self._lock:
            points = self._collections.get(collection, {})
            doomed = [
                pid for pid, p in points.items()
                if p.payload.get("message_hash") == message_hash
                and p.payload.get("conversation_id") == conversation_id
            ]
            for pid in doomed:
                del points[pid]

    def delete_collection(self, collection: str) -> None:
        with self._lock:
            self._collections.pop(collection, None)
            self._dimensions.pop(collection, None)

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._collections.get(collection, {}))
