"""MemoryRetriever: semantic retrieval of older messages from a vector store.

Also owns the write side: per-message vectorization, deletion sync, and
best-effort cleanup of duplicate points.
"""

from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Sequence

from ..types import Embedder, MemoryConfig, MemoryRecord, Message, VectorPoint
from .token_estimator import TokenEstimator
from .vector_store import VectorStore, collection_name

logger = logging.getLogger(__name__)

MEMORY_SEPARATOR = "\n\n---\n\n"


def detect_duplicates(points: list[VectorPoint]) -> tuple[list[VectorPoint], list[str]]:
    """Collapse points sharing a message hash, keeping the most recent copy.

    Result order follows the first occurrence of each hash. Points without
    a hash are always kept.
    """
    unique: list[VectorPoint] = []
    duplicates: list[str] = []
    seen: dict[str, int] = {}  # hash -> position in unique

    for point in points:
        message_hash = point.payload.get("message_hash")
        if not message_hash:
            unique.append(point)
            continue
        pos = seen.get(message_hash)
        if pos is None:
            seen[message_hash] = len(unique)
            unique.append(point)
            continue
        existing = unique[pos]
        if point.payload.get("timestamp", 0) > existing.payload.get("timestamp", 0):
            duplicates.append(existing.id)
            unique[pos] = point
        else:
            duplicates.append(point.id)

    return unique, duplicates


def format_memories(records: Sequence[MemoryRecord], template: str) -> str:
    if not records:
        return ""
    body = MEMORY_SEPARATOR.join(
        f"[Memory {i + 1} - {r.relevance} relevance]\n{r.text}"
        for i, r in enumerate(records)
    )
    return template.replace("{memories}", body)


def _to_record(point: VectorPoint) -> MemoryRecord:
    payload = point.payload
    if "message_index" in payload:
        first = last = int(payload["message_index"])
    else:
        first = int(payload.get("first_index", 0))
        last = int(payload.get("last_index", first))
    return MemoryRecord(
        score=point.score,
        text=str(payload.get("text", "")),
        first_index=first,
        last_index=last,
        timestamp=float(payload.get("timestamp", 0.0)),
        message_hash=payload.get("message_hash"),
        point_id=point.id,
    )


class MemoryRetriever:
    """Retrieves, formats, and maintains per-message memory points."""

    def __init__(
        self,
        config: MemoryConfig,
        embedder: Embedder,
        store: VectorStore,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self.config = config
        self.embedder = embedder
        self.store = store
        self.estimator = estimator
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="context-budget-memory")
        self._pending: list[Future] = []

    def collection_for(self, conversation_id: str) -> str:
        return collection_name(
            self.config.collection, conversation_id, self.config.per_conversation_collection,
        )

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def retrieve(self, conversation_id: str, messages: Sequence[Message]) -> list[MemoryRecord]:
        """Relevant records older than the recent window. Empty on any failure."""
        cfg = self.config
        if not cfg.enabled or not messages:
            return []
        if len(messages) < cfg.min_messages:
            logger.debug(
                "Memory retrieval deferred: %d messages < minimum %d",
                len(messages), cfg.min_messages,
            )
            return []

        recent = messages[max(0, len(messages) - cfg.retain_recent_messages):]
        query = "\n\n".join(m.content for m in recent if not m.is_system and m.content)
        if not query:
            return []

        collection = self.collection_for(conversation_id)
        request_limit = cfg.limit * 2 if cfg.auto_dedupe else cfg.limit
        try:
            vector = self.embedder.embed(query)
            if not vector:
                logger.warning("Empty query embedding, skipping memory retrieval")
                return []
            points = self.store.search(collection, vector, request_limit, cfg.score_threshold)
        except Exception as e:
            logger.error("Failed to retrieve memories for %s: %s", conversation_id, e)
            return []

        if cfg.auto_dedupe and points:
            points, duplicate_ids = detect_duplicates(points)
            if duplicate_ids:
                logger.debug("Removing %d duplicate memory point(s)", len(duplicate_ids))
                self._submit(self._delete_duplicates, collection, duplicate_ids)

        oldest_recent = len(messages) - 1 - cfg.retain_recent_messages
        records = [r for r in map(_to_record, points) if r.last_index < oldest_recent]
        records = records[: cfg.limit]
        records = self._fit_token_cap(records)
        logger.debug("Retrieved %d memories (from %d points)", len(records), len(points))
        return records

    def format_injection(self, records: Sequence[MemoryRecord]) -> str:
        return format_memories(records, self.config.template)

    def _fit_token_cap(self, records: list[MemoryRecord]) -> list[MemoryRecord]:
        cap = self.config.max_memory_tokens
        if self.estimator is None or cap <= 0:
            return records
        while records and self.estimator.estimate(self.format_injection(records)) > cap:
            records = records[:-1]
        return records

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def should_vectorize(self, message: Message) -> bool:
        cfg = self.config
        if message.is_system or not message.content:
            return False
        if message.is_user and not cfg.save_user_messages:
            return False
        if not message.is_user and not cfg.save_assistant_messages:
            return False
        return True

    def vectorize_message(
        self,
        conversation_id: str,
        messages: Sequence[Message],
        index: int,
    ) -> bool:
        """Embed and upsert one message once it leaves the delay window."""
        cfg = self.config
        if not cfg.enabled or not cfg.auto_save:
            return False
        if index < 0 or index >= len(messages):
            return False
        message = messages[index]
        if message.annotations.vectorized or not self.should_vectorize(message):
            return False
        if index >= len(messages) - cfg.vectorization_delay:
            logger.debug("Message %d within vectorization delay window, skipping", index)
            return False

        text = message.content
        if cfg.use_summaries and message.annotations.summary:
            text = message.annotations.summary
        message_hash = message.content_hash
        collection = self.collection_for(conversation_id)
        try:
            vector = self.embedder.embed(text)
            if not vector:
                raise ValueError("empty embedding")
            self.store.ensure_collection(collection, len(vector))
            self.store.upsert(collection, [VectorPoint(
                id=str(uuid.uuid4()),
                vector=vector,
                payload={
                    "message_index": index,
                    "message_hash": message_hash,
                    "text": text,
                    "is_user": message.is_user,
                    "timestamp": time.time(),
                    "conversation_id": conversation_id,
                },
            )])
        except Exception as e:
            logger.error("Failed to vectorize message %d: %s", index, e)
            return False

        message.annotations.vectorized = True
        message.annotations.vector_hash = message_hash
        logger.debug("Vectorized message %d (hash %s)", index, message_hash)
        return True

    def vectorize_pending(self, conversation_id: str, messages: Sequence[Message]) -> int:
        """Backfill every eligible message older than the delay window."""
        if not self.config.enabled or not self.config.auto_save:
            return 0
        threshold = len(messages) - self.config.vectorization_delay
        count = 0
        for i in range(max(threshold, 0)):
            if self.vectorize_message(conversation_id, messages, i):
                count += 1
        if count:
            logger.debug("Vectorized %d delayed message(s)", count)
        return count

    def sync_deletions(self, conversation_id: str, deleted_hashes: Sequence[str]) -> int:
        """Delete points for messages that no longer exist. Returns hashes removed."""
        cfg = self.config
        if not cfg.enabled or not cfg.delete_on_message_delete or not deleted_hashes:
            return 0
        collection = self.collection_for(conversation_id)
        removed = 0
        for message_hash in deleted_hashes:
            try:
                self.store.delete_by_hash(collection, message_hash, conversation_id)
                removed += 1
            except Exception as e:
                logger.error("Failed to delete memory point for hash %s: %s", message_hash, e)
        logger.debug("Deleted memory points for %d/%d hash(es)", removed, len(deleted_hashes))
        return removed

    def clear(self, conversation_id: str) -> None:
        self.store.delete_collection(self.collection_for(conversation_id))

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _submit(self, fn, *args) -> None:
        self._pending = [f for f in self._pending if not f.done()]
        self._pending.append(self._pool.submit(fn, *args))

    def schedule_vectorization(self, conversation_id: str, messages: Sequence[Message]) -> None:
        """Run ``vectorize_pending`` on the background worker."""
        if self.config.enabled and self.config.auto_save:
            self._submit(self.vectorize_pending, conversation_id, list(messages))

    def _delete_duplicates(self, collection: str, point_ids: list[str]) -> None:
        try:
            self.store.delete_points(collection, point_ids)
        except Exception as e:
            logger.error("Failed to delete duplicate memory points: %s", e)

    def wait_background(self, timeout: float | None = None) -> None:
        for future in list(self._pending):
            future.result(timeout=timeout)
        self._pending = []

    def close(self) -> None:
        self._pool.shutdown(wait=False)
