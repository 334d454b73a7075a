"""ContextBudgetController: main orchestrator wiring all components together."""

from __future__ import annotations

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
from pathlib import Path

from .config import load_config, validate_config
from .core.budget import BudgetEstimator, summary_eligible
from .core.calibration import CalibrationStateMachine
from .core.embeddings import build_embedder
from .core.eviction import EvictionController
from .core.injection import build_memory_injection, build_summary_injection
from .core.prompt_parser import PromptParser
from .core.resilience import ChangeResilienceMonitor
from .core.retriever import MemoryRetriever
from .core.store import StateStore
from .core.summarizer import SummarizationQueue
from .core.token_estimator import TokenEstimator
from .core.vector_store import QdrantVectorStore, VectorStore
from .providers import build_provider
from .storage.filesystem import FilesystemStateStore
from .storage.memory import MemoryStateStore
from .storage.sqlite import SQLiteStateStore
from .token_counter import create_token_counter
from .types import (
    CalibrationSnapshot,
    ConfigError,
    ContextBudgetConfig,
    ConversationBudgetState,
    ConversationHost,
    DeletionReport,
    Embedder,
    GenerationPlan,
    LLMProvider,
    MemoryRecord,
    Message,
    ProfileSwitcher,
    QueueStatus,
    StatusMetrics,
    SummarizationStats,
    TrimEstimate,
)

logger = logging.getLogger(__name__)

DEFAULT_CONVERSATION = "default"
TRIM_LOOKBACK = 5


class ContextBudgetController:
    """Keeps the live window of a conversation near a token budget.

    Usage:
        controller = ContextBudgetController(host=host, config_path="./context-budget.yaml")
        controller.on_conversation_changed("chat-42")

        # Before generation: apply plan.excluded and the two injection blocks
        plan = controller.on_generation_start()

        # After generation: reconcile prediction with the realized prompt
        metrics = controller.on_generation_complete()

    No entry point raises into the host; failures are logged and surfaced
    as ``StatusMetrics.last_error``.
    """

    def __init__(
        self,
        config: ContextBudgetConfig | None = None,
        config_path: str | Path | None = None,
        host: ConversationHost | None = None,
        store: StateStore | None = None,
        llm_provider: LLMProvider | None = None,
        memory_retriever: MemoryRetriever | None = None,
        profile_switcher: ProfileSwitcher | None = None,
        vector_store: VectorStore | None = None,
        embedder: Embedder | None = None,
    ) -> None:
        self.config = config or load_config(config_path)
        errors = validate_config(self.config)
        if errors:
            raise ConfigError(errors)

        self.host = host
        counter = host.token_count if host is not None else create_token_counter(self.config.token_counter)
        self._estimator = TokenEstimator(counter, self.config.role_headers)
        self._parser = PromptParser(self._estimator, self.config.header_pattern)
        self._eviction = EvictionController(self.config.eviction)
        self._calibration = CalibrationStateMachine(
            self.config.calibration, memory_enabled=self.config.memory.enabled,
        )
        self._resilience = ChangeResilienceMonitor(
            self._calibration, self.config.calibration.deletion_tolerance,
        )
        self._init_store(store)
        self._init_summarizer(llm_provider, profile_switcher)
        self._init_memory(memory_retriever, vector_store, embedder)
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="context-budget-retrieval")

        self._states: dict[str, ConversationBudgetState] = {}
        self._snapshots: dict[str, CalibrationSnapshot] = {}
        self._memories: dict[str, list[MemoryRecord]] = {}
        self._memory_tokens: dict[str, int] = {}
        self._last_actual: dict[str, int] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._active: str | None = None
        self.last_error: str | None = None

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def _init_store(self, store: StateStore | None) -> None:
        """Initialize the storage backend."""
        if store is not None:
            self._store = store
            return
        backend = self.config.storage.backend
        if backend == "sqlite":
            self._store = SQLiteStateStore(db_path=self.config.storage.sqlite_path)
        elif backend == "filesystem":
            self._store = FilesystemStateStore(root=self.config.storage.root)
        else:
            self._store = MemoryStateStore()

    def _init_summarizer(
        self,
        llm_provider: LLMProvider | None,
        profile_switcher: ProfileSwitcher | None,
    ) -> None:
        summ = self.config.summarization
        if llm_provider is None:
            provider_config = self.config.providers.get(summ.provider)
            if provider_config is not None:
                llm_provider = build_provider(summ.provider, provider_config, summ)
        self._summary_queue = SummarizationQueue(
            provider=llm_provider,
            config=summ,
            messages=self._host_messages,
            profile_switcher=profile_switcher,
        )

    def _init_memory(
        self,
        retriever: MemoryRetriever | None,
        vector_store: VectorStore | None,
        embedder: Embedder | None,
    ) -> None:
        mem = self.config.memory
        if retriever is None and mem.enabled:
            retriever = MemoryRetriever(
                config=mem,
                embedder=embedder or build_embedder(mem),
                store=vector_store or QdrantVectorStore(mem.qdrant_url, timeout=mem.timeout),
                estimator=self._estimator,
            )
        self._retriever = retriever

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _host_messages(self) -> list[Message]:
        if self.host is None:
            raise RuntimeError("No conversation host attached")
        return self.host.messages()

    def _lock_for(self, conversation_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(conversation_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[conversation_id] = lock
            return lock

    def _resolve(self, conversation_id: str | None) -> str:
        if conversation_id:
            return conversation_id
        return self._active or DEFAULT_CONVERSATION

    def _fail(self, action: str, error: Exception) -> None:
        self.last_error = f"{action}: {error}"
        logger.error("%s failed: %s", action, error, exc_info=True)

    def _max_context(self) -> int:
        if self.host is None:
            return 0
        return int(self.host.max_context_size())

    def _ensure_state(self, conversation_id: str) -> ConversationBudgetState:
        state = self._states.get(conversation_id)
        if state is None:
            state = self._load_state(conversation_id)
            self._states[conversation_id] = state
        return state

    def _load_state(self, conversation_id: str) -> ConversationBudgetState:
        """Restore a ledger from the store, or start a fresh one."""
        target = self.config.eviction.target_token_budget
        try:
            saved = self._store.load_state(conversation_id)
        except Exception as e:
            logger.error("Failed to load ledger for %s: %s", conversation_id, e)
            saved = None
        if saved is None:
            logger.debug("No ledger for %s, starting fresh", conversation_id)
            return ConversationBudgetState(
                conversation_id=conversation_id,
                target_token_budget=target,
                last_applied_target=target,
            )

        if not self.config.calibration.auto_calibrate_target and saved.last_applied_target != target:
            logger.info(
                "Configured target changed %s -> %d for %s, resetting cutoff",
                saved.last_applied_target, target, conversation_id,
            )
            saved.target_token_budget = target
            saved.last_applied_target = target
            saved.cutoff_index = 0
        logger.info(
            "Restored ledger: conversation=%s, cutoff=%d, factor=%.3f, phase=%s",
            conversation_id, saved.cutoff_index, saved.correction_factor,
            saved.calibration_state.value,
        )
        return saved

    def _save_state(self, state: ConversationBudgetState) -> None:
        """Persist the ledger to the store."""
        state.saved_at = datetime.now(timezone.utc)
        try:
            self._store.save_state(state)
        except Exception as e:
            logger.error("Failed to save ledger for %s: %s", state.conversation_id, e)

    # ------------------------------------------------------------------
    # Lifecycle events
    # ------------------------------------------------------------------

    def on_conversation_changed(self, conversation_id: str) -> ConversationBudgetState | None:
        """Save the outgoing ledger and load (or create) the incoming one."""
        try:
            self._summary_queue.stop()
            previous = self._active
            if previous and previous in self._states:
                with self._lock_for(previous):
                    self._save_state(self._states.pop(previous))
                self._resilience.forget(previous)
                self._snapshots.pop(previous, None)

            self._active = conversation_id
            with self._lock_for(conversation_id):
                state = self._ensure_state(conversation_id)
                if self.host is not None:
                    self._resilience.snapshot(conversation_id, self.host.messages())
                self._save_state(state)
            logger.debug("Active conversation: %s", conversation_id)
            return state
        except Exception as e:
            self._fail("conversation change", e)
            return None

    def on_generation_start(self, conversation_id: str | None = None) -> GenerationPlan:
        """Decide the cutoff and build both injection blocks for the next prompt."""
        conversation_id = self._resolve(conversation_id)
        with self._lock_for(conversation_id):
            state = None
            try:
                state = self._ensure_state(conversation_id)
                messages = self._host_messages()
                return self._plan_generation(state, messages)
            except Exception as e:
                self._fail("generation start", e)
                cutoff = state.cutoff_index if state is not None else 0
                return GenerationPlan(conversation_id=conversation_id, cutoff_index=cutoff)

    def _plan_generation(
        self,
        state: ConversationBudgetState,
        messages: list[Message],
    ) -> GenerationPlan:
        conversation_id = state.conversation_id
        eviction_cfg = self.config.eviction

        self._reconcile_history(state, messages)

        memories, memory_text = self._retrieve_memories(conversation_id, messages)
        memory_block = build_memory_injection(
            memory_text, self.config.memory.injection, self._estimator,
        )
        self._memories[conversation_id] = memories
        self._memory_tokens[conversation_id] = memory_block.tokens

        # Auto-calibrated targets already reserve the averaged memory cost
        budget_memory = 0
        if self.config.memory.account_memory_tokens and not self.config.calibration.auto_calibrate_target:
            budget_memory = memory_block.tokens

        measurement = self._parser.measure(self.host.last_realized_prompt(), messages)
        budget = BudgetEstimator(
            messages,
            self._estimator,
            eviction_cfg,
            correction_factor=state.correction_factor,
            memory_tokens=budget_memory,
            separator_tokens=self._estimator.separator_overhead(self.config.summarization.separator),
            message_tokens=measurement.message_tokens if measurement else None,
        )
        if measurement is not None:
            budget.non_chat_tokens = measurement.non_chat_tokens
        else:
            reference = self._last_actual.get(conversation_id) or budget.chat_tokens(state.cutoff_index)
            budget.non_chat_tokens = math.floor(reference * eviction_cfg.non_chat_fallback_ratio)
            logger.debug("No realized prompt, non-chat estimated at %d tokens", budget.non_chat_tokens)

        cutoff = state.cutoff_index
        if eviction_cfg.enabled:
            decision = self._eviction.decide(
                budget,
                state.cutoff_index,
                state.target_token_budget,
                allow_retract=not self.config.calibration.auto_calibrate_target,
            )
            cutoff = decision.cutoff_index
            if decision.direction != "none":
                logger.info(
                    "Cutoff %d -> %d for %s (estimated %d / target %d)",
                    decision.previous_cutoff, cutoff, conversation_id,
                    decision.estimated_total, state.target_token_budget,
                )
        else:
            cutoff = 0
        state.cutoff_index = cutoff

        breakdown = budget.breakdown(cutoff)
        self._snapshots[conversation_id] = CalibrationSnapshot(
            predicted_total=breakdown.total_tokens,
            predicted_chat_tokens=breakdown.chat_tokens,
            predicted_non_chat_tokens=breakdown.non_chat_tokens,
        )

        excluded = self._apply_exclusion(messages, cutoff)
        if self.config.summarization.auto_summarize:
            pending = [
                i for i in range(min(cutoff, len(messages)))
                if messages[i].annotations.needs_summary
            ]
            if pending:
                self._summary_queue.enqueue(pending)

        summary_block = build_summary_injection(
            messages, cutoff, self._estimator, eviction_cfg, self.config.summarization,
        )
        self._resilience.snapshot(conversation_id, messages)
        self._save_state(state)

        return GenerationPlan(
            conversation_id=conversation_id,
            cutoff_index=cutoff,
            excluded=excluded,
            summary_injection=summary_block,
            memory_injection=memory_block,
            breakdown=breakdown,
            memories=memories,
        )

    def _apply_exclusion(self, messages: list[Message], cutoff: int) -> list[bool]:
        """Set the excluded flag on every message; queue lagging ones for summaries."""
        excluded = []
        for i, message in enumerate(messages):
            lagging = i < cutoff
            ann = message.annotations
            ann.excluded = lagging
            excluded.append(lagging)
            if (
                lagging
                and not message.is_system
                and (not ann.summary or ann.summary_hash != message.content_hash)
                and summary_eligible(message, self._estimator, self.config.eviction)
            ):
                ann.needs_summary = True
        return excluded

    def _reconcile_history(self, state: ConversationBudgetState, messages: list[Message]) -> None:
        """Catch deletions and edits that happened without an explicit event."""
        conversation_id = state.conversation_id
        if not self._resilience.has_snapshot(conversation_id):
            self._resilience.snapshot(conversation_id, messages)
            return
        self._resilience.detect_edits(conversation_id, messages)
        report = self._resilience.handle_deletion(
            state, messages, self._eviction.max_cutoff(len(messages)),
        )
        if report.deleted_count:
            self._sync_memory_deletions(conversation_id, report)

    def _retrieve_memories(
        self,
        conversation_id: str,
        messages: list[Message],
    ) -> tuple[list[MemoryRecord], str]:
        """Query long-term memory on a worker thread, bounded by the memory timeout."""
        if self._retriever is None or not self.config.memory.enabled:
            return [], ""
        future = self._pool.submit(self._retriever.retrieve, conversation_id, list(messages))
        try:
            records = future.result(timeout=self.config.memory.timeout)
        except FutureTimeoutError:
            logger.warning("Memory retrieval timed out after %.1fs", self.config.memory.timeout)
            return [], ""
        except Exception as e:
            logger.error("Memory retrieval failed: %s", e)
            return [], ""
        return records, self._retriever.format_injection(records)

    def on_generation_complete(
        self,
        raw_prompt: str | list | None = None,
        conversation_id: str | None = None,
    ) -> StatusMetrics:
        """Measure the realized prompt; update correction factor and calibration."""
        conversation_id = self._resolve(conversation_id)
        with self._lock_for(conversation_id):
            try:
                state = self._ensure_state(conversation_id)
                if raw_prompt is None and self.host is not None:
                    raw_prompt = self.host.last_realized_prompt()
                measurement = self._parser.measure(raw_prompt)
                if measurement is None:
                    logger.debug("No realized prompt to measure for %s", conversation_id)
                    return self.status(conversation_id)

                snapshot = self._snapshots.pop(conversation_id, None)
                self._calibration.update_correction_factor(state, snapshot, measurement)
                if snapshot is not None:
                    logger.debug(
                        "Predicted %d (chat %d, non-chat %d), actual %d (chat %d, non-chat %d)",
                        snapshot.predicted_total, snapshot.predicted_chat_tokens,
                        snapshot.predicted_non_chat_tokens, measurement.total_tokens,
                        measurement.chat_tokens, measurement.non_chat_tokens,
                    )
                self._last_actual[conversation_id] = measurement.total_tokens
                self._calibration.observe(
                    state,
                    measurement.total_tokens,
                    self._max_context(),
                    self._memory_tokens.get(conversation_id, 0),
                )
                self._save_state(state)
            except Exception as e:
                self._fail("generation complete", e)
            return self.status(conversation_id)

    def on_message_rendered(self, index: int | None = None, conversation_id: str | None = None) -> None:
        """Detect edits and vectorize messages that left the delay window."""
        conversation_id = self._resolve(conversation_id)
        with self._lock_for(conversation_id):
            try:
                messages = self._host_messages()
                self._resilience.detect_edits(conversation_id, messages)
                if self._retriever is not None:
                    self._retriever.schedule_vectorization(conversation_id, messages)
            except Exception as e:
                self._fail("message rendered", e)

    def on_message_deleted(self, conversation_id: str | None = None) -> DeletionReport:
        """Shift the cutoff for deletions at or before it and sync memory points."""
        conversation_id = self._resolve(conversation_id)
        with self._lock_for(conversation_id):
            try:
                state = self._ensure_state(conversation_id)
                messages = self._host_messages()
                report = self._resilience.handle_deletion(
                    state, messages, self._eviction.max_cutoff(len(messages)),
                )
                if report.deleted_count:
                    self._sync_memory_deletions(conversation_id, report)
                    self._save_state(state)
                return report
            except Exception as e:
                self._fail("message deleted", e)
                return DeletionReport()

    def _sync_memory_deletions(self, conversation_id: str, report: DeletionReport) -> None:
        if self._retriever is None or not report.deleted_hashes:
            return
        self._retriever.sync_deletions(conversation_id, report.deleted_hashes)

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def reset(
        self,
        conversation_id: str | None = None,
        cutoff: bool = True,
        calibration: bool = False,
    ) -> None:
        """Clear the cutoff and/or the learned calibration state."""
        conversation_id = self._resolve(conversation_id)
        with self._lock_for(conversation_id):
            try:
                state = self._ensure_state(conversation_id)
                if cutoff:
                    state.cutoff_index = 0
                    self._snapshots.pop(conversation_id, None)
                if calibration:
                    self._calibration.reset(state)
                    state.deletion_count = 0
                    state.memory_token_history = []
                logger.info(
                    "Reset %s (cutoff=%s, calibration=%s)", conversation_id, cutoff, calibration,
                )
                self._save_state(state)
            except Exception as e:
                self._fail("reset", e)

    def set_target_budget(self, target_tokens: int, conversation_id: str | None = None) -> None:
        """Apply a host- or user-driven target. Resets the cutoff, keeps the factor."""
        conversation_id = self._resolve(conversation_id)
        with self._lock_for(conversation_id):
            try:
                if target_tokens <= 0:
                    raise ValueError(f"target must be > 0 (got {target_tokens})")
                state = self._ensure_state(conversation_id)
                if state.target_token_budget == target_tokens:
                    return
                logger.info(
                    "Target budget %d -> %d for %s", state.target_token_budget,
                    target_tokens, conversation_id,
                )
                state.target_token_budget = target_tokens
                state.last_applied_target = target_tokens
                state.cutoff_index = 0
                self._save_state(state)
            except Exception as e:
                self._fail("set target", e)

    def summarize_all(self, conversation_id: str | None = None) -> int:
        """Queue every eligible message lacking a current summary."""
        conversation_id = self._resolve(conversation_id)
        with self._lock_for(conversation_id):
            try:
                messages = self._host_messages()
                indices = []
                for i, message in enumerate(messages):
                    ann = message.annotations
                    if message.is_system or not summary_eligible(message, self._estimator, self.config.eviction):
                        continue
                    if not ann.summary or ann.needs_summary or ann.summary_hash != message.content_hash:
                        ann.needs_summary = True
                        indices.append(i)
                return self._summary_queue.enqueue(indices)
            except Exception as e:
                self._fail("summarize all", e)
                return 0

    def stop_summarization(self) -> None:
        self._summary_queue.stop()

    def wait_for_summaries(self, timeout: float | None = None) -> bool:
        return self._summary_queue.wait(timeout)

    def vectorize_pending(self, conversation_id: str | None = None) -> int:
        """Backfill memory points for every eligible message outside the delay window."""
        conversation_id = self._resolve(conversation_id)
        if self._retriever is None:
            return 0
        try:
            return self._retriever.vectorize_pending(conversation_id, self._host_messages())
        except Exception as e:
            self._fail("vectorize", e)
            return 0

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def summary_queue(self) -> SummarizationQueue:
        return self._summary_queue

    def state(self, conversation_id: str | None = None) -> ConversationBudgetState:
        conversation_id = self._resolve(conversation_id)
        with self._lock_for(conversation_id):
            return self._ensure_state(conversation_id)

    def memories(self, conversation_id: str | None = None) -> list[MemoryRecord]:
        return list(self._memories.get(self._resolve(conversation_id), []))

    def status(self, conversation_id: str | None = None) -> StatusMetrics:
        conversation_id = self._resolve(conversation_id)
        with self._lock_for(conversation_id):
            try:
                state = self._ensure_state(conversation_id)
                actual = self._last_actual.get(conversation_id, 0)
                target = state.target_token_budget
                error_pct = abs((actual - target) / target * 100) if actual and target else 0.0
                return StatusMetrics(
                    conversation_id=conversation_id,
                    realized_tokens=actual,
                    target_tokens=target,
                    error_pct=error_pct,
                    cutoff_index=state.cutoff_index,
                    correction_factor=state.correction_factor,
                    phase=state.calibration_state,
                    stable_count=state.stable_count,
                    deletion_count=state.deletion_count,
                    queue_status=self._summary_queue.status,
                    prediction=self._calibration.prediction(state, self._max_context(), actual),
                    last_error=self.last_error,
                )
            except Exception as e:
                self._fail("status", e)
                return StatusMetrics(
                    conversation_id=conversation_id,
                    queue_status=self._summary_queue.status,
                    last_error=self.last_error,
                )

    def summarization_stats(self, conversation_id: str | None = None) -> SummarizationStats:
        conversation_id = self._resolve(conversation_id)
        stats = SummarizationStats()
        try:
            messages = self._host_messages()
        except Exception as e:
            self._fail("summarization stats", e)
            return stats
        cutoff = self.state(conversation_id).cutoff_index
        queued = self._summary_queue.queued_indices()
        for i, message in enumerate(messages):
            if message.is_system:
                continue
            stats.total += 1
            ann = message.annotations
            if i in queued:
                stats.in_queue += 1
            elif i >= cutoff:
                stats.in_context += 1
            elif ann.summary:
                stats.summarized += 1
            elif ann.needs_summary:
                stats.pending += 1
            else:
                stats.not_applicable += 1
        return stats

    def estimate_generations_to_trim(self, conversation_id: str | None = None) -> TrimEstimate:
        """Rough count of generations left before the next batch eviction."""
        conversation_id = self._resolve(conversation_id)
        actual = self._last_actual.get(conversation_id, 0)
        try:
            messages = self._host_messages()
        except Exception as e:
            self._fail("trim estimate", e)
            return TrimEstimate()
        if not messages or not actual:
            return TrimEstimate()

        room_left = max(0, self.state(conversation_id).target_token_budget - actual)
        if room_left <= 0:
            return TrimEstimate(generations=0, room_left=0)

        recent = [
            m for m in messages[max(0, len(messages) - TRIM_LOOKBACK):]
            if not m.is_system and m.content
        ]
        if not recent:
            return TrimEstimate(room_left=room_left)
        # Roughly one user and one assistant message per generation
        per_generation = sum(self._estimator.estimate(m.content) for m in recent) / len(recent) * 2
        if per_generation <= 0:
            return TrimEstimate(room_left=room_left)
        return TrimEstimate(
            generations=math.floor(room_left / per_generation),
            room_left=room_left,
            avg_tokens_per_generation=round(per_generation),
        )

    @property
    def queue_status(self) -> QueueStatus:
        return self._summary_queue.status

    def close(self) -> None:
        """Stop background work and persist every loaded ledger."""
        self._summary_queue.stop()
        for conversation_id, state in list(self._states.items()):
            with self._lock_for(conversation_id):
                self._save_state(state)
        self._pool.shutdown(wait=False)
        if self._retriever is not None:
            self._retriever.close()
        self._store.close()
