"""End-to-end tests for ContextBudgetController against an in-process host."""

import pytest

from context_budget.config import load_config
from context_budget.controller import ContextBudgetController
from context_budget.core.vector_store import collection_name
from context_budget.storage.memory import MemoryStateStore
from context_budget.types import (
    CalibrationPhase,
    ConfigError,
    Message,
    QueueStatus,
)

from tests.conftest import (
    BlockingLLMProvider,
    FakeEmbedder,
    FakeHost,
    MockLLMProvider,
    make_messages,
)


def _controller(config, host, **kwargs):
    controller = ContextBudgetController(config=config, host=host, **kwargs)
    controller.on_conversation_changed("c1")
    return controller


def _cycle(controller, host):
    """One generation: plan, realize the prompt, reconcile."""
    plan = controller.on_generation_start()
    host.render()
    metrics = controller.on_generation_complete()
    return plan, metrics


@pytest.fixture
def controller(sample_config, fake_host):
    c = _controller(sample_config, fake_host)
    fake_host.render()
    yield c
    c.close()


class TestBatchEviction:
    def test_first_generation_evicts_one_batch(self, controller, fake_host):
        plan, metrics = _cycle(controller, fake_host)
        assert plan.cutoff_index == 20
        assert plan.excluded[:20] == [True] * 20
        assert plan.excluded[20:] == [False] * 80
        assert plan.breakdown.non_chat_tokens == 3500
        assert plan.breakdown.total_tokens == 7500
        assert metrics.realized_tokens == 7500
        assert metrics.cutoff_index == 20

    def test_cutoff_advances_and_holds(self, controller, fake_host):
        _cycle(controller, fake_host)

        fake_host.history.extend(make_messages(14, start=100))
        fake_host.render()
        plan, _ = _cycle(controller, fake_host)
        assert plan.cutoff_index == 40

        fake_host.history.extend(make_messages(12, start=114))
        fake_host.render()
        plan, metrics = _cycle(controller, fake_host)
        assert plan.cutoff_index == 40
        assert metrics.realized_tokens == 7800

    def test_accurate_estimates_keep_factor(self, controller, fake_host):
        _, metrics = _cycle(controller, fake_host)
        assert metrics.correction_factor == pytest.approx(1.0)
        assert metrics.phase == CalibrationPhase.WAITING
        assert metrics.prediction == "Waiting: ~500 tokens until threshold"

    def test_fallback_non_chat_without_prompt(self, sample_config):
        host = FakeHost(make_messages(100))
        c = _controller(sample_config, host)
        plan = c.on_generation_start()
        assert plan.breakdown.non_chat_tokens == 750
        assert plan.cutoff_index == 0
        c.close()

    def test_eviction_disabled(self, fake_host):
        config = load_config(config_dict={
            "eviction": {"enabled": False, "target_token_budget": 8000},
            "storage": {"backend": "memory"},
        })
        c = _controller(config, fake_host)
        fake_host.render()
        assert c.on_generation_start().cutoff_index == 0
        c.close()


class TestDeletions:
    def test_explicit_deletion_shifts_cutoff(self, controller, fake_host):
        _cycle(controller, fake_host)
        del fake_host.history[5:7]
        report = controller.on_message_deleted()
        assert report.deleted_count == 2
        assert report.cutoff_after == 18
        assert controller.state().cutoff_index == 18
        assert controller.state().deletion_count == 2

    def test_silent_deletion_caught_at_generation(self, controller, fake_host):
        _cycle(controller, fake_host)
        del fake_host.history[0:2]
        plan = controller.on_generation_start()
        assert plan.cutoff_index == 18

    def test_edit_marks_message_for_resummary(self, controller, fake_host):
        _cycle(controller, fake_host)
        message = fake_host.history[5]
        message.annotations.summary = "Assistant: Old note."
        message.annotations.summary_hash = message.content_hash
        message.content = "an entirely different reply " + "word " * 20
        controller.on_message_rendered(5)
        assert message.annotations.needs_summary is True


class TestUserActions:
    def test_set_target_resets_cutoff(self, controller, fake_host):
        _cycle(controller, fake_host)
        controller.set_target_budget(6000)
        state = controller.state()
        assert state.cutoff_index == 0
        assert state.target_token_budget == 6000
        assert state.correction_factor == pytest.approx(1.0)

        plan = controller.on_generation_start()
        assert plan.cutoff_index == 60

    def test_invalid_target_reported(self, controller):
        controller.set_target_budget(0)
        assert controller.state().target_token_budget == 8000
        assert "set target" in controller.status().last_error

    def test_reset(self, controller, fake_host):
        _cycle(controller, fake_host)
        state = controller.state()
        state.correction_factor = 0.8
        controller.reset()
        assert state.cutoff_index == 0
        assert state.correction_factor == 0.8

        controller.reset(cutoff=False, calibration=True)
        assert state.correction_factor == 1.0
        assert state.calibration_state == CalibrationPhase.WAITING

    def test_summarize_all(self, sample_config):
        provider = MockLLMProvider()
        host = FakeHost(make_messages(30))
        c = _controller(sample_config, host, llm_provider=provider)
        assert c.summarize_all() == 30
        assert c.wait_for_summaries(timeout=5)
        assert len(provider.calls) == 30
        assert all(m.annotations.summary for m in host.history)
        assert not any(m.annotations.needs_summary for m in host.history)
        c.close()

    def test_stop_summarization(self, sample_config):
        provider = BlockingLLMProvider(block_on=3)
        host = FakeHost(make_messages(30))
        c = _controller(sample_config, host, llm_provider=provider)
        c.summarize_all()
        assert provider.started.wait(5)
        c.stop_summarization()
        assert c.wait_for_summaries(timeout=5)
        assert c.queue_status == QueueStatus.IDLE
        assert len(provider.calls) == 3
        assert host.history[2].annotations.summary is None
        c.close()


class TestObservability:
    def test_summarization_stats(self, sample_config, fake_host):
        c = _controller(sample_config, fake_host, llm_provider=MockLLMProvider())
        fake_host.render()
        c.on_generation_start()
        assert c.wait_for_summaries(timeout=5)
        stats = c.summarization_stats()
        assert stats.total == 100
        assert stats.summarized == 20
        assert stats.in_context == 80
        assert stats.pending == 0
        c.close()

    def test_summaries_injected_next_generation(self, sample_config, fake_host):
        c = _controller(sample_config, fake_host, llm_provider=MockLLMProvider())
        fake_host.render()
        c.on_generation_start()
        assert c.wait_for_summaries(timeout=5)
        plan = c.on_generation_start()
        assert plan.summary_injection.text.count("Shared the plan") == 20
        assert plan.breakdown.summary_tokens > 0
        c.close()

    def test_trim_estimate(self, controller, fake_host):
        assert controller.estimate_generations_to_trim().generations is None
        _cycle(controller, fake_host)
        estimate = controller.estimate_generations_to_trim()
        assert estimate.room_left == 500
        assert estimate.avg_tokens_per_generation == 98
        assert estimate.generations == 5

    def test_no_host_never_raises(self, sample_config):
        c = ContextBudgetController(config=sample_config)
        plan = c.on_generation_start("c1")
        assert plan.cutoff_index == 0
        assert "generation start" in c.last_error
        assert c.on_message_deleted("c1").deleted_count == 0
        c.close()

    def test_status_failure_returns_minimal_metrics(self, sample_config, fake_host):
        c = _controller(sample_config, fake_host)
        fake_host.render()

        def lost_connection():
            raise ConnectionError("host went away")

        fake_host.max_context_size = lost_connection
        metrics = c.on_generation_complete()
        assert metrics.conversation_id == "c1"
        assert metrics.target_tokens == 0
        assert metrics.last_error.startswith("status:")
        assert "host went away" in metrics.last_error
        c.close()

    def test_invalid_config_rejected(self):
        config = load_config(config_dict={"eviction": {"batch_size": 0}})
        with pytest.raises(ConfigError):
            ContextBudgetController(config=config)


class TestPersistence:
    def test_ledger_survives_conversation_switch(self, sample_config, fake_host):
        store = MemoryStateStore()
        c = _controller(sample_config, fake_host, store=store)
        fake_host.render()
        c.on_generation_start()
        c.on_conversation_changed("c2")
        assert c.state().cutoff_index == 0
        c.on_conversation_changed("c1")
        assert c.state().cutoff_index == 20
        assert sorted(store.list_conversations()) == ["c1", "c2"]
        c.close()

    def test_changed_configured_target_resets_cutoff(self, sample_config, fake_host):
        store = MemoryStateStore()
        c = _controller(sample_config, fake_host, store=store)
        fake_host.render()
        c.on_generation_start()
        c.close()

        sample_config.eviction.target_token_budget = 7000
        reopened = _controller(sample_config, fake_host, store=store)
        state = reopened.state()
        assert state.cutoff_index == 0
        assert state.target_token_budget == 7000
        reopened.close()


class TestMemory:
    @pytest.fixture
    def memory_host(self):
        messages = make_messages(40)
        messages[3] = Message(role="assistant", content="the dragon guarded the castle gate " + "word " * 40)
        messages[39] = Message(role="assistant", content="what became of the dragon " + "word " * 40)
        return FakeHost(messages)

    @pytest.fixture
    def memory_controller(self, memory_host, vector_store):
        config = load_config(config_dict={
            "memory": {"enabled": True},
            "storage": {"backend": "memory"},
        })
        c = _controller(config, memory_host, vector_store=vector_store, embedder=FakeEmbedder())
        yield c
        c.close()

    def test_retrieval_injected(self, memory_controller, memory_host, vector_store):
        assert memory_controller.vectorize_pending() == 38
        plan = memory_controller.on_generation_start()
        assert [m.first_index for m in plan.memories] == [3]
        assert "dragon guarded" in plan.memory_injection.text
        assert plan.memory_injection.depth == 3
        assert plan.breakdown.memory_tokens == plan.memory_injection.tokens > 0
        assert memory_controller.memories()[0].first_index == 3

    def test_deletion_removes_points(self, memory_controller, memory_host, vector_store):
        memory_controller.vectorize_pending()
        collection = collection_name("context_budget_memories", "c1", True)
        assert vector_store.count(collection) == 38
        del memory_host.history[3]
        report = memory_controller.on_message_deleted()
        assert report.deleted_count == 1
        assert vector_store.count(collection) == 37

    def test_embedder_failure_degrades(self, memory_host, vector_store):
        config = load_config(config_dict={
            "memory": {"enabled": True},
            "storage": {"backend": "memory"},
        })
        c = _controller(config, memory_host, vector_store=vector_store, embedder=FakeEmbedder(fail=True))
        assert c.vectorize_pending() == 0
        plan = c.on_generation_start()
        assert plan.memories == []
        assert plan.memory_injection.text == ""
        c.close()
