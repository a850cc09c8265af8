"""Tests for ContextManager.

This module exercises complete prepare cycles against an in-memory
provider.

Test Categories:
    - End-to-end compaction
    - Hooks and their ordering
    - Cancellation
    - Events
    - Strict mode
    - Runtime reconfiguration
    - Metrics
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from ctxbudget.context.compactors import SummarizeCompactor, TRUNCATION_MARKER, TruncateCompactor
from ctxbudget.context.estimators import TiktokenEstimator
from ctxbudget.context.manager import ContextManager, ContextManagerHooks, InMemoryContextProvider
from ctxbudget.context.strategies import AdaptiveStrategy, LazyStrategy
from ctxbudget.context.types import (
    BudgetStatus,
    ContextComponent,
    ContextEventType,
)
from ctxbudget.core.exceptions import (
    CompactionCancelledError,
    ContextOverflowError,
    CtxBudgetError,
    StrategyNotFoundError,
)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def provider(make_text):
    """Provider holding one 900-token history component."""
    return InMemoryContextProvider([make_text("history", 900)], max_context_size=1000)


@pytest.fixture
def manager(provider, small_config):
    return ContextManager(provider, config=small_config, agent_id="agent-1")


@pytest.fixture
def recorded_events(manager):
    """Every event the manager emits, in order."""
    events = []
    for event_type in ContextEventType:
        manager.on(event_type, events.append)
    return events


# =============================================================================
# End-to-End Tests
# =============================================================================


class TestPrepareCycle:
    """Tests for complete prepare cycles."""

    @pytest.mark.asyncio
    async def test_end_to_end_proactive(self, manager, provider):
        prepared = await manager.prepare()

        assert prepared.initial_budget.used == 900
        assert prepared.initial_budget.reserved == 150
        assert prepared.initial_budget.status is BudgetStatus.CRITICAL
        assert prepared.compacted is True
        assert prepared.tokens_freed == 450
        assert prepared.budget.used == 450
        assert prepared.budget.used <= int(850 * 0.65)
        assert prepared.budget.status is BudgetStatus.OK
        assert prepared.compaction_log == ['Proactive: truncate compacted "history" by 450 tokens']
        assert manager.current_budget is prepared.budget

        assert provider.applied == 1
        assert provider.components[0].content.endswith(TRUNCATION_MARKER)

    @pytest.mark.asyncio
    async def test_under_threshold_is_untouched(self, small_config, make_text):
        component = make_text("history", 100)
        provider = InMemoryContextProvider([component], max_context_size=1000)
        manager = ContextManager(provider, config=small_config)

        prepared = await manager.prepare()

        assert prepared.compacted is False
        assert prepared.budget is prepared.initial_budget
        assert prepared.components == [component]
        assert prepared.compaction_log == []
        assert provider.applied == 1

    @pytest.mark.asyncio
    async def test_auto_compact_disabled(self, provider, small_config):
        hook = AsyncMock()
        manager = ContextManager(
            provider,
            config=small_config.with_updates(auto_compact=False),
            hooks=ContextManagerHooks(before_compaction=hook),
        )
        events = []
        manager.on(ContextEventType.BUDGET_CRITICAL, events.append)

        prepared = await manager.prepare()

        assert prepared.compacted is False
        assert prepared.budget.used == 900
        assert provider.components[0].content == "x" * 3600
        hook.assert_not_awaited()
        assert [e.event_type for e in events] == [ContextEventType.BUDGET_CRITICAL]

    @pytest.mark.asyncio
    async def test_summarize_runs_before_truncate(self, small_config, estimator):
        llm = AsyncMock(return_value="Recap of the conversation.")
        history = ContextComponent(
            name="history", content="word " * 720, metadata={"strategy": "summarize"}
        )
        provider = InMemoryContextProvider([history], max_context_size=1000)
        manager = ContextManager(
            provider,
            config=small_config,
            compactors=[TruncateCompactor(estimator), SummarizeCompactor(estimator, llm)],
        )

        prepared = await manager.prepare()

        assert prepared.get_component("history").content == "Recap of the conversation."
        assert prepared.outcomes[0].compactor == "summarize"
        llm.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_pinned_components_survive(self, small_config, make_text):
        pinned = make_text("system", 300, compactable=False)
        provider = InMemoryContextProvider([pinned, make_text("history", 600)], max_context_size=1000)
        manager = ContextManager(provider, config=small_config)

        prepared = await manager.prepare()

        assert prepared.compacted is True
        assert prepared.get_component("system") is pinned

    @pytest.mark.asyncio
    async def test_duplicate_names_rejected(self, small_config, make_text):
        provider = InMemoryContextProvider(
            [make_text("history", 10), make_text("history", 20)], max_context_size=1000
        )
        manager = ContextManager(provider, config=small_config)

        with pytest.raises(CtxBudgetError) as exc_info:
            await manager.prepare()

        assert exc_info.value.code == "DUPLICATE_COMPONENT"
        assert provider.applied == 0

    def test_config_defaults_to_provider_size(self):
        manager = ContextManager(InMemoryContextProvider([], max_context_size=4096))

        assert manager.config.max_context_tokens == 4096
        assert manager.strategy.name == "proactive"
        assert [c.name for c in manager.compactors] == ["truncate"]

    @pytest.mark.asyncio
    async def test_concurrent_cycles_are_serialized(self, manager, provider):
        first, second = await asyncio.gather(manager.prepare(), manager.prepare())

        assert first.compacted is True
        assert second.compacted is False
        assert second.initial_budget.used == 450
        assert provider.applied == 2

    @pytest.mark.asyncio
    async def test_rolling_window_writes_back_windowed_components(self, small_config):
        provider = InMemoryContextProvider(
            [ContextComponent(name="history", content=["a", "b", "c", "d"])], max_context_size=1000
        )
        manager = ContextManager(
            provider,
            config=small_config.with_updates(strategy="rolling-window", strategy_options={"max_messages": 2}),
        )

        prepared = await manager.prepare()

        assert prepared.compacted is False
        assert prepared.components[0].content == ["c", "d"]
        assert provider.components[0].content == ["c", "d"]


# =============================================================================
# Hook Tests
# =============================================================================


class TestHooks:
    """Tests for before_compaction."""

    @pytest.mark.asyncio
    async def test_hook_completes_before_first_compactor_call(
        self, provider, small_config, estimator, recording_compactor_cls
    ):
        order = []
        contexts = []

        async def before_compaction(context):
            await asyncio.sleep(0)
            contexts.append(context)
            order.append("hook")

        manager = ContextManager(
            provider,
            config=small_config,
            compactors=[recording_compactor_cls(estimator, order)],
            hooks=ContextManagerHooks(before_compaction=before_compaction),
            agent_id="agent-1",
        )

        await manager.prepare()

        assert order == ["hook", "compact:history"]
        [context] = contexts
        assert context.agent_id == "agent-1"
        assert context.strategy == "proactive"
        assert context.budget.used == 900
        assert context.estimated_tokens_to_free == 900 - 552
        assert [c.name for c in context.components] == ["history"]

    @pytest.mark.asyncio
    async def test_sync_hook(self, provider, small_config):
        seen = []
        manager = ContextManager(
            provider,
            config=small_config,
            hooks=ContextManagerHooks(before_compaction=seen.append),
        )

        await manager.prepare()

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_hook_not_called_without_compaction(self, small_config, make_text):
        hook = AsyncMock()
        manager = ContextManager(
            InMemoryContextProvider([make_text("history", 10)], max_context_size=1000),
            config=small_config,
            hooks=ContextManagerHooks(before_compaction=hook),
        )

        await manager.prepare()

        hook.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_hook_failure_aborts_cycle(self, provider, small_config):
        manager = ContextManager(
            provider,
            config=small_config,
            hooks=ContextManagerHooks(before_compaction=AsyncMock(side_effect=RuntimeError("persist failed"))),
        )

        with pytest.raises(RuntimeError, match="persist failed"):
            await manager.prepare()

        assert provider.applied == 0
        assert provider.components[0].content == "x" * 3600

    @pytest.mark.asyncio
    async def test_set_hooks_and_agent_id(self, manager):
        contexts = []
        manager.set_hooks(ContextManagerHooks(before_compaction=contexts.append))
        manager.set_agent_id("agent-2")

        await manager.prepare()

        assert manager.agent_id == "agent-2"
        assert contexts[0].agent_id == "agent-2"


# =============================================================================
# Cancellation Tests
# =============================================================================


class TestCancellation:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, manager, provider):
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(CompactionCancelledError):
            await manager.prepare(cancel_event=cancel)

        assert provider.applied == 0

    @pytest.mark.asyncio
    async def test_cancelled_during_compaction(self, provider, small_config, estimator, recording_compactor_cls):
        cancel = asyncio.Event()

        class CancellingCompactor(recording_compactor_cls):
            async def compact(self, component, target_tokens):
                cancel.set()
                return await super().compact(component, target_tokens)

        manager = ContextManager(
            provider, config=small_config, compactors=[CancellingCompactor(estimator)]
        )

        with pytest.raises(CompactionCancelledError):
            await manager.prepare(cancel_event=cancel)

        assert provider.applied == 0
        assert provider.components[0].content == "x" * 3600

    @pytest.mark.asyncio
    async def test_unset_event_does_not_cancel(self, manager, provider):
        prepared = await manager.prepare(cancel_event=asyncio.Event())

        assert prepared.compacted is True
        assert provider.applied == 1


# =============================================================================
# Event Tests
# =============================================================================


class TestEvents:
    """Tests for emitted events."""

    @pytest.mark.asyncio
    async def test_compaction_event_sequence(self, manager, recorded_events):
        await manager.prepare()

        assert [e.event_type for e in recorded_events] == [
            ContextEventType.BUDGET_CRITICAL,
            ContextEventType.COMPACTION_STARTED,
            ContextEventType.COMPACTION_COMPLETED,
        ]
        completed = recorded_events[-1]
        assert completed.agent_id == "agent-1"
        assert completed.data["tokens_before"] == 900
        assert completed.data["tokens_after"] == 450
        assert completed.data["strategy"] == "proactive"

    @pytest.mark.asyncio
    async def test_warning_event(self, small_config, make_text):
        manager = ContextManager(
            InMemoryContextProvider([make_text("history", 700)], max_context_size=1000),
            config=small_config.with_updates(auto_compact=False),
        )
        events = []
        manager.on(ContextEventType.BUDGET_WARNING, events.append)

        await manager.prepare()

        assert len(events) == 1
        assert events[0].data["used"] == 700

    @pytest.mark.asyncio
    async def test_async_and_failing_listeners(self, manager):
        received = []

        async def async_listener(event):
            received.append(event.event_type)

        def failing_listener(event):
            raise ValueError("listener bug")

        manager.on(ContextEventType.COMPACTION_STARTED, failing_listener)
        manager.on(ContextEventType.COMPACTION_STARTED, async_listener)

        prepared = await manager.prepare()

        assert prepared.compacted is True
        assert received == [ContextEventType.COMPACTION_STARTED]

    @pytest.mark.asyncio
    async def test_off_removes_listener(self, manager):
        events = []
        manager.on(ContextEventType.COMPACTION_STARTED, events.append)
        manager.off(ContextEventType.COMPACTION_STARTED, events.append)

        await manager.prepare()

        assert events == []

    @pytest.mark.asyncio
    async def test_adaptive_switch_emits_event(self, small_config, make_text, fake_clock):
        manager = ContextManager(
            InMemoryContextProvider([make_text("history", 85)], max_context_size=1000),
            config=small_config.with_updates(strategy=AdaptiveStrategy(clock=fake_clock)),
        )
        switches = []
        manager.on(ContextEventType.STRATEGY_SWITCHED, switches.append)

        await manager.prepare()

        assert [s.data for s in switches] == [{"from": "proactive", "to": "lazy", "reason": "adaptive"}]


# =============================================================================
# Strict Mode Tests
# =============================================================================


class TestOverflow:
    """Tests for fail_on_overflow."""

    @pytest.mark.asyncio
    async def test_shortfall_logged_by_default(self, small_config, make_text):
        manager = ContextManager(
            InMemoryContextProvider([make_text("system", 900, compactable=False)], max_context_size=1000),
            config=small_config,
        )

        prepared = await manager.prepare()

        assert prepared.budget.status is BudgetStatus.CRITICAL
        assert prepared.compaction_log == ["Proactive: freed 0 of 348 tokens, target not reached"]

    @pytest.mark.asyncio
    async def test_strict_mode_raises(self, small_config, make_text):
        provider = InMemoryContextProvider([make_text("system", 900, compactable=False)], max_context_size=1000)
        manager = ContextManager(provider, config=small_config.with_updates(fail_on_overflow=True))

        with pytest.raises(ContextOverflowError) as exc_info:
            await manager.prepare()

        assert exc_info.value.used == 900
        assert exc_info.value.limit == 850

    @pytest.mark.asyncio
    async def test_strict_mode_passes_when_compaction_succeeds(self, provider, small_config):
        manager = ContextManager(provider, config=small_config.with_updates(fail_on_overflow=True))

        prepared = await manager.prepare()

        assert prepared.budget.status is BudgetStatus.OK


# =============================================================================
# Reconfiguration Tests
# =============================================================================


class TestReconfiguration:
    """Tests for runtime strategy and config changes."""

    @pytest.mark.asyncio
    async def test_set_strategy_by_name(self, manager, recorded_events):
        strategy = await manager.set_strategy("lazy")

        assert manager.strategy is strategy
        assert manager.strategy.name == "lazy"
        assert manager.config.strategy == "lazy"
        assert recorded_events[-1].data == {"from": "proactive", "to": "lazy", "reason": "set_strategy"}

    @pytest.mark.asyncio
    async def test_set_strategy_with_options(self, manager):
        await manager.set_strategy("aggressive", {"reduction_factor": 0.25})

        assert manager.config.strategy_options == {"reduction_factor": 0.25}
        assert manager.strategy.calculate_target_size(1000, 1) == 250

    @pytest.mark.asyncio
    async def test_set_strategy_instance(self, manager):
        lazy = LazyStrategy()

        await manager.set_strategy(lazy)

        assert manager.strategy is lazy

    @pytest.mark.asyncio
    async def test_unknown_strategy_keeps_current(self, manager):
        with pytest.raises(StrategyNotFoundError):
            await manager.set_strategy("greedy")

        assert manager.strategy.name == "proactive"

    @pytest.mark.asyncio
    async def test_update_config(self, manager):
        strategy = manager.strategy

        config = await manager.update_config(compaction_threshold=0.5)

        assert config.compaction_threshold == 0.5
        assert manager.config is config
        assert manager.strategy is strategy

    @pytest.mark.asyncio
    async def test_update_config_rebuilds_strategy_and_estimator(self, manager):
        await manager.update_config(strategy="aggressive", estimator="tiktoken")

        assert manager.strategy.name == "aggressive"
        assert isinstance(manager.estimator, TiktokenEstimator)

    @pytest.mark.asyncio
    async def test_invalid_update_leaves_config(self, manager):
        before = manager.config

        with pytest.raises(ValidationError):
            await manager.update_config(hard_limit=0.5)

        assert manager.config is before

    def test_add_compactor_keeps_priority_order(self, manager, estimator):
        manager.add_compactor(SummarizeCompactor(estimator, AsyncMock()))

        assert [c.name for c in manager.compactors] == ["summarize", "truncate"]


# =============================================================================
# Metrics Tests
# =============================================================================


class TestManagerMetrics:
    """Tests for manager metrics."""

    @pytest.mark.asyncio
    async def test_metrics_after_cycle(self, manager):
        await manager.prepare()
        await manager.prepare()

        metrics = manager.get_metrics()

        assert metrics["total_cycles"] == 2
        assert metrics["total_compactions"] == 1
        assert metrics["total_tokens_freed"] == 450
        assert metrics["strategy"] == "proactive"
        assert metrics["strategy_metrics"]["compaction_count"] == 1
        assert manager.get_strategy_metrics() == manager.strategy.get_metrics()

    @pytest.mark.asyncio
    async def test_reset_metrics(self, manager):
        await manager.prepare()

        manager.reset_metrics()

        assert manager.get_metrics()["total_cycles"] == 0
        assert manager.get_strategy_metrics()["compaction_count"] == 0
