"""Tests for the adaptive meta-strategy.

A FakeClock drives the compaction frequency, so every scenario here is
deterministic.
"""

import math

import pytest

from ctxbudget.context.strategies import AdaptiveStrategy
from ctxbudget.core.exceptions import ConfigurationError


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def strategy(fake_clock):
    return AdaptiveStrategy(switch_threshold=5, clock=fake_clock)


@pytest.fixture
def high(make_budget, small_config):
    """Budget at 90% utilization."""
    return make_budget(765, small_config)


@pytest.fixture
def low(make_budget, small_config):
    """Budget at 10% utilization."""
    return make_budget(85, small_config)


# =============================================================================
# Learning
# =============================================================================


class TestAdaptiveLearning:
    """Tests for the EMA and frequency tracking."""

    def test_starts_proactive(self, strategy):
        assert strategy.name == "adaptive"
        assert strategy.current_strategy == "proactive"
        assert strategy.get_metrics()["current_strategy"] == "proactive"

    def test_first_observation_seeds_average(self, strategy, small_config, make_budget):
        budget = make_budget(900, small_config)

        assert strategy.should_compact(budget, small_config) is True
        assert strategy.avg_utilization == pytest.approx(budget.utilization)
        assert strategy.current_strategy == "proactive"

    def test_moving_average(self, strategy, small_config, high, low):
        strategy.should_compact(high, small_config)
        strategy.should_compact(low, small_config)

        expected = 0.1 * low.utilization + 0.9 * high.utilization
        assert strategy.avg_utilization == pytest.approx(expected)

    @pytest.mark.asyncio
    async def test_frequency_needs_two_events(self, strategy, estimator, high, fake_clock):
        await strategy.compact([], high, [], estimator)
        assert strategy.compaction_frequency == 0.0

        fake_clock.advance(30)
        await strategy.compact([], high, [], estimator)
        assert strategy.compaction_frequency == pytest.approx(4.0)

    @pytest.mark.asyncio
    async def test_same_tick_compactions_are_unbounded_frequency(self, strategy, estimator, high):
        await strategy.compact([], high, [], estimator)
        await strategy.compact([], high, [], estimator)

        assert strategy.compaction_frequency == math.inf
        assert strategy.current_strategy == "aggressive"

    @pytest.mark.asyncio
    async def test_log_names_delegate(self, strategy, estimator, high):
        result = await strategy.compact([], high, [], estimator)

        assert result.log[0] == "[Adaptive: using proactive]"


# =============================================================================
# Transitions
# =============================================================================


class TestAdaptiveTransitions:
    """Tests for delegate switching."""

    @pytest.mark.asyncio
    async def test_convergence_scenario(self, strategy, estimator, small_config, high, low, fake_clock):
        # six compactions inside one simulated minute
        for _ in range(6):
            strategy.should_compact(high, small_config)
            await strategy.compact([], high, [], estimator)
            fake_clock.advance(10)

        assert strategy.get_metrics()["current_strategy"] == "aggressive"
        assert strategy.compaction_frequency > 5

        # a long idle period: the frequency drops at once, the average lags
        fake_clock.advance(3600)
        strategy.should_compact(low, small_config)
        assert strategy.current_strategy == "proactive"

        for _ in range(9):
            strategy.should_compact(low, small_config)

        metrics = strategy.get_metrics()
        assert metrics["current_strategy"] == "lazy"
        assert metrics["switch_count"] == 3
        assert len(metrics["last_compactions"]) == 6

    @pytest.mark.asyncio
    async def test_burst_within_one_clock_tick(self, strategy, estimator, small_config, high):
        for _ in range(6):
            strategy.should_compact(high, small_config)
            await strategy.compact([], high, [], estimator)

        assert strategy.get_metrics()["current_strategy"] == "aggressive"
        assert strategy.should_compact(high, small_config) is True
        assert strategy.current_strategy == "aggressive"

    @pytest.mark.asyncio
    async def test_burst_decays_once_clock_advances(self, strategy, estimator, small_config, high, low, fake_clock):
        await strategy.compact([], high, [], estimator)
        await strategy.compact([], high, [], estimator)
        assert strategy.current_strategy == "aggressive"

        fake_clock.advance(600)
        strategy.should_compact(low, small_config)

        assert strategy.compaction_frequency == pytest.approx(0.2)
        assert strategy.current_strategy == "lazy"

    @pytest.mark.asyncio
    async def test_switch_keeps_learned_state(self, strategy, estimator, small_config, high, fake_clock):
        strategy.should_compact(high, small_config)
        await strategy.compact([], high, [], estimator)
        fake_clock.advance(5)
        average = strategy.avg_utilization

        result = await strategy.compact([], high, [], estimator)

        assert strategy.current_strategy == "aggressive"
        assert result.log[0] == "[Adaptive: using proactive]"
        assert strategy.avg_utilization == average
        assert len(strategy.get_metrics()["last_compactions"]) == 2

    def test_low_utilization_without_history_selects_lazy(self, strategy, small_config, low):
        assert strategy.should_compact(low, small_config) is False
        assert strategy.current_strategy == "lazy"

    def test_delegates_decision(self, strategy, small_config, make_budget):
        # 80%: above the proactive threshold, below lazy's hard limit
        budget = make_budget(680, small_config)

        assert strategy.should_compact(budget, small_config) is True
        assert strategy.estimate_tokens_to_free(budget) == 680 - 552

    @pytest.mark.asyncio
    async def test_learning_window_bounds_history(self, fake_clock, estimator, high):
        strategy = AdaptiveStrategy(learning_window=3, clock=fake_clock)

        for _ in range(5):
            await strategy.compact([], high, [], estimator)
            fake_clock.advance(60)

        history = strategy.get_metrics()["last_compactions"]
        assert [entry["timestamp"] for entry in history] == [120, 180, 240]
        assert strategy.compaction_frequency == pytest.approx(1.5)


# =============================================================================
# Configuration and Metrics
# =============================================================================


class TestAdaptiveConfiguration:
    """Tests for constructor validation and metrics."""

    @pytest.mark.parametrize("kwargs", [
        {"learning_window": 1},
        {"switch_threshold": 0},
        {"low_frequency_threshold": 6, "switch_threshold": 5},
        {"low_utilization_threshold": 0},
        {"alpha": 1.5},
        {"delegate_options": {"greedy": {}}},
    ])
    def test_invalid_options(self, kwargs):
        with pytest.raises(ConfigurationError):
            AdaptiveStrategy(**kwargs)

    def test_delegate_options_forwarded(self, fake_clock, small_config, make_budget):
        strategy = AdaptiveStrategy(
            clock=fake_clock, delegate_options={"proactive": {"threshold": 0.5}}
        )

        assert strategy.should_compact(make_budget(612, small_config), small_config) is True

    @pytest.mark.asyncio
    async def test_reset_metrics_keeps_learned_state(self, strategy, estimator, small_config, high):
        strategy.should_compact(high, small_config)
        await strategy.compact([], high, [], estimator)

        strategy.reset_metrics()
        metrics = strategy.get_metrics()

        assert metrics["strategies"]["proactive"]["compaction_count"] == 0
        assert metrics["avg_utilization"] == pytest.approx(high.utilization)
        assert len(metrics["last_compactions"]) == 1
