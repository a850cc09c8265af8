"""Tests for strategy lookup by name."""

import pytest

from ctxbudget.context.strategies import (
    STRATEGY_REGISTRY,
    AdaptiveStrategy,
    AggressiveStrategy,
    LazyStrategy,
    ProactiveStrategy,
    RollingWindowStrategy,
    StrategyName,
    create_strategy,
    resolve_strategy,
)
from ctxbudget.core.exceptions import ConfigurationError, StrategyNotFoundError


class TestCreateStrategy:
    """Tests for create_strategy."""

    @pytest.mark.parametrize("name,expected_type", [
        ("proactive", ProactiveStrategy),
        ("aggressive", AggressiveStrategy),
        ("lazy", LazyStrategy),
        ("rolling-window", RollingWindowStrategy),
        ("adaptive", AdaptiveStrategy),
    ])
    def test_every_builtin(self, name, expected_type):
        strategy = create_strategy(name)

        assert isinstance(strategy, expected_type)
        assert strategy.name == name

    def test_registry_is_closed(self):
        assert set(STRATEGY_REGISTRY) == set(StrategyName)

    def test_name_normalized(self):
        assert isinstance(create_strategy(" Aggressive "), AggressiveStrategy)
        assert isinstance(create_strategy(StrategyName.LAZY), LazyStrategy)

    def test_options_forwarded(self):
        strategy = create_strategy("aggressive", {"reduction_factor": 0.25})

        assert strategy.calculate_target_size(1000, 1) == 250

    def test_unknown_name(self):
        with pytest.raises(StrategyNotFoundError) as exc_info:
            create_strategy("greedy")

        assert exc_info.value.strategy == "greedy"
        assert "rolling-window" in exc_info.value.available_strategies

    def test_unexpected_option(self):
        with pytest.raises(ConfigurationError) as exc_info:
            create_strategy("lazy", {"window": 3})

        assert exc_info.value.config_key == "strategy_options"

    def test_invalid_option_value(self):
        with pytest.raises(ConfigurationError):
            create_strategy("rolling-window", {"max_messages": 0})


class TestResolveStrategy:
    """Tests for resolve_strategy."""

    def test_instance_passes_through(self):
        strategy = LazyStrategy()

        assert resolve_strategy(strategy) is strategy

    def test_name_creates_instance(self):
        assert isinstance(resolve_strategy("adaptive"), AdaptiveStrategy)
