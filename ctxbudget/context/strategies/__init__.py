"""Compaction strategies for the ctxbudget framework.

Strategies are selected by name through a closed enum and a factory with a
fixed name-to-class mapping:

    - proactive: compacts early, gently, in up to three rounds
    - aggressive: compacts at 60% to 30% of each candidate's size
    - lazy: compacts only at the hard limit, lightly
    - rolling-window: trims sequences to the last N items, never compacts
    - adaptive: switches between proactive, aggressive and lazy

Usage:
    from ctxbudget.context.strategies import create_strategy

    strategy = create_strategy("aggressive", {"reduction_factor": 0.25})
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Union

from ctxbudget.context.strategies.adaptive import AdaptiveStrategy
from ctxbudget.context.strategies.aggressive import AggressiveStrategy
from ctxbudget.context.strategies.base import (
    BaseCompactionStrategy,
    CancelCheck,
    CompactionStrategy,
    order_candidates,
    scaled,
)
from ctxbudget.context.strategies.lazy import LazyStrategy
from ctxbudget.context.strategies.proactive import ProactiveStrategy
from ctxbudget.context.strategies.rolling_window import RollingWindowStrategy
from ctxbudget.core.exceptions import ConfigurationError, StrategyNotFoundError


class StrategyName(str, Enum):
    """Built-in strategy names."""
    PROACTIVE = "proactive"
    AGGRESSIVE = "aggressive"
    LAZY = "lazy"
    ROLLING_WINDOW = "rolling-window"
    ADAPTIVE = "adaptive"


STRATEGY_REGISTRY: dict[StrategyName, type[CompactionStrategy]] = {
    StrategyName.PROACTIVE: ProactiveStrategy,
    StrategyName.AGGRESSIVE: AggressiveStrategy,
    StrategyName.LAZY: LazyStrategy,
    StrategyName.ROLLING_WINDOW: RollingWindowStrategy,
    StrategyName.ADAPTIVE: AdaptiveStrategy,
}


def create_strategy(
    name: Union[str, StrategyName],
    options: Optional[dict[str, Any]] = None,
) -> CompactionStrategy:
    """Create a built-in strategy.

    Args:
        name: Strategy name, e.g. 'proactive' or StrategyName.LAZY
        options: Forwarded verbatim to the strategy constructor

    Returns:
        New strategy instance

    Raises:
        StrategyNotFoundError: If the name is unknown.
        ConfigurationError: If the options are rejected by the constructor.
    """
    try:
        key = StrategyName(name.value if isinstance(name, StrategyName) else name.lower().strip())
    except ValueError:
        raise StrategyNotFoundError(
            f"Unknown compaction strategy '{name}'",
            strategy=str(name),
            available_strategies=[s.value for s in StrategyName],
        ) from None

    strategy_cls = STRATEGY_REGISTRY[key]
    try:
        return strategy_cls(**(options or {}))
    except TypeError as e:
        raise ConfigurationError(
            f"Invalid options for strategy '{key.value}': {e}",
            config_key="strategy_options",
            validation_details=str(e),
        ) from e


def resolve_strategy(
    strategy: Union[str, StrategyName, CompactionStrategy],
    options: Optional[dict[str, Any]] = None,
) -> CompactionStrategy:
    """Turn a config value (name or instance) into a strategy instance."""
    if isinstance(strategy, (str, StrategyName)):
        return create_strategy(strategy, options)
    return strategy


__all__ = [
    "StrategyName",
    "STRATEGY_REGISTRY",
    "create_strategy",
    "resolve_strategy",
    "CompactionStrategy",
    "BaseCompactionStrategy",
    "CancelCheck",
    "ProactiveStrategy",
    "AggressiveStrategy",
    "LazyStrategy",
    "RollingWindowStrategy",
    "AdaptiveStrategy",
    "order_candidates",
    "scaled",
]
