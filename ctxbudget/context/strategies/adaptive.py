"""Adaptive meta-strategy.

Delegates to one of the proactive, aggressive or lazy strategies and
switches between them based on observed behavior:

    - utilization is smoothed with an exponential moving average
      (avg = alpha * current + (1 - alpha) * avg, alpha = 0.1)
      seeded with the first observed utilization
    - the timestamps of the last ``learning_window`` compactions give a
      compaction frequency in compactions per minute

Transition rules, evaluated in order:
    1. frequency > switch_threshold                         -> aggressive
    2. frequency < low_frequency_threshold
       and avg utilization < low_utilization_threshold        -> lazy
    3. otherwise                                              -> proactive

Rules are evaluated on every should_compact() call (after the EMA update)
and after every compact() call. At should_compact() time the frequency
window is stretched to the current clock reading, so a long idle period
drives the frequency down even though no compaction happened. Switching
never resets the EMA or the timestamp window.

Example:
    >>> strategy = AdaptiveStrategy(switch_threshold=5)
    >>> strategy.current_strategy
    'proactive'
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from typing import Any, Callable, Optional, Sequence

from ctxbudget.context.estimators import TokenEstimator
from ctxbudget.context.strategies.aggressive import AggressiveStrategy
from ctxbudget.context.strategies.base import (
    BaseCompactionStrategy,
    CancelCheck,
    CompactionStrategy,
    validate_fraction,
)
from ctxbudget.context.strategies.lazy import LazyStrategy
from ctxbudget.context.strategies.proactive import ProactiveStrategy
from ctxbudget.context.types import (
    CompactionResult,
    ContextBudget,
    ContextComponent,
    ContextManagerConfig,
)
from ctxbudget.core.exceptions import ConfigurationError


logger = logging.getLogger(__name__)


class AdaptiveStrategy(CompactionStrategy):
    """Self-tuning strategy that picks a delegate from recent history.

    Args:
        learning_window: Compaction timestamps retained (default 10).
        switch_threshold: Compactions/minute above which to go aggressive (default 5).
        low_frequency_threshold: Compactions/minute below which lazy is allowed (default 0.5).
        low_utilization_threshold: EMA utilization below which lazy is allowed (default 0.70).
        alpha: EMA smoothing factor (default 0.1).
        clock: Monotonic clock in seconds; injectable for tests.
        delegate_options: Constructor options per delegate name.
    """

    DELEGATE_TYPES: dict[str, type[BaseCompactionStrategy]] = {
        "proactive": ProactiveStrategy,
        "aggressive": AggressiveStrategy,
        "lazy": LazyStrategy,
    }
    INITIAL_STRATEGY = "proactive"

    def __init__(
        self,
        learning_window: int = 10,
        switch_threshold: float = 5.0,
        low_frequency_threshold: float = 0.5,
        low_utilization_threshold: float = 0.70,
        alpha: float = 0.1,
        clock: Optional[Callable[[], float]] = None,
        delegate_options: Optional[dict[str, dict[str, Any]]] = None,
    ) -> None:
        if learning_window < 2:
            raise ConfigurationError(
                f"learning_window must be at least 2, got {learning_window}",
                config_key="learning_window",
            )
        if switch_threshold <= 0 or low_frequency_threshold < 0:
            raise ConfigurationError(
                "frequency thresholds must be positive",
                config_key="switch_threshold",
            )
        if low_frequency_threshold >= switch_threshold:
            raise ConfigurationError(
                "low_frequency_threshold must be lower than switch_threshold",
                config_key="low_frequency_threshold",
            )
        validate_fraction("low_utilization_threshold", low_utilization_threshold)
        validate_fraction("alpha", alpha)

        self.learning_window = learning_window
        self.switch_threshold = switch_threshold
        self.low_frequency_threshold = low_frequency_threshold
        self.low_utilization_threshold = low_utilization_threshold
        self.alpha = alpha
        self._clock = clock or time.monotonic

        options = delegate_options or {}
        unknown = set(options) - set(self.DELEGATE_TYPES)
        if unknown:
            raise ConfigurationError(
                f"Unknown delegate(s) in delegate_options: {', '.join(sorted(unknown))}",
                config_key="delegate_options",
            )
        self._delegates: dict[str, BaseCompactionStrategy] = {
            name: cls(**options.get(name, {})) for name, cls in self.DELEGATE_TYPES.items()
        }

        self._current = self.INITIAL_STRATEGY
        self._avg_utilization = 0.0
        self._samples = 0
        self._compaction_frequency = 0.0
        self._timestamps: deque[float] = deque(maxlen=learning_window)
        self._last_compactions: deque[dict[str, Any]] = deque(maxlen=learning_window)
        self._switch_count = 0

    @property
    def name(self) -> str:
        return "adaptive"

    @property
    def current_strategy(self) -> str:
        """Name of the delegate currently in use."""
        return self._current

    @property
    def delegate(self) -> BaseCompactionStrategy:
        return self._delegates[self._current]

    @property
    def avg_utilization(self) -> float:
        return self._avg_utilization

    @property
    def compaction_frequency(self) -> float:
        return self._compaction_frequency

    # -------------------------------------------------------------------------
    # Strategy interface
    # -------------------------------------------------------------------------

    def should_compact(self, budget: ContextBudget, config: ContextManagerConfig) -> bool:
        if self._samples == 0:
            self._avg_utilization = budget.utilization
        else:
            self._avg_utilization = (
                self.alpha * budget.utilization + (1 - self.alpha) * self._avg_utilization
            )
        self._samples += 1
        self._compaction_frequency = self._frequency(until=self._clock())
        self._evaluate()
        return self.delegate.should_compact(budget, config)

    async def compact(
        self,
        components: Sequence[ContextComponent],
        budget: ContextBudget,
        compactors: Sequence[Any],
        estimator: TokenEstimator,
        *,
        cancel_check: Optional[CancelCheck] = None,
    ) -> CompactionResult:
        delegate_name = self._current
        result = await self.delegate.compact(
            components, budget, compactors, estimator, cancel_check=cancel_check
        )
        result.log.insert(0, f"[Adaptive: using {delegate_name}]")

        now = self._clock()
        self._timestamps.append(now)
        self._last_compactions.append({
            "timestamp": now,
            "strategy": delegate_name,
            "tokens_freed": result.tokens_freed,
            "utilization": budget.utilization,
        })
        self._compaction_frequency = self._frequency()
        self._evaluate()
        return result

    def estimate_tokens_to_free(self, budget: ContextBudget) -> int:
        return self.delegate.estimate_tokens_to_free(budget)

    def get_metrics(self) -> dict[str, Any]:
        """Get adaptive state and per-delegate statistics."""
        return {
            "name": self.name,
            "current_strategy": self._current,
            "avg_utilization": self._avg_utilization,
            "compaction_frequency": self._compaction_frequency,
            "last_compactions": list(self._last_compactions),
            "switch_count": self._switch_count,
            "strategies": {name: s.get_metrics() for name, s in self._delegates.items()},
        }

    def reset_metrics(self) -> None:
        """Reset delegate statistics. Learned state is kept."""
        for delegate in self._delegates.values():
            delegate.reset_metrics()

    # -------------------------------------------------------------------------
    # Learning
    # -------------------------------------------------------------------------

    def _frequency(self, until: Optional[float] = None) -> float:
        """Compactions per minute over the retained window.

        The span runs from the oldest retained timestamp to the newest one,
        or to ``until`` when given. Fewer than two events give 0. Several
        events on the same clock reading are a burst faster than the clock
        can resolve, so a zero span gives infinity.
        """
        if len(self._timestamps) < 2:
            return 0.0
        end = self._timestamps[-1] if until is None else max(until, self._timestamps[-1])
        span_minutes = (end - self._timestamps[0]) / 60.0
        if span_minutes <= 0:
            return math.inf
        return len(self._timestamps) / span_minutes

    def _select(self) -> str:
        if self._compaction_frequency > self.switch_threshold:
            return "aggressive"
        if (self._compaction_frequency < self.low_frequency_threshold
                and self._avg_utilization < self.low_utilization_threshold):
            return "lazy"
        return "proactive"

    def _evaluate(self) -> None:
        target = self._select()
        if target == self._current:
            return
        logger.info(
            f"Adaptive: switching {self._current} -> {target} "
            f"(frequency={self._compaction_frequency:.2f}/min, "
            f"avg_utilization={self._avg_utilization:.2f})"
        )
        self._current = target
        self._switch_count += 1


__all__ = ["AdaptiveStrategy"]
