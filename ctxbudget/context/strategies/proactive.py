"""Proactive compaction strategy.

Compacts early, as soon as the budget reaches the manager's
compaction_threshold, and shrinks gently: a component is halved in the
first round, then reduced further in later rounds only if the target is
still out of reach.

Round targets for a 1000-token component with the defaults:
    round 1 -> 500, round 2 -> 350, round 3 -> 200
The per-round factor never drops below ``MIN_REDUCTION_FACTOR``.
"""

from __future__ import annotations

from typing import Optional

from ctxbudget.context.strategies.base import BaseCompactionStrategy, validate_fraction, scaled
from ctxbudget.core.exceptions import ConfigurationError


class ProactiveStrategy(BaseCompactionStrategy):
    """Early, gentle, multi-round compaction.

    Args:
        threshold: Trigger utilization; defaults to config.compaction_threshold.
        target_utilization: Post-compaction goal (default 0.65).
        base_reduction_factor: Round-1 size factor (default 0.50).
        reduction_step: Factor decrease per extra round (default 0.15).
        max_rounds: Passes over the candidates (default 3).
    """

    DEFAULT_THRESHOLD = None
    THRESHOLD_SOURCE = "compaction_threshold"
    DEFAULT_TARGET_UTILIZATION = 0.65
    DEFAULT_MAX_ROUNDS = 3

    DEFAULT_BASE_REDUCTION_FACTOR = 0.50
    DEFAULT_REDUCTION_STEP = 0.15
    MIN_REDUCTION_FACTOR = 0.10

    def __init__(
        self,
        threshold: Optional[float] = None,
        target_utilization: Optional[float] = None,
        base_reduction_factor: float = DEFAULT_BASE_REDUCTION_FACTOR,
        reduction_step: float = DEFAULT_REDUCTION_STEP,
        max_rounds: Optional[int] = None,
    ) -> None:
        super().__init__(threshold, target_utilization, max_rounds)
        validate_fraction("base_reduction_factor", base_reduction_factor, allow_one=False)
        if not 0.0 <= reduction_step < 1.0:
            raise ConfigurationError(
                f"reduction_step must be within [0, 1), got {reduction_step}",
                config_key="reduction_step",
            )
        self.base_reduction_factor = base_reduction_factor
        self.reduction_step = reduction_step

    @property
    def name(self) -> str:
        return "proactive"

    def reduction_factor(self, round: int) -> float:
        return max(
            self.MIN_REDUCTION_FACTOR,
            self.base_reduction_factor - (round - 1) * self.reduction_step,
        )

    def calculate_target_size(self, before_size: int, round: int) -> int:
        return scaled(before_size, self.reduction_factor(round))


__all__ = ["ProactiveStrategy"]
