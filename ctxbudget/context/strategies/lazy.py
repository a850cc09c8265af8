"""Lazy compaction strategy.

Leaves context alone until the budget reaches the hard limit (critical),
then trims lightly: each candidate keeps 70% of its size and the goal is
85% utilization. Keeps as much material as possible for as long as
possible.
"""

from __future__ import annotations

from typing import Optional

from ctxbudget.context.strategies.base import BaseCompactionStrategy, validate_fraction, scaled


class LazyStrategy(BaseCompactionStrategy):
    """Late trigger, light single-round cuts.

    Args:
        threshold: Trigger utilization; defaults to config.hard_limit.
        target_utilization: Post-compaction goal (default 0.85).
        reduction_factor: Size factor per candidate (default 0.70).
        max_rounds: Passes over the candidates (default 1).
    """

    DEFAULT_THRESHOLD = None
    THRESHOLD_SOURCE = "hard_limit"
    DEFAULT_TARGET_UTILIZATION = 0.85
    DEFAULT_MAX_ROUNDS = 1
    DEFAULT_REDUCTION_FACTOR = 0.70

    def __init__(
        self,
        threshold: Optional[float] = None,
        target_utilization: Optional[float] = None,
        reduction_factor: float = DEFAULT_REDUCTION_FACTOR,
        max_rounds: Optional[int] = None,
    ) -> None:
        super().__init__(threshold, target_utilization, max_rounds)
        validate_fraction("reduction_factor", reduction_factor, allow_one=False)
        self.reduction_factor = reduction_factor

    @property
    def name(self) -> str:
        return "lazy"

    def calculate_target_size(self, before_size: int, round: int) -> int:
        return scaled(before_size, self.reduction_factor)


__all__ = ["LazyStrategy"]
