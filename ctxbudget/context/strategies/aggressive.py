"""Aggressive compaction strategy.

Triggers at 60% utilization, aims for 50%, and cuts each candidate to 30%
of its size in a single pass. Suited to long-running agents whose context
fills quickly.
"""

from __future__ import annotations

from typing import Optional

from ctxbudget.context.strategies.base import BaseCompactionStrategy, validate_fraction, scaled


class AggressiveStrategy(BaseCompactionStrategy):
    """Early trigger, deep single-round cuts.

    Example:
        >>> strategy = AggressiveStrategy()
        >>> strategy.calculate_target_size(1000, 1)
        300
    """

    DEFAULT_THRESHOLD = 0.60
    DEFAULT_TARGET_UTILIZATION = 0.50
    DEFAULT_MAX_ROUNDS = 1
    DEFAULT_REDUCTION_FACTOR = 0.30

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
        return "aggressive"

    def calculate_target_size(self, before_size: int, round: int) -> int:
        return scaled(before_size, self.reduction_factor)


__all__ = ["AggressiveStrategy"]
