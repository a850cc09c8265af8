"""Base classes for compaction strategies.

A strategy decides *whether* to compact (``should_compact``) and drives
compactors to do it (``compact``). The manager only talks to the
CompactionStrategy interface, so strategies can be swapped at runtime.

Classes:
    CompactionStrategy: Interface every strategy implements.
    BaseCompactionStrategy: Shared greedy compaction loop used by the
        proactive, aggressive and lazy strategies. Subclasses only supply
        numeric knobs and ``calculate_target_size``.

The shared loop:
    1. target_usage = floor(usable * target_utilization);
       tokens_to_free = used - target_usage. Nothing to do if <= 0.
    2. Candidates are the compactable components, sorted by priority
       descending with ties kept in their original order.
    3. Each candidate is handed to the first compactor whose can_compact()
       accepts it, with target size calculate_target_size(before, round).
       The pass stops as soon as enough tokens were freed.
    4. Up to ``max_rounds`` passes are made; a pass that frees nothing ends
       the loop early.

Example:
    >>> class HalvingStrategy(BaseCompactionStrategy):
    ...     @property
    ...     def name(self) -> str:
    ...         return "halving"
    ...
    ...     def calculate_target_size(self, before_size: int, round: int) -> int:
    ...         return before_size // 2
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Sequence

from ctxbudget.context.budget import estimate_component_tokens
from ctxbudget.context.estimators import TokenEstimator
from ctxbudget.context.types import (
    CandidateOutcome,
    CompactionResult,
    ContextBudget,
    ContextComponent,
    ContextManagerConfig,
    OutcomeStatus,
)
from ctxbudget.core.exceptions import CompactionCancelledError, ConfigurationError


# =============================================================================
# Module Logger
# =============================================================================

logger = logging.getLogger(__name__)


CancelCheck = Callable[[], bool]
"""Returns True when the current prepare cycle should stop."""


def scaled(value: int, fraction: float) -> int:
    """floor(value * fraction), tolerant of float representation error."""
    return max(0, math.floor(value * fraction + 1e-9))


def order_candidates(components: Sequence[ContextComponent]) -> list[ContextComponent]:
    """Compactable components, highest priority first, ties in original order."""
    return sorted(
        (c for c in components if c.compactable),
        key=lambda c: -c.priority,
    )


def validate_fraction(name: str, value: float, allow_one: bool = True) -> None:
    upper_ok = value <= 1.0 if allow_one else value < 1.0
    if not (0.0 < value and upper_ok):
        interval = "(0, 1]" if allow_one else "(0, 1)"
        raise ConfigurationError(
            f"{name} must be within {interval}, got {value}",
            config_key=name,
        )


# =============================================================================
# Strategy Interface
# =============================================================================


class CompactionStrategy(ABC):
    """Interface shared by all compaction strategies.

    Strategy instances outlive a prepare cycle and may carry learned state;
    the manager serializes access to them.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the strategy name."""
        pass

    @abstractmethod
    def should_compact(self, budget: ContextBudget, config: ContextManagerConfig) -> bool:
        """Decide whether the budget calls for compaction."""
        pass

    @abstractmethod
    async def compact(
        self,
        components: Sequence[ContextComponent],
        budget: ContextBudget,
        compactors: Sequence[Any],
        estimator: TokenEstimator,
        *,
        cancel_check: Optional[CancelCheck] = None,
    ) -> CompactionResult:
        """Compact components and return a new list plus a log.

        The input sequence is never mutated.
        """
        pass

    def prepare_components(self, components: Sequence[ContextComponent]) -> list[ContextComponent]:
        """Pre-process components before the budget is computed."""
        return list(components)

    def estimate_tokens_to_free(self, budget: ContextBudget) -> int:
        """Tokens compact() would try to free for this budget."""
        return 0

    def get_metrics(self) -> dict[str, Any]:
        return {"name": self.name}

    def reset_metrics(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


# =============================================================================
# Shared Greedy Loop
# =============================================================================


class BaseCompactionStrategy(CompactionStrategy):
    """Greedy, priority-ordered, bounded-round compaction.

    Class attributes provide the defaults a subclass overrides:

        DEFAULT_THRESHOLD: Utilization that triggers compaction. None
            means "read ``THRESHOLD_SOURCE`` from the manager config".
        THRESHOLD_SOURCE: Config attribute used when threshold is None.
        DEFAULT_TARGET_UTILIZATION: Post-compaction goal as a fraction of
            usable tokens.
        DEFAULT_MAX_ROUNDS: Passes over the candidate list.

    Args:
        threshold: Override for DEFAULT_THRESHOLD.
        target_utilization: Override for DEFAULT_TARGET_UTILIZATION.
        max_rounds: Override for DEFAULT_MAX_ROUNDS.
    """

    DEFAULT_THRESHOLD: Optional[float] = None
    THRESHOLD_SOURCE = "compaction_threshold"
    DEFAULT_TARGET_UTILIZATION = 0.65
    DEFAULT_MAX_ROUNDS = 1

    def __init__(
        self,
        threshold: Optional[float] = None,
        target_utilization: Optional[float] = None,
        max_rounds: Optional[int] = None,
    ) -> None:
        self.threshold = threshold if threshold is not None else self.DEFAULT_THRESHOLD
        self.target_utilization = (
            target_utilization if target_utilization is not None else self.DEFAULT_TARGET_UTILIZATION
        )
        self.max_rounds = max_rounds if max_rounds is not None else self.DEFAULT_MAX_ROUNDS

        if self.threshold is not None:
            validate_fraction("threshold", self.threshold)
        validate_fraction("target_utilization", self.target_utilization)
        if self.max_rounds < 1:
            raise ConfigurationError(
                f"max_rounds must be at least 1, got {self.max_rounds}",
                config_key="max_rounds",
            )

        self._compaction_count = 0
        self._total_tokens_freed = 0

    @property
    def log_prefix(self) -> str:
        """Prefix used on compaction log lines."""
        return self.name.replace("-", " ").title().replace(" ", "")

    @abstractmethod
    def calculate_target_size(self, before_size: int, round: int) -> int:
        """Target size for one component in a given round (1-based)."""
        pass

    def get_threshold(self, config: ContextManagerConfig) -> float:
        if self.threshold is not None:
            return self.threshold
        return getattr(config, self.THRESHOLD_SOURCE)

    def get_target_utilization(self) -> float:
        return self.target_utilization

    def should_compact(self, budget: ContextBudget, config: ContextManagerConfig) -> bool:
        return budget.utilization >= self.get_threshold(config)

    def target_usage(self, budget: ContextBudget) -> int:
        return scaled(budget.usable, self.target_utilization)

    def estimate_tokens_to_free(self, budget: ContextBudget) -> int:
        return max(0, budget.used - self.target_usage(budget))

    async def compact(
        self,
        components: Sequence[ContextComponent],
        budget: ContextBudget,
        compactors: Sequence[Any],
        estimator: TokenEstimator,
        *,
        cancel_check: Optional[CancelCheck] = None,
    ) -> CompactionResult:
        working = list(components)
        tokens_to_free = budget.used - self.target_usage(budget)
        if tokens_to_free <= 0:
            return CompactionResult.unchanged(working)

        positions = {component.name: i for i, component in enumerate(working)}
        candidates = [c.name for c in order_candidates(working)]
        prefix = self.log_prefix

        log: list[str] = []
        outcomes: list[CandidateOutcome] = []
        freed = 0
        processed = 0

        for round in range(1, self.max_rounds + 1):
            if freed >= tokens_to_free:
                break
            round_freed = 0

            for name in candidates:
                if freed >= tokens_to_free:
                    break
                if cancel_check is not None and cancel_check():
                    raise CompactionCancelledError(
                        f"{prefix}: compaction cancelled after {processed} candidates",
                        processed=processed,
                        log=log,
                    )
                processed += 1

                component = working[positions[name]]
                compactor = next((c for c in compactors if c.can_compact(component)), None)
                if compactor is None:
                    if round == 1:
                        outcomes.append(CandidateOutcome.skipped(name, "no compactor", round=round))
                    continue

                before = estimate_component_tokens(component, estimator)
                target = self.calculate_target_size(before, round)
                if before <= target:
                    outcomes.append(
                        CandidateOutcome.skipped(name, "within target", compactor.name, round)
                    )
                    continue

                try:
                    compacted = await compactor.compact(component, target)
                except Exception as e:
                    logger.warning(f"{prefix}: compactor '{compactor.name}' failed on '{name}': {e}")
                    log.append(f'{prefix}: {compactor.name} failed on "{name}": {e}')
                    outcomes.append(CandidateOutcome.failed(name, compactor.name, str(e), round))
                    continue

                outcome = self._accept(compacted, component, before, target, compactor.name, estimator, round)
                outcomes.append(outcome)
                if outcome.status is not OutcomeStatus.COMPACTED:
                    log.append(f'{prefix}: {compactor.name} result for "{name}" rejected: {outcome.reason}')
                    continue

                working[positions[name]] = compacted
                freed += outcome.tokens_saved
                round_freed += outcome.tokens_saved
                log.append(
                    f'{prefix}: {compactor.name} compacted "{name}" by {outcome.tokens_saved} tokens'
                )

            logger.debug(
                f"{prefix}: round {round} freed {round_freed} tokens "
                f"({freed}/{tokens_to_free} total)"
            )
            if round_freed <= 0:
                break

        if freed < tokens_to_free:
            log.append(f"{prefix}: freed {freed} of {tokens_to_free} tokens, target not reached")

        self._record_compaction(freed)
        return CompactionResult(
            components=working,
            log=log,
            tokens_freed=freed,
            outcomes=outcomes,
            tokens_to_free=tokens_to_free,
        )

    def _accept(
        self,
        compacted: Any,
        original: ContextComponent,
        before: int,
        target: int,
        compactor_name: str,
        estimator: TokenEstimator,
        round: int,
    ) -> CandidateOutcome:
        """Check a compactor's result against the compactor contract."""
        if not isinstance(compacted, ContextComponent) or compacted.name != original.name:
            return CandidateOutcome.failed(
                original.name, compactor_name, "compactor returned a different component", round
            )

        after = estimate_component_tokens(compacted, estimator)
        if after > before:
            return CandidateOutcome.failed(
                original.name, compactor_name, f"result grew from {before} to {after} tokens", round
            )
        if after > target:
            logger.warning(
                f"{self.log_prefix}: compactor '{compactor_name}' left '{original.name}' at "
                f"{after} tokens, above its target of {target}"
            )
        return CandidateOutcome.compacted(original.name, compactor_name, before - after, round)

    def get_metrics(self) -> dict[str, Any]:
        """Get compaction statistics.

        Returns:
            Dictionary with compaction_count, total_tokens_freed and
            avg_tokens_freed_per_compaction.
        """
        return {
            "name": self.name,
            "compaction_count": self._compaction_count,
            "total_tokens_freed": self._total_tokens_freed,
            "avg_tokens_freed_per_compaction": (
                self._total_tokens_freed / self._compaction_count
                if self._compaction_count > 0
                else 0.0
            ),
        }

    def reset_metrics(self) -> None:
        self._compaction_count = 0
        self._total_tokens_freed = 0

    def _record_compaction(self, tokens_freed: int) -> None:
        self._compaction_count += 1
        self._total_tokens_freed += tokens_freed


__all__ = [
    "CancelCheck",
    "CompactionStrategy",
    "BaseCompactionStrategy",
    "order_candidates",
    "validate_fraction",
    "scaled",
]
