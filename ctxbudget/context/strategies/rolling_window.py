"""Rolling-window strategy.

Never compacts reactively. Instead, sequence content (lists and tuples,
typically chat messages) is trimmed to its most recent ``max_messages``
items before the budget is computed, so those components never push the
budget over a threshold on their own.

Windowing is idempotent: an already-windowed component is left as is.
Components marked non-compactable are never windowed.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from ctxbudget.context.estimators import ApproximateTokenEstimator, TokenEstimator
from ctxbudget.context.strategies.base import CancelCheck, CompactionStrategy
from ctxbudget.context.types import (
    CompactionResult,
    ContextBudget,
    ContextComponent,
    ContextManagerConfig,
)
from ctxbudget.core.exceptions import ConfigurationError


logger = logging.getLogger(__name__)


class RollingWindowStrategy(CompactionStrategy):
    """Keeps the last N items of every sequence component.

    Args:
        max_messages: Items kept per sequence component (default 50).
        max_tokens_per_component: Optional token cap; oldest items are
            dropped further until the kept window fits (at least one item
            is always kept).
        estimator: Estimator for the token cap (approximate by default).

    Example:
        >>> strategy = RollingWindowStrategy(max_messages=2)
        >>> [c.content for c in strategy.prepare_components(
        ...     [ContextComponent(name="history", content=[1, 2, 3])])]
        [[2, 3]]
    """

    DEFAULT_MAX_MESSAGES = 50

    def __init__(
        self,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        max_tokens_per_component: Optional[int] = None,
        estimator: Optional[TokenEstimator] = None,
    ) -> None:
        if max_messages < 1:
            raise ConfigurationError(
                f"max_messages must be at least 1, got {max_messages}",
                config_key="max_messages",
            )
        if max_tokens_per_component is not None and max_tokens_per_component < 1:
            raise ConfigurationError(
                f"max_tokens_per_component must be positive, got {max_tokens_per_component}",
                config_key="max_tokens_per_component",
            )
        self.max_messages = max_messages
        self.max_tokens_per_component = max_tokens_per_component
        self._estimator = estimator or ApproximateTokenEstimator()

    @property
    def name(self) -> str:
        return "rolling-window"

    def should_compact(self, budget: ContextBudget, config: ContextManagerConfig) -> bool:
        return False

    def prepare_components(self, components: Sequence[ContextComponent]) -> list[ContextComponent]:
        return [self._window(component) for component in components]

    async def compact(
        self,
        components: Sequence[ContextComponent],
        budget: ContextBudget,
        compactors: Sequence[Any],
        estimator: TokenEstimator,
        *,
        cancel_check: Optional[CancelCheck] = None,
    ) -> CompactionResult:
        """No-op: the manager never calls this, as should_compact() is always False.

        The components are handed back unchanged rather than as an empty
        list, so a direct caller applying the result keeps its context.
        """
        return CompactionResult.unchanged(components)

    def get_metrics(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "max_messages": self.max_messages,
            "max_tokens_per_component": self.max_tokens_per_component,
        }

    def _window(self, component: ContextComponent) -> ContextComponent:
        content = component.content
        if not component.compactable or not isinstance(content, (list, tuple)):
            return component

        keep = min(len(content), self.max_messages)
        if self.max_tokens_per_component is not None:
            keep = self._fit_tokens(content, keep, component.metadata.get("content_type"))
        if keep >= len(content):
            return component

        window = content[len(content) - keep:]
        logger.debug(
            f"RollingWindow: kept last {keep} of {len(content)} items in '{component.name}'"
        )
        return component.with_content(
            window,
            windowed=True,
            original_length=len(content),
            kept_length=keep,
        )

    def _fit_tokens(self, content: Sequence[Any], keep: int, content_type: Any) -> int:
        """Shrink ``keep`` until the newest ``keep`` items fit the token cap."""
        cap = self.max_tokens_per_component
        while keep > 1:
            window = list(content[len(content) - keep:])
            if self._estimator.estimate_data_tokens(window, content_type) <= cap:
                break
            keep -= 1
        return keep


__all__ = ["RollingWindowStrategy"]
