"""Budget computation shared by the manager and the strategies.

All functions here are pure: they read components and configuration and
return new values. ``calculate_budget`` is re-run after every compaction
to obtain a fresh budget.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Iterable, Optional

from ctxbudget.context.estimators import CHARS_PER_TOKEN, ContentType, TokenEstimator
from ctxbudget.context.types import (
    BudgetStatus,
    ContentKind,
    ContextBudget,
    ContextComponent,
    ContextManagerConfig,
)
from ctxbudget.core.exceptions import CtxBudgetError


logger = logging.getLogger(__name__)

MIN_FALLBACK_TOKENS = 1


def _fallback_estimate(content: Any) -> int:
    """Conservative size used when an estimator fails.

    Uses the densest (code) ratio over the repr of the content, so the
    fallback errs towards over-counting.
    """
    try:
        text = content if isinstance(content, str) else repr(content)
    except Exception:
        return MIN_FALLBACK_TOKENS
    return max(MIN_FALLBACK_TOKENS, math.ceil(len(text) / CHARS_PER_TOKEN[ContentType.CODE]))


def estimate_component_tokens(component: ContextComponent, estimator: TokenEstimator) -> int:
    """Estimate one component's size.

    Text goes through ``estimate_tokens``, anything else through
    ``estimate_data_tokens``. ``metadata["content_type"]`` selects the
    content-type ratio when present. Never raises: an estimator failure is
    logged and replaced by a conservative non-zero estimate.
    """
    content_type = component.metadata.get("content_type")
    try:
        if component.kind is ContentKind.TEXT:
            tokens = estimator.estimate_tokens(component.content, content_type)
        else:
            tokens = estimator.estimate_data_tokens(component.content, content_type)
        return max(0, int(tokens))
    except Exception as e:
        fallback = _fallback_estimate(component.content)
        logger.warning(
            f"Estimator failed for component '{component.name}' ({e}); "
            f"using fallback estimate of {fallback} tokens"
        )
        return fallback


def classify_utilization(utilization: float, config: ContextManagerConfig) -> BudgetStatus:
    """Map a utilization fraction onto OK / WARNING / CRITICAL."""
    if utilization >= config.hard_limit:
        return BudgetStatus.CRITICAL
    if utilization >= config.compaction_threshold:
        return BudgetStatus.WARNING
    return BudgetStatus.OK


def budget_from_usage(
    used: int,
    config: ContextManagerConfig,
    breakdown: Optional[dict[str, int]] = None,
) -> ContextBudget:
    """Build a budget snapshot from an already-known token count.

    Args:
        used: Estimated tokens in use
        config: Manager configuration
        breakdown: Optional per-component token counts

    Returns:
        New ContextBudget
    """
    reserved = config.reserved_tokens
    utilization = used / (config.max_context_tokens - reserved)
    return ContextBudget(
        total=config.max_context_tokens,
        reserved=reserved,
        used=used,
        status=classify_utilization(utilization, config),
        breakdown=dict(breakdown or {}),
    )


def ensure_unique_names(components: Iterable[ContextComponent]) -> None:
    """Raise if two components share a name.

    Raises:
        CtxBudgetError: On the first duplicated name.
    """
    seen: set[str] = set()
    for component in components:
        if component.name in seen:
            raise CtxBudgetError(
                f"Duplicate component name '{component.name}'",
                code="DUPLICATE_COMPONENT",
                context={"component": component.name},
            )
        seen.add(component.name)


def calculate_budget(
    components: Iterable[ContextComponent],
    config: ContextManagerConfig,
    estimator: TokenEstimator,
) -> ContextBudget:
    """Compute the budget for a component list.

    Example:
        >>> config = ContextManagerConfig(max_context_tokens=1000)
        >>> budget = calculate_budget(
        ...     [ContextComponent(name="history", content="x" * 3600)],
        ...     config, ApproximateTokenEstimator())
        >>> (budget.reserved, budget.used, budget.available, budget.status.value)
        (150, 900, -50, 'critical')
    """
    breakdown: dict[str, int] = {}
    used = 0
    for component in components:
        tokens = estimate_component_tokens(component, estimator)
        breakdown[component.name] = breakdown.get(component.name, 0) + tokens
        used += tokens
    return budget_from_usage(used, config, breakdown)


__all__ = [
    "MIN_FALLBACK_TOKENS",
    "estimate_component_tokens",
    "classify_utilization",
    "budget_from_usage",
    "ensure_unique_names",
    "calculate_budget",
]
