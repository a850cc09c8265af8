"""Core module for the ctxbudget framework.

Holds the exception hierarchy shared by every other sub-package.

Usage:
    from ctxbudget.core import CtxBudgetError

    try:
        prepared = await manager.prepare()
    except CtxBudgetError as e:
        print(f"Error: {e.code} - {e.message}")
"""

from ctxbudget.core.exceptions import (
    CtxBudgetError,
    ConfigurationError,
    StrategyNotFoundError,
    EstimationError,
    CompactorError,
    CompactionCancelledError,
    ContextOverflowError,
)

__all__ = [
    "CtxBudgetError",
    "ConfigurationError",
    "StrategyNotFoundError",
    "EstimationError",
    "CompactorError",
    "CompactionCancelledError",
    "ContextOverflowError",
]
