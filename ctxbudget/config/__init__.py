"""Configuration module for the ctxbudget framework.

Usage:
    from ctxbudget.config import get_settings

    settings = get_settings()
    print(settings.context.compaction_threshold)
"""

from ctxbudget.config.settings import (
    CtxBudgetSettings,
    ContextSettings,
    get_settings,
    reload_settings,
    clear_settings_cache,
    DEFAULT_MAX_CONTEXT_TOKENS,
    DEFAULT_COMPACTION_THRESHOLD,
    DEFAULT_HARD_LIMIT,
    DEFAULT_RESPONSE_RESERVE,
    VALID_ESTIMATORS,
    VALID_STRATEGIES,
)

__all__ = [
    "CtxBudgetSettings",
    "ContextSettings",
    "get_settings",
    "reload_settings",
    "clear_settings_cache",
    "DEFAULT_MAX_CONTEXT_TOKENS",
    "DEFAULT_COMPACTION_THRESHOLD",
    "DEFAULT_HARD_LIMIT",
    "DEFAULT_RESPONSE_RESERVE",
    "VALID_ESTIMATORS",
    "VALID_STRATEGIES",
]
