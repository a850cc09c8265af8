"""Pydantic settings for the ctxbudget framework.

This module defines the CtxBudgetSettings class that loads process-wide
configuration from environment variables and .env files. It uses
pydantic-settings for automatic environment variable parsing and validation.

Per-manager configuration lives in ``ctxbudget.context.types.ContextManagerConfig``;
the ``context`` group below only supplies its defaults.

Settings Categories:
    - Core: Framework-level settings (debug mode, log level, log format)
    - Context: Engine defaults (context size, thresholds, estimator, strategy)

Environment Variables:
    CTXBUDGET_DEBUG: Enable debug mode (default: false)
    CTXBUDGET_LOG_LEVEL: Logging level (default: INFO)
    CTXBUDGET_LOG_FORMAT: 'text' or 'json' (default: text)
    CTXBUDGET_ENVIRONMENT: Deployment environment (default: development)
    CTXBUDGET_CONTEXT__MAX_CONTEXT_TOKENS: Model context size (default: 128000)
    CTXBUDGET_CONTEXT__COMPACTION_THRESHOLD: Warning threshold (default: 0.75)
    CTXBUDGET_CONTEXT__HARD_LIMIT: Critical threshold (default: 0.90)
    CTXBUDGET_CONTEXT__RESPONSE_RESERVE: Response reserve fraction (default: 0.15)
    CTXBUDGET_CONTEXT__ESTIMATOR: 'approximate' or 'tiktoken'
    CTXBUDGET_CONTEXT__STRATEGY: Default compaction strategy name
    CTXBUDGET_CONTEXT__AUTO_COMPACT: Compact automatically (default: true)

Usage:
    from ctxbudget.config.settings import get_settings

    settings = get_settings()
    print(settings.log_level)
    print(settings.context.strategy)
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# Default Constants
# =============================================================================

DEFAULT_MAX_CONTEXT_TOKENS = 128_000
"""Default model context window in tokens."""

DEFAULT_COMPACTION_THRESHOLD = 0.75
"""Utilization at which the budget enters the warning state."""

DEFAULT_HARD_LIMIT = 0.90
"""Utilization at which the budget enters the critical state."""

DEFAULT_RESPONSE_RESERVE = 0.15
"""Fraction of the context window withheld for the model's response."""

VALID_ESTIMATORS = frozenset({"approximate", "tiktoken"})
VALID_STRATEGIES = frozenset({"proactive", "aggressive", "lazy", "rolling-window", "adaptive"})


# =============================================================================
# Nested Settings Models
# =============================================================================


class ContextSettings(BaseModel):
    """Engine defaults used to build a ContextManagerConfig.

    Attributes:
        max_context_tokens: Model context window in tokens.
        compaction_threshold: Utilization fraction for the warning state.
        hard_limit: Utilization fraction for the critical state.
        response_reserve: Fraction of the window withheld for the response.
        estimator: Built-in estimator name ('approximate', 'tiktoken').
        strategy: Built-in strategy name.
        auto_compact: Whether prepare cycles compact automatically.
    """

    max_context_tokens: int = Field(
        default=DEFAULT_MAX_CONTEXT_TOKENS,
        ge=1,
        description="Model context window in tokens"
    )
    compaction_threshold: float = Field(
        default=DEFAULT_COMPACTION_THRESHOLD,
        gt=0.0,
        lt=1.0,
        description="Warning threshold (fraction of usable context)"
    )
    hard_limit: float = Field(
        default=DEFAULT_HARD_LIMIT,
        gt=0.0,
        le=1.0,
        description="Critical threshold (fraction of usable context)"
    )
    response_reserve: float = Field(
        default=DEFAULT_RESPONSE_RESERVE,
        ge=0.0,
        lt=1.0,
        description="Fraction reserved for the model response"
    )
    estimator: str = Field(
        default="approximate",
        description="Estimator name: 'approximate' or 'tiktoken'"
    )
    strategy: str = Field(
        default="proactive",
        description="Compaction strategy name"
    )
    auto_compact: bool = Field(
        default=True,
        description="Compact automatically during prepare cycles"
    )

    @field_validator("estimator")
    @classmethod
    def validate_estimator(cls, v: str) -> str:
        """Validate estimator name."""
        normalized = v.lower().strip()
        if normalized not in VALID_ESTIMATORS:
            raise ValueError(
                f"Invalid estimator '{v}'. Must be one of: {', '.join(sorted(VALID_ESTIMATORS))}"
            )
        return normalized

    @field_validator("strategy")
    @classmethod
    def validate_strategy(cls, v: str) -> str:
        """Validate strategy name."""
        normalized = v.lower().strip()
        if normalized not in VALID_STRATEGIES:
            raise ValueError(
                f"Invalid strategy '{v}'. Must be one of: {', '.join(sorted(VALID_STRATEGIES))}"
            )
        return normalized

    @model_validator(mode="after")
    def check_threshold_order(self) -> "ContextSettings":
        """Ensure the warning threshold sits below the hard limit."""
        if self.compaction_threshold >= self.hard_limit:
            raise ValueError(
                f"compaction_threshold ({self.compaction_threshold}) must be lower "
                f"than hard_limit ({self.hard_limit})"
            )
        return self


# =============================================================================
# Main Settings Class
# =============================================================================


class CtxBudgetSettings(BaseSettings):
    """Main settings class for ctxbudget configuration.

    Environment variables use the CTXBUDGET_ prefix; nested groups use a
    double underscore (``CTXBUDGET_CONTEXT__HARD_LIMIT=0.95``).

    Example usage:
        ```python
        from ctxbudget.config.settings import get_settings

        settings = get_settings()
        print(settings.debug)
        print(settings.context.max_context_tokens)
        ```

    Attributes:
        debug: Enable debug mode for verbose logging.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: Log output format ('text' or 'json').
        environment: Deployment environment (development, staging, production, test).
        context: Engine defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="CTXBUDGET_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )
    log_format: str = Field(
        default="text",
        description="Log output format: 'text' or 'json'"
    )
    environment: str = Field(
        default="development",
        description="Deployment environment"
    )

    context: ContextSettings = Field(
        default_factory=ContextSettings,
        description="Context engine defaults"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        normalized = v.upper()
        if normalized not in valid_levels:
            raise ValueError(
                f"Invalid log level '{v}'. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        return normalized

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate and normalize log format."""
        normalized = v.lower().strip()
        if normalized not in {"text", "json"}:
            raise ValueError(f"Invalid log format '{v}'. Must be one of: json, text")
        return normalized

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate and normalize environment."""
        valid_envs = {"development", "staging", "production", "test"}
        normalized = v.lower()
        if normalized not in valid_envs:
            raise ValueError(
                f"Invalid environment '{v}'. Must be one of: {', '.join(sorted(valid_envs))}"
            )
        return normalized

    @property
    def effective_log_level(self) -> str:
        """Log level after applying the debug flag."""
        return "DEBUG" if self.debug else self.log_level

    def to_dict(self) -> dict[str, Any]:
        """Export settings as a dictionary.

        Returns:
            Dictionary representation of settings.
        """
        return self.model_dump()


# =============================================================================
# Singleton Pattern
# =============================================================================

_settings_instance: Optional[CtxBudgetSettings] = None


def get_settings() -> CtxBudgetSettings:
    """Get the cached settings instance.

    The settings are created once and cached for subsequent calls to
    avoid repeated .env parsing and validation.

    Returns:
        The cached CtxBudgetSettings instance.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = CtxBudgetSettings()
    return _settings_instance


def reload_settings() -> CtxBudgetSettings:
    """Reload settings from environment, clearing the cache.

    Returns:
        A fresh CtxBudgetSettings instance.

    Example:
        ```python
        import os
        os.environ["CTXBUDGET_CONTEXT__STRATEGY"] = "lazy"
        settings = reload_settings()
        assert settings.context.strategy == "lazy"
        ```
    """
    global _settings_instance
    _settings_instance = CtxBudgetSettings()
    return _settings_instance


def clear_settings_cache() -> None:
    """Clear the settings cache without creating a new instance."""
    global _settings_instance
    _settings_instance = None


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
