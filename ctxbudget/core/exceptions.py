"""Custom exceptions for the ctxbudget framework.

This module defines the exception hierarchy used by the context budget and
compaction engine. All exceptions inherit from CtxBudgetError, enabling
catch-all handling while still allowing specific exception types.

Exception Hierarchy:
    CtxBudgetError (base)
    ├── ConfigurationError: Invalid configuration or settings
    │   └── StrategyNotFoundError: Requested compaction strategy not available
    ├── EstimationError: Estimator could not size a piece of content
    ├── CompactorError: A compactor failed to shrink a component
    ├── CompactionCancelledError: A prepare cycle was cancelled cooperatively
    └── ContextOverflowError: Context is still critical after compaction

Which errors escape a prepare cycle:
    - ConfigurationError / StrategyNotFoundError are raised eagerly at
      construction time and are fatal.
    - EstimationError never escapes budget computation; a conservative
      fallback estimate is used instead.
    - CompactorError is caught per candidate by the strategy loop and
      recorded as a failed outcome.
    - CompactionCancelledError aborts the cycle before components are
      written back to the provider.
    - ContextOverflowError is only raised in strict mode
      (``ContextManagerConfig.fail_on_overflow``).
"""

from typing import Any, Optional


class CtxBudgetError(Exception):
    """Base exception for all ctxbudget errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        context: Additional context information about the error
        recoverable: Whether the error is potentially recoverable
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "CTXBUDGET_ERROR"
        self.context = context or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_log_dict(self) -> dict[str, Any]:
        """Return structured dict for logging.

        Returns:
            Dictionary with error details suitable for structured logging
        """
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "context": self.context,
        }


class ConfigurationError(CtxBudgetError):
    """Raised when configuration is invalid or missing.

    Attributes:
        config_key: The configuration key that caused the error
        validation_details: Details about why validation failed
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        validation_details: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {}) or {}
        if config_key:
            context["config_key"] = config_key
        if validation_details:
            context["validation_details"] = validation_details
        code = kwargs.pop("code", None) or "CONFIG_ERROR"
        super().__init__(message, code=code, context=context, **kwargs)
        self.config_key = config_key
        self.validation_details = validation_details


class StrategyNotFoundError(ConfigurationError):
    """Raised when a requested compaction strategy is not available.

    Attributes:
        strategy: The strategy name that was requested
        available_strategies: List of strategies that are available
    """

    def __init__(
        self,
        message: str,
        strategy: Optional[str] = None,
        available_strategies: Optional[list[str]] = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {}) or {}
        if strategy:
            context["strategy"] = strategy
        if available_strategies:
            context["available_strategies"] = available_strategies
        super().__init__(
            message,
            config_key="strategy",
            code="STRATEGY_NOT_FOUND",
            context=context,
            **kwargs,
        )
        self.strategy = strategy
        self.available_strategies = available_strategies or []


class EstimationError(CtxBudgetError):
    """Raised when an estimator cannot size a piece of content.

    Attributes:
        content_kind: Python type name of the content that failed
    """

    def __init__(
        self,
        message: str,
        content_kind: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {}) or {}
        if content_kind:
            context["content_kind"] = content_kind
        super().__init__(
            message, code="ESTIMATION_ERROR", context=context, recoverable=True, **kwargs
        )
        self.content_kind = content_kind


class CompactorError(CtxBudgetError):
    """Raised when a compactor fails to shrink a component.

    Attributes:
        compactor: Name of the compactor that failed
        component: Name of the component being compacted
    """

    def __init__(
        self,
        message: str,
        compactor: Optional[str] = None,
        component: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {}) or {}
        if compactor:
            context["compactor"] = compactor
        if component:
            context["component"] = component
        super().__init__(
            message, code="COMPACTOR_ERROR", context=context, recoverable=True, **kwargs
        )
        self.compactor = compactor
        self.component = component


class CompactionCancelledError(CtxBudgetError):
    """Raised when a prepare cycle is cancelled between candidates.

    Nothing has been written back to the provider when this is raised.

    Attributes:
        processed: Number of candidates handled before cancellation
        log: Compaction log accumulated up to the cancellation point
    """

    def __init__(
        self,
        message: str = "Compaction cancelled",
        processed: int = 0,
        log: Optional[list[str]] = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {}) or {}
        context["processed"] = processed
        super().__init__(
            message, code="COMPACTION_CANCELLED", context=context, recoverable=True, **kwargs
        )
        self.processed = processed
        self.log = list(log or [])


class ContextOverflowError(CtxBudgetError):
    """Raised in strict mode when context is still critical after compaction.

    Attributes:
        used: Estimated tokens in use after compaction
        limit: Tokens available for content (total minus reserved)
        utilization: Final utilization fraction
    """

    def __init__(
        self,
        message: str,
        used: int = 0,
        limit: int = 0,
        utilization: float = 0.0,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {}) or {}
        context.update({"used": used, "limit": limit, "utilization": utilization})
        super().__init__(message, code="CONTEXT_OVERFLOW", context=context, **kwargs)
        self.used = used
        self.limit = limit
        self.utilization = utilization

    def __str__(self) -> str:
        return (
            f"[{self.code}] {self.message} "
            f"(used {self.used}/{self.limit} tokens, {self.utilization:.1%} utilization)"
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
