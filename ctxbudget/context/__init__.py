"""Context budget tracking and compaction for the ctxbudget framework.

This module measures how much of a model's context window a set of named
components consumes and shrinks them when a configured threshold is
crossed.

Key Components:
    - ContextManager: Runs the prepare cycle for one agent
    - ContextProvider: Supplies and persists components
    - ContextComponent / ContextBudget: Data model
    - TokenEstimator: Approximate and tiktoken-backed estimators
    - ContextCompactor: Truncate, summarize and memory-eviction compactors
    - CompactionStrategy: Proactive, aggressive, lazy, rolling-window, adaptive

Example:
    >>> from ctxbudget.context import ContextManager, InMemoryContextProvider
    >>>
    >>> manager = ContextManager(InMemoryContextProvider(components, 128000))
    >>> prepared = await manager.prepare()
"""

from ctxbudget.context.types import (
    ContentKind,
    ContextComponent,
    ComponentSummary,
    BudgetStatus,
    ContextBudget,
    ContextManagerConfig,
    OutcomeStatus,
    CandidateOutcome,
    CompactionResult,
    CompactionHookContext,
    PreparedContext,
    ContextEventType,
    ContextEvent,
)

from ctxbudget.context.estimators import (
    ContentType,
    CHARS_PER_TOKEN,
    TokenEstimator,
    ApproximateTokenEstimator,
    TiktokenEstimator,
    create_estimator,
    resolve_estimator,
)

from ctxbudget.context.budget import (
    calculate_budget,
    classify_utilization,
    estimate_component_tokens,
)

from ctxbudget.context.compactors import (
    ContextCompactor,
    TruncateCompactor,
    SummarizeCompactor,
    MemoryEvictionCompactor,
    TRUNCATION_MARKER,
)

from ctxbudget.context.strategies import (
    StrategyName,
    CompactionStrategy,
    BaseCompactionStrategy,
    ProactiveStrategy,
    AggressiveStrategy,
    LazyStrategy,
    RollingWindowStrategy,
    AdaptiveStrategy,
    create_strategy,
)

from ctxbudget.context.manager import (
    ContextManager,
    ContextProvider,
    InMemoryContextProvider,
    ContextManagerHooks,
)

__all__ = [
    # Types
    "ContentKind",
    "ContextComponent",
    "ComponentSummary",
    "BudgetStatus",
    "ContextBudget",
    "ContextManagerConfig",
    "OutcomeStatus",
    "CandidateOutcome",
    "CompactionResult",
    "CompactionHookContext",
    "PreparedContext",
    "ContextEventType",
    "ContextEvent",
    # Estimators
    "ContentType",
    "CHARS_PER_TOKEN",
    "TokenEstimator",
    "ApproximateTokenEstimator",
    "TiktokenEstimator",
    "create_estimator",
    "resolve_estimator",
    # Budget
    "calculate_budget",
    "classify_utilization",
    "estimate_component_tokens",
    # Compactors
    "ContextCompactor",
    "TruncateCompactor",
    "SummarizeCompactor",
    "MemoryEvictionCompactor",
    "TRUNCATION_MARKER",
    # Strategies
    "StrategyName",
    "CompactionStrategy",
    "BaseCompactionStrategy",
    "ProactiveStrategy",
    "AggressiveStrategy",
    "LazyStrategy",
    "RollingWindowStrategy",
    "AdaptiveStrategy",
    "create_strategy",
    # Manager
    "ContextManager",
    "ContextProvider",
    "InMemoryContextProvider",
    "ContextManagerHooks",
]
