"""ctxbudget - Context budget and compaction engine for LLM agents.

Keeps an agent's prompt inside the model's context window:
- Token estimation (character ratios or tiktoken)
- Budget accounting with a reserve for the model's response
- Pluggable compactors (truncate, summarize, memory eviction)
- Compaction strategies that decide when and how hard to compact
"""

from ctxbudget.context import (
    ContextManager,
    ContextManagerConfig,
    ContextManagerHooks,
    ContextProvider,
    ContextComponent,
    ContextBudget,
    PreparedContext,
)
from ctxbudget.core.exceptions import CtxBudgetError

__version__ = "0.1.0"
__all__ = [
    "ContextManager",
    "ContextManagerConfig",
    "ContextManagerHooks",
    "ContextProvider",
    "ContextComponent",
    "ContextBudget",
    "PreparedContext",
    "CtxBudgetError",
]
