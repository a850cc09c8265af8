"""ContextManager - runs the context budget cycle before each model call.

One prepare cycle:

    1. fetch components from the ContextProvider
    2. let the strategy pre-process them (rolling-window trimming)
    3. compute the budget
    4. if auto_compact is on and the strategy asks for it:
         a. await the before_compaction hook
         b. run strategy.compact() over the registered compactors
         c. recompute the budget from the compacted components
    5. write the final components back through the provider
    6. return a PreparedContext

Cycles on one manager are serialized with an asyncio.Lock because
strategies carry state between cycles. Separate managers share nothing
and may run concurrently.

Example:
    >>> from ctxbudget.context.manager import ContextManager, InMemoryContextProvider
    >>>
    >>> provider = InMemoryContextProvider(
    ...     [ContextComponent(name="history", content=messages, priority=5)],
    ...     max_context_size=128000,
    ... )
    >>> manager = ContextManager(provider, agent_id="agent-1")
    >>> prepared = await manager.prepare()
    >>> print(f"Utilization: {prepared.budget.utilization:.0%}")
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence, Union

from ctxbudget.config import get_settings
from ctxbudget.config.settings import CtxBudgetSettings
from ctxbudget.context.budget import calculate_budget, ensure_unique_names
from ctxbudget.context.compactors import ContextCompactor, TruncateCompactor, sort_compactors
from ctxbudget.context.estimators import TokenEstimator, resolve_estimator
from ctxbudget.context.strategies import CompactionStrategy, resolve_strategy
from ctxbudget.context.types import (
    BudgetStatus,
    CompactionHookContext,
    ContextBudget,
    ContextComponent,
    ContextEvent,
    ContextEventType,
    ContextManagerConfig,
    PreparedContext,
)
from ctxbudget.core.exceptions import CompactionCancelledError, ContextOverflowError
from ctxbudget.telemetry.metrics import CompactionMetrics


# =============================================================================
# Module Logger
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# Context Provider
# =============================================================================


class ContextProvider(ABC):
    """Source and sink of context components.

    Subclasses supply the components for a cycle and persist the final,
    possibly compacted, components. Deciding what belongs in context is
    entirely the provider's job.
    """

    @abstractmethod
    async def get_components(self) -> list[ContextComponent]:
        """Return the components for this cycle."""
        raise NotImplementedError

    @abstractmethod
    async def apply_compacted_components(self, components: list[ContextComponent]) -> None:
        """Persist the final components of a cycle."""
        raise NotImplementedError

    @abstractmethod
    def get_max_context_size(self) -> int:
        """Context window of the target model, in tokens."""
        raise NotImplementedError


class InMemoryContextProvider(ContextProvider):
    """Provider that keeps components in a list.

    Useful for single-process hosts and tests. ``applied`` counts how many
    times a cycle wrote components back.
    """

    def __init__(
        self,
        components: Optional[Iterable[ContextComponent]] = None,
        max_context_size: int = 128_000,
    ) -> None:
        self._components = list(components or [])
        self._max_context_size = max_context_size
        self.applied = 0

    @property
    def components(self) -> list[ContextComponent]:
        return list(self._components)

    def set_components(self, components: Iterable[ContextComponent]) -> None:
        self._components = list(components)

    async def get_components(self) -> list[ContextComponent]:
        return list(self._components)

    async def apply_compacted_components(self, components: list[ContextComponent]) -> None:
        self._components = list(components)
        self.applied += 1

    def get_max_context_size(self) -> int:
        return self._max_context_size


# =============================================================================
# Hooks
# =============================================================================


BeforeCompactionHook = Callable[[CompactionHookContext], Union[Awaitable[None], None]]
EventListener = Callable[[ContextEvent], Any]


@dataclass
class ContextManagerHooks:
    """Optional callbacks around compaction.

    Attributes:
        before_compaction: Awaited after compaction is decided and before
            any compactor runs. Last chance to persist material that is
            about to shrink. Exceptions abort the cycle.
    """
    before_compaction: Optional[BeforeCompactionHook] = None


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


# =============================================================================
# Context Manager
# =============================================================================


class ContextManager:
    """Tracks the token budget of a component set and compacts it.

    Attributes:
        config: Active ContextManagerConfig
        strategy: Active CompactionStrategy
        estimator: Active TokenEstimator
        compactors: Registered compactors, lowest priority value first
        current_budget: Budget from the most recent cycle

    Args:
        provider: Source and sink of components
        config: Manager configuration; built from settings (with the
            provider's context size) when omitted
        compactors: Compactors to use; defaults to a TruncateCompactor
        hooks: Optional compaction hooks
        agent_id: Identifier reported in hook contexts and events
        settings: Settings instance, defaults to get_settings()

    Raises:
        ConfigurationError: If the strategy or estimator cannot be built.
    """

    def __init__(
        self,
        provider: ContextProvider,
        config: Optional[ContextManagerConfig] = None,
        compactors: Optional[Sequence[ContextCompactor]] = None,
        hooks: Optional[ContextManagerHooks] = None,
        agent_id: Optional[str] = None,
        settings: Optional[CtxBudgetSettings] = None,
    ) -> None:
        self._provider = provider
        self._settings = settings or get_settings()
        self._config = config or ContextManagerConfig.from_settings(
            self._settings,
            max_context_tokens=provider.get_max_context_size(),
        )
        self._estimator: TokenEstimator = resolve_estimator(self._config.estimator)
        self._strategy: CompactionStrategy = resolve_strategy(
            self._config.strategy, self._config.strategy_options
        )
        if compactors is None:
            compactors = [TruncateCompactor(self._estimator)]
        self._compactors = sort_compactors(list(compactors))
        self._hooks = hooks or ContextManagerHooks()
        self._agent_id = agent_id

        self._lock = asyncio.Lock()
        self._listeners: dict[ContextEventType, list[EventListener]] = {}
        self._current_budget: Optional[ContextBudget] = None
        self._metrics = CompactionMetrics()

        logger.debug(
            f"ContextManager initialized: strategy={self._strategy.name}, "
            f"max_context_tokens={self._config.max_context_tokens}, "
            f"compactors={[c.name for c in self._compactors]}"
        )

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def config(self) -> ContextManagerConfig:
        return self._config

    @property
    def strategy(self) -> CompactionStrategy:
        return self._strategy

    @property
    def estimator(self) -> TokenEstimator:
        return self._estimator

    @property
    def compactors(self) -> list[ContextCompactor]:
        return list(self._compactors)

    @property
    def hooks(self) -> ContextManagerHooks:
        return self._hooks

    @property
    def agent_id(self) -> Optional[str]:
        return self._agent_id

    @property
    def current_budget(self) -> Optional[ContextBudget]:
        return self._current_budget

    def get_strategy_metrics(self) -> dict[str, Any]:
        return self._strategy.get_metrics()

    def get_metrics(self) -> dict[str, Any]:
        """Get prepare-cycle metrics.

        Returns:
            CompactionMetrics summary plus the active strategy's metrics.
        """
        summary = self._metrics.get_summary()
        summary["strategy"] = self._strategy.name
        summary["strategy_metrics"] = self._strategy.get_metrics()
        return summary

    def reset_metrics(self) -> None:
        self._metrics.clear()
        self._strategy.reset_metrics()

    # -------------------------------------------------------------------------
    # Mutators
    # -------------------------------------------------------------------------

    def set_hooks(self, hooks: ContextManagerHooks) -> None:
        self._hooks = hooks

    def set_agent_id(self, agent_id: Optional[str]) -> None:
        self._agent_id = agent_id

    def add_compactor(self, compactor: ContextCompactor) -> None:
        """Register a compactor, keeping priority order."""
        self._compactors = sort_compactors(self._compactors + [compactor])

    async def set_strategy(
        self,
        strategy: Union[str, CompactionStrategy],
        options: Optional[dict[str, Any]] = None,
    ) -> CompactionStrategy:
        """Swap the active strategy.

        Waits for any running cycle to finish first.

        Raises:
            StrategyNotFoundError: If a name is unknown.
        """
        async with self._lock:
            new_strategy = resolve_strategy(strategy, options)
            self._config = self._config.with_updates(
                strategy=strategy, strategy_options=dict(options or {})
            )
            await self._install_strategy(new_strategy, reason="set_strategy")
            return new_strategy

    async def update_config(self, **updates: Any) -> ContextManagerConfig:
        """Replace config fields, rebuilding the estimator / strategy as needed.

        Raises:
            pydantic.ValidationError: If the merged config is invalid.
        """
        async with self._lock:
            new_config = self._config.with_updates(**updates)
            new_estimator = (
                resolve_estimator(new_config.estimator) if "estimator" in updates else self._estimator
            )
            new_strategy = None
            if "strategy" in updates or "strategy_options" in updates:
                new_strategy = resolve_strategy(new_config.strategy, new_config.strategy_options)

            self._config = new_config
            self._estimator = new_estimator
            if new_strategy is not None:
                await self._install_strategy(new_strategy, reason="update_config")
            return new_config

    def on(self, event_type: ContextEventType, listener: EventListener) -> None:
        """Register an event listener (sync or async)."""
        self._listeners.setdefault(event_type, []).append(listener)

    def off(self, event_type: ContextEventType, listener: EventListener) -> None:
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    # -------------------------------------------------------------------------
    # Prepare cycle
    # -------------------------------------------------------------------------

    async def prepare(self, cancel_event: Optional[asyncio.Event] = None) -> PreparedContext:
        """Run one prepare cycle.

        Args:
            cancel_event: Optional event; when set, the cycle stops at the
                next candidate boundary without writing anything back.

        Returns:
            PreparedContext with the final components and budgets.

        Raises:
            CompactionCancelledError: If cancel_event was set mid-cycle.
            ContextOverflowError: In strict mode, if still critical after compaction.
            Exception: Whatever the before_compaction hook raised.
        """
        async with self._lock:
            return await self._prepare(cancel_event)

    async def _prepare(self, cancel_event: Optional[asyncio.Event]) -> PreparedContext:
        cancel_check = cancel_event.is_set if cancel_event is not None else None
        config = self._config
        strategy = self._strategy

        components = list(await self._provider.get_components())
        ensure_unique_names(components)
        components = strategy.prepare_components(components)

        initial_budget = calculate_budget(components, config, self._estimator)
        self._current_budget = initial_budget
        await self._emit_budget_status(initial_budget)

        delegate_before = getattr(strategy, "current_strategy", None)
        wants_compaction = strategy.should_compact(initial_budget, config)

        prepared = PreparedContext(
            components=components,
            budget=initial_budget,
            initial_budget=initial_budget,
        )

        if wants_compaction and not config.auto_compact:
            logger.debug(
                f"Compaction skipped: auto_compact disabled "
                f"(utilization {initial_budget.utilization:.2f})"
            )
        elif wants_compaction:
            prepared = await self._compact(components, initial_budget, cancel_check)

        await self._emit_delegate_switch(strategy, delegate_before)

        if cancel_check is not None and cancel_check():
            raise CompactionCancelledError(
                "Prepare cycle cancelled before applying components",
                log=prepared.compaction_log,
            )

        await self._provider.apply_compacted_components(list(prepared.components))
        self._current_budget = prepared.budget
        self._metrics.add_cycle(
            strategy=strategy.name,
            tokens_before=initial_budget.used,
            tokens_after=prepared.budget.used,
            compacted=prepared.compacted,
            utilization_after=prepared.budget.utilization,
        )

        if config.fail_on_overflow and prepared.budget.status is BudgetStatus.CRITICAL:
            raise ContextOverflowError(
                "Context is still critical after compaction",
                used=prepared.budget.used,
                limit=prepared.budget.usable,
                utilization=prepared.budget.utilization,
            )
        return prepared

    async def _compact(
        self,
        components: list[ContextComponent],
        budget: ContextBudget,
        cancel_check: Optional[Callable[[], bool]],
    ) -> PreparedContext:
        strategy = self._strategy
        hook_context = CompactionHookContext(
            agent_id=self._agent_id,
            budget=budget,
            strategy=strategy.name,
            components=tuple(c.summary() for c in components),
            estimated_tokens_to_free=strategy.estimate_tokens_to_free(budget),
        )

        if cancel_check is not None and cancel_check():
            raise CompactionCancelledError("Prepare cycle cancelled before compaction")

        await self._emit(ContextEventType.COMPACTION_STARTED, {
            "strategy": strategy.name,
            "utilization": budget.utilization,
            "estimated_tokens_to_free": hook_context.estimated_tokens_to_free,
        })

        if self._hooks.before_compaction is not None:
            await _maybe_await(self._hooks.before_compaction(hook_context))

        result = await strategy.compact(
            components, budget, self._compactors, self._estimator, cancel_check=cancel_check
        )
        final_budget = calculate_budget(result.components, self._config, self._estimator)

        logger.info(
            f"Compacted context with {strategy.name}: {budget.used} -> {final_budget.used} tokens "
            f"({result.tokens_freed} freed)",
            extra={"tokens": final_budget.used, "agent_id": self._agent_id},
        )
        await self._emit(ContextEventType.COMPACTION_COMPLETED, {
            "strategy": strategy.name,
            "tokens_before": budget.used,
            "tokens_after": final_budget.used,
            "tokens_freed": result.tokens_freed,
            "log": list(result.log),
        })

        return PreparedContext(
            components=result.components,
            budget=final_budget,
            initial_budget=budget,
            compacted=True,
            compaction_log=list(result.log),
            tokens_freed=result.tokens_freed,
            outcomes=list(result.outcomes),
        )

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def _install_strategy(self, strategy: CompactionStrategy, reason: str) -> None:
        previous = self._strategy.name
        self._strategy = strategy
        logger.info(f"Strategy switched: {previous} -> {strategy.name} ({reason})")
        await self._emit(ContextEventType.STRATEGY_SWITCHED, {
            "from": previous,
            "to": strategy.name,
            "reason": reason,
        })

    async def _emit_delegate_switch(self, strategy: CompactionStrategy, before: Optional[str]) -> None:
        after = getattr(strategy, "current_strategy", None)
        if before is not None and after != before:
            await self._emit(ContextEventType.STRATEGY_SWITCHED, {
                "from": before,
                "to": after,
                "reason": strategy.name,
            })

    async def _emit_budget_status(self, budget: ContextBudget) -> None:
        if budget.status is BudgetStatus.CRITICAL:
            logger.warning(
                f"Context budget critical: {budget.used}/{budget.usable} tokens "
                f"({budget.utilization:.1%})",
                extra={"tokens": budget.used, "agent_id": self._agent_id},
            )
            await self._emit(ContextEventType.BUDGET_CRITICAL, budget.to_dict())
        elif budget.status is BudgetStatus.WARNING:
            logger.info(
                f"Context budget warning: {budget.used}/{budget.usable} tokens "
                f"({budget.utilization:.1%})",
                extra={"tokens": budget.used, "agent_id": self._agent_id},
            )
            await self._emit(ContextEventType.BUDGET_WARNING, budget.to_dict())

    async def _emit(self, event_type: ContextEventType, data: dict[str, Any]) -> None:
        listeners = list(self._listeners.get(event_type, []))
        if not listeners:
            return
        event = ContextEvent(event_type=event_type, agent_id=self._agent_id, data=data)
        for listener in listeners:
            try:
                await _maybe_await(listener(event))
            except Exception as e:
                logger.warning(f"Listener for {event_type.value} failed: {e}")


__all__ = [
    "ContextProvider",
    "InMemoryContextProvider",
    "ContextManagerHooks",
    "BeforeCompactionHook",
    "EventListener",
    "ContextManager",
]
