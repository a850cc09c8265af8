"""Data model for the context budget and compaction engine.

Everything here is created fresh for each prepare cycle from data supplied
by a ContextProvider. Only the strategy instance outlives a cycle.

Key Components:
    - ContextComponent: A named, independently compactable unit of context
    - ContextBudget: Immutable token accounting snapshot for one cycle
    - ContextManagerConfig: Immutable, validated per-manager configuration
    - CompactionHookContext: Read-only snapshot handed to before_compaction
    - CandidateOutcome / CompactionResult: What a strategy did, per candidate
    - PreparedContext: The output of one prepare cycle
    - ContextEvent: Observability events emitted by the manager

Example:
    >>> component = ContextComponent(name="history", content=["hi", "hello"], priority=5)
    >>> component.kind
    <ContentKind.STRUCTURED: 'structured'>
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ctxbudget.config.settings import (
    DEFAULT_COMPACTION_THRESHOLD,
    DEFAULT_HARD_LIMIT,
    DEFAULT_MAX_CONTEXT_TOKENS,
    DEFAULT_RESPONSE_RESERVE,
    VALID_ESTIMATORS,
    VALID_STRATEGIES,
    CtxBudgetSettings,
    get_settings,
)


# =============================================================================
# Context Component
# =============================================================================


class ContentKind(str, Enum):
    """Shape of a component's content.

    Attributes:
        TEXT: Opaque text, estimated with plain text estimation
        STRUCTURED: Any other value (lists, dicts, numbers), estimated structurally
    """
    TEXT = "text"
    STRUCTURED = "structured"


@dataclass
class ContextComponent:
    """A named, independently compactable unit of context.

    Attributes:
        name: Unique identifier among the currently active components
        content: Text or structured data
        priority: Higher values are compacted first
        compactable: If False, no strategy ever reduces this component
        metadata: Open key/value bag carried through compaction
    """
    name: str
    content: Any
    priority: int = 0
    compactable: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> ContentKind:
        """Tagged view of the content union."""
        if isinstance(self.content, str):
            return ContentKind.TEXT
        return ContentKind.STRUCTURED

    def with_content(self, content: Any, **metadata: Any) -> "ContextComponent":
        """Return a copy with new content and merged metadata.

        The original component (and its metadata dict) is left untouched.
        """
        merged = dict(self.metadata)
        merged.update(metadata)
        return replace(self, content=content, metadata=merged)

    def summary(self) -> "ComponentSummary":
        """Content-free summary used in hook contexts and events."""
        return ComponentSummary(
            name=self.name,
            priority=self.priority,
            compactable=self.compactable,
        )

    def to_string(self) -> str:
        """Convert content to string representation."""
        if isinstance(self.content, str):
            return self.content
        elif isinstance(self.content, dict):
            return json.dumps(self.content, indent=2, default=str)
        elif isinstance(self.content, list):
            return "\n".join(str(item) for item in self.content)
        else:
            return str(self.content)


@dataclass(frozen=True)
class ComponentSummary:
    """Name, priority and compactability of a component, without content."""
    name: str
    priority: int
    compactable: bool


# =============================================================================
# Context Budget
# =============================================================================


class BudgetStatus(str, Enum):
    """Budget state relative to the configured thresholds.

    Attributes:
        OK: Utilization below compaction_threshold
        WARNING: At or above compaction_threshold, below hard_limit
        CRITICAL: At or above hard_limit
    """
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ContextBudget:
    """Immutable token accounting snapshot for one prepare cycle.

    ``available`` and ``utilization`` are derived, so
    ``total == reserved + used + available`` holds exactly, including when
    ``available`` is negative (overflow).

    Attributes:
        total: Configured maximum context size in tokens
        reserved: Tokens withheld for the model's response
        used: Sum of estimated tokens across all components
        status: OK / WARNING / CRITICAL
        breakdown: Per-component token counts

    Example:
        >>> budget = ContextBudget(total=1000, reserved=150, used=900,
        ...                        status=BudgetStatus.CRITICAL)
        >>> budget.available
        -50
        >>> round(budget.utilization, 4)
        1.0588
    """

    total: int
    reserved: int
    used: int
    status: BudgetStatus = BudgetStatus.OK
    breakdown: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate budget parameters after initialization."""
        if self.total <= 0:
            raise ValueError("total must be positive")
        if self.reserved < 0 or self.reserved >= self.total:
            raise ValueError("reserved must be in [0, total)")
        if self.used < 0:
            raise ValueError("used must not be negative")

    @property
    def usable(self) -> int:
        """Tokens available for content (total minus reserved)."""
        return self.total - self.reserved

    @property
    def available(self) -> int:
        """Tokens still free for content; negative on overflow."""
        return self.total - self.reserved - self.used

    @property
    def utilization(self) -> float:
        """Used tokens as a fraction of usable tokens."""
        return self.used / self.usable

    @property
    def is_over_limit(self) -> bool:
        """True when the content no longer fits next to the reserve."""
        return self.available < 0

    def to_dict(self) -> dict[str, Any]:
        """Serialize budget to dictionary.

        Returns:
            Dictionary representation including the derived fields
        """
        data = asdict(self)
        data["status"] = self.status.value
        data["available"] = self.available
        data["utilization"] = self.utilization
        return data

    def to_json(self) -> str:
        """Serialize budget to JSON string."""
        return json.dumps(self.to_dict())


# =============================================================================
# Manager Configuration
# =============================================================================


class ContextManagerConfig(BaseModel):
    """Immutable per-manager configuration.

    Validated eagerly at construction; invalid values raise pydantic's
    ValidationError (a ValueError).

    Attributes:
        max_context_tokens: Context window of the target model
        compaction_threshold: Utilization at which the budget is in WARNING
        hard_limit: Utilization at which the budget is CRITICAL
        response_reserve: Fraction of the window withheld for the response
        estimator: Built-in estimator name or an estimator instance
        auto_compact: Whether prepare cycles run compaction
        strategy: Built-in strategy name or a strategy instance
        strategy_options: Forwarded verbatim to the strategy constructor
        fail_on_overflow: Raise ContextOverflowError if still CRITICAL after compaction

    Example:
        >>> config = ContextManagerConfig(max_context_tokens=1000, strategy="aggressive")
        >>> config.reserved_tokens
        150
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    max_context_tokens: int = Field(default=DEFAULT_MAX_CONTEXT_TOKENS, ge=1)
    compaction_threshold: float = Field(default=DEFAULT_COMPACTION_THRESHOLD, gt=0.0, lt=1.0)
    hard_limit: float = Field(default=DEFAULT_HARD_LIMIT, gt=0.0, le=1.0)
    response_reserve: float = Field(default=DEFAULT_RESPONSE_RESERVE, ge=0.0, lt=1.0)
    estimator: Any = Field(default="approximate")
    auto_compact: bool = True
    strategy: Any = Field(default="proactive")
    strategy_options: dict[str, Any] = Field(default_factory=dict)
    fail_on_overflow: bool = False

    @field_validator("estimator")
    @classmethod
    def validate_estimator(cls, v: Any) -> Any:
        """Accept a known estimator name or an object with the estimator methods."""
        if isinstance(v, str):
            normalized = v.lower().strip()
            if normalized not in VALID_ESTIMATORS:
                raise ValueError(
                    f"Unknown estimator '{v}'. Must be one of: {', '.join(sorted(VALID_ESTIMATORS))}"
                )
            return normalized
        if not (callable(getattr(v, "estimate_tokens", None))
                and callable(getattr(v, "estimate_data_tokens", None))):
            raise ValueError(
                "estimator must be a name or provide estimate_tokens() and estimate_data_tokens()"
            )
        return v

    @field_validator("strategy")
    @classmethod
    def validate_strategy(cls, v: Any) -> Any:
        """Accept a known strategy name or an object with the strategy methods."""
        if isinstance(v, Enum):
            v = v.value
        if isinstance(v, str):
            normalized = v.lower().strip()
            if normalized not in VALID_STRATEGIES:
                raise ValueError(
                    f"Unknown strategy '{v}'. Must be one of: {', '.join(sorted(VALID_STRATEGIES))}"
                )
            return normalized
        if not (callable(getattr(v, "should_compact", None))
                and callable(getattr(v, "compact", None))):
            raise ValueError("strategy must be a name or provide should_compact() and compact()")
        return v

    @model_validator(mode="after")
    def check_threshold_order(self) -> "ContextManagerConfig":
        """Ensure compaction_threshold < hard_limit."""
        if self.compaction_threshold >= self.hard_limit:
            raise ValueError(
                f"compaction_threshold ({self.compaction_threshold}) must be lower "
                f"than hard_limit ({self.hard_limit})"
            )
        return self

    @property
    def reserved_tokens(self) -> int:
        """Tokens withheld for the response."""
        return math.floor(self.max_context_tokens * self.response_reserve)

    @property
    def usable_tokens(self) -> int:
        """Tokens available for content."""
        return self.max_context_tokens - self.reserved_tokens

    @property
    def strategy_name(self) -> str:
        """Name of the configured strategy, whether given by name or instance."""
        if isinstance(self.strategy, str):
            return self.strategy
        return getattr(self.strategy, "name", type(self.strategy).__name__)

    def with_updates(self, **updates: Any) -> "ContextManagerConfig":
        """Return a validated copy with some fields replaced.

        Raises:
            pydantic.ValidationError: If the merged values are invalid.
        """
        data = {name: getattr(self, name) for name in type(self).model_fields}
        data.update(updates)
        return type(self)(**data)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[CtxBudgetSettings] = None,
        **overrides: Any,
    ) -> "ContextManagerConfig":
        """Build a config from the process settings' context group.

        Args:
            settings: Settings to read; defaults to get_settings()
            **overrides: Field values taking precedence over settings

        Returns:
            New ContextManagerConfig
        """
        ctx = (settings or get_settings()).context
        data: dict[str, Any] = {
            "max_context_tokens": ctx.max_context_tokens,
            "compaction_threshold": ctx.compaction_threshold,
            "hard_limit": ctx.hard_limit,
            "response_reserve": ctx.response_reserve,
            "estimator": ctx.estimator,
            "strategy": ctx.strategy,
            "auto_compact": ctx.auto_compact,
        }
        data.update(overrides)
        return cls(**data)


# =============================================================================
# Compaction Results
# =============================================================================


class OutcomeStatus(str, Enum):
    """What happened to one compaction candidate."""
    COMPACTED = "compacted"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class CandidateOutcome:
    """Per-candidate result of a compaction pass.

    Attributes:
        component: Component name
        status: COMPACTED, SKIPPED or FAILED
        compactor: Compactor name, when one was selected
        tokens_saved: Tokens credited towards the target (0 unless COMPACTED)
        reason: Why the candidate was skipped or failed
        round: Compaction round (1-based)
    """
    component: str
    status: OutcomeStatus
    compactor: Optional[str] = None
    tokens_saved: int = 0
    reason: Optional[str] = None
    round: int = 1

    @classmethod
    def compacted(cls, component: str, compactor: str, tokens_saved: int, round: int = 1) -> "CandidateOutcome":
        return cls(component, OutcomeStatus.COMPACTED, compactor, tokens_saved, None, round)

    @classmethod
    def skipped(cls, component: str, reason: str, compactor: Optional[str] = None, round: int = 1) -> "CandidateOutcome":
        return cls(component, OutcomeStatus.SKIPPED, compactor, 0, reason, round)

    @classmethod
    def failed(cls, component: str, compactor: str, reason: str, round: int = 1) -> "CandidateOutcome":
        return cls(component, OutcomeStatus.FAILED, compactor, 0, reason, round)


@dataclass
class CompactionResult:
    """Return value of CompactionStrategy.compact().

    Attributes:
        components: New component list (the input list is never mutated)
        log: Ordered human-readable compaction log
        tokens_freed: Total tokens freed across all candidates
        outcomes: Per-candidate outcomes in processing order
        tokens_to_free: Tokens the strategy aimed to free
    """
    components: list[ContextComponent] = field(default_factory=list)
    log: list[str] = field(default_factory=list)
    tokens_freed: int = 0
    outcomes: list[CandidateOutcome] = field(default_factory=list)
    tokens_to_free: int = 0

    @property
    def target_met(self) -> bool:
        return self.tokens_freed >= self.tokens_to_free

    @classmethod
    def unchanged(cls, components: list[ContextComponent]) -> "CompactionResult":
        """A no-op result carrying a copy of the input list."""
        return cls(components=list(components))


@dataclass(frozen=True)
class CompactionHookContext:
    """Read-only snapshot passed to the before_compaction hook.

    Attributes:
        agent_id: Agent the manager belongs to, if set
        budget: Budget that triggered compaction
        strategy: Active strategy name
        components: Content-free summaries of every component
        estimated_tokens_to_free: Tokens the engine intends to free
    """
    agent_id: Optional[str]
    budget: ContextBudget
    strategy: str
    components: tuple[ComponentSummary, ...]
    estimated_tokens_to_free: int


@dataclass
class PreparedContext:
    """Output of one prepare cycle.

    ``budget`` is always the final budget: post-compaction when compaction
    ran, otherwise identical to ``initial_budget``.

    Attributes:
        components: Final components
        budget: Final budget
        initial_budget: Budget computed before compaction
        compacted: Whether compaction ran
        compaction_log: Ordered human-readable compaction log
        tokens_freed: Tokens freed by compaction
        outcomes: Per-candidate outcomes
    """
    components: list[ContextComponent]
    budget: ContextBudget
    initial_budget: ContextBudget
    compacted: bool = False
    compaction_log: list[str] = field(default_factory=list)
    tokens_freed: int = 0
    outcomes: list[CandidateOutcome] = field(default_factory=list)

    def get_component(self, name: str) -> Optional[ContextComponent]:
        """Get a component by name."""
        for component in self.components:
            if component.name == name:
                return component
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization (content omitted)."""
        return {
            "components": [asdict(c.summary()) for c in self.components],
            "budget": self.budget.to_dict(),
            "initial_budget": self.initial_budget.to_dict(),
            "compacted": self.compacted,
            "compaction_log": list(self.compaction_log),
            "tokens_freed": self.tokens_freed,
            "outcomes": [
                {**asdict(o), "status": o.status.value} for o in self.outcomes
            ],
        }


# =============================================================================
# Events
# =============================================================================


class ContextEventType(str, Enum):
    """Event types emitted by the ContextManager."""
    BUDGET_WARNING = "budget.warning"
    BUDGET_CRITICAL = "budget.critical"
    COMPACTION_STARTED = "compaction.started"
    COMPACTION_COMPLETED = "compaction.completed"
    STRATEGY_SWITCHED = "strategy.switched"


@dataclass(frozen=True)
class ContextEvent:
    """Immutable observability event.

    Attributes:
        event_type: What happened
        agent_id: Agent the manager belongs to, if set
        data: Event payload
        timestamp: When the event was created (UTC)
    """
    event_type: ContextEventType
    agent_id: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "agent_id": self.agent_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


__all__ = [
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
]
