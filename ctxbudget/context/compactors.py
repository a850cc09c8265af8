"""Compactors - mechanisms that shrink a single context component.

A compactor never decides *whether* to compact; strategies do that. It
only reduces one component towards a target token size.

Compactors (lower priority value runs first):
    - SummarizeCompactor (5): LLM summary, falls back to truncation
    - MemoryEvictionCompactor (8): evicts entries from a memory store
    - TruncateCompactor (10): proportional truncation of text or lists

Contract:
    - can_compact(component) is a cheap capability probe
    - compact(component, target_tokens) returns a new component whose
      estimated size is no larger than the original. Landing below the
      target is fine; landing above it is logged by the strategy.
    - estimate_savings(component) is a cheap upper-bound estimate

Example:
    >>> estimator = ApproximateTokenEstimator()
    >>> compactor = TruncateCompactor(estimator)
    >>> component = ContextComponent(name="log", content="x" * 1000)
    >>> smaller = await compactor.compact(component, 50)
    >>> smaller.content.endswith("[truncated...]")
    True
"""

from __future__ import annotations

import inspect
import json
import logging
import math
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from ctxbudget.context.budget import estimate_component_tokens
from ctxbudget.context.estimators import TokenEstimator
from ctxbudget.context.types import ContextComponent
from ctxbudget.core.exceptions import CompactorError


# =============================================================================
# Module Logger
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

TRUNCATION_MARKER = "\n[truncated...]"
SUMMARY_FALLBACK_MARKER = "\n\n[... content truncated due to context limits ...]"

DEFAULT_AVG_ENTRY_SIZE = 100
"""Assumed tokens per memory entry when the component does not say."""


# =============================================================================
# Base Compactor
# =============================================================================


class ContextCompactor(ABC):
    """Abstract base class for compactors.

    Subclasses set ``name`` and ``priority`` and implement the three
    contract methods. Compactors hold no per-call state, so one instance
    may be shared between managers.
    """

    name: str = "compactor"
    priority: int = 100

    def __init__(self, estimator: TokenEstimator) -> None:
        self._estimator = estimator

    @property
    def estimator(self) -> TokenEstimator:
        return self._estimator

    def _estimate(self, component: ContextComponent) -> int:
        return estimate_component_tokens(component, self._estimator)

    @abstractmethod
    def can_compact(self, component: ContextComponent) -> bool:
        """Return True if this compactor handles the component."""
        raise NotImplementedError

    @abstractmethod
    async def compact(self, component: ContextComponent, target_tokens: int) -> ContextComponent:
        """Shrink the component towards target_tokens.

        Args:
            component: Component to shrink (not mutated)
            target_tokens: Desired estimated size

        Returns:
            New component
        """
        raise NotImplementedError

    @abstractmethod
    def estimate_savings(self, component: ContextComponent) -> int:
        """Cheap upper-bound estimate of tokens this compactor could free."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, priority={self.priority})"


def sort_compactors(compactors: list[ContextCompactor]) -> list[ContextCompactor]:
    """Order compactors by priority, lowest first (stable)."""
    return sorted(compactors, key=lambda c: getattr(c, "priority", 100))


# =============================================================================
# Truncate Compactor
# =============================================================================


class TruncateCompactor(ContextCompactor):
    """Reference truncation compactor.

    Text is cut proportionally: the kept prefix has
    ``floor(len(text) * target / current)`` characters minus the marker
    length, and the marker is appended. Lists keep their most recent items
    that fit in the target, never fewer than one. Anything already at or
    below the target is returned unchanged.
    """

    name = "truncate"
    priority = 10

    def can_compact(self, component: ContextComponent) -> bool:
        return component.compactable and isinstance(component.content, (str, list, tuple))

    async def compact(self, component: ContextComponent, target_tokens: int) -> ContextComponent:
        current = self._estimate(component)
        if current <= target_tokens:
            return component

        if isinstance(component.content, str):
            return self._truncate_text(component, current, target_tokens)
        if isinstance(component.content, (list, tuple)):
            return self._truncate_sequence(component, target_tokens)

        raise CompactorError(
            f"Cannot truncate content of type {type(component.content).__name__}",
            compactor=self.name,
            component=component.name,
        )

    def estimate_savings(self, component: ContextComponent) -> int:
        return self._estimate(component) // 2

    def _truncate_text(
        self, component: ContextComponent, current: int, target_tokens: int
    ) -> ContextComponent:
        text: str = component.content
        target_chars = math.floor(len(text) * max(0, target_tokens) / current)
        keep = max(0, target_chars - len(TRUNCATION_MARKER))
        truncated = text[:keep] + TRUNCATION_MARKER
        if len(truncated) >= len(text):
            # Too short to carry the marker
            truncated = text[:target_chars]

        return component.with_content(
            truncated,
            truncated=True,
            original_length=len(text),
            truncated_length=len(truncated),
        )

    def _truncate_sequence(self, component: ContextComponent, target_tokens: int) -> ContextComponent:
        items = list(component.content)
        content_type = component.metadata.get("content_type")

        kept = 0
        used = 0
        for item in reversed(items):
            size = self._estimator.estimate_data_tokens(item, content_type)
            if kept and used + size > target_tokens:
                break
            used += size
            kept += 1
        if kept == len(items) and kept > 1:
            # Items fit individually but the serialized list does not
            kept -= 1

        window = items[len(items) - kept:]
        if isinstance(component.content, tuple):
            window = tuple(window)

        return component.with_content(
            window,
            truncated=True,
            original_length=len(items),
            truncated_length=len(window),
        )


# =============================================================================
# Summarize Compactor
# =============================================================================

SUMMARIZATION_PROMPTS: dict[str, str] = {
    "conversation": (
        "Summarize this conversation history, preserving:\n"
        "- Key decisions made by the user or assistant\n"
        "- Important facts and data discovered\n"
        "- User preferences expressed\n"
        "- Unresolved questions or pending items\n"
        "- Any errors or issues encountered\n\n"
        "Focus on information needed to continue the conversation coherently."
    ),
    "tool_output": (
        "Summarize these tool outputs, preserving:\n"
        "- Key results and findings from each tool call\n"
        "- Important data values (numbers, dates, names, IDs)\n"
        "- Error messages, warnings and status information\n\n"
        "Prioritize factual data over explanatory text."
    ),
    "search_results": (
        "Summarize these search results, preserving:\n"
        "- Key findings relevant to the task\n"
        "- Source URLs and their main points (keep URLs intact)\n"
        "- Factual data (numbers, dates, names, statistics)\n"
        "- Contradictions between sources\n\n"
        "Format as a bulleted list organized by topic or source."
    ),
    "scrape_results": (
        "Summarize this scraped web content, preserving:\n"
        "- Main topic and key points\n"
        "- Factual data (numbers, dates, names, prices)\n"
        "- Source attribution (keep the URL)\n\n"
        "Discard navigation elements, ads and boilerplate."
    ),
    "generic": (
        "Summarize this content, preserving:\n"
        "- Main points and key information\n"
        "- Important data and facts\n"
        "- Actionable items\n\n"
        "Be concise while retaining critical information."
    ),
}


class SummarizeCompactor(ContextCompactor):
    """LLM-based compactor for components marked ``strategy="summarize"``.

    The summary prompt is chosen from ``metadata["summary_type"]`` or
    inferred from the component name (history/messages -> conversation,
    search -> search_results, scrape/fetch -> scrape_results,
    tool/output -> tool_output). When the LLM call fails, or the summary
    saves less than 10%, the content is truncated instead, unless
    ``fallback_to_truncate`` is off, in which case a CompactorError is raised.

    Args:
        estimator: Estimator used to size content
        llm_call: Async function taking a prompt and returning the summary
        max_summary_tokens: Upper bound on the requested summary length
        preserve_structure: Ask the model to keep headings and lists
        fallback_to_truncate: Truncate instead of failing
    """

    name = "summarize"
    priority = 5

    MIN_REDUCTION = 0.10

    def __init__(
        self,
        estimator: TokenEstimator,
        llm_call: Callable[[str], Awaitable[str]],
        max_summary_tokens: int = 500,
        preserve_structure: bool = True,
        fallback_to_truncate: bool = True,
    ) -> None:
        super().__init__(estimator)
        self._llm_call = llm_call
        self.max_summary_tokens = max_summary_tokens
        self.preserve_structure = preserve_structure
        self.fallback_to_truncate = fallback_to_truncate

    def can_compact(self, component: ContextComponent) -> bool:
        return component.compactable and component.metadata.get("strategy") == "summarize"

    async def compact(self, component: ContextComponent, target_tokens: int) -> ContextComponent:
        text = self.stringify(component.content)
        current = self._estimator.estimate_tokens(text)
        if current <= target_tokens:
            return component

        summary_type = self.detect_summary_type(component)
        try:
            summary = await self._llm_call(self.build_prompt(text, summary_type, target_tokens))
        except Exception as e:
            if not self.fallback_to_truncate:
                raise CompactorError(
                    f"Summarization failed: {e}", compactor=self.name, component=component.name
                ) from e
            logger.warning(
                f"SummarizeCompactor: LLM summarization failed for '{component.name}', "
                f"falling back to truncation: {e}"
            )
            return self._truncate_fallback(component, text, current, target_tokens)

        summary_tokens = self._estimator.estimate_tokens(summary or "")
        if not summary or summary_tokens >= current * (1 - self.MIN_REDUCTION):
            if self.fallback_to_truncate:
                return self._truncate_fallback(component, text, current, target_tokens)
            raise CompactorError(
                "Summary did not reduce content enough",
                compactor=self.name,
                component=component.name,
            )

        return component.with_content(
            summary,
            summarized=True,
            summarized_from=current,
            summarized_to=summary_tokens,
            reduction_percent=round((current - summary_tokens) / current * 100),
            summary_type=summary_type,
        )

    def estimate_savings(self, component: ContextComponent) -> int:
        return math.floor(self._estimate(component) * 0.8)

    def build_prompt(self, text: str, summary_type: str, target_tokens: int) -> str:
        """Assemble the summarization prompt."""
        max_tokens = min(target_tokens, self.max_summary_tokens)
        instructions = SUMMARIZATION_PROMPTS.get(summary_type, SUMMARIZATION_PROMPTS["generic"])
        if self.preserve_structure:
            instructions += (
                "\n\nPreserve formatting structure (headings, bullet points, "
                "numbered lists) where appropriate."
            )
        return (
            f"{instructions}\n\n"
            f"Target summary length: approximately {max_tokens} tokens.\n\n"
            f"Content to summarize:\n---\n{text}\n---\n\n"
            f"Provide the summary:"
        )

    @staticmethod
    def detect_summary_type(component: ContextComponent) -> str:
        explicit = component.metadata.get("summary_type")
        if explicit in SUMMARIZATION_PROMPTS:
            return explicit

        name = component.name.lower()
        if any(word in name for word in ("conversation", "history", "messages")):
            return "conversation"
        if "search" in name:
            return "search_results"
        if "scrape" in name or "fetch" in name:
            return "scrape_results"
        if "tool" in name or "output" in name:
            return "tool_output"
        return "generic"

    @staticmethod
    def stringify(content: Any) -> str:
        """Render content as text, formatting chat messages and tool outputs."""
        if isinstance(content, str):
            return content
        if isinstance(content, (list, tuple)):
            parts = []
            for item in content:
                if isinstance(item, str):
                    parts.append(item)
                elif isinstance(item, dict) and "role" in item and "content" in item:
                    parts.append(f"[{item['role']}]: {item['content']}")
                elif isinstance(item, dict) and "tool" in item and "output" in item:
                    parts.append(f"[{item['tool']}]: {json.dumps(item['output'], default=str)}")
                else:
                    parts.append(json.dumps(item, default=str))
            return "\n\n".join(parts)
        return json.dumps(content, indent=2, default=str)

    def _truncate_fallback(
        self, component: ContextComponent, text: str, current: int, target_tokens: int
    ) -> ContextComponent:
        target_chars = math.floor(len(text) * max(0, target_tokens) / current)
        keep = max(0, target_chars - len(SUMMARY_FALLBACK_MARKER))
        truncated = text[:keep] + SUMMARY_FALLBACK_MARKER
        if len(truncated) >= len(text):
            truncated = text[:target_chars]
        return component.with_content(
            truncated,
            truncated=True,
            original_length=len(text),
            truncated_length=len(truncated),
            summarization_failed=True,
        )


# =============================================================================
# Memory Eviction Compactor
# =============================================================================


class MemoryEvictionCompactor(ContextCompactor):
    """Evicts entries from a memory store backing a component.

    Handles compactable components whose metadata carries
    ``strategy="evict"`` plus two callables:

        - ``evict(count)``: evicts up to ``count`` entries (sync or async)
        - ``get_updated_content()``: returns the store's content after eviction

    ``metadata["avg_entry_size"]`` (tokens per entry) decides how many
    entries to evict: ``ceil((current - target) / avg_entry_size)``.
    """

    name = "memory-eviction"
    priority = 8

    def can_compact(self, component: ContextComponent) -> bool:
        meta = component.metadata
        return (
            component.compactable
            and meta.get("strategy") == "evict"
            and callable(meta.get("evict"))
            and callable(meta.get("get_updated_content"))
        )

    async def compact(self, component: ContextComponent, target_tokens: int) -> ContextComponent:
        current = self._estimate(component)
        if current <= target_tokens:
            return component

        avg_entry_size = max(1, int(component.metadata.get("avg_entry_size") or DEFAULT_AVG_ENTRY_SIZE))
        count = math.ceil((current - target_tokens) / avg_entry_size)

        evicted = await _maybe_await(component.metadata["evict"](count))
        content = await _maybe_await(component.metadata["get_updated_content"]())

        logger.debug(
            f"MemoryEvictionCompactor: evicted {count} entries from '{component.name}'"
        )
        extra: dict[str, Any] = {"evicted_count": count}
        if isinstance(evicted, (list, tuple)):
            extra["evicted_keys"] = list(evicted)
            extra["evicted_count"] = len(evicted)
        return component.with_content(content, **extra)

    def estimate_savings(self, component: ContextComponent) -> int:
        return self._estimate(component) // 2


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


__all__ = [
    "TRUNCATION_MARKER",
    "SUMMARY_FALLBACK_MARKER",
    "SUMMARIZATION_PROMPTS",
    "ContextCompactor",
    "TruncateCompactor",
    "SummarizeCompactor",
    "MemoryEvictionCompactor",
    "sort_compactors",
]
