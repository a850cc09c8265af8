"""Shared pytest fixtures for ctxbudget tests.

This module provides common fixtures used across all test modules:
- Settings cache isolation
- A small 1000-token manager configuration
- Component factories sized in approximate tokens
- A recording compactor that cuts text to exactly its target
- A fake clock for the adaptive strategy
"""

from __future__ import annotations

import os
from typing import Any

import pytest

from ctxbudget.config.settings import clear_settings_cache
from ctxbudget.context.budget import budget_from_usage
from ctxbudget.context.compactors import ContextCompactor
from ctxbudget.context.estimators import ApproximateTokenEstimator
from ctxbudget.context.types import ContextComponent, ContextManagerConfig


# -----------------------------------------------------------------------------
# Test Isolation
# -----------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def clean_settings_cache(monkeypatch):
    """Clear the settings singleton and CTXBUDGET_ variables around each test."""
    for key in list(os.environ):
        if key.startswith("CTXBUDGET_"):
            monkeypatch.delenv(key, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def text_component(name: str, tokens: int, **kwargs: Any) -> ContextComponent:
    """Create a prose component whose approximate size is exactly ``tokens``."""
    return ContextComponent(name=name, content="x" * (tokens * 4), **kwargs)


class RecordingCompactor(ContextCompactor):
    """Compactor that cuts prose to exactly the target and records each call."""

    name = "recording"
    priority = 1

    def __init__(self, estimator, events: list | None = None) -> None:
        super().__init__(estimator)
        self.calls: list[tuple[str, int]] = []
        self.events = events if events is not None else []

    def can_compact(self, component: ContextComponent) -> bool:
        return component.compactable and isinstance(component.content, str)

    async def compact(self, component: ContextComponent, target_tokens: int) -> ContextComponent:
        self.calls.append((component.name, target_tokens))
        self.events.append(f"compact:{component.name}")
        return component.with_content(component.content[: target_tokens * 4])

    def estimate_savings(self, component: ContextComponent) -> int:
        return self._estimate(component) // 2


class FakeClock:
    """Manually advanced clock in seconds."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def estimator() -> ApproximateTokenEstimator:
    """Provide the default approximate estimator."""
    return ApproximateTokenEstimator()


@pytest.fixture
def small_config() -> ContextManagerConfig:
    """1000-token window with a 15% reserve (850 usable tokens)."""
    return ContextManagerConfig(
        max_context_tokens=1000,
        response_reserve=0.15,
        compaction_threshold=0.75,
        strategy="proactive",
    )


@pytest.fixture
def unreserved_config():
    """Factory for configs without a response reserve, so usable == total."""
    def _make(total: int, **kwargs: Any) -> ContextManagerConfig:
        return ContextManagerConfig(max_context_tokens=total, response_reserve=0.0, **kwargs)
    return _make


@pytest.fixture
def make_budget():
    """Factory for budgets built from a known token count."""
    def _make(used: int, config: ContextManagerConfig):
        return budget_from_usage(used, config)
    return _make


@pytest.fixture
def recording_compactor(estimator) -> RecordingCompactor:
    return RecordingCompactor(estimator)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_text():
    """Factory for prose components of an exact approximate size."""
    return text_component


@pytest.fixture
def recording_compactor_cls():
    """RecordingCompactor class, for tests that need several instances."""
    return RecordingCompactor
