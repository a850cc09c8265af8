"""Token estimators for budget computation.

Estimators turn text or structured data into an estimated token count.
Two built-ins are provided:

    - ApproximateTokenEstimator ('approximate'): character-ratio heuristic,
      content-type aware (code / prose / mixed). Cheap and dependency free.
    - TiktokenEstimator ('tiktoken'): counts tokens with a tiktoken encoding
      (cl100k_base by default). Loaded lazily on first use.

Any object satisfying the TokenEstimator protocol may be supplied instead.

Example:
    >>> estimator = ApproximateTokenEstimator()
    >>> estimator.estimate_tokens("a" * 10)
    3
    >>> estimator.estimate_tokens("def f(): pass", ContentType.CODE)
    5
"""

from __future__ import annotations

import json
import logging
import math
from enum import Enum
from typing import Any, Optional, Protocol, Union, runtime_checkable

import tiktoken

from ctxbudget.core.exceptions import ConfigurationError, EstimationError


# =============================================================================
# Module Logger
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# Content Types
# =============================================================================


class ContentType(str, Enum):
    """Content categories with distinct characters-per-token ratios."""
    CODE = "code"
    PROSE = "prose"
    MIXED = "mixed"


CHARS_PER_TOKEN: dict[ContentType, float] = {
    ContentType.CODE: 3.0,
    ContentType.PROSE: 4.0,
    ContentType.MIXED: 3.5,
}

ContentTypeLike = Union[ContentType, str, None]


def _coerce_content_type(value: ContentTypeLike, default: ContentType) -> ContentType:
    if value is None:
        return default
    if isinstance(value, ContentType):
        return value
    try:
        return ContentType(str(value).lower())
    except ValueError as e:
        raise EstimationError(f"Unknown content type '{value}'") from e


def serialize_data(data: Any) -> str:
    """Compact JSON rendering used to size structured content.

    Raises:
        EstimationError: If the data cannot be serialized (e.g. circular references).
    """
    try:
        return json.dumps(data, default=str, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise EstimationError(
            f"Cannot serialize data for estimation: {e}",
            content_kind=type(data).__name__,
        ) from e


# =============================================================================
# Estimator Protocol
# =============================================================================


@runtime_checkable
class TokenEstimator(Protocol):
    """Interface every estimator satisfies."""

    def estimate_tokens(self, text: str, content_type: ContentTypeLike = None) -> int:
        ...

    def estimate_data_tokens(self, data: Any, content_type: ContentTypeLike = None) -> int:
        ...


# =============================================================================
# Approximate Estimator
# =============================================================================


class ApproximateTokenEstimator:
    """Character-ratio estimator.

    ``estimate_tokens`` is ``ceil(len(text) / ratio)`` where the ratio
    depends on the content type (code 3.0, prose 4.0, mixed 3.5). Empty
    text is 0 tokens. Structured data is serialized to compact JSON and
    estimated with the mixed ratio unless told otherwise; ``None`` counts
    as a single token.

    Attributes:
        name: 'approximate'
        ratios: Characters-per-token ratio per content type
    """

    name = "approximate"

    def __init__(self, ratios: Optional[dict[ContentType, float]] = None) -> None:
        self.ratios = dict(CHARS_PER_TOKEN)
        if ratios:
            for key, value in ratios.items():
                if value <= 0:
                    raise ConfigurationError(
                        f"chars-per-token ratio for '{key}' must be positive",
                        config_key="ratios",
                    )
                self.ratios[_coerce_content_type(key, ContentType.PROSE)] = value

    def chars_per_token(self, content_type: ContentTypeLike = None) -> float:
        """Ratio used for a content type (prose when unspecified)."""
        return self.ratios[_coerce_content_type(content_type, ContentType.PROSE)]

    def estimate_tokens(self, text: str, content_type: ContentTypeLike = None) -> int:
        if not text:
            return 0
        if not isinstance(text, str):
            raise EstimationError(
                "estimate_tokens expects text", content_kind=type(text).__name__
            )
        return math.ceil(len(text) / self.chars_per_token(content_type))

    def estimate_data_tokens(self, data: Any, content_type: ContentTypeLike = None) -> int:
        if data is None:
            return 1
        if isinstance(data, str):
            return self.estimate_tokens(data, content_type)
        ctype = _coerce_content_type(content_type, ContentType.MIXED)
        return math.ceil(len(serialize_data(data)) / self.ratios[ctype])


# =============================================================================
# Tiktoken Estimator
# =============================================================================


class TiktokenEstimator:
    """Token counter backed by a tiktoken encoding.

    The content type is accepted for interface compatibility and ignored;
    tokenizer counts do not need a ratio.

    Attributes:
        name: 'tiktoken'
        encoding_name: tiktoken encoding (default cl100k_base)
    """

    name = "tiktoken"
    DEFAULT_ENCODING = "cl100k_base"

    def __init__(self, encoding_name: Optional[str] = None) -> None:
        self.encoding_name = encoding_name or self.DEFAULT_ENCODING
        self._encoding: Any = None

    @property
    def encoding(self) -> Any:
        """tiktoken Encoding, loaded on first access."""
        if self._encoding is None:
            self._encoding = tiktoken.get_encoding(self.encoding_name)
            logger.debug(f"TiktokenEstimator: loaded encoding '{self.encoding_name}'")
        return self._encoding

    def estimate_tokens(self, text: str, content_type: ContentTypeLike = None) -> int:
        if not text:
            return 0
        if not isinstance(text, str):
            raise EstimationError(
                "estimate_tokens expects text", content_kind=type(text).__name__
            )
        return len(self.encoding.encode(text, disallowed_special=()))

    def estimate_data_tokens(self, data: Any, content_type: ContentTypeLike = None) -> int:
        if data is None:
            return 1
        if isinstance(data, str):
            return self.estimate_tokens(data)
        return self.estimate_tokens(serialize_data(data))


# =============================================================================
# Factory
# =============================================================================

ESTIMATORS: dict[str, type] = {
    ApproximateTokenEstimator.name: ApproximateTokenEstimator,
    TiktokenEstimator.name: TiktokenEstimator,
}


def create_estimator(name: str, **kwargs: Any) -> TokenEstimator:
    """Create a built-in estimator by name.

    Args:
        name: 'approximate' or 'tiktoken'
        **kwargs: Forwarded to the estimator constructor

    Raises:
        ConfigurationError: If the name is unknown.
    """
    key = name.lower().strip()
    if key not in ESTIMATORS:
        raise ConfigurationError(
            f"Unknown estimator '{name}'",
            config_key="estimator",
            validation_details=f"available: {', '.join(sorted(ESTIMATORS))}",
        )
    return ESTIMATORS[key](**kwargs)


def resolve_estimator(estimator: Union[str, TokenEstimator]) -> TokenEstimator:
    """Turn a config value (name or instance) into an estimator."""
    if isinstance(estimator, str):
        return create_estimator(estimator)
    return estimator


__all__ = [
    "ContentType",
    "CHARS_PER_TOKEN",
    "TokenEstimator",
    "ApproximateTokenEstimator",
    "TiktokenEstimator",
    "ESTIMATORS",
    "create_estimator",
    "resolve_estimator",
    "serialize_data",
]
