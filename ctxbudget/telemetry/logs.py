"""Log formatting for the ctxbudget framework.

All modules log through ``logging.getLogger(__name__)``; this module only
decides how those records look once they reach a handler.

Key Components:
    - ContextLogFormatter: human-readable lines with component and token count
    - JsonLogFormatter: one JSON object per line
    - ContextLogAdapter: injects component / agent id into every record
    - configure_logging: installs one of the formatters from settings

Text Format:
    [TIMESTAMP] [LEVEL] [COMPONENT] [N tokens] Message

Example:
    [2026-01-11 10:15:32] [INFO] [MANAGER] [900 tokens] Budget critical for agent-1
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional, TextIO

from ctxbudget.config.settings import CtxBudgetSettings, get_settings


ROOT_LOGGER_NAME = "ctxbudget"

_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys()
) | {"message", "asctime"}


class ContextLogFormatter(logging.Formatter):
    """Text formatter with component and token count fields.

    Records without a ``component`` attribute use the last segment of the
    logger name; records without ``tokens`` show 0.
    """

    STANDARD_FORMAT = "[%(asctime)s] [%(levelname)s] [%(component)s] [%(tokens)s tokens] %(message)s"
    DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

    def __init__(self) -> None:
        super().__init__(fmt=self.STANDARD_FORMAT, datefmt=self.DATE_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "component"):
            record.component = record.name.split(".")[-1].upper()
        if not hasattr(record, "tokens"):
            record.tokens = 0
        return super().format(record)


class JsonLogFormatter(logging.Formatter):
    """JSON Lines formatter.

    Emits timestamp, level, logger and message, plus any ``extra`` fields
    attached to the record (``tokens``, ``agent_id``, ``component``...).
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ContextLogAdapter(logging.LoggerAdapter):
    """Logger adapter that adds component and agent context.

    Example:
        >>> log = ContextLogAdapter(logging.getLogger(__name__), {"agent_id": "agent-1"})
        >>> log.info("Compacted", extra={"tokens": 450})
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs


def configure_logging(
    settings: Optional[CtxBudgetSettings] = None,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """Attach a formatted stream handler to the ``ctxbudget`` logger.

    Calling it again replaces the previously installed handler.

    Args:
        settings: Source of log_level / log_format / debug; defaults to get_settings()
        stream: Output stream (default stderr)

    Returns:
        The configured ``ctxbudget`` logger.
    """
    settings = settings or get_settings()
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(settings.effective_log_level)

    for handler in list(root.handlers):
        if getattr(handler, "_ctxbudget_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler._ctxbudget_handler = True  # type: ignore[attr-defined]
    if settings.log_format == "json":
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(ContextLogFormatter())
    root.addHandler(handler)
    return root


__all__ = [
    "ROOT_LOGGER_NAME",
    "ContextLogFormatter",
    "JsonLogFormatter",
    "ContextLogAdapter",
    "configure_logging",
]
