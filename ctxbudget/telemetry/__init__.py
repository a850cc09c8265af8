"""Telemetry for the ctxbudget framework: log formatting and compaction metrics."""

from ctxbudget.telemetry.logs import (
    ROOT_LOGGER_NAME,
    ContextLogFormatter,
    JsonLogFormatter,
    ContextLogAdapter,
    configure_logging,
)
from ctxbudget.telemetry.metrics import CompactionRecord, CompactionMetrics

__all__ = [
    "ROOT_LOGGER_NAME",
    "ContextLogFormatter",
    "JsonLogFormatter",
    "ContextLogAdapter",
    "configure_logging",
    "CompactionRecord",
    "CompactionMetrics",
]
