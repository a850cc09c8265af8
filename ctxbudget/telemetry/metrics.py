"""Per-cycle compaction metrics for the ctxbudget framework.

The ContextManager records one CompactionRecord per prepare cycle,
whether or not compaction ran, so utilization over time can be analysed
alongside the compactions themselves.

Example:
    >>> metrics = CompactionMetrics()
    >>> metrics.add_cycle("proactive", tokens_before=900, tokens_after=450, compacted=True)
    >>> metrics.get_summary()["total_tokens_freed"]
    450
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
import json


@dataclass
class CompactionRecord:
    """Record of one prepare cycle.

    Attributes:
        strategy: Strategy active during the cycle
        tokens_before: Estimated tokens before compaction
        tokens_after: Estimated tokens after compaction
        compacted: Whether compaction ran
        utilization_after: Final utilization fraction
        timestamp: When the cycle finished (UTC)
    """

    strategy: str
    tokens_before: int
    tokens_after: int
    compacted: bool = False
    utilization_after: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def tokens_freed(self) -> int:
        return max(0, self.tokens_before - self.tokens_after)

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "tokens_before": self.tokens_before,
            "tokens_after": self.tokens_after,
            "tokens_freed": self.tokens_freed,
            "compacted": self.compacted,
            "utilization_after": self.utilization_after,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class CompactionMetrics:
    """Prepare-cycle history with aggregation helpers.

    Attributes:
        records: One record per prepare cycle, oldest first
        max_records: Oldest records are dropped beyond this many (None keeps all)
    """

    records: list[CompactionRecord] = field(default_factory=list)
    max_records: Optional[int] = 1000

    def add_cycle(
        self,
        strategy: str,
        tokens_before: int,
        tokens_after: int,
        compacted: bool = False,
        utilization_after: float = 0.0,
        timestamp: Optional[datetime] = None,
    ) -> CompactionRecord:
        """Record one prepare cycle.

        Raises:
            ValueError: If token counts are negative
        """
        if tokens_before < 0 or tokens_after < 0:
            raise ValueError("Token counts cannot be negative")

        record = CompactionRecord(
            strategy=strategy,
            tokens_before=tokens_before,
            tokens_after=tokens_after,
            compacted=compacted,
            utilization_after=utilization_after,
            timestamp=timestamp or datetime.now(timezone.utc),
        )
        self.records.append(record)
        if self.max_records is not None and len(self.records) > self.max_records:
            del self.records[: len(self.records) - self.max_records]
        return record

    @property
    def cycle_count(self) -> int:
        return len(self.records)

    @property
    def compaction_count(self) -> int:
        return sum(1 for r in self.records if r.compacted)

    @property
    def total_tokens_freed(self) -> int:
        return sum(r.tokens_freed for r in self.records)

    def get_usage_by_strategy(self) -> dict[str, dict[str, int]]:
        """Cycles, compactions and tokens freed grouped by strategy."""
        usage: dict[str, dict[str, int]] = {}
        for record in self.records:
            entry = usage.setdefault(
                record.strategy,
                {"cycles": 0, "compactions": 0, "tokens_freed": 0},
            )
            entry["cycles"] += 1
            entry["compactions"] += int(record.compacted)
            entry["tokens_freed"] += record.tokens_freed
        return usage

    def get_summary(self) -> dict[str, Any]:
        """Get summary statistics.

        Returns:
            Dictionary with cycle and compaction counts, tokens freed,
            averages, per-strategy usage and the time range covered.
        """
        compactions = self.compaction_count
        summary: dict[str, Any] = {
            "total_cycles": self.cycle_count,
            "total_compactions": compactions,
            "total_tokens_freed": self.total_tokens_freed,
            "avg_tokens_freed_per_compaction": (
                self.total_tokens_freed / compactions if compactions else 0.0
            ),
            "avg_utilization_after": (
                sum(r.utilization_after for r in self.records) / len(self.records)
                if self.records
                else 0.0
            ),
            "by_strategy": self.get_usage_by_strategy(),
        }
        if self.records:
            summary["time_range"] = {
                "first_cycle": self.records[0].timestamp.isoformat(),
                "last_cycle": self.records[-1].timestamp.isoformat(),
            }
        else:
            summary["time_range"] = None
        return summary

    def export_metrics(self) -> list[dict[str, Any]]:
        return [record.to_dict() for record in self.records]

    def to_json(self) -> str:
        return json.dumps(self.export_metrics(), indent=2)

    def clear(self) -> None:
        self.records.clear()


__all__ = ["CompactionRecord", "CompactionMetrics"]
