"""
Performance Monitoring

Process memory probing for the bulk orchestrator's memory ceiling and a
bounded history of bulk-operation metrics with slow-operation warnings.
"""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import psutil

METRICS_HISTORY_SIZE = 1000  # Keep last 1000 bulk operations for trending

logger = logging.getLogger(__name__)


def get_memory_usage_mb() -> float:
    """Get current process memory usage (RSS) in MB."""
    try:
        process = psutil.Process()
        memory_bytes = process.memory_info().rss
        return memory_bytes / (1024 * 1024)
    except Exception as e:
        logger.warning(f"Failed to get memory usage: {e}")
        return 0.0


@dataclass
class BulkOperationMetric:
    """One completed bulk operation."""
    timestamp: datetime
    action: str
    duration_ms: float
    total: int
    processed: int
    conflicts: int
    errors: int
    chunks: int
    truncated: bool


class PerformanceMonitor:
    """
    Collects bulk-operation metrics.

    Features:
    - Bounded history of bulk operations
    - Slow bulk operation warnings
    - Per-action counters for processed tasks and conflicts
    """

    def __init__(self, slow_threshold_ms: float = 1000):
        self.slow_threshold_ms = slow_threshold_ms
        self.bulk_operations: deque = deque(maxlen=METRICS_HISTORY_SIZE)
        self.counters = defaultdict(int)
        self.start_time = datetime.now(timezone.utc)

    def record_bulk_operation(
        self,
        action: str,
        duration_ms: float,
        total: int,
        processed: int,
        conflicts: int,
        errors: int,
        chunks: int,
        truncated: bool = False,
    ) -> BulkOperationMetric:
        """
        Record one finished bulk operation.

        Args:
            action: Bulk action value
            duration_ms: Wall-clock duration in milliseconds
            total: Number of requested task ids
            processed: Tasks mutated successfully
            conflicts: Version conflicts encountered
            errors: Number of error strings recorded
            chunks: Chunks processed
            truncated: Whether processing stopped early
        """
        metric = BulkOperationMetric(
            timestamp=datetime.now(timezone.utc),
            action=action,
            duration_ms=duration_ms,
            total=total,
            processed=processed,
            conflicts=conflicts,
            errors=errors,
            chunks=chunks,
            truncated=truncated,
        )
        self.bulk_operations.append(metric)

        self.counters[f"{action}_operations"] += 1
        self.counters[f"{action}_processed"] += processed
        self.counters["conflicts"] += conflicts
        if truncated:
            self.counters["truncated_operations"] += 1

        if duration_ms > self.slow_threshold_ms:
            logger.warning(
                f"Slow bulk operation: {action} on {total} tasks took {duration_ms:.2f}ms",
                extra={"action": action, "duration_ms": duration_ms, "task_count": total},
            )
        return metric

    def get_average_duration_ms(self, action: Optional[str] = None) -> float:
        metrics = [m for m in self.bulk_operations if action is None or m.action == action]
        if not metrics:
            return 0.0
        return sum(m.duration_ms for m in metrics) / len(metrics)

    def summary(self) -> Dict[str, Any]:
        """Aggregated view of recorded bulk operations."""
        return {
            "operations": len(self.bulk_operations),
            "avg_duration_ms": round(self.get_average_duration_ms(), 2),
            "slow_operations": sum(
                1 for m in self.bulk_operations if m.duration_ms > self.slow_threshold_ms
            ),
            "counters": dict(self.counters),
            "memory_usage_mb": round(get_memory_usage_mb(), 2),
            "uptime_seconds": (datetime.now(timezone.utc) - self.start_time).total_seconds(),
        }
