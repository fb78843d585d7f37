"""
Streaming request metrics for the agent runtime.

Tracks request latency and success without storing raw samples: latency is
an exponential moving average and the success rate is an exact running mean
of the per-request success flag. Capability usage and error counts are plain
monotonic counters.

Usage:
    tracker = MetricsTracker()
    tracker.update_metrics(processing_time=182.0, success=True,
                           conversation_length=4, working_memory_size=0)
    snapshot = tracker.get_metrics()
"""

from __future__ import annotations

import copy

import structlog

from voxmind.errors import AgentErrorKind
from voxmind.types import AgentMetrics

logger = structlog.get_logger(__name__)

EMA_ALPHA = 0.1


class MetricsTracker:
    """Online aggregator behind ``AgentRuntime.get_metrics()``."""

    def __init__(self, alpha: float = EMA_ALPHA) -> None:
        self._alpha = alpha
        self._metrics = AgentMetrics()

    def update_metrics(
        self,
        processing_time: float,
        success: bool,
        conversation_length: int,
        working_memory_size: int,
    ) -> None:
        m = self._metrics
        m.total_requests += 1
        m.average_processing_time = (
            self._alpha * processing_time + (1 - self._alpha) * m.average_processing_time
        )
        m.success_rate = (
            m.success_rate * (m.total_requests - 1) + (1 if success else 0)
        ) / m.total_requests

        m.memory_usage.conversation_history = conversation_length
        m.memory_usage.working_memory = working_memory_size
        m.memory_usage.total = conversation_length + working_memory_size

        logger.debug(
            "metrics.updated",
            total_requests=m.total_requests,
            processing_time_ms=round(processing_time, 1),
            success=success,
        )

    def record_capability_use(self, capability_id: str) -> None:
        usage = self._metrics.capability_usage
        usage[capability_id] = usage.get(capability_id, 0) + 1

    def record_error(self, kind: AgentErrorKind | str) -> None:
        key = kind.value if isinstance(kind, AgentErrorKind) else str(kind)
        errors = self._metrics.errors
        errors.total += 1
        errors.by_type[key] = errors.by_type.get(key, 0) + 1

    def get_metrics(self) -> AgentMetrics:
        """Return a snapshot; mutating it does not affect the tracker."""
        return copy.deepcopy(self._metrics)
