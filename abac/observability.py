#Span, counter and latency helpers shared by the engine and the audit recorder

from typing import Dict, Any, Optional
from contextlib import contextmanager
import threading
import time
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# Spans slower than this are logged at WARNING
SLOW_SPAN_MS = 250.0


@dataclass
class TraceSpan:
    """One timed operation (an evaluation, a scope computation)."""
    span_id: str
    operation: str
    start_time: float
    end_time: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_ms(self) -> float:
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return (end - self.start_time) * 1000.0


@dataclass
class LatencySummary:
    count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    def add(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.max_ms = max(self.max_ms, duration_ms)

    @property
    def mean_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0


class ObservabilityManager:
    """
    Process-wide telemetry for policy decisions.

    Counters (decisions by outcome, audit writes) and gauges share one
    namespace; finished spans feed a latency summary per operation.
    """

    def __init__(self, slow_span_ms: float = SLOW_SPAN_MS):
        self.slow_span_ms = slow_span_ms
        self.active_spans: Dict[str, TraceSpan] = {}
        self.metrics: Dict[str, float] = {}
        self.latencies: Dict[str, LatencySummary] = {}
        self._lock = threading.Lock()

    def start_span(self, request_id: str, operation: str, metadata: Optional[Dict[str, Any]] = None) -> TraceSpan:
        span = TraceSpan(
            span_id=f"{request_id}_{operation}",
            operation=operation,
            start_time=time.perf_counter(),
            metadata=metadata or {}
        )
        with self._lock:
            self.active_spans[span.span_id] = span
        return span

    def end_span(self, span_id: str) -> Optional[TraceSpan]:
        with self._lock:
            span = self.active_spans.pop(span_id, None)
            if span is None:
                return None
            span.end_time = time.perf_counter()
            self.latencies.setdefault(span.operation, LatencySummary()).add(span.duration_ms)

        if span.duration_ms >= self.slow_span_ms:
            logger.warning(f"Slow {span.operation}: {span.duration_ms:.1f}ms {span.metadata}")
        else:
            logger.debug(f"{span.operation} finished in {span.duration_ms:.3f}ms")
        return span

    def set_gauge(self, name: str, value: float) -> None:
        with self._lock:
            self.metrics[name] = value

    def increment(self, name: str, amount: float = 1.0) -> None:
        with self._lock:
            self.metrics[name] = self.metrics.get(name, 0.0) + amount

    def get_metrics(self) -> Dict[str, float]:
        """Snapshot of counters and gauges."""
        with self._lock:
            return dict(self.metrics)

    def latency(self, operation: str) -> LatencySummary:
        """Copy of the latency summary for one span operation."""
        with self._lock:
            summary = self.latencies.get(operation, LatencySummary())
            return LatencySummary(summary.count, summary.total_ms, summary.max_ms)


observability = ObservabilityManager()


@contextmanager
def trace_request(request_id: str, operation: str, metadata: Optional[Dict[str, Any]] = None):
    """Time a block as a span of `operation`."""
    span = observability.start_span(request_id, operation, metadata)
    try:
        yield span
    finally:
        observability.end_span(span.span_id)


def log_metrics(metrics: Dict[str, float]) -> None:
    """Record gauges (last value wins)."""
    for name, value in metrics.items():
        observability.set_gauge(name, value)
        logger.debug(f"Metric: {name} = {value}")


def increment(name: str, amount: float = 1.0) -> None:
    observability.increment(name, amount)
