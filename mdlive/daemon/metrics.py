"""Metrics collection for the daemon's status and metrics endpoints."""

import json
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger


@dataclass
class LatencyHistogram:
    """Track latency distribution with percentiles."""
    name: str
    buckets: List[float] = field(default_factory=lambda: [
        1, 5, 10, 25, 50, 100, 250, 500, 1000, 5000  # milliseconds
    ])
    counts: Dict[float, int] = field(default_factory=dict)
    total_count: int = 0
    sum_ms: float = 0

    def __post_init__(self):
        for bucket in self.buckets:
            self.counts[bucket] = 0

    def record(self, latency_ms: float) -> None:
        """Record a latency measurement. Samples over the last bucket only count toward +Inf."""
        self.total_count += 1
        self.sum_ms += latency_ms

        for bucket in self.buckets:
            if latency_ms <= bucket:
                self.counts[bucket] += 1
                break

    def get_percentile(self, percentile: float) -> float:
        """Get approximate percentile value."""
        if self.total_count == 0:
            return 0

        target_count = self.total_count * (percentile / 100)
        cumulative = 0

        for bucket in self.buckets:
            cumulative += self.counts[bucket]
            if cumulative >= target_count:
                return bucket

        return self.buckets[-1]

    def get_mean(self) -> float:
        if self.total_count == 0:
            return 0
        return self.sum_ms / self.total_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "count": self.total_count,
            "mean": round(self.get_mean(), 1),
            "p50": self.get_percentile(50),
            "p95": self.get_percentile(95),
            "p99": self.get_percentile(99),
        }


class MetricsCollector:
    """
    Latencies and counters for the daemon.

    Counters are free-form (``sync.reload``, ``watch.failed`` ...); latency
    names are fixed so a typo shows up in the log instead of a new series.
    """

    LATENCIES = ("search", "file.read", "file.write")

    def __init__(self):
        self.histograms = {name: LatencyHistogram(name) for name in self.LATENCIES}
        self.counters: Dict[str, int] = defaultdict(int)
        self.started_at = datetime.utcnow()

    def record_latency(self, metric_name: str, latency_ms: float) -> None:
        """Record a latency measurement."""
        histogram = self.histograms.get(metric_name)
        if histogram is None:
            logger.warning(f"Unknown metric: {metric_name}")
            return
        histogram.record(latency_ms)

    def increment_counter(self, counter_name: str, amount: int = 1) -> None:
        self.counters[counter_name] += amount

    def export_metrics(self, format: str = "json") -> str:
        """Export all metrics in specified format."""
        if format == "json":
            return json.dumps({
                "timestamp": datetime.utcnow().isoformat(),
                "started_at": self.started_at.isoformat(),
                "latencies": {
                    name: hist.to_dict()
                    for name, hist in self.histograms.items()
                },
                "counters": dict(self.counters),
            }, indent=2)

        elif format == "prometheus":
            lines = []
            for name, hist in self.histograms.items():
                metric_name = f"mdlive_{name.replace('.', '_')}_latency_ms"
                lines.append(f"# HELP {metric_name} Latency in milliseconds")
                lines.append(f"# TYPE {metric_name} histogram")

                cumulative = 0
                for bucket in hist.buckets:
                    cumulative += hist.counts[bucket]
                    lines.append(f'{metric_name}_bucket{{le="{bucket}"}} {cumulative}')
                lines.append(f'{metric_name}_bucket{{le="+Inf"}} {hist.total_count}')
                lines.append(f'{metric_name}_sum {hist.sum_ms}')
                lines.append(f'{metric_name}_count {hist.total_count}')

            for name, value in sorted(self.counters.items()):
                metric_name = f"mdlive_{name.replace('.', '_')}_total"
                lines.append(f"# TYPE {metric_name} counter")
                lines.append(f"{metric_name} {value}")

            return "\n".join(lines) + "\n"

        else:
            raise ValueError(f"Unknown format: {format}")

    def reset(self) -> None:
        """Reset all metrics (for testing)."""
        for hist in self.histograms.values():
            hist.counts = {bucket: 0 for bucket in hist.buckets}
            hist.total_count = 0
            hist.sum_ms = 0
        self.counters.clear()


class LatencyTimer:
    """Context manager for timing operations. A None collector times nothing."""

    def __init__(self, metrics: Optional[MetricsCollector], metric_name: str):
        self.metrics = metrics
        self.metric_name = metric_name
        self.start_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.metrics is not None and self.start_time is not None:
            latency_ms = (time.perf_counter() - self.start_time) * 1000
            self.metrics.record_latency(self.metric_name, latency_ms)
        return False
