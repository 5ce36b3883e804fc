"""
Prometheus Metrics

Process-local metrics in Prometheus text format:
- Message outcomes per ingestion status
- Parser matches, timeline rebuilds and downstream sync calls
- Reconcile duration
- Ingestion backlog (refreshed from the database on scrape)
"""

from typing import Dict, List, Optional
import time
from collections import defaultdict
from threading import Lock


class Counter:
    """Simple counter metric."""

    def __init__(self, name: str, description: str, labels: tuple = ()):
        self.name = name
        self.description = description
        self.labels = labels
        self._values: Dict[tuple, float] = defaultdict(float)
        self._lock = Lock()

    def inc(self, value: float = 1, **label_values):
        """Increment counter."""
        key = tuple(label_values.get(l, '') for l in self.labels)
        with self._lock:
            self._values[key] += value

    def get_all(self) -> Dict[tuple, float]:
        with self._lock:
            return dict(self._values)


class Gauge:
    """Simple gauge metric (can go up and down)."""

    def __init__(self, name: str, description: str, labels: tuple = ()):
        self.name = name
        self.description = description
        self.labels = labels
        self._values: Dict[tuple, float] = defaultdict(float)
        self._lock = Lock()

    def set(self, value: float, **label_values):
        key = tuple(label_values.get(l, '') for l in self.labels)
        with self._lock:
            self._values[key] = value

    def get_all(self) -> Dict[tuple, float]:
        with self._lock:
            return dict(self._values)


class Histogram:
    """Simple histogram metric; bucket counts are cumulative."""

    DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float('inf'))

    def __init__(self, name: str, description: str, labels: tuple = (), buckets: Optional[tuple] = None):
        self.name = name
        self.description = description
        self.labels = labels
        self.buckets = buckets or self.DEFAULT_BUCKETS
        self._counts: Dict[tuple, Dict[float, int]] = defaultdict(lambda: defaultdict(int))
        self._sums: Dict[tuple, float] = defaultdict(float)
        self._totals: Dict[tuple, int] = defaultdict(int)
        self._lock = Lock()

    def observe(self, value: float, **label_values):
        """Record an observation."""
        key = tuple(label_values.get(l, '') for l in self.labels)
        with self._lock:
            self._sums[key] += value
            self._totals[key] += 1
            for bucket in self.buckets:
                if value <= bucket:
                    self._counts[key][bucket] += 1

    def time(self, **label_values):
        """Context manager to time a block of code."""
        return _HistogramTimer(self, label_values)

    def get_all(self) -> Dict:
        with self._lock:
            return {
                'counts': {key: dict(buckets) for key, buckets in self._counts.items()},
                'sums': dict(self._sums),
                'totals': dict(self._totals)
            }


class _HistogramTimer:
    """Context manager for timing code blocks."""

    def __init__(self, histogram: Histogram, label_values: dict):
        self.histogram = histogram
        self.label_values = label_values
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.perf_counter() - self.start_time
        self.histogram.observe(duration, **self.label_values)


# ================================
# APPLICATION METRICS
# ================================

booking_emails_total = Counter(
    "booking_emails_total",
    "Booking emails handled, by outcome",
    labels=("status",)
)

parser_matches_total = Counter(
    "parser_matches_total",
    "Messages matched, by parser",
    labels=("parser",)
)

timeline_rebuilds_total = Counter(
    "timeline_rebuilds_total",
    "Booking timelines discarded and replayed after an out-of-order status event",
    labels=("platform",)
)

booking_sync_total = Counter(
    "booking_sync_total",
    "Downstream booking sync calls",
    labels=("status",)
)

reconcile_duration_seconds = Histogram(
    "reconcile_duration_seconds",
    "Time spent reconciling the parsed events of one message"
)

booking_emails_by_status = Gauge(
    "booking_emails_by_status",
    "Stored booking emails by ingestion status",
    labels=("status",)
)

ALL_METRICS = [
    booking_emails_total,
    parser_matches_total,
    timeline_rebuilds_total,
    booking_sync_total,
    reconcile_duration_seconds,
    booking_emails_by_status,
]

METRIC_TYPES = {Counter: "counter", Gauge: "gauge", Histogram: "histogram"}


def _label_str(names: tuple, key: tuple, extra: Optional[dict] = None) -> str:
    labels = dict(zip(names, key))
    labels.update(extra or {})
    if not labels:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in labels.items()) + "}"


def _bucket_label(bucket: float) -> str:
    return "+Inf" if bucket == float('inf') else str(bucket)


def format_prometheus_metrics() -> str:
    """Format all metrics in Prometheus text format."""
    lines: List[str] = []
    for metric in ALL_METRICS:
        lines.append(f"# HELP {metric.name} {metric.description}")
        lines.append(f"# TYPE {metric.name} {METRIC_TYPES[type(metric)]}")

        if isinstance(metric, Histogram):
            data = metric.get_all()
            for key, total in data['totals'].items():
                counts = data['counts'].get(key, {})
                for bucket in metric.buckets:
                    label_str = _label_str(metric.labels, key, {"le": _bucket_label(bucket)})
                    lines.append(f"{metric.name}_bucket{label_str} {counts.get(bucket, 0)}")
                label_str = _label_str(metric.labels, key)
                lines.append(f"{metric.name}_sum{label_str} {data['sums'][key]}")
                lines.append(f"{metric.name}_count{label_str} {total}")
            continue

        for key, value in metric.get_all().items():
            lines.append(f"{metric.name}{_label_str(metric.labels, key)} {value}")

    return "\n".join(lines) + "\n"


# ================================
# CONVENIENCE FUNCTIONS
# ================================

def record_booking_sync(success: bool, count: int = 1):
    booking_sync_total.inc(count, status="success" if success else "error")


def update_backlog(counts: Dict[str, int]):
    """Refresh the backlog gauge from a status -> count mapping."""
    for status, count in counts.items():
        booking_emails_by_status.set(count, status=status)
