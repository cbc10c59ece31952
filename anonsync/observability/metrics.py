"""
Prometheus metrics collection for anonsync

Instruments the flush cycle, the sink writes, checkpoint persistence and
backfill paging. All metrics live in a private registry exposed over HTTP
only when ``start_metrics_server`` is called.
"""
import os
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

from anonsync.observability.logger import get_logger

logger = get_logger(__name__)

# Metrics are registered here, not in the process-wide default registry
REGISTRY = CollectorRegistry()


# =======================
# SINK METRICS
# =======================

records_written_total = Counter(
    name="anonsync_records_written_total",
    documentation="Total number of anonymized records upserted into the target collection",
    labelnames=["mode"],  # mode: feed, backfill
    registry=REGISTRY,
)

malformed_records_total = Counter(
    name="anonsync_malformed_records_total",
    documentation="Source documents skipped because they could not be anonymized",
    labelnames=["mode"],
    registry=REGISTRY,
)

write_duration_seconds = Histogram(
    name="anonsync_write_duration_seconds",
    documentation="Time spent in one bulk upsert call",
    labelnames=["mode"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)

# =======================
# FEED METRICS
# =======================

flushes_total = Counter(
    name="anonsync_flushes_total",
    documentation="Total number of buffer flushes",
    labelnames=["trigger", "status"],  # trigger: size, timer, shutdown; status: success, failure
    registry=REGISTRY,
)

flush_batch_size = Histogram(
    name="anonsync_flush_batch_size",
    documentation="Number of records per flushed batch",
    labelnames=["trigger"],
    buckets=[0, 1, 10, 50, 100, 500, 1000, 5000, 10000],
    registry=REGISTRY,
)

skipped_events_total = Counter(
    name="anonsync_skipped_events_total",
    documentation="Change events dropped before reaching the buffer",
    labelnames=["reason"],  # reason: missing_document
    registry=REGISTRY,
)

checkpoint_writes_total = Counter(
    name="anonsync_checkpoint_writes_total",
    documentation="Checkpoint persistence attempts",
    labelnames=["status"],
    registry=REGISTRY,
)

buffered_records = Gauge(
    name="anonsync_buffered_records",
    documentation="Records currently waiting in the batch buffer",
    registry=REGISTRY,
)

# =======================
# BACKFILL METRICS
# =======================

backfill_pages_total = Counter(
    name="anonsync_backfill_pages_total",
    documentation="Backfill pages written",
    labelnames=["mode"],  # mode: full, incremental
    registry=REGISTRY,
)


def start_metrics_server(port: Optional[int] = None) -> int:
    """
    Expose REGISTRY over HTTP for Prometheus to scrape

    Args:
        port: Listening port (defaults to env var METRICS_PORT, then 8000)

    Returns:
        The port actually used
    """
    metrics_port = port or int(os.getenv("METRICS_PORT", "8000"))
    start_http_server(metrics_port, registry=REGISTRY)
    logger.info(f"Serving Prometheus metrics on port {metrics_port}")
    return metrics_port


def track_duration(histogram: Histogram, **labels):
    """
    Time a block into ``histogram``

    Usage:
        with track_duration(write_duration_seconds, mode="feed"):
            store.bulk_upsert(operations)
    """
    return histogram.labels(**labels).time()


def increment_counter(counter: Counter, value: float = 1.0, **labels) -> None:
    target = counter.labels(**labels) if labels else counter
    target.inc(value)


def get_sample_value(name: str, labels: Optional[dict] = None) -> float:
    """Current value of a sample in REGISTRY, 0.0 if it was never recorded."""
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class MetricsCollector:
    """
    Feed consumer bookkeeping.

    The consumer reports one call per flush, skipped event or checkpoint
    write instead of touching the metric objects directly.
    """

    def record_flush(self, trigger: str, record_count: int, success: bool = True) -> None:
        """
        Count a flush and the size of the batch it drained.

        Args:
            trigger: size, timer or shutdown
            record_count: Records in the drained batch
            success: False when the bulk write failed
        """
        flushes_total.labels(trigger=trigger, status=_status(success)).inc()
        flush_batch_size.labels(trigger=trigger).observe(record_count)

    def record_skipped_event(self, reason: str) -> None:
        skipped_events_total.labels(reason=reason).inc()

    def record_checkpoint_write(self, success: bool = True) -> None:
        checkpoint_writes_total.labels(status=_status(success)).inc()

    def set_buffered(self, count: int) -> None:
        buffered_records.set(count)


def _status(success: bool) -> str:
    return "success" if success else "failure"
