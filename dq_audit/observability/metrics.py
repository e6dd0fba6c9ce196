"""
Prometheus metrics collection for dq-audit

Counts what each run classified, dropped, failed and wrote so that the
per-run summary can be cross-checked against a dashboard.
"""
import os
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# Private registry so that tests and embedders do not collide with the default one
REGISTRY = CollectorRegistry()


# =======================
# CLASSIFICATION METRICS
# =======================

records_classified_total = Counter(
    name="dq_audit_records_classified_total",
    documentation="Joined records classified by the audit",
    labelnames=["status"],  # status: valid, invalid
    registry=REGISTRY,
)

structural_defects_total = Counter(
    name="dq_audit_structural_defects_total",
    documentation="Raw rows dropped because they could not be parsed",
    labelnames=["feed"],  # feed: events, transactions
    registry=REGISTRY,
)

ambiguous_records_total = Counter(
    name="dq_audit_ambiguous_records_total",
    documentation="Events excluded because their transaction id matched several transactions",
    registry=REGISTRY,
)

# =======================
# PARTITION METRICS
# =======================

partitions_processed_total = Counter(
    name="dq_audit_partitions_processed_total",
    documentation="(load_date, file_name) partitions processed",
    labelnames=["status"],  # status: success, failure
    registry=REGISTRY,
)

latest_error_rate = Gauge(
    name="dq_audit_latest_error_rate",
    documentation="Error rate of the most recently audited day per file",
    labelnames=["file_name"],
    registry=REGISTRY,
)

latest_rolling_error_rate = Gauge(
    name="dq_audit_latest_rolling_error_rate",
    documentation="Rolling error rate of the most recently audited day per file",
    labelnames=["file_name"],
    registry=REGISTRY,
)

# =======================
# WAREHOUSE METRICS
# =======================

audit_rows_written_total = Counter(
    name="dq_audit_rows_written_total",
    documentation="Audit rows upserted into the audit table",
    labelnames=["operation"],  # operation: upsert, refresh_rolling
    registry=REGISTRY,
)

write_duration_seconds = Histogram(
    name="dq_audit_write_duration_seconds",
    documentation="Time spent upserting one (file_name, load_date) key",
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0],
    registry=REGISTRY,
)

# =======================
# RUN METRICS
# =======================

run_duration_seconds = Histogram(
    name="dq_audit_run_duration_seconds",
    documentation="Time spent auditing one load date",
    buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0],
    registry=REGISTRY,
)

errors_total = Counter(
    name="dq_audit_errors_total",
    documentation="Errors by kind and component",
    labelnames=["error_kind", "component"],
    registry=REGISTRY,
)

retries_total = Counter(
    name="dq_audit_retries_total",
    documentation="Retry attempts against external collaborators",
    labelnames=["operation", "status"],  # status: success, failure
    registry=REGISTRY,
)


# =======================
# HELPER FUNCTIONS
# =======================

def generate_metrics() -> bytes:
    """
    Generate Prometheus metrics in text format

    Returns:
        Metrics in Prometheus text format
    """
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def start_metrics_server(port: Optional[int] = None) -> None:
    """
    Start HTTP server for Prometheus metrics

    Args:
        port: Port to listen on (defaults to env var METRICS_PORT or 8000)
    """
    # Imported lazily so that importing this module never binds a port
    from prometheus_client import start_http_server

    metrics_port = port or int(os.getenv("METRICS_PORT", "8000"))
    start_http_server(metrics_port, registry=REGISTRY)


def increment_counter(counter: Counter, value: float = 1.0, **labels) -> None:
    """
    Increment a counter metric

    Args:
        counter: Prometheus Counter metric
        value: Amount to increment (default: 1.0)
        **labels: Label values for the metric
    """
    if labels:
        counter.labels(**labels).inc(value)
    else:
        counter.inc(value)


def set_gauge(gauge: Gauge, value: float, **labels) -> None:
    gauge.labels(**labels).set(value)


def observe_histogram(histogram: Histogram, value: float, **labels) -> None:
    if labels:
        histogram.labels(**labels).observe(value)
    else:
        histogram.observe(value)


# =======================
# AUDIT-SPECIFIC HELPERS
# =======================

def record_classification(valid_records: int, invalid_records: int) -> None:
    """
    Record the outcome of classifying one partition.

    Args:
        valid_records: Joined records that passed
        invalid_records: Joined records flagged invalid
    """
    increment_counter(records_classified_total, valid_records, status="valid")
    increment_counter(records_classified_total, invalid_records, status="invalid")


def record_error(error_kind: str, component: str, value: int = 1) -> None:
    if value > 0:
        increment_counter(errors_total, value, error_kind=error_kind, component=component)


def record_partition(success: bool) -> None:
    status = "success" if success else "failure"
    increment_counter(partitions_processed_total, 1, status=status)


def record_audit_values(file_name: str, error_rate: float | None, rolling_error_rate: float | None) -> None:
    """
    Publish the latest daily and rolling error rate for a file.

    Null values leave the gauges untouched.
    """
    if error_rate is not None:
        set_gauge(latest_error_rate, error_rate, file_name=file_name)
    if rolling_error_rate is not None:
        set_gauge(latest_rolling_error_rate, rolling_error_rate, file_name=file_name)
