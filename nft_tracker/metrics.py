"""Prometheus metrics for the NFT tracker."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("nft_tracker", "NFT tracker application info")
app_info.info({"version": "0.1.0", "name": "nft-tracker"})

# Sync run metrics
sync_runs_total = Counter(
    "sync_runs_total",
    "Total number of reconciliation runs",
    ["job_type", "status"],
)

sync_skipped_total = Counter(
    "sync_skipped_total",
    "Triggers skipped because the job was already running",
    ["job_type"],
)

sync_records_total = Counter(
    "sync_records_total",
    "Records processed by reconciliation runs, by outcome",
    ["job_type", "outcome"],
)

sync_duration_seconds = Histogram(
    "sync_duration_seconds",
    "Time spent in a reconciliation run",
    ["job_type"],
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 900.0],
)

scheduler_last_run_timestamp = Gauge(
    "scheduler_last_run_timestamp",
    "Timestamp of last scheduler run",
    ["job_type"],
)

# Retry metrics
retry_attempts_total = Counter(
    "retry_attempts_total",
    "Retries issued after transient failures",
    ["operation"],
)

retry_exhausted_total = Counter(
    "retry_exhausted_total",
    "Operations that failed after exhausting retries",
    ["operation"],
)

# State gauges
active_listings = Gauge(
    "active_listings",
    "Number of active listings after the last listing sync",
)

collection_holders = Gauge(
    "collection_holders",
    "Distinct holder wallets after the last ownership sync",
)


def record_sync_run(job_type: str, success: bool, duration: float):
    """Record a completed reconciliation run."""
    status = "success" if success else "error"
    sync_runs_total.labels(job_type=job_type, status=status).inc()
    sync_duration_seconds.labels(job_type=job_type).observe(duration)
    scheduler_last_run_timestamp.labels(job_type=job_type).set(time.time())


def record_sync_skipped(job_type: str):
    """Record a trigger that found the job already running."""
    sync_skipped_total.labels(job_type=job_type).inc()


def record_sync_outcomes(job_type: str, outcomes: dict[str, int]):
    """Add per-outcome record counts from a run summary."""
    for outcome, count in outcomes.items():
        if count:
            sync_records_total.labels(job_type=job_type, outcome=outcome).inc(count)


def record_retry(operation: str):
    """Record a retry after a transient failure."""
    retry_attempts_total.labels(operation=operation).inc()


def record_retry_exhausted(operation: str):
    """Record an operation that ran out of retries."""
    retry_exhausted_total.labels(operation=operation).inc()
