"""Prometheus metrics for the scrape engine."""

from prometheus_client import Counter, Gauge, Histogram, Info, start_http_server

from scrape_engine import __version__

# Application info
app_info = Info("scrape_engine", "Scrape engine application info")
app_info.info({"version": __version__, "name": "scrape-engine"})

# Job metrics
jobs_enqueued_total = Counter(
    "scrape_jobs_enqueued_total",
    "Total number of jobs added to the queue",
)

jobs_processed_total = Counter(
    "scrape_jobs_processed_total",
    "Total number of job executions by outcome",
    ["status"],
)

job_failures_total = Counter(
    "scrape_job_failures_total",
    "Total number of failed job attempts by error kind",
    ["error_kind"],
)

job_duration_seconds = Histogram(
    "scrape_job_duration_seconds",
    "Wall-clock duration of job executions",
    buckets=[5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0],
)

products_scraped_total = Counter(
    "scrape_products_total",
    "Total number of product records extracted",
)

# Pool metrics
pool_active_sessions = Gauge(
    "scrape_pool_active_sessions",
    "Number of browser sessions currently borrowed from the pool",
)

pool_sessions_destroyed_total = Counter(
    "scrape_pool_sessions_destroyed_total",
    "Sessions destroyed instead of being returned to the pool",
    ["reason"],
)

# Content loading metrics
scroll_cycles = Histogram(
    "scrape_scroll_cycles",
    "Scroll cycles run per content-loading run",
    ["exit_reason"],
    buckets=[1, 2, 5, 10, 20, 30, 50],
)

# Queue metrics
queue_jobs = Gauge(
    "scrape_queue_jobs",
    "Number of jobs per lifecycle state",
    ["state"],
)

stalled_jobs_recovered_total = Counter(
    "scrape_stalled_jobs_recovered_total",
    "Jobs whose lease expired and were moved back to waiting or failed",
)


def start_metrics_server(port: int):
    """Expose /metrics on the given port."""
    start_http_server(port)


def record_job_enqueued(count: int = 1):
    """Record jobs being enqueued."""
    jobs_enqueued_total.inc(count)


def record_job_success(duration: float, product_count: int):
    """Record a completed job."""
    jobs_processed_total.labels(status="completed").inc()
    job_duration_seconds.observe(duration)
    products_scraped_total.inc(product_count)


def record_job_failure(error_kind: str, duration: float, will_retry: bool):
    """Record a failed job attempt."""
    status = "retrying" if will_retry else "failed"
    jobs_processed_total.labels(status=status).inc()
    job_failures_total.labels(error_kind=error_kind).inc()
    job_duration_seconds.observe(duration)


def update_pool_active_sessions(count: int):
    """Set the active session gauge."""
    pool_active_sessions.set(count)


def record_session_destroyed(reason: str):
    """Record a session that was discarded."""
    pool_sessions_destroyed_total.labels(reason=reason).inc()


def record_scroll_run(exit_reason: str, cycles: int):
    """Record a content-loading run."""
    scroll_cycles.labels(exit_reason=exit_reason).observe(cycles)


def update_queue_counts(counts: dict[str, int]):
    """Update the queue gauge with current counts."""
    for state, count in counts.items():
        queue_jobs.labels(state=state).set(count)


def record_stalled_recovered(count: int):
    """Record stalled jobs recovered by the watchdog."""
    if count:
        stalled_jobs_recovered_total.inc(count)
