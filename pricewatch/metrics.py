"""Prometheus metrics for the competitor reconciliation service."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("pricewatch", "Competitor price reconciliation service info")
app_info.info({"version": "0.1.0", "name": "pricewatch"})

# Run metrics
reconciliation_runs_total = Counter(
    "reconciliation_runs_total",
    "Total number of reconciliation runs by trigger and final status",
    ["trigger", "status"],
)

reconciliation_runs_refused_total = Counter(
    "reconciliation_runs_refused_total",
    "Run requests refused because another run was active",
    ["trigger"],
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of the last finished reconciliation run",
    ["trigger"],
)

reconciliation_run_duration_seconds = Histogram(
    "reconciliation_run_duration_seconds",
    "Wall time of reconciliation runs",
    buckets=[10, 30, 60, 300, 900, 1800, 3600, 7200],
)

# Product resolution metrics
products_resolved_total = Counter(
    "products_resolved_total",
    "Products processed by adapters, by outcome",
    ["competitor", "outcome"],
)

matches_total = Counter(
    "matches_total",
    "Accepted matches by resolution method",
    ["competitor", "method"],
)

competitor_errors_total = Counter(
    "competitor_errors_total",
    "Competitor-level failures (adapter crash, missing adapter)",
    ["competitor", "error_type"],
)

# AI disambiguation metrics
ai_requests_total = Counter(
    "ai_requests_total",
    "AI disambiguation requests by result",
    ["result"],
)

ai_rate_limit_wait_seconds = Histogram(
    "ai_rate_limit_wait_seconds",
    "Time spent waiting for the shared AI request window",
    buckets=[0.0, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0],
)

# Alert metrics
alerts_created_total = Counter(
    "alerts_created_total",
    "Alerts created by competitor and type",
    ["competitor", "alert_type"],
)


def record_run_finished(trigger: str, status: str, duration: float):
    """Record a completed run."""
    reconciliation_runs_total.labels(trigger=trigger, status=status).inc()
    reconciliation_last_run_timestamp.labels(trigger=trigger).set(time.time())
    reconciliation_run_duration_seconds.observe(duration)


def record_run_refused(trigger: str):
    """Record a refused run request."""
    reconciliation_runs_refused_total.labels(trigger=trigger).inc()


def record_product_outcome(competitor: str, outcome: str, method: str | None = None):
    """Record one product resolution outcome (matched, no_match, error)."""
    products_resolved_total.labels(competitor=competitor, outcome=outcome).inc()
    if method:
        matches_total.labels(competitor=competitor, method=method).inc()


def record_competitor_error(competitor: str, error_type: str):
    """Record a competitor-level failure."""
    competitor_errors_total.labels(competitor=competitor, error_type=error_type).inc()


def record_ai_request(result: str, waited: float = 0.0):
    """Record an AI disambiguation request."""
    ai_requests_total.labels(result=result).inc()
    if waited:
        ai_rate_limit_wait_seconds.observe(waited)


def record_alerts_created(competitor: str, alert_type: str, count: int = 1):
    """Record created alerts."""
    if count:
        alerts_created_total.labels(competitor=competitor, alert_type=alert_type).inc(count)
