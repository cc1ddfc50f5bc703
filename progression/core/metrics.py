"""Prometheus metric inventory for progression-service.

Every metric the service exports is declared here; the modules that own
the behaviour import the object and increment/observe it where the
action happens.  Counters only go up, so dashboards use rate():

  rate(xp_awarded_total[5m])                  XP handed out per second
  sum by (source_type) (rate(xp_grants_total[1h]))
  histogram_quantile(0.95, rate(ranking_query_duration_seconds_bucket[5m]))
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Ledger / progress metrics
# ---------------------------------------------------------------------------

XP_GRANTS = Counter(
    "xp_grants_total",
    "Accepted XP grants by source type",
    ["source_type"],  # quiz|lesson|module|lab|manual|...
)

XP_AWARDED = Counter(
    "xp_awarded_total",
    "Sum of XP amounts accepted into the ledger",
)

LESSON_COMPLETIONS = Counter(
    "lesson_completions_total",
    "First-time lesson completions (idempotent replays are not counted)",
)

MODULE_COMPLETIONS = Counter(
    "module_completions_total",
    "Module transitions into the completed state",
)

# ---------------------------------------------------------------------------
# Ranking metrics
# ---------------------------------------------------------------------------

RANKING_QUERY_DURATION = Histogram(
    "ranking_query_duration_seconds",
    "Time to compute a leaderboard from the store (cache misses only)",
    ["scope", "window"],  # scope: global|course, window: all_time|weekly
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)

CACHE_OPERATIONS = Counter(
    "cache_operations_total",
    "Cache get operations by result",
    ["operation"],  # "hit" or "miss"
)
