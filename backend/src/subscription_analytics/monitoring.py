"""Service metrics for Prometheus monitoring."""
from prometheus_client import Counter

# Metric cache
metric_cache_hits_total = Counter(
    "metric_cache_hits_total",
    "Metric reads served from the cache",
    labelnames=["metric"],  # mrr, churn, ltv, active_users, revenue, refunds
)

metric_cache_misses_total = Counter(
    "metric_cache_misses_total",
    "Metric reads recomputed from billing records",
    labelnames=["metric"],
)

metric_calculation_failures_total = Counter(
    "metric_calculation_failures_total",
    "Metric computations that failed",
    labelnames=["metric"],
)

metric_cache_invalidations_total = Counter(
    "metric_cache_invalidations_total",
    "Per-user metric cache invalidations",
    labelnames=["status"],  # status: succeeded, failed
)

# Webhooks
webhook_events_total = Counter(
    "webhook_events_total",
    "Payment-provider webhook events received",
    labelnames=["provider", "event_type", "outcome"],  # outcome: processed, ignored
)
