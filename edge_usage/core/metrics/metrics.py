from __future__ import annotations

from typing import Final

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

_PROM_CONTENT_TYPE: Final[str] = "text/plain; version=0.0.4; charset=utf-8"


class Metrics:
    def __init__(self, *, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry(auto_describe=True)

        self._cache_lookups_total = Counter(
            "edge_usage_cache_lookups_total",
            "Cache lookups by cache family and result.",
            labelnames=("family", "result"),
            registry=self._registry,
        )
        self._analytics_queries_total = Counter(
            "edge_usage_analytics_queries_total",
            "Analytics API calls by operation and outcome.",
            labelnames=("operation", "status"),
            registry=self._registry,
        )
        self._analytics_query_latency_seconds = Histogram(
            "edge_usage_analytics_query_latency_seconds",
            "Analytics API call latency in seconds.",
            labelnames=("operation",),
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60),
            registry=self._registry,
        )
        self._account_fetch_failures_total = Counter(
            "edge_usage_account_fetch_failures_total",
            "Per-account metric fetches that failed and were dropped from an aggregate.",
            registry=self._registry,
        )
        self._zone_query_failures_total = Counter(
            "edge_usage_zone_query_failures_total",
            "Per-zone queries that failed and were counted as zero.",
            labelnames=("kind",),
            registry=self._registry,
        )
        self._alert_notifications_total = Counter(
            "edge_usage_alert_notifications_total",
            "Threshold notifications by outcome.",
            labelnames=("outcome",),
            registry=self._registry,
        )
        self._prewarm_duration_seconds = Histogram(
            "edge_usage_prewarm_duration_seconds",
            "Time spent building a pre-warmed snapshot.",
            buckets=(1, 2, 5, 10, 30, 60, 120, 300, 600),
            registry=self._registry,
        )
        self._prewarm_last_success_seconds = Gauge(
            "edge_usage_prewarm_last_success_timestamp_seconds",
            "Unix time of the last successful pre-warm.",
            registry=self._registry,
        )

    @property
    def content_type(self) -> str:
        return _PROM_CONTENT_TYPE

    def render(self) -> bytes:
        return generate_latest(self._registry)

    def observe_cache_lookup(self, family: str, result: str) -> None:
        self._cache_lookups_total.labels(family=family, result=result).inc()

    def observe_analytics_query(self, operation: str, status: str, latency_seconds: float | None = None) -> None:
        self._analytics_queries_total.labels(operation=operation, status=status).inc()
        if latency_seconds is not None:
            self._analytics_query_latency_seconds.labels(operation=operation).observe(max(0.0, latency_seconds))

    def inc_account_fetch_failure(self) -> None:
        self._account_fetch_failures_total.inc()

    def inc_zone_query_failure(self, kind: str) -> None:
        self._zone_query_failures_total.labels(kind=kind).inc()

    def observe_alert_notification(self, outcome: str) -> None:
        self._alert_notifications_total.labels(outcome=outcome).inc()

    def observe_prewarm(self, duration_seconds: float, *, finished_at_epoch: float) -> None:
        self._prewarm_duration_seconds.observe(max(0.0, duration_seconds))
        self._prewarm_last_success_seconds.set(finished_at_epoch)
