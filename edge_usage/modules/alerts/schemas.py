from __future__ import annotations

from pydantic import Field

from edge_usage.modules.shared.schemas import DashboardModel


class ThresholdCheckRequest(DashboardModel):
    # Keyed by metric key: zones, requests, bandwidth, dnsQueries, botManagement, ...
    metrics: dict[str, float | None] = Field(default_factory=dict)
    thresholds: dict[str, float | None] | None = None
    slack_webhook: str | None = None
    account_ids: list[str] | None = None
    account_id: str | None = None
    force_test: bool = False


class ThresholdAlertEntry(DashboardModel):
    metric: str
    metric_key: str
    current: float
    threshold: float
    percentage: float


class ThresholdCheckResponse(DashboardModel):
    alerts: list[ThresholdAlertEntry] = Field(default_factory=list)
    alerts_triggered: bool = False
    slack_sent: bool | None = None
    skipped: int | None = None
    message: str | None = None
    error: str | None = None
