from __future__ import annotations

from datetime import datetime

from pydantic import Field, field_validator

from edge_usage.core.utils.time import to_utc_naive
from edge_usage.modules.shared.schemas import DashboardModel


class ConfidenceInterval(DashboardModel):
    estimate: float
    lower: float
    upper: float
    sample_size: int = 0
    percent: float | None = None


class UsageConfidence(DashboardModel):
    requests: ConfidenceInterval | None = None
    bytes: ConfidenceInterval | None = None
    dns_queries: ConfidenceInterval | None = None


class UsageTotals(DashboardModel):
    requests: int = 0
    bytes: int = 0
    dns_queries: int = 0
    confidence: UsageConfidence | None = None


class ZoneMetrics(DashboardModel):
    zone_id: str
    zone_name: str
    requests: int = 0
    bytes: int = 0
    dns_queries: int = 0
    is_primary: bool = False
    dns_complete: bool = True


class ZoneBreakdown(DashboardModel):
    primary_count: int = 0
    secondary_count: int = 0
    zones: list[ZoneMetrics] = Field(default_factory=list)


class MonthlyUsagePoint(DashboardModel):
    month: str
    timestamp: datetime
    requests: int = 0
    bytes: int = 0
    dns_queries: int = 0

    @field_validator("timestamp")
    @classmethod
    def _naive_utc(cls, value: datetime) -> datetime:
        return to_utc_naive(value)


class AccountMetrics(DashboardModel):
    account_id: str
    account_name: str | None = None
    current: UsageTotals = Field(default_factory=UsageTotals)
    previous: UsageTotals = Field(default_factory=UsageTotals)
    time_series: list[MonthlyUsagePoint] = Field(default_factory=list)
    zone_breakdown: ZoneBreakdown = Field(default_factory=ZoneBreakdown)
    previous_month_zone_breakdown: ZoneBreakdown = Field(default_factory=ZoneBreakdown)


class AggregateMetrics(DashboardModel):
    current: UsageTotals = Field(default_factory=UsageTotals)
    previous: UsageTotals = Field(default_factory=UsageTotals)
    time_series: list[MonthlyUsagePoint] = Field(default_factory=list)
    zone_breakdown: ZoneBreakdown = Field(default_factory=ZoneBreakdown)
    previous_month_zone_breakdown: ZoneBreakdown = Field(default_factory=ZoneBreakdown)
    per_account_data: list[AccountMetrics] = Field(default_factory=list)
    failed_accounts: list[str] = Field(default_factory=list)


class MonthlySnapshot(DashboardModel):
    """A closed billing month for one account, as persisted under `monthly-stats:`."""

    requests: int = 0
    bytes: int = 0
    # None marks snapshots written before DNS tracking existed.
    dns_queries: int | None = None
    zone_metrics: list[ZoneMetrics] = Field(default_factory=list)


class AddonZoneUsage(DashboardModel):
    zone_id: str
    zone_name: str
    requests: int = 0
    automated: int | None = None
    likely_automated: int | None = None
    verified_bot: int | None = None


class AddonUsage(DashboardModel):
    requests: int = 0
    zones: list[AddonZoneUsage] = Field(default_factory=list)
    confidence: ConfidenceInterval | None = None


class AddonUsagePoint(DashboardModel):
    month: str
    timestamp: datetime
    requests: int = 0

    @field_validator("timestamp")
    @classmethod
    def _naive_utc(cls, value: datetime) -> datetime:
        return to_utc_naive(value)


class AddonMonthlySnapshot(DashboardModel):
    requests: int = 0
    zones: list[AddonZoneUsage] = Field(default_factory=list)


class AddonAccountMetrics(DashboardModel):
    account_id: str
    account_name: str | None = None
    current: AddonUsage = Field(default_factory=AddonUsage)
    previous: AddonUsage = Field(default_factory=AddonUsage)
    time_series: list[AddonUsagePoint] = Field(default_factory=list)


class AddonMetrics(DashboardModel):
    enabled: bool = True
    threshold: int | None = None
    # None when no account has any of the configured zones.
    current: AddonUsage | None = Field(default_factory=AddonUsage)
    previous: AddonUsage | None = Field(default_factory=AddonUsage)
    time_series: list[AddonUsagePoint] = Field(default_factory=list)
    per_account_data: list[AddonAccountMetrics] = Field(default_factory=list)


class ZoneInfo(DashboardModel):
    id: str
    name: str
    account_id: str | None = None
    plan_name: str | None = None
    plan_legacy_id: str | None = None

    @property
    def is_enterprise(self) -> bool:
        if self.plan_legacy_id == "enterprise":
            return True
        return "enterprise" in (self.plan_name or "").lower()


class ZonesSummary(DashboardModel):
    total: int = 0
    enterprise: int = 0
    zones: list[ZoneInfo] = Field(default_factory=list)


class MetricsSnapshot(DashboardModel):
    """Assembled dashboard payload. A feature's field is set only when it is enabled."""

    core: AggregateMetrics | None = None
    zones: ZonesSummary | None = None
    bot_management: AddonMetrics | None = None
    api_shield: AddonMetrics | None = None
    page_shield: AddonMetrics | None = None
    advanced_rate_limiting: AddonMetrics | None = None
