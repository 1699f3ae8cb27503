from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import Field

from edge_usage.core.usage.models import MetricsSnapshot
from edge_usage.modules.shared.schemas import DashboardModel

Phase = Literal[1, 2, 3]


class AccountSetRequest(DashboardModel):
    account_ids: list[str] | None = None
    # Legacy single-account payloads.
    account_id: str | None = None


class ProgressiveMetricsRequest(AccountSetRequest):
    phase: Phase = 1


class ProgressiveMetricsResponse(MetricsSnapshot):
    phase: Phase | Literal["cached"]
    loading: bool = False
    zones_count: int | None = None
    cache_age_seconds: float | None = None


class CacheStatusResponse(DashboardModel):
    cached: bool
    age_seconds: int | None = None
    age_minutes: int | None = None
    account_ids: list[str] = Field(default_factory=list)


class PrewarmResponse(DashboardModel):
    account_ids: list[str]
    cached_at: datetime
    duration_seconds: float
    failed_accounts: list[str] = Field(default_factory=list)
    zones_count: int = 0
