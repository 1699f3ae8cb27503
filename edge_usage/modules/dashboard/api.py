from __future__ import annotations

from fastapi import APIRouter, Body, Depends

from edge_usage.core.usage.models import MetricsSnapshot, ZonesSummary
from edge_usage.core.utils.time import utcnow
from edge_usage.dependencies import DashboardContext, get_dashboard_context
from edge_usage.modules.dashboard.schemas import (
    AccountSetRequest,
    CacheStatusResponse,
    PrewarmResponse,
    ProgressiveMetricsRequest,
    ProgressiveMetricsResponse,
)
from edge_usage.modules.dashboard.service import resolve_account_ids

router = APIRouter(prefix="/api", tags=["dashboard"])


@router.post("/metrics", response_model=MetricsSnapshot)
async def get_metrics_snapshot(
    payload: AccountSetRequest = Body(default_factory=AccountSetRequest),
    context: DashboardContext = Depends(get_dashboard_context),
) -> MetricsSnapshot:
    config = await context.config_repository.get(context.user_id)
    account_ids = resolve_account_ids(payload.account_ids, payload.account_id, config)
    return await context.service.build_snapshot(account_ids, config, now=utcnow())


@router.post("/metrics/progressive", response_model=ProgressiveMetricsResponse)
async def get_progressive_metrics(
    payload: ProgressiveMetricsRequest = Body(default_factory=ProgressiveMetricsRequest),
    context: DashboardContext = Depends(get_dashboard_context),
) -> ProgressiveMetricsResponse:
    config = await context.config_repository.get(context.user_id)
    account_ids = resolve_account_ids(payload.account_ids, payload.account_id, config)
    return await context.service.get_progressive(account_ids, payload.phase, config, now=utcnow())


@router.post("/cache/status", response_model=CacheStatusResponse)
async def get_cache_status(
    payload: AccountSetRequest = Body(default_factory=AccountSetRequest),
    context: DashboardContext = Depends(get_dashboard_context),
) -> CacheStatusResponse:
    config = await context.config_repository.get(context.user_id)
    account_ids = resolve_account_ids(payload.account_ids, payload.account_id, config)
    return await context.service.get_cache_status(account_ids, now=utcnow())


@router.post("/cache/prewarm", response_model=PrewarmResponse)
async def prewarm_cache(
    payload: AccountSetRequest = Body(default_factory=AccountSetRequest),
    context: DashboardContext = Depends(get_dashboard_context),
) -> PrewarmResponse:
    config = await context.config_repository.get(context.user_id)
    account_ids = resolve_account_ids(payload.account_ids, payload.account_id, config)
    outcome = await context.service.prewarm(config, account_ids=account_ids)
    return PrewarmResponse(
        account_ids=outcome.account_ids,
        cached_at=outcome.cached_at,
        duration_seconds=round(outcome.duration_seconds, 3),
        failed_accounts=outcome.snapshot.core.failed_accounts if outcome.snapshot.core is not None else [],
        zones_count=outcome.snapshot.zones.enterprise if outcome.snapshot.zones is not None else 0,
    )


@router.post("/zones", response_model=ZonesSummary)
async def list_zones(
    payload: AccountSetRequest = Body(default_factory=AccountSetRequest),
    context: DashboardContext = Depends(get_dashboard_context),
) -> ZonesSummary:
    config = await context.config_repository.get(context.user_id)
    account_ids = resolve_account_ids(payload.account_ids, payload.account_id, config)
    return await context.service.list_zones(account_ids)
