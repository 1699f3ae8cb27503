from __future__ import annotations

from fastapi import APIRouter, Body, Depends

from edge_usage.core.utils.time import utcnow
from edge_usage.dependencies import AlertsContext, get_alerts_context
from edge_usage.modules.alerts.schemas import ThresholdCheckRequest, ThresholdCheckResponse
from edge_usage.modules.config.schemas import normalize_account_ids

router = APIRouter(prefix="/api/webhook", tags=["dashboard"])


@router.post("/check", response_model=ThresholdCheckResponse)
async def check_thresholds(
    payload: ThresholdCheckRequest = Body(...),
    context: AlertsContext = Depends(get_alerts_context),
) -> ThresholdCheckResponse:
    config = await context.config_repository.get(context.user_id)
    if payload.account_ids:
        account_ids = normalize_account_ids(payload.account_ids)
    elif payload.account_id:
        account_ids = normalize_account_ids([payload.account_id])
    else:
        account_ids = config.account_ids
    return await context.service.check(
        payload.metrics,
        payload.thresholds if payload.thresholds is not None else config.thresholds(),
        webhook_url=payload.slack_webhook or config.slack_webhook,
        account_ids=account_ids,
        now=utcnow(),
        force_test=payload.force_test,
    )
