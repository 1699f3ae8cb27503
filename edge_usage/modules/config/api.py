from __future__ import annotations

from fastapi import APIRouter, Body, Depends

from edge_usage.dependencies import ConfigContext, get_config_context
from edge_usage.modules.config.schemas import DashboardConfig

router = APIRouter(prefix="/api/config", tags=["dashboard"])


@router.get("", response_model=DashboardConfig)
async def get_config(
    context: ConfigContext = Depends(get_config_context),
) -> DashboardConfig:
    return await context.repository.get(context.user_id)


@router.post("", response_model=DashboardConfig)
async def save_config(
    payload: DashboardConfig = Body(...),
    context: ConfigContext = Depends(get_config_context),
) -> DashboardConfig:
    return await context.repository.save(context.user_id, payload)
