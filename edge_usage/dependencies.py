from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends

from edge_usage.core.cache.store import KeyValueStore
from edge_usage.core.config.settings import Settings, get_settings
from edge_usage.db.kv_store import get_kv_store
from edge_usage.modules.alerts.service import ThresholdAlertService, build_alert_service
from edge_usage.modules.config.repository import ConfigRepository
from edge_usage.modules.dashboard.service import DashboardMetricsService, build_dashboard_service


@dataclass(slots=True)
class ConfigContext:
    user_id: str
    repository: ConfigRepository


@dataclass(slots=True)
class DashboardContext:
    user_id: str
    config_repository: ConfigRepository
    service: DashboardMetricsService


@dataclass(slots=True)
class AlertsContext:
    user_id: str
    config_repository: ConfigRepository
    service: ThresholdAlertService


def get_store() -> KeyValueStore:
    return get_kv_store()


def get_config_context(
    store: KeyValueStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> ConfigContext:
    return ConfigContext(user_id=settings.config_user_id, repository=ConfigRepository(store))


def get_dashboard_context(
    store: KeyValueStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> DashboardContext:
    return DashboardContext(
        user_id=settings.config_user_id,
        config_repository=ConfigRepository(store),
        service=build_dashboard_service(settings, store=store),
    )


def get_alerts_context(
    store: KeyValueStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> AlertsContext:
    return AlertsContext(
        user_id=settings.config_user_id,
        config_repository=ConfigRepository(store),
        service=build_alert_service(settings, store=store),
    )
