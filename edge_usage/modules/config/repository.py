from __future__ import annotations

import logging

from pydantic import ValidationError

from edge_usage.core.cache.store import KeyValueStore
from edge_usage.modules.config.schemas import DashboardConfig

logger = logging.getLogger(__name__)

_CONFIG_PREFIX = "config"


def config_key(user_id: str) -> str:
    return f"{_CONFIG_PREFIX}:{user_id}"


class ConfigRepository:
    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def get(self, user_id: str) -> DashboardConfig:
        raw = await self._store.get(config_key(user_id))
        if raw is None:
            return DashboardConfig()
        try:
            return DashboardConfig.model_validate(raw)
        except ValidationError:
            logger.warning("Stored configuration is unreadable, using defaults user_id=%s", user_id, exc_info=True)
            return DashboardConfig()

    async def save(self, user_id: str, config: DashboardConfig) -> DashboardConfig:
        await self._store.put(config_key(user_id), config.to_store())
        return config
