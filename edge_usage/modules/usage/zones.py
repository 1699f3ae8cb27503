from __future__ import annotations

import logging
from datetime import datetime

from pydantic import TypeAdapter, ValidationError

from edge_usage.core.cache.versioned import CacheFamily, VersionedCache
from edge_usage.core.clients.analytics import AnalyticsSource
from edge_usage.core.usage.models import ZoneInfo

logger = logging.getLogger(__name__)

ZONES_CACHE = CacheFamily(name="zones", prefix="zones", ttl_seconds=60 * 60, max_age_seconds=60 * 60)

_ZONE_LIST = TypeAdapter(list[ZoneInfo])


class ZoneDirectory:
    """Enterprise-tier zones per account, cached for an hour."""

    def __init__(self, source: AnalyticsSource, cache: VersionedCache) -> None:
        self._source = source
        self._cache = cache

    async def enterprise_zones(self, account_id: str, *, now: datetime) -> list[ZoneInfo]:
        key = ZONES_CACHE.key(account_id)
        cached = await self._cache.get_raw(ZONES_CACHE, key, now=now)
        if cached is not None:
            try:
                return _ZONE_LIST.validate_python(cached[0])
            except ValidationError:
                logger.debug("Discarding unreadable zones cache account_id=%s", account_id, exc_info=True)

        zones = [zone for zone in await self._source.list_zones(account_id) if zone.is_enterprise]
        # Empty listings are never cached.
        if zones:
            await self._cache.put(ZONES_CACHE, key, _ZONE_LIST.dump_python(zones, mode="json", by_alias=True), now=now)
        return zones

    async def all_zones(self, account_id: str) -> list[ZoneInfo]:
        return await self._source.list_zones(account_id)
