from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from edge_usage.core.cache.versioned import VersionedCache
from edge_usage.core.clients.analytics import AnalyticsApiError, AnalyticsSource, BotTrafficTotals
from edge_usage.core.metrics import get_metrics
from edge_usage.core.usage import combine_intervals, normalize_interval
from edge_usage.core.usage.models import (
    AddonAccountMetrics,
    AddonMonthlySnapshot,
    AddonUsage,
    AddonUsagePoint,
    AddonZoneUsage,
)
from edge_usage.core.usage.periods import BillingPeriod, current_period, previous_month_closed, previous_period
from edge_usage.modules.config.schemas import AddonServiceConfig
from edge_usage.modules.usage.history import BOT_HISTORY, MonthlyHistory, addon_monthly_history
from edge_usage.modules.usage.zones import ZoneDirectory

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class _ZoneBotResult:
    zone_id: str
    zone_name: str
    totals: BotTrafficTotals


class BotManagementFetcher:
    """Likely-human request counts for the configured Bot Management zones of one account."""

    def __init__(
        self,
        source: AnalyticsSource,
        cache: VersionedCache,
        *,
        zones: ZoneDirectory | None = None,
        zone_concurrency: int = 10,
    ) -> None:
        self._source = source
        self._zones = zones or ZoneDirectory(source, cache)
        self._zone_concurrency = zone_concurrency
        self._history: MonthlyHistory[AddonMonthlySnapshot] = addon_monthly_history(cache, BOT_HISTORY)

    async def fetch(
        self,
        account_id: str,
        config: AddonServiceConfig,
        *,
        now: datetime,
        account_name: str | None = None,
    ) -> AddonAccountMetrics | None:
        if not config.active:
            return None
        zone_names = {zone.id: zone.name for zone in await self._zones.enterprise_zones(account_id, now=now)}
        zone_ids = [zone_id for zone_id in dict.fromkeys(config.zones) if zone_id in zone_names]
        if not zone_ids:
            return None

        current = current_period(now)
        current_results = await self._query_zones(zone_ids, zone_names, current)
        current_usage = AddonUsage(
            requests=sum(result.totals.likely_human for result in current_results),
            zones=[_zone_usage(result) for result in current_results],
            confidence=combine_intervals(
                normalize_interval(result.totals.confidence, result.totals.likely_human) for result in current_results
            ),
        )

        previous = previous_period(now)
        previous_usage = await self._previous_month(account_id, zone_ids, zone_names, previous, now=now)

        points = {
            entry.month: AddonUsagePoint(month=entry.month, timestamp=entry.timestamp, requests=entry.snapshot.requests)
            for entry in await self._history.scan(account_id, now=now)
        }
        if previous_usage is not None:
            points[previous.month] = AddonUsagePoint(
                month=previous.month,
                timestamp=previous.start,
                requests=previous_usage.requests,
            )
        points[current.month] = AddonUsagePoint(
            month=current.month,
            timestamp=current.start,
            requests=current_usage.requests,
        )

        return AddonAccountMetrics(
            account_id=account_id,
            account_name=account_name,
            current=current_usage,
            previous=previous_usage or AddonUsage(),
            time_series=sorted(points.values(), key=lambda point: point.timestamp),
        )

    async def _previous_month(
        self,
        account_id: str,
        zone_ids: Sequence[str],
        zone_names: dict[str, str],
        period: BillingPeriod,
        *,
        now: datetime,
    ) -> AddonUsage | None:
        snapshot = await self._history.load(account_id, period.month, now=now)
        if snapshot is not None:
            return AddonUsage(requests=snapshot.requests, zones=snapshot.zones)

        results = await self._query_zones(zone_ids, zone_names, period)
        usage = AddonUsage(
            requests=sum(result.totals.likely_human for result in results),
            zones=[_zone_usage(result) for result in results],
        )
        if len(results) < len(zone_ids):
            logger.warning(
                "Bot management month incomplete, not stored account_id=%s month=%s missing_zones=%s",
                account_id,
                period.month,
                len(zone_ids) - len(results),
            )
        elif previous_month_closed(now):
            await self._history.save(
                account_id,
                period.month,
                AddonMonthlySnapshot(requests=usage.requests, zones=usage.zones),
                now=now,
            )
            logger.info("Stored bot management month account_id=%s month=%s", account_id, period.month)
        return usage

    async def _query_zones(
        self,
        zone_ids: Sequence[str],
        zone_names: dict[str, str],
        period: BillingPeriod,
    ) -> list[_ZoneBotResult]:
        semaphore = asyncio.Semaphore(self._zone_concurrency)
        results = await asyncio.gather(
            *(self._query_zone(zone_id, zone_names.get(zone_id, zone_id), period, semaphore) for zone_id in zone_ids)
        )
        return [result for result in results if result is not None]

    async def _query_zone(
        self,
        zone_id: str,
        zone_name: str,
        period: BillingPeriod,
        semaphore: asyncio.Semaphore,
    ) -> _ZoneBotResult | None:
        async with semaphore:
            try:
                totals = await self._source.query_bot_totals(zone_id, period.start, period.end)
            except AnalyticsApiError as exc:
                get_metrics().inc_zone_query_failure("bot")
                logger.warning(
                    "Bot management query failed, skipping zone zone_id=%s month=%s status=%s error=%s",
                    zone_id,
                    period.month,
                    exc.status_code,
                    exc.message,
                )
                return None
        return _ZoneBotResult(zone_id=zone_id, zone_name=zone_name, totals=totals)


def _zone_usage(result: _ZoneBotResult) -> AddonZoneUsage:
    return AddonZoneUsage(
        zone_id=result.zone_id,
        zone_name=result.zone_name,
        requests=result.totals.likely_human,
        automated=result.totals.automated,
        likely_automated=result.totals.likely_automated,
        verified_bot=result.totals.verified_bot,
    )
