from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from edge_usage.core.cache.versioned import CacheFamily, VersionedCache
from edge_usage.core.clients.analytics import AnalyticsApiError, AnalyticsSource, CountTotals, ZoneTrafficTotals
from edge_usage.core.metrics import get_metrics
from edge_usage.core.usage import combine_intervals, is_primary_zone, normalize_interval
from edge_usage.core.usage.models import (
    AccountMetrics,
    MonthlySnapshot,
    MonthlyUsagePoint,
    UsageConfidence,
    UsageTotals,
    ZoneBreakdown,
    ZoneInfo,
    ZoneMetrics,
)
from edge_usage.core.usage.periods import (
    BillingPeriod,
    current_period,
    hour_bucket,
    month_start,
    previous_month_closed,
    previous_period,
)
from edge_usage.modules.usage.history import MonthlyHistory, core_history
from edge_usage.modules.usage.zones import ZoneDirectory

logger = logging.getLogger(__name__)

# Bump CURRENT_MONTH_CACHE_VERSION whenever the AccountMetrics payload shape changes.
CURRENT_MONTH_CACHE_VERSION = 2
CURRENT_MONTH_CACHE = CacheFamily(
    name="current_month",
    prefix="current-month",
    ttl_seconds=10 * 60,
    version=CURRENT_MONTH_CACHE_VERSION,
    max_age_seconds=10 * 60,
)


@dataclass(frozen=True, slots=True)
class _ZoneDnsResult:
    zone_id: str
    totals: CountTotals | None


def build_zone_metrics(zones: Sequence[ZoneInfo], traffic: Sequence[ZoneTrafficTotals]) -> list[ZoneMetrics]:
    by_zone = {row.zone_id: row for row in traffic}
    metrics: list[ZoneMetrics] = []
    for zone in zones:
        row = by_zone.get(zone.id)
        requests = row.requests if row is not None else 0
        bytes_sent = row.bytes if row is not None else 0
        metrics.append(
            ZoneMetrics(
                zone_id=zone.id,
                zone_name=zone.name,
                requests=requests,
                bytes=bytes_sent,
                is_primary=is_primary_zone(bytes_sent),
            )
        )
    return metrics


def breakdown_for(zones: Sequence[ZoneMetrics]) -> ZoneBreakdown:
    primary = sum(1 for zone in zones if zone.is_primary)
    return ZoneBreakdown(primary_count=primary, secondary_count=len(zones) - primary, zones=list(zones))


def _apply_dns(zones: Sequence[ZoneMetrics], results: Sequence[_ZoneDnsResult]) -> None:
    by_zone = {result.zone_id: result for result in results}
    for zone in zones:
        result = by_zone.get(zone.zone_id)
        if result is None or result.totals is None:
            zone.dns_queries = 0
            zone.dns_complete = False
        else:
            zone.dns_queries = result.totals.count
            zone.dns_complete = True


class AccountMetricsFetcher:
    def __init__(
        self,
        source: AnalyticsSource,
        cache: VersionedCache,
        *,
        zones: ZoneDirectory | None = None,
        zone_concurrency: int = 10,
    ) -> None:
        self._source = source
        self._cache = cache
        self._zones = zones or ZoneDirectory(source, cache)
        self._zone_concurrency = zone_concurrency
        self._history: MonthlyHistory[MonthlySnapshot] = core_history(cache)

    @property
    def zones(self) -> ZoneDirectory:
        return self._zones

    async def fetch(self, account_id: str, *, now: datetime) -> AccountMetrics:
        cache_key = CURRENT_MONTH_CACHE.key(account_id, hour_bucket(now))
        cached = await self._cache.get(CURRENT_MONTH_CACHE, cache_key, AccountMetrics, now=now)
        if cached is not None:
            logger.debug(
                "Using cached current month metrics account_id=%s age_seconds=%s",
                account_id,
                int((now - cached.cached_at).total_seconds()),
            )
            return cached.value

        zones = await self._zones.enterprise_zones(account_id, now=now)
        if not zones:
            logger.info("No enterprise zones account_id=%s", account_id)
            return AccountMetrics(account_id=account_id)

        current = current_period(now)
        account_name, traffic = await asyncio.gather(
            self._source.fetch_account_name(account_id),
            self._source.query_http_totals([zone.id for zone in zones], current.start, current.end),
        )
        if not traffic:
            raise AnalyticsApiError(502, f"No zone data returned for account {account_id}")

        zone_metrics = build_zone_metrics(zones, traffic)
        dns_results = await self._dns_totals([zone.zone_id for zone in zone_metrics], current)
        _apply_dns(zone_metrics, dns_results)

        current_totals = UsageTotals(
            requests=sum(zone.requests for zone in zone_metrics),
            bytes=sum(zone.bytes for zone in zone_metrics),
            dns_queries=sum(zone.dns_queries for zone in zone_metrics),
            confidence=UsageConfidence(
                requests=combine_intervals(
                    normalize_interval(row.requests_confidence, row.requests) for row in traffic
                ),
                bytes=combine_intervals(normalize_interval(row.bytes_confidence, row.bytes) for row in traffic),
                dns_queries=combine_intervals(
                    normalize_interval(result.totals.confidence, result.totals.count)
                    for result in dns_results
                    if result.totals is not None
                ),
            ),
        )

        previous = previous_period(now)
        snapshot = await self._previous_month(account_id, zones, previous, now=now)
        previous_zones = snapshot.zone_metrics if snapshot is not None else []
        previous_totals = UsageTotals(
            requests=snapshot.requests if snapshot is not None else 0,
            bytes=snapshot.bytes if snapshot is not None else 0,
            dns_queries=_snapshot_dns(snapshot),
        )

        time_series = await self._time_series(
            account_id,
            MonthlyUsagePoint(
                month=current.month,
                timestamp=month_start(now),
                requests=current_totals.requests,
                bytes=current_totals.bytes,
                dns_queries=current_totals.dns_queries,
            ),
            now=now,
        )

        metrics = AccountMetrics(
            account_id=account_id,
            account_name=account_name,
            current=current_totals,
            previous=previous_totals,
            time_series=time_series,
            zone_breakdown=breakdown_for(zone_metrics),
            previous_month_zone_breakdown=breakdown_for(previous_zones),
        )
        await self._cache.put(CURRENT_MONTH_CACHE, cache_key, metrics, now=now)
        return metrics

    async def _previous_month(
        self,
        account_id: str,
        zones: Sequence[ZoneInfo],
        period: BillingPeriod,
        *,
        now: datetime,
    ) -> MonthlySnapshot | None:
        snapshot = await self._history.load(account_id, period.month, now=now)
        if snapshot is not None:
            if snapshot.dns_queries is None:
                snapshot = await self._backfill_dns(account_id, snapshot, zones, period, now=now)
            return snapshot

        if not previous_month_closed(now):
            return None

        traffic = await self._source.query_http_totals([zone.id for zone in zones], period.start, period.end)
        zone_metrics = build_zone_metrics(zones, traffic)
        _apply_dns(zone_metrics, await self._dns_totals([zone.zone_id for zone in zone_metrics], period))
        snapshot = MonthlySnapshot(
            requests=sum(zone.requests for zone in zone_metrics),
            bytes=sum(zone.bytes for zone in zone_metrics),
            dns_queries=_complete_dns_total(zone_metrics),
            zone_metrics=zone_metrics,
        )
        await self._history.save(account_id, period.month, snapshot, now=now)
        logger.info("Stored closed month snapshot account_id=%s month=%s", account_id, period.month)
        return snapshot

    async def _backfill_dns(
        self,
        account_id: str,
        snapshot: MonthlySnapshot,
        zones: Sequence[ZoneInfo],
        period: BillingPeriod,
        *,
        now: datetime,
    ) -> MonthlySnapshot:
        zone_metrics = [zone.model_copy() for zone in snapshot.zone_metrics]
        if not zone_metrics:
            zone_metrics = build_zone_metrics(zones, [])
        _apply_dns(zone_metrics, await self._dns_totals([zone.zone_id for zone in zone_metrics], period))
        upgraded = snapshot.model_copy(
            update={"zone_metrics": zone_metrics, "dns_queries": _complete_dns_total(zone_metrics)}
        )
        await self._history.save(account_id, period.month, upgraded, now=now)
        logger.info(
            "Backfilled DNS queries account_id=%s month=%s complete=%s",
            account_id,
            period.month,
            upgraded.dns_queries is not None,
        )
        return upgraded

    async def _time_series(
        self,
        account_id: str,
        current_point: MonthlyUsagePoint,
        *,
        now: datetime,
    ) -> list[MonthlyUsagePoint]:
        points = {
            entry.month: MonthlyUsagePoint(
                month=entry.month,
                timestamp=entry.timestamp,
                requests=entry.snapshot.requests,
                bytes=entry.snapshot.bytes,
                dns_queries=_snapshot_dns(entry.snapshot),
            )
            for entry in await self._history.scan(account_id, now=now)
        }
        points[current_point.month] = current_point
        return sorted(points.values(), key=lambda point: point.timestamp)

    async def _dns_totals(self, zone_ids: Sequence[str], period: BillingPeriod) -> list[_ZoneDnsResult]:
        semaphore = asyncio.Semaphore(self._zone_concurrency)
        return list(
            await asyncio.gather(*(self._fetch_zone_dns(zone_id, period, semaphore) for zone_id in zone_ids))
        )

    async def _fetch_zone_dns(
        self,
        zone_id: str,
        period: BillingPeriod,
        semaphore: asyncio.Semaphore,
    ) -> _ZoneDnsResult:
        async with semaphore:
            try:
                totals = await self._source.query_dns_totals(zone_id, period.start, period.end)
            except AnalyticsApiError as exc:
                get_metrics().inc_zone_query_failure("dns")
                logger.warning(
                    "DNS query failed, counting zone as zero zone_id=%s month=%s status=%s error=%s",
                    zone_id,
                    period.month,
                    exc.status_code,
                    exc.message,
                )
                return _ZoneDnsResult(zone_id=zone_id, totals=None)
            return _ZoneDnsResult(zone_id=zone_id, totals=totals)


def _complete_dns_total(zones: Sequence[ZoneMetrics]) -> int | None:
    # None keeps the snapshot eligible for a later backfill.
    if any(not zone.dns_complete for zone in zones):
        return None
    return sum(zone.dns_queries for zone in zones)


def _snapshot_dns(snapshot: MonthlySnapshot | None) -> int:
    if snapshot is None:
        return 0
    if snapshot.dns_queries is not None:
        return snapshot.dns_queries
    return sum(zone.dns_queries for zone in snapshot.zone_metrics)
