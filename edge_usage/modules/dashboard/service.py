from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

from edge_usage.core.cache.store import KeyValueStore
from edge_usage.core.cache.versioned import CacheFamily, VersionedCache
from edge_usage.core.clients.analytics import build_analytics_client
from edge_usage.core.config.settings import Settings, get_settings
from edge_usage.core.errors import AllAccountsFailedError, NoAccountsConfiguredError
from edge_usage.core.metrics import get_metrics
from edge_usage.core.usage.aggregation import aggregate_account_metrics, aggregate_addon_metrics
from edge_usage.core.usage.models import (
    AccountMetrics,
    AddonAccountMetrics,
    AddonMetrics,
    AggregateMetrics,
    MetricsSnapshot,
    ZoneInfo,
    ZonesSummary,
)
from edge_usage.core.utils.time import to_epoch_seconds, utcnow
from edge_usage.db.kv_store import get_kv_store
from edge_usage.modules.addons.bot_management import BotManagementFetcher
from edge_usage.modules.addons.zone_filtered import ZoneFilteredAddonCalculator
from edge_usage.modules.config.schemas import (
    ADDON_FIELDS,
    ZONE_FILTERED_ADDONS,
    DashboardConfig,
    normalize_account_ids,
)
from edge_usage.modules.dashboard.schemas import (
    CacheStatusResponse,
    Phase,
    ProgressiveMetricsResponse,
)
from edge_usage.modules.usage.fetcher import AccountMetricsFetcher
from edge_usage.modules.usage.zones import ZoneDirectory

logger = logging.getLogger(__name__)

_ResultT = TypeVar("_ResultT")

PREWARM_CACHE = CacheFamily(
    name="pre_warmed",
    prefix="pre-warmed",
    ttl_seconds=6 * 60 * 60,
    version=1,
)


def account_set_key(account_ids: Sequence[str]) -> str:
    return ",".join(sorted(account_ids))


def resolve_account_ids(
    account_ids: Sequence[str] | None,
    account_id: str | None,
    config: DashboardConfig,
) -> list[str]:
    """Request IDs win, then a legacy scalar, then the saved configuration."""
    if account_ids:
        resolved = normalize_account_ids(account_ids)
    elif account_id:
        resolved = normalize_account_ids([account_id])
    else:
        resolved = list(config.account_ids)
    if not resolved:
        raise NoAccountsConfiguredError()
    return resolved


def snapshot_is_complete(data: Any, config: DashboardConfig) -> bool:
    """True when the cached payload carries every feature the configuration enables right now."""
    if not isinstance(data, dict):
        return False
    services = config.application_services
    if services.core.enabled and not data.get("core"):
        return False
    for key in ADDON_FIELDS:
        if not services.addon(key).enabled:
            continue
        addon = data.get(key)
        if not isinstance(addon, dict) or addon.get("timeSeries") is None or addon.get("perAccountData") is None:
            return False
    return True


@dataclass(frozen=True, slots=True)
class _Settled(Generic[_ResultT]):
    account_id: str
    value: _ResultT | None = None
    error: Exception | None = None


@dataclass(frozen=True, slots=True)
class PrewarmOutcome:
    account_ids: list[str]
    snapshot: MetricsSnapshot
    cached_at: datetime
    duration_seconds: float


class DashboardMetricsService:
    def __init__(
        self,
        fetcher: AccountMetricsFetcher,
        addons: ZoneFilteredAddonCalculator,
        bot_management: BotManagementFetcher,
        cache: VersionedCache,
        *,
        account_concurrency: int = 5,
    ) -> None:
        self._fetcher = fetcher
        self._addons = addons
        self._bot_management = bot_management
        self._cache = cache
        self._account_concurrency = account_concurrency

    @property
    def zones(self) -> ZoneDirectory:
        return self._fetcher.zones

    async def get_progressive(
        self,
        account_ids: Sequence[str],
        phase: Phase,
        config: DashboardConfig,
        *,
        now: datetime,
    ) -> ProgressiveMetricsResponse:
        cached = await self._cache.get_raw(PREWARM_CACHE, PREWARM_CACHE.key(account_set_key(account_ids)), now=now)
        if cached is not None:
            data, cached_at = cached
            if snapshot_is_complete(data, config):
                response = ProgressiveMetricsResponse.model_validate({**data, "phase": "cached"})
                response.cache_age_seconds = max(0.0, (now - cached_at).total_seconds())
                return response
            logger.info("Pre-warmed snapshot incomplete for current configuration, recomputing phase=%s", phase)

        if phase == 1:
            return await self._phase_one(account_ids, now=now)
        if phase == 2:
            return await self._phase_two(account_ids, now=now)
        snapshot = await self.build_snapshot(account_ids, config, now=now)
        return ProgressiveMetricsResponse(phase=3, **dict(snapshot))

    async def build_snapshot(
        self,
        account_ids: Sequence[str],
        config: DashboardConfig,
        *,
        now: datetime,
    ) -> MetricsSnapshot:
        services = config.application_services
        zone_addons = [key for key in ZONE_FILTERED_ADDONS if services.addon(key).enabled]
        snapshot = MetricsSnapshot()

        accounts: list[AccountMetrics] | None = []
        if services.core.enabled or any(services.addon(key).active for key in zone_addons):
            try:
                core = await self._fetch_accounts(account_ids, now=now)
            except AllAccountsFailedError:
                if services.core.enabled or not services.bot_management.enabled:
                    raise
                logger.warning(
                    "No account metrics available, skipping zone-filtered add-ons accounts=%s",
                    ",".join(account_ids),
                )
                accounts = None
            else:
                accounts = core.per_account_data
                if services.core.enabled:
                    snapshot.core = core

        if accounts is not None:
            for key in zone_addons:
                per_account = await self._zone_filtered(key, accounts, config, now=now)
                setattr(
                    snapshot,
                    ADDON_FIELDS[key],
                    aggregate_addon_metrics(per_account, threshold=services.addon(key).threshold),
                )

        if services.bot_management.enabled:
            snapshot.bot_management = await self._bot_management_metrics(
                account_ids,
                accounts or [],
                config,
                now=now,
            )
        return snapshot

    async def prewarm(
        self,
        config: DashboardConfig,
        *,
        account_ids: Sequence[str] | None = None,
        now: datetime | None = None,
    ) -> PrewarmOutcome:
        account_ids = resolve_account_ids(account_ids, None, config)
        started = time.monotonic()
        now = now or utcnow()
        snapshot = await self.build_snapshot(account_ids, config, now=now)
        snapshot.zones = await self.list_zones(account_ids)
        await self._cache.put(PREWARM_CACHE, PREWARM_CACHE.key(account_set_key(account_ids)), snapshot, now=now)

        duration = time.monotonic() - started
        get_metrics().observe_prewarm(duration, finished_at_epoch=to_epoch_seconds(utcnow()))
        logger.info(
            "Pre-warmed dashboard snapshot accounts=%s duration_seconds=%.2f",
            len(account_ids),
            duration,
        )
        return PrewarmOutcome(account_ids=account_ids, snapshot=snapshot, cached_at=now, duration_seconds=duration)

    async def get_cache_status(self, account_ids: Sequence[str], *, now: datetime) -> CacheStatusResponse:
        cached = await self._cache.get_raw(PREWARM_CACHE, PREWARM_CACHE.key(account_set_key(account_ids)), now=now)
        if cached is None:
            return CacheStatusResponse(cached=False, account_ids=list(account_ids))
        age_seconds = max(0, int((now - cached[1]).total_seconds()))
        return CacheStatusResponse(
            cached=True,
            age_seconds=age_seconds,
            age_minutes=age_seconds // 60,
            account_ids=list(account_ids),
        )

    async def list_zones(self, account_ids: Sequence[str]) -> ZonesSummary:
        total = 0
        enterprise: list[ZoneInfo] = []
        for outcome in await self._settle(account_ids, self.zones.all_zones, label="zone listing"):
            if outcome.value is None:
                continue
            total += len(outcome.value)
            enterprise.extend(
                zone.model_copy(update={"account_id": outcome.account_id})
                for zone in outcome.value
                if zone.is_enterprise
            )
        return ZonesSummary(total=total, enterprise=len(enterprise), zones=enterprise)

    async def _phase_one(self, account_ids: Sequence[str], *, now: datetime) -> ProgressiveMetricsResponse:
        async def _zones(account_id: str) -> list[ZoneInfo]:
            return await self.zones.enterprise_zones(account_id, now=now)

        outcomes = await self._settle(account_ids, _zones, label="zone discovery")
        zones_count = sum(len(outcome.value) for outcome in outcomes if outcome.value is not None)
        return ProgressiveMetricsResponse(phase=1, loading=True, zones_count=zones_count, core=AggregateMetrics())

    async def _phase_two(self, account_ids: Sequence[str], *, now: datetime) -> ProgressiveMetricsResponse:
        core = await self._fetch_accounts(account_ids, now=now)
        # History is deferred to phase 3.
        core.time_series = []
        for account in core.per_account_data:
            account.time_series = []
        return ProgressiveMetricsResponse(
            phase=2,
            loading=True,
            zones_count=len(core.zone_breakdown.zones),
            core=core,
        )

    async def _fetch_accounts(self, account_ids: Sequence[str], *, now: datetime) -> AggregateMetrics:
        async def _fetch(account_id: str) -> AccountMetrics:
            return await self._fetcher.fetch(account_id, now=now)

        outcomes = await self._settle(account_ids, _fetch, label="account metrics")
        succeeded = [outcome.value for outcome in outcomes if outcome.value is not None]
        failed = [outcome for outcome in outcomes if outcome.error is not None]
        for _ in failed:
            get_metrics().inc_account_fetch_failure()
        if not succeeded:
            last_error = failed[-1].error if failed else None
            raise AllAccountsFailedError(list(account_ids), last_error)
        return aggregate_account_metrics(succeeded, failed_accounts=[outcome.account_id for outcome in failed])

    async def _zone_filtered(
        self,
        addon_key: str,
        accounts: Sequence[AccountMetrics],
        config: DashboardConfig,
        *,
        now: datetime,
    ) -> list[AddonAccountMetrics]:
        addon_config = config.application_services.addon(addon_key)
        by_account = {account.account_id: account for account in accounts}

        async def _calculate(account_id: str) -> AddonAccountMetrics | None:
            return await self._addons.calculate(addon_key, by_account[account_id], addon_config, now=now)

        outcomes = await self._settle(list(by_account), _calculate, label=f"{addon_key} add-on")
        return [outcome.value for outcome in outcomes if outcome.value is not None]

    async def _bot_management_metrics(
        self,
        account_ids: Sequence[str],
        accounts: Sequence[AccountMetrics],
        config: DashboardConfig,
        *,
        now: datetime,
    ) -> AddonMetrics:
        bot_config = config.application_services.bot_management
        names = {account.account_id: account.account_name for account in accounts}

        async def _fetch(account_id: str) -> AddonAccountMetrics | None:
            return await self._bot_management.fetch(
                account_id,
                bot_config,
                now=now,
                account_name=names.get(account_id),
            )

        outcomes = await self._settle(account_ids, _fetch, label="bot management")
        per_account = [outcome.value for outcome in outcomes if outcome.value is not None]
        return aggregate_addon_metrics(per_account, threshold=bot_config.threshold, dedupe_zone_ids=True)

    async def _settle(
        self,
        account_ids: Sequence[str],
        call: Callable[[str], Awaitable[_ResultT]],
        *,
        label: str,
    ) -> list[_Settled[_ResultT]]:
        """Run `call` for every account; one account failing never drops the others."""
        semaphore = asyncio.Semaphore(self._account_concurrency)

        async def _run(account_id: str) -> _ResultT:
            async with semaphore:
                return await call(account_id)

        results = await asyncio.gather(*(_run(account_id) for account_id in account_ids), return_exceptions=True)
        settled: list[_Settled[_ResultT]] = []
        for account_id, result in zip(account_ids, results):
            if isinstance(result, Exception):
                logger.warning("Per-account step failed step=%s account_id=%s", label, account_id, exc_info=result)
                settled.append(_Settled(account_id=account_id, error=result))
            elif isinstance(result, BaseException):
                raise result
            else:
                settled.append(_Settled(account_id=account_id, value=result))
        return settled


def build_dashboard_service(
    settings: Settings | None = None,
    *,
    store: KeyValueStore | None = None,
) -> DashboardMetricsService:
    settings = settings or get_settings()
    source = build_analytics_client(settings)
    cache = VersionedCache(store or get_kv_store())
    zones = ZoneDirectory(source, cache)
    return DashboardMetricsService(
        AccountMetricsFetcher(source, cache, zones=zones, zone_concurrency=settings.zone_query_concurrency),
        ZoneFilteredAddonCalculator(cache),
        BotManagementFetcher(source, cache, zones=zones, zone_concurrency=settings.zone_query_concurrency),
        cache,
        account_concurrency=settings.account_fetch_concurrency,
    )
