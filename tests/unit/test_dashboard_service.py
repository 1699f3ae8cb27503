from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from edge_usage.core.cache.store import MemoryKeyValueStore
from edge_usage.core.cache.versioned import VersionedCache
from edge_usage.core.clients.analytics import BotTrafficTotals
from edge_usage.core.errors import AllAccountsFailedError, NoAccountsConfiguredError
from edge_usage.core.usage.aggregation import aggregate_addon_metrics
from edge_usage.core.usage.models import AggregateMetrics, MetricsSnapshot, ZoneInfo
from edge_usage.modules.addons.bot_management import BotManagementFetcher
from edge_usage.modules.addons.zone_filtered import ZoneFilteredAddonCalculator
from edge_usage.modules.config.schemas import DashboardConfig
from edge_usage.modules.dashboard.service import (
    PREWARM_CACHE,
    DashboardMetricsService,
    account_set_key,
    resolve_account_ids,
    snapshot_is_complete,
)
from edge_usage.modules.usage.fetcher import AccountMetricsFetcher
from edge_usage.modules.usage.zones import ZoneDirectory

pytestmark = pytest.mark.unit

NOW = datetime(2025, 3, 15, 12, 0)


def _config(**services) -> DashboardConfig:
    return DashboardConfig.model_validate({"accountIds": ["acc-1"], "applicationServices": services})


def test_account_set_key_is_order_independent():
    assert account_set_key(["b", "a", "c"]) == account_set_key(["c", "b", "a"]) == "a,b,c"


def test_resolve_account_ids_precedence():
    config = DashboardConfig(account_ids=["saved"])
    assert resolve_account_ids(["req-1", "req-1", " req-2 "], "legacy", config) == ["req-1", "req-2"]
    assert resolve_account_ids(None, "legacy", config) == ["legacy"]
    assert resolve_account_ids([], None, config) == ["saved"]
    with pytest.raises(NoAccountsConfiguredError):
        resolve_account_ids(None, None, DashboardConfig())


def test_snapshot_completeness_follows_enabled_features():
    core_only = MetricsSnapshot(core=AggregateMetrics()).model_dump(mode="json", by_alias=True)
    assert snapshot_is_complete(core_only, _config()) is True
    assert snapshot_is_complete(core_only, _config(botManagement={"enabled": True, "zones": ["z1"]})) is False
    assert snapshot_is_complete(core_only, _config(botManagement={"enabled": True, "zones": []})) is False
    assert snapshot_is_complete({}, _config()) is False
    assert snapshot_is_complete(None, _config()) is False

    with_unmatched_bots = MetricsSnapshot(
        core=AggregateMetrics(),
        bot_management=aggregate_addon_metrics([], threshold=None),
    ).model_dump(mode="json", by_alias=True)
    assert snapshot_is_complete(with_unmatched_bots, _config(botManagement={"enabled": True, "zones": []})) is True


@pytest.mark.asyncio
async def test_build_snapshot_with_core_only(analytics_stub, service_factory):
    service = service_factory(analytics_stub, MemoryKeyValueStore())

    snapshot = await service.build_snapshot(["acc-1"], _config(), now=NOW)

    assert snapshot.core is not None
    assert snapshot.core.current.requests == 1_500
    assert snapshot.bot_management is None
    assert snapshot.api_shield is None
    assert snapshot.page_shield is None
    assert snapshot.advanced_rate_limiting is None


@pytest.mark.asyncio
async def test_addons_are_absent_when_disabled_and_empty_when_unmatched(analytics_stub, service_factory):
    service = service_factory(analytics_stub, MemoryKeyValueStore())
    config = _config(
        apiShield={"enabled": True, "zones": ["z1"], "threshold": 5_000},
        pageShield={"enabled": True, "zones": ["somewhere-else"]},
    )

    snapshot = await service.build_snapshot(["acc-1"], config, now=NOW)

    assert snapshot.api_shield is not None
    assert snapshot.api_shield.current.requests == 1_000
    assert snapshot.api_shield.threshold == 5_000
    assert snapshot.page_shield is not None
    assert snapshot.page_shield.current is None
    assert snapshot.page_shield.previous is None
    assert snapshot.page_shield.time_series == []
    assert snapshot.page_shield.per_account_data == []
    assert snapshot.advanced_rate_limiting is None


@pytest.mark.asyncio
async def test_zone_filtered_addons_still_fetch_accounts_when_core_disabled(analytics_stub, service_factory):
    service = service_factory(analytics_stub, MemoryKeyValueStore())
    config = _config(core={"enabled": False}, apiShield={"enabled": True, "zones": ["z2"]})

    snapshot = await service.build_snapshot(["acc-1"], config, now=NOW)

    assert snapshot.core is None
    assert snapshot.api_shield is not None
    assert snapshot.api_shield.current.requests == 500


@pytest.mark.asyncio
async def test_one_failing_account_is_reported_not_fatal(analytics_stub, service_factory):
    analytics_stub.failing_accounts = {"acc-broken"}
    service = service_factory(analytics_stub, MemoryKeyValueStore())

    snapshot = await service.build_snapshot(["acc-1", "acc-broken"], _config(), now=NOW)

    assert snapshot.core is not None
    assert snapshot.core.failed_accounts == ["acc-broken"]
    assert [account.account_id for account in snapshot.core.per_account_data] == ["acc-1"]


@pytest.mark.asyncio
async def test_all_accounts_failing_raises(analytics_stub, service_factory):
    analytics_stub.failing_accounts = {"acc-1", "acc-2"}
    service = service_factory(analytics_stub, MemoryKeyValueStore())

    with pytest.raises(AllAccountsFailedError) as exc_info:
        await service.build_snapshot(["acc-1", "acc-2"], _config(), now=NOW)
    assert exc_info.value.account_ids == ["acc-1", "acc-2"]
    assert exc_info.value.last_error is not None


@pytest.mark.asyncio
async def test_bot_management_survives_when_every_account_fetch_fails(analytics_stub, service_factory):
    analytics_stub.traffic = {}
    analytics_stub.bots = {
        "z1": BotTrafficTotals(likely_human=300, automated=20, likely_automated=10, verified_bot=5),
    }
    service = service_factory(analytics_stub, MemoryKeyValueStore())
    config = _config(
        core={"enabled": False},
        apiShield={"enabled": True, "zones": ["z1"]},
        botManagement={"enabled": True, "zones": ["z1"]},
    )

    snapshot = await service.build_snapshot(["acc-1"], config, now=NOW)

    assert snapshot.core is None
    assert snapshot.api_shield is None
    assert snapshot.bot_management is not None
    assert snapshot.bot_management.current is not None
    assert snapshot.bot_management.current.requests == 300


@pytest.mark.asyncio
async def test_every_account_failing_without_bot_management_still_raises(analytics_stub, service_factory):
    analytics_stub.traffic = {}
    service = service_factory(analytics_stub, MemoryKeyValueStore())
    config = _config(core={"enabled": False}, apiShield={"enabled": True, "zones": ["z1"]})

    with pytest.raises(AllAccountsFailedError):
        await service.build_snapshot(["acc-1"], config, now=NOW)


class _BrokenForAccount(ZoneFilteredAddonCalculator):
    def __init__(self, cache: VersionedCache, account_id: str) -> None:
        super().__init__(cache)
        self._broken = account_id

    async def calculate(self, addon_key, account, config, *, now):
        if account.account_id == self._broken:
            raise RuntimeError("history write failed")
        return await super().calculate(addon_key, account, config, now=now)


@pytest.mark.asyncio
async def test_zone_filtered_addon_failure_for_one_account_keeps_the_rest(analytics_stub):
    analytics_stub.zones["acc-2"] = [ZoneInfo(id="z3", name="z3.example.com", plan_legacy_id="enterprise")]
    analytics_stub.traffic["z3"] = (200, 1024**3)
    cache = VersionedCache(MemoryKeyValueStore())
    zones = ZoneDirectory(analytics_stub, cache)
    service = DashboardMetricsService(
        AccountMetricsFetcher(analytics_stub, cache, zones=zones),
        _BrokenForAccount(cache, "acc-2"),
        BotManagementFetcher(analytics_stub, cache, zones=zones),
        cache,
    )
    config = _config(apiShield={"enabled": True, "zones": ["z1", "z3"]})

    snapshot = await service.build_snapshot(["acc-1", "acc-2"], config, now=NOW)

    assert snapshot.core is not None
    assert snapshot.core.current.requests == 1_700
    assert snapshot.api_shield is not None
    assert snapshot.api_shield.current is not None
    assert snapshot.api_shield.current.requests == 1_000
    assert [account.account_id for account in snapshot.api_shield.per_account_data] == ["acc-1"]


@pytest.mark.asyncio
async def test_enabled_addon_without_zones_is_cached_as_not_applicable(analytics_stub, service_factory):
    service = service_factory(analytics_stub, MemoryKeyValueStore())
    config = _config(botManagement={"enabled": True, "zones": []})

    outcome = await service.prewarm(config, account_ids=["acc-1"], now=NOW)
    assert outcome.snapshot.bot_management is not None
    assert outcome.snapshot.bot_management.current is None
    assert outcome.snapshot.bot_management.per_account_data == []
    assert not any(call[0] == "bot_totals" for call in analytics_stub.calls)

    response = await service.get_progressive(["acc-1"], 1, config, now=NOW + timedelta(minutes=1))
    assert response.phase == "cached"


@pytest.mark.asyncio
async def test_progressive_phases(analytics_stub, service_factory):
    service = service_factory(analytics_stub, MemoryKeyValueStore())
    config = _config()

    phase_one = await service.get_progressive(["acc-1"], 1, config, now=NOW)
    assert phase_one.phase == 1
    assert phase_one.loading is True
    assert phase_one.zones_count == 2
    assert phase_one.core is not None
    assert phase_one.core.current.requests == 0
    assert not any(call[0] == "http_totals" for call in analytics_stub.calls)

    phase_two = await service.get_progressive(["acc-1"], 2, config, now=NOW)
    assert phase_two.phase == 2
    assert phase_two.core is not None
    assert phase_two.core.current.requests == 1_500
    assert phase_two.core.time_series == []
    assert phase_two.core.per_account_data[0].time_series == []

    phase_three = await service.get_progressive(["acc-1"], 3, config, now=NOW)
    assert phase_three.phase == 3
    assert phase_three.loading is False
    assert phase_three.core is not None
    assert [point.month for point in phase_three.core.time_series] == ["2025-02", "2025-03"]


@pytest.mark.asyncio
async def test_prewarmed_snapshot_is_served_for_any_phase(analytics_stub, service_factory):
    store = MemoryKeyValueStore()
    service = service_factory(analytics_stub, store)
    config = _config()

    outcome = await service.prewarm(config, account_ids=["acc-1"], now=NOW)
    assert outcome.account_ids == ["acc-1"]
    assert outcome.snapshot.zones is not None
    assert outcome.snapshot.zones.enterprise == 2

    later = NOW + timedelta(minutes=3)
    response = await service.get_progressive(["acc-1"], 1, config, now=later)
    assert response.phase == "cached"
    assert response.cache_age_seconds == 180
    assert response.core is not None
    assert response.core.current.requests == 1_500

    status = await service.get_cache_status(["acc-1"], now=later)
    assert status.cached is True
    assert status.age_seconds == 180
    assert status.age_minutes == 3

    missing = await service.get_cache_status(["acc-2"], now=later)
    assert missing.cached is False
    assert missing.age_seconds is None


@pytest.mark.asyncio
async def test_prewarmed_snapshot_missing_enabled_addon_is_recomputed(analytics_stub, service_factory):
    store = MemoryKeyValueStore()
    service = service_factory(analytics_stub, store)
    cache = VersionedCache(store)
    await cache.put(
        PREWARM_CACHE,
        PREWARM_CACHE.key(account_set_key(["acc-1"])),
        MetricsSnapshot(core=AggregateMetrics()),
        now=NOW,
    )

    served = await service.get_progressive(["acc-1"], 1, _config(), now=NOW)
    assert served.phase == "cached"

    recomputed = await service.get_progressive(
        ["acc-1"],
        1,
        _config(botManagement={"enabled": True, "zones": ["z1"]}),
        now=NOW,
    )
    assert recomputed.phase == 1


@pytest.mark.asyncio
async def test_list_zones_keeps_enterprise_zones_with_owner(analytics_stub, service_factory):
    analytics_stub.zones["acc-2"] = [
        ZoneInfo(id="z9", name="pro.example.com", plan_name="Pro Website"),
        ZoneInfo(id="z8", name="ent.example.com", plan_name="Enterprise Website"),
    ]
    analytics_stub.failing_accounts = {"acc-3"}
    service = service_factory(analytics_stub, MemoryKeyValueStore())

    summary = await service.list_zones(["acc-1", "acc-2", "acc-3"])

    assert summary.total == 4
    assert summary.enterprise == 3
    assert [(zone.id, zone.account_id) for zone in summary.zones] == [
        ("z1", "acc-1"),
        ("z2", "acc-1"),
        ("z8", "acc-2"),
    ]
