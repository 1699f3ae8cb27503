from __future__ import annotations

import pytest

from edge_usage.core.cache.store import MemoryKeyValueStore
from edge_usage.modules.config.repository import ConfigRepository, config_key
from edge_usage.modules.config.schemas import DashboardConfig, normalize_account_ids

pytestmark = pytest.mark.unit


def test_normalize_account_ids_trims_and_dedupes():
    assert normalize_account_ids([" a ", "b", "", "a", "  "]) == ["a", "b"]


def test_defaults():
    config = DashboardConfig()
    assert config.account_ids == []
    assert config.application_services.core.enabled is True
    assert config.application_services.bot_management.enabled is False
    assert config.slack_webhook is None
    assert config.alerts_enabled is False


def test_legacy_single_account_and_top_level_thresholds_migrate():
    config = DashboardConfig.model_validate(
        {
            "accountId": "acc-legacy",
            "thresholdZones": 20,
            "primaryZones": 15,
            "secondaryZones": 5,
            "thresholdRequests": 1_000_000,
            "thresholdBandwidth": 10 * 1024**4,
            "thresholdDnsQueries": 500_000,
        }
    )

    assert config.account_ids == ["acc-legacy"]
    core = config.application_services.core
    assert core.threshold_zones == 20
    assert core.primary_zones == 15
    assert core.secondary_zones == 5
    assert core.threshold_requests == 1_000_000
    assert core.threshold_bandwidth == 10 * 1024**4
    assert core.threshold_dns_queries == 500_000


def test_nested_core_thresholds_win_over_legacy_fields():
    config = DashboardConfig.model_validate(
        {
            "accountIds": ["acc-1"],
            "accountId": "ignored",
            "thresholdRequests": 1,
            "applicationServices": {"core": {"thresholdRequests": 2}},
        }
    )
    assert config.account_ids == ["acc-1"]
    assert config.application_services.core.threshold_requests == 2


def test_blank_webhook_is_none():
    assert DashboardConfig.model_validate({"slackWebhook": "   "}).slack_webhook is None


def test_addon_is_active_only_with_zones():
    config = DashboardConfig.model_validate(
        {
            "applicationServices": {
                "apiShield": {"enabled": True, "zones": []},
                "pageShield": {"enabled": True, "zones": ["z1"]},
                "botManagement": {"enabled": False, "zones": ["z1"]},
            }
        }
    )
    services = config.application_services
    assert services.addon("apiShield").active is False
    assert services.addon("pageShield").active is True
    assert services.addon("botManagement").active is False


def test_thresholds_include_addons_only_when_enabled():
    config = DashboardConfig.model_validate(
        {
            "applicationServices": {
                "core": {"thresholdRequests": 100},
                "botManagement": {"enabled": True, "threshold": 50, "zones": ["z1"]},
                "apiShield": {"enabled": False, "threshold": 75},
            }
        }
    )
    thresholds = config.thresholds()
    assert thresholds["requests"] == 100
    assert thresholds["zones"] is None
    assert thresholds["botManagement"] == 50
    assert thresholds["apiShield"] is None


def test_serializes_with_camel_case_keys():
    payload = DashboardConfig(account_ids=["acc-1"]).model_dump(mode="json", by_alias=True)
    assert payload["accountIds"] == ["acc-1"]
    assert payload["applicationServices"]["advancedRateLimiting"]["enabled"] is False
    assert payload["applicationServices"]["core"]["thresholdDnsQueries"] is None


@pytest.mark.asyncio
async def test_repository_round_trip_and_defaults():
    store = MemoryKeyValueStore()
    repository = ConfigRepository(store)

    assert (await repository.get("default")).account_ids == []

    await repository.save("default", DashboardConfig(account_ids=["acc-1", "acc-2"], alerts_enabled=True))
    loaded = await repository.get("default")
    assert loaded.account_ids == ["acc-1", "acc-2"]
    assert loaded.alerts_enabled is True
    assert (await store.get(config_key("default")))["alertsEnabled"] is True
    assert (await repository.get("someone-else")).account_ids == []


@pytest.mark.asyncio
async def test_repository_migrates_stored_legacy_record():
    store = MemoryKeyValueStore()
    await store.put(config_key("default"), {"accountId": "acc-old", "thresholdRequests": 10})

    config = await ConfigRepository(store).get("default")
    assert config.account_ids == ["acc-old"]
    assert config.application_services.core.threshold_requests == 10


@pytest.mark.asyncio
async def test_repository_falls_back_to_defaults_for_unreadable_record():
    store = MemoryKeyValueStore()
    await store.put(config_key("default"), {"accountIds": "not-a-list", "alertsEnabled": "maybe"})

    config = await ConfigRepository(store).get("default")
    assert config == DashboardConfig()
