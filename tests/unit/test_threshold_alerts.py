from __future__ import annotations

from datetime import datetime

import pytest

from edge_usage.core.cache.store import MemoryKeyValueStore
from edge_usage.core.clients.webhook import WebhookDeliveryError
from edge_usage.core.usage.aggregation import aggregate_addon_metrics
from edge_usage.core.usage.models import (
    AddonMetrics,
    AddonUsage,
    AggregateMetrics,
    MetricsSnapshot,
    UsageTotals,
    ZoneBreakdown,
    ZoneMetrics,
)
from edge_usage.modules.alerts.service import (
    ThresholdAlertService,
    alert_marker_key,
    build_threshold_values,
)
from edge_usage.modules.config.schemas import DashboardConfig

pytestmark = pytest.mark.unit

WEBHOOK = "https://hooks.example.invalid/services/T000/B000/XXX"
MARCH = datetime(2025, 3, 20, 9, 0)


class RecordingSender:
    def __init__(self, error: WebhookDeliveryError | None = None) -> None:
        self.error = error
        self.calls: list[tuple[str, dict]] = []

    async def __call__(self, url: str, payload: dict, *, timeout_seconds: float) -> None:
        self.calls.append((url, payload))
        if self.error is not None:
            raise self.error


def _service(store, sender, dashboard_url: str | None = None) -> ThresholdAlertService:
    return ThresholdAlertService(store, dashboard_url=dashboard_url, sender=sender)


def test_alert_marker_key_sorts_account_ids():
    assert alert_marker_key(["b", "a"], "requests", "2025-03") == "alert-sent:a-b:requests:2025-03"


@pytest.mark.asyncio
async def test_alert_is_sent_once_per_metric_per_month():
    store = MemoryKeyValueStore()
    sender = RecordingSender()
    service = _service(store, sender)
    values = {"requests": 950, "bandwidth": 10}
    thresholds = {"requests": 1000, "bandwidth": 1000}

    first = await service.check(values, thresholds, webhook_url=WEBHOOK, account_ids=["acc-1"], now=MARCH)
    assert first.slack_sent is True
    assert first.alerts_triggered is True
    assert [alert.metric_key for alert in first.alerts] == ["requests"]
    assert first.alerts[0].percentage == 95.0
    assert len(sender.calls) == 1
    assert sender.calls[0][0] == WEBHOOK

    second = await service.check(values, thresholds, webhook_url=WEBHOOK, account_ids=["acc-1"], now=MARCH)
    assert second.slack_sent is False
    assert second.skipped == 1
    assert second.message == "All alerts already sent this month"
    assert len(sender.calls) == 1

    april = await service.check(
        values,
        thresholds,
        webhook_url=WEBHOOK,
        account_ids=["acc-1"],
        now=datetime(2025, 4, 2, 9, 0),
    )
    assert april.slack_sent is True
    assert len(sender.calls) == 2


@pytest.mark.asyncio
async def test_only_new_metrics_are_notified():
    store = MemoryKeyValueStore()
    sender = RecordingSender()
    service = _service(store, sender)
    thresholds = {"requests": 1000, "dnsQueries": 100}

    await service.check({"requests": 950}, thresholds, webhook_url=WEBHOOK, account_ids=["acc-1"], now=MARCH)
    result = await service.check(
        {"requests": 990, "dnsQueries": 95},
        thresholds,
        webhook_url=WEBHOOK,
        account_ids=["acc-1"],
        now=MARCH,
    )

    assert result.slack_sent is True
    assert result.skipped == 1
    assert [alert.metric_key for alert in result.alerts] == ["dnsQueries"]
    assert len(sender.calls) == 2


@pytest.mark.asyncio
async def test_markers_are_scoped_to_the_account_set():
    store = MemoryKeyValueStore()
    sender = RecordingSender()
    service = _service(store, sender)
    values = {"requests": 950}
    thresholds = {"requests": 1000}

    await service.check(values, thresholds, webhook_url=WEBHOOK, account_ids=["acc-1", "acc-2"], now=MARCH)
    await service.check(values, thresholds, webhook_url=WEBHOOK, account_ids=["acc-2", "acc-1"], now=MARCH)
    await service.check(values, thresholds, webhook_url=WEBHOOK, account_ids=["acc-3"], now=MARCH)

    assert len(sender.calls) == 2


@pytest.mark.asyncio
async def test_failed_delivery_reports_error_and_keeps_marker():
    store = MemoryKeyValueStore()
    sender = RecordingSender(WebhookDeliveryError("Webhook returned 500: oops", status_code=500))
    service = _service(store, sender)

    result = await service.check(
        {"requests": 950},
        {"requests": 1000},
        webhook_url=WEBHOOK,
        account_ids=["acc-1"],
        now=MARCH,
    )

    assert result.slack_sent is False
    assert result.alerts_triggered is True
    assert result.error == "Webhook returned 500: oops"
    assert await store.get(alert_marker_key(["acc-1"], "requests", "2025-03")) is True


@pytest.mark.asyncio
async def test_no_webhook_only_reports_alerts():
    store = MemoryKeyValueStore()
    sender = RecordingSender()
    service = _service(store, sender)

    result = await service.check(
        {"requests": 950},
        {"requests": 1000},
        webhook_url=None,
        account_ids=["acc-1"],
        now=MARCH,
    )

    assert result.alerts_triggered is True
    assert len(result.alerts) == 1
    assert sender.calls == []
    assert await store.list_keys("alert-sent:") == []


@pytest.mark.asyncio
async def test_below_threshold_sends_nothing():
    sender = RecordingSender()
    service = _service(MemoryKeyValueStore(), sender)

    result = await service.check(
        {"requests": 10},
        {"requests": 1000},
        webhook_url=WEBHOOK,
        account_ids=["acc-1"],
        now=MARCH,
    )

    assert result.alerts_triggered is False
    assert result.alerts == []
    assert sender.calls == []


@pytest.mark.asyncio
async def test_force_test_sends_without_touching_markers():
    store = MemoryKeyValueStore()
    sender = RecordingSender()
    service = _service(store, sender)

    result = await service.check(
        {"requests": 950, "zones": 3},
        {"requests": 1000},
        webhook_url=WEBHOOK,
        account_ids=["acc-1"],
        now=MARCH,
        force_test=True,
    )

    assert result.slack_sent is True
    assert result.message == "Test notification sent successfully"
    assert len(sender.calls) == 1
    assert await store.list_keys("alert-sent:") == []


@pytest.mark.asyncio
async def test_force_test_failure_is_reported():
    sender = RecordingSender(WebhookDeliveryError("timeout"))
    service = _service(MemoryKeyValueStore(), sender)

    result = await service.check(
        {},
        {},
        webhook_url=WEBHOOK,
        account_ids=["acc-1"],
        now=MARCH,
        force_test=True,
    )

    assert result.slack_sent is False
    assert result.error == "timeout"


def _snapshot() -> MetricsSnapshot:
    return MetricsSnapshot(
        core=AggregateMetrics(
            current=UsageTotals(requests=950, bytes=2_000, dns_queries=40),
            zone_breakdown=ZoneBreakdown(
                zones=[
                    ZoneMetrics(zone_id="z1", zone_name="a"),
                    ZoneMetrics(zone_id="z2", zone_name="b"),
                ]
            ),
        ),
        bot_management=AddonMetrics(current=AddonUsage(requests=99)),
    )


def test_build_threshold_values_from_snapshot():
    config = DashboardConfig.model_validate(
        {"applicationServices": {"botManagement": {"enabled": True, "zones": ["z1"]}}}
    )

    values = build_threshold_values(_snapshot(), config)

    assert values == {"zones": 2, "requests": 950, "bandwidth": 2_000, "dnsQueries": 40, "botManagement": 99}


def test_build_threshold_values_skips_addon_without_matching_zones():
    config = DashboardConfig.model_validate(
        {"applicationServices": {"apiShield": {"enabled": True, "zones": ["elsewhere"]}}}
    )
    snapshot = MetricsSnapshot(api_shield=aggregate_addon_metrics([], threshold=10))

    assert build_threshold_values(snapshot, config) == {"apiShield": None}


@pytest.mark.asyncio
async def test_check_snapshot_uses_saved_configuration():
    store = MemoryKeyValueStore()
    sender = RecordingSender()
    service = _service(store, sender, dashboard_url="https://dash.example.invalid")
    config = DashboardConfig.model_validate(
        {
            "accountIds": ["acc-1"],
            "alertsEnabled": True,
            "slackWebhook": WEBHOOK,
            "applicationServices": {"core": {"thresholdRequests": 1000, "thresholdZones": 2}},
        }
    )

    result = await service.check_snapshot(_snapshot(), config, now=MARCH)

    assert result is not None
    assert result.slack_sent is True
    assert [alert.metric_key for alert in result.alerts] == ["zones", "requests"]
    payload = sender.calls[0][1]
    assert payload["blocks"][-1]["elements"][0]["url"] == "https://dash.example.invalid"


@pytest.mark.asyncio
async def test_check_snapshot_skips_when_alerts_disabled():
    sender = RecordingSender()
    service = _service(MemoryKeyValueStore(), sender)
    config = DashboardConfig.model_validate(
        {"accountIds": ["acc-1"], "slackWebhook": WEBHOOK, "applicationServices": {"core": {"thresholdRequests": 1}}}
    )

    assert await service.check_snapshot(_snapshot(), config, now=MARCH) is None
    assert sender.calls == []
