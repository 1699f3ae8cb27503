from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Sequence

from edge_usage.core.cache.store import KeyValueStore
from edge_usage.core.clients.webhook import WebhookDeliveryError, post_webhook
from edge_usage.core.config.settings import Settings, get_settings
from edge_usage.core.metrics import get_metrics
from edge_usage.core.usage.models import MetricsSnapshot
from edge_usage.core.usage.periods import month_key
from edge_usage.core.usage.thresholds import ThresholdAlert, evaluate_thresholds
from edge_usage.db.kv_store import get_kv_store
from edge_usage.modules.alerts.messages import build_alert_message, build_test_message
from edge_usage.modules.alerts.schemas import ThresholdAlertEntry, ThresholdCheckResponse
from edge_usage.modules.config.schemas import ADDON_FIELDS, DashboardConfig

logger = logging.getLogger(__name__)

ALERT_MARKER_TTL_SECONDS = 45 * 24 * 60 * 60

WebhookSender = Callable[..., Awaitable[None]]


def alert_marker_key(account_ids: Sequence[str], metric_key: str, month: str) -> str:
    return f"alert-sent:{'-'.join(sorted(account_ids))}:{metric_key}:{month}"


def build_threshold_values(snapshot: MetricsSnapshot, config: DashboardConfig) -> dict[str, float | None]:
    """Current-month values per metric key, as the threshold check consumes them."""
    values: dict[str, float | None] = {}
    if snapshot.core is not None:
        values["zones"] = len(snapshot.core.zone_breakdown.zones)
        values["requests"] = snapshot.core.current.requests
        values["bandwidth"] = snapshot.core.current.bytes
        values["dnsQueries"] = snapshot.core.current.dns_queries
    for key, field_name in ADDON_FIELDS.items():
        addon = getattr(snapshot, field_name)
        if addon is not None and config.application_services.addon(key).enabled:
            values[key] = addon.current.requests if addon.current is not None else None
    return values


def _entry(alert: ThresholdAlert) -> ThresholdAlertEntry:
    return ThresholdAlertEntry(
        metric=alert.metric,
        metric_key=alert.metric_key,
        current=alert.current,
        threshold=alert.threshold,
        percentage=alert.percentage,
    )


class ThresholdAlertService:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        dashboard_url: str | None = None,
        webhook_timeout_seconds: float = 10.0,
        sender: WebhookSender = post_webhook,
    ) -> None:
        self._store = store
        self._dashboard_url = dashboard_url
        self._webhook_timeout_seconds = webhook_timeout_seconds
        self._sender = sender

    async def check(
        self,
        values: Mapping[str, float | None],
        thresholds: Mapping[str, float | None],
        *,
        webhook_url: str | None,
        account_ids: Sequence[str],
        now: datetime,
        force_test: bool = False,
    ) -> ThresholdCheckResponse:
        if force_test and webhook_url:
            return await self._send_test(values, account_ids, webhook_url=webhook_url, now=now)

        alerts = evaluate_thresholds(values, thresholds)
        if not alerts or not webhook_url:
            return ThresholdCheckResponse(alerts=[_entry(alert) for alert in alerts], alerts_triggered=bool(alerts))

        month = month_key(now)
        fresh: list[ThresholdAlert] = []
        for alert in alerts:
            marker = alert_marker_key(account_ids, alert.metric_key, month)
            if await self._store.get(marker) is not None:
                continue
            fresh.append(alert)
            # Written before delivery and never rolled back: at most one notification per metric per month.
            await self._store.put(marker, True, ttl_seconds=ALERT_MARKER_TTL_SECONDS)

        skipped = len(alerts) - len(fresh)
        if not fresh:
            get_metrics().observe_alert_notification("deduplicated")
            return ThresholdCheckResponse(
                alerts_triggered=True,
                slack_sent=False,
                skipped=skipped,
                message="All alerts already sent this month",
            )

        payload = build_alert_message(fresh, now=now, dashboard_url=self._dashboard_url)
        try:
            await self._deliver(webhook_url, payload)
        except WebhookDeliveryError as exc:
            get_metrics().observe_alert_notification("failed")
            logger.warning(
                "Threshold notification failed alerts=%s status=%s error=%s",
                len(fresh),
                exc.status_code,
                exc.message,
            )
            return ThresholdCheckResponse(
                alerts=[_entry(alert) for alert in alerts],
                alerts_triggered=True,
                slack_sent=False,
                skipped=skipped,
                error=exc.message,
            )

        get_metrics().observe_alert_notification("sent")
        logger.info(
            "Threshold notification sent metrics=%s skipped=%s",
            ",".join(alert.metric_key for alert in fresh),
            skipped,
        )
        return ThresholdCheckResponse(
            alerts=[_entry(alert) for alert in fresh],
            alerts_triggered=True,
            slack_sent=True,
            skipped=skipped,
        )

    async def check_snapshot(
        self,
        snapshot: MetricsSnapshot,
        config: DashboardConfig,
        *,
        now: datetime,
    ) -> ThresholdCheckResponse | None:
        if not config.alerts_enabled or not config.slack_webhook:
            logger.info("Skipping scheduled threshold check, alerts disabled or no webhook configured")
            return None
        return await self.check(
            build_threshold_values(snapshot, config),
            config.thresholds(),
            webhook_url=config.slack_webhook,
            account_ids=config.account_ids,
            now=now,
        )

    async def _send_test(
        self,
        values: Mapping[str, float | None],
        account_ids: Sequence[str],
        *,
        webhook_url: str,
        now: datetime,
    ) -> ThresholdCheckResponse:
        try:
            await self._deliver(webhook_url, build_test_message(values, account_ids, now=now))
        except WebhookDeliveryError as exc:
            get_metrics().observe_alert_notification("test_failed")
            logger.warning("Test notification failed status=%s error=%s", exc.status_code, exc.message)
            return ThresholdCheckResponse(
                slack_sent=False,
                message=f"Failed to send test notification: {exc.message}",
                error=exc.message,
            )
        get_metrics().observe_alert_notification("test_sent")
        return ThresholdCheckResponse(slack_sent=True, message="Test notification sent successfully")

    async def _deliver(self, webhook_url: str, payload: dict[str, Any]) -> None:
        await self._sender(webhook_url, payload, timeout_seconds=self._webhook_timeout_seconds)


def build_alert_service(
    settings: Settings | None = None,
    *,
    store: KeyValueStore | None = None,
) -> ThresholdAlertService:
    settings = settings or get_settings()
    return ThresholdAlertService(
        store or get_kv_store(),
        dashboard_url=settings.dashboard_url,
        webhook_timeout_seconds=settings.webhook_timeout_seconds,
    )
