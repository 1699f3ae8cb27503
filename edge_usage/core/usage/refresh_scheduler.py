from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field

from edge_usage.core.config.settings import Settings, get_settings
from edge_usage.core.errors import AllAccountsFailedError, ConfigurationError
from edge_usage.core.usage.models import MetricsSnapshot
from edge_usage.core.utils.time import utcnow
from edge_usage.db.kv_store import get_kv_store
from edge_usage.modules.alerts.schemas import ThresholdCheckResponse
from edge_usage.modules.alerts.service import build_alert_service
from edge_usage.modules.config.repository import ConfigRepository
from edge_usage.modules.dashboard.service import PrewarmOutcome, build_dashboard_service

logger = logging.getLogger(__name__)


async def prewarm_once(settings: Settings | None = None) -> PrewarmOutcome:
    settings = settings or get_settings()
    config = await ConfigRepository(get_kv_store()).get(settings.config_user_id)
    return await build_dashboard_service(settings).prewarm(config, now=utcnow())


async def check_thresholds_once(
    settings: Settings | None = None,
    *,
    snapshot: MetricsSnapshot | None = None,
) -> ThresholdCheckResponse | None:
    settings = settings or get_settings()
    config = await ConfigRepository(get_kv_store()).get(settings.config_user_id)
    if not config.alerts_enabled or not config.slack_webhook:
        logger.info("Threshold check skipped, alerts disabled or no webhook configured")
        return None
    now = utcnow()
    if snapshot is None:
        if not config.account_ids:
            logger.info("Threshold check skipped, no accounts configured")
            return None
        snapshot = await build_dashboard_service(settings).build_snapshot(config.account_ids, config, now=now)
    return await build_alert_service(settings).check_snapshot(snapshot, config, now=now)


@dataclass(slots=True)
class DashboardRefreshScheduler:
    interval_seconds: int
    prewarm_enabled: bool
    threshold_check_enabled: bool
    _task: asyncio.Task[None] | None = None
    _stop: asyncio.Event = field(default_factory=asyncio.Event)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def enabled(self) -> bool:
        return self.prewarm_enabled or self.threshold_check_enabled

    async def start(self) -> None:
        if not self.enabled:
            return
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop.set()
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run_loop(self) -> None:
        while not self._stop.is_set():
            await self._refresh_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _refresh_once(self) -> None:
        async with self._lock:
            snapshot: MetricsSnapshot | None = None
            try:
                if self.prewarm_enabled:
                    snapshot = (await prewarm_once()).snapshot
                if self.threshold_check_enabled:
                    await check_thresholds_once(snapshot=snapshot)
            except ConfigurationError as exc:
                logger.info("Dashboard refresh skipped code=%s reason=%s", exc.code, exc.message)
            except AllAccountsFailedError as exc:
                logger.warning("Dashboard refresh failed accounts=%s error=%s", len(exc.account_ids), exc)
            except Exception:
                logger.exception("Dashboard refresh loop failed")

            try:
                purged = await get_kv_store().purge_expired()
            except Exception:
                logger.exception("Expired cache purge failed")
            else:
                if purged:
                    logger.debug("Purged expired cache entries count=%s", purged)


def build_refresh_scheduler() -> DashboardRefreshScheduler:
    settings = get_settings()
    return DashboardRefreshScheduler(
        interval_seconds=settings.prewarm_interval_seconds,
        prewarm_enabled=settings.prewarm_enabled,
        threshold_check_enabled=settings.threshold_check_enabled,
    )
