from __future__ import annotations

import logging
from datetime import datetime
from typing import Sequence

from edge_usage.core.cache.versioned import VersionedCache
from edge_usage.core.usage.models import (
    AccountMetrics,
    AddonAccountMetrics,
    AddonMonthlySnapshot,
    AddonUsage,
    AddonUsagePoint,
    AddonZoneUsage,
    ZoneMetrics,
)
from edge_usage.core.usage.periods import month_key, month_start, previous_month_closed, previous_period
from edge_usage.modules.config.schemas import AddonServiceConfig
from edge_usage.modules.usage.history import MonthlyHistory, addon_history, addon_monthly_history

logger = logging.getLogger(__name__)


def _filter_zones(zones: Sequence[ZoneMetrics], wanted: set[str]) -> list[AddonZoneUsage]:
    return [
        AddonZoneUsage(zone_id=zone.zone_id, zone_name=zone.zone_name, requests=zone.requests)
        for zone in zones
        if zone.zone_id in wanted
    ]


class ZoneFilteredAddonCalculator:
    """Derives API Shield / Page Shield / Advanced Rate Limiting usage from the HTTP zone breakdown."""

    def __init__(self, cache: VersionedCache) -> None:
        self._cache = cache
        self._histories: dict[str, MonthlyHistory[AddonMonthlySnapshot]] = {}

    def _history(self, addon_key: str) -> MonthlyHistory[AddonMonthlySnapshot]:
        history = self._histories.get(addon_key)
        if history is None:
            history = addon_monthly_history(self._cache, addon_history(addon_key))
            self._histories[addon_key] = history
        return history

    async def calculate(
        self,
        addon_key: str,
        account: AccountMetrics,
        config: AddonServiceConfig,
        *,
        now: datetime,
    ) -> AddonAccountMetrics | None:
        if not config.active:
            return None
        wanted = set(config.zones)
        current_zones = _filter_zones(account.zone_breakdown.zones, wanted)
        previous_zones = _filter_zones(account.previous_month_zone_breakdown.zones, wanted)
        if not current_zones and not previous_zones:
            return None

        confidence = account.current.confidence.requests if account.current.confidence is not None else None
        current = AddonUsage(
            requests=sum(zone.requests for zone in current_zones),
            zones=current_zones,
            confidence=confidence,
        )
        previous = AddonUsage(requests=sum(zone.requests for zone in previous_zones), zones=previous_zones)

        history = self._history(addon_key)
        period = previous_period(now)
        if previous_month_closed(now) and previous.requests > 0:
            stored = await history.load(account.account_id, period.month, now=now)
            if stored is None or stored.requests != previous.requests:
                await history.save(
                    account.account_id,
                    period.month,
                    AddonMonthlySnapshot(requests=previous.requests, zones=previous_zones),
                    now=now,
                )
                logger.info(
                    "Stored add-on month addon=%s account_id=%s month=%s",
                    addon_key,
                    account.account_id,
                    period.month,
                )

        points = {
            entry.month: AddonUsagePoint(month=entry.month, timestamp=entry.timestamp, requests=entry.snapshot.requests)
            for entry in await history.scan(account.account_id, now=now)
        }
        if previous_zones:
            points[period.month] = AddonUsagePoint(
                month=period.month,
                timestamp=period.start,
                requests=previous.requests,
            )
        current_month = month_start(now)
        points[month_key(current_month)] = AddonUsagePoint(
            month=month_key(current_month),
            timestamp=current_month,
            requests=current.requests,
        )

        return AddonAccountMetrics(
            account_id=account.account_id,
            account_name=account.account_name,
            current=current,
            previous=previous,
            time_series=sorted(points.values(), key=lambda point: point.timestamp),
        )
