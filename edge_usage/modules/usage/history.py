from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, TypeVar

from pydantic import ValidationError

from edge_usage.core.cache.versioned import CacheFamily, VersionedCache
from edge_usage.core.usage.models import AddonMonthlySnapshot, MonthlySnapshot
from edge_usage.core.usage.periods import parse_month_key
from edge_usage.modules.shared.schemas import DashboardModel

logger = logging.getLogger(__name__)

CLOSED_MONTH_TTL_SECONDS = 365 * 24 * 60 * 60
HISTORY_MEMO_TTL_SECONDS = 6 * 60 * 60

_SnapshotT = TypeVar("_SnapshotT", bound=DashboardModel)


@dataclass(frozen=True, slots=True)
class HistoryFamilies:
    monthly: CacheFamily
    memo: CacheFamily


def _families(name: str, monthly_prefix: str, memo_prefix: str) -> HistoryFamilies:
    return HistoryFamilies(
        monthly=CacheFamily(name=f"{name}_monthly", prefix=monthly_prefix, ttl_seconds=CLOSED_MONTH_TTL_SECONDS),
        memo=CacheFamily(
            name=f"{name}_history",
            prefix=memo_prefix,
            ttl_seconds=HISTORY_MEMO_TTL_SECONDS,
            max_age_seconds=HISTORY_MEMO_TTL_SECONDS,
        ),
    )


CORE_HISTORY = _families("core", "monthly-stats", "historical-data")
BOT_HISTORY = _families("bot", "monthly-bot-stats", "historical-bot-data")


def addon_history(addon_key: str) -> HistoryFamilies:
    return _families(addon_key, f"monthly-{addon_key}-stats", f"historical-{addon_key}-data")


@dataclass(frozen=True, slots=True)
class MonthEntry(Generic[_SnapshotT]):
    month: str
    timestamp: datetime
    snapshot: _SnapshotT


class MonthlyHistory(Generic[_SnapshotT]):
    """Closed-month snapshots for one metric family plus the memoized scan over them."""

    def __init__(self, cache: VersionedCache, families: HistoryFamilies, snapshot_model: type[_SnapshotT]) -> None:
        self._cache = cache
        self._families = families
        self._model = snapshot_model

    def snapshot_key(self, account_id: str, month: str) -> str:
        return self._families.monthly.key(account_id, month)

    async def load(self, account_id: str, month: str, *, now: datetime) -> _SnapshotT | None:
        key = self.snapshot_key(account_id, month)
        cached = await self._cache.get(self._families.monthly, key, self._model, now=now)
        return cached.value if cached is not None else None

    async def save(self, account_id: str, month: str, snapshot: _SnapshotT, *, now: datetime) -> None:
        await self._cache.put(self._families.monthly, self.snapshot_key(account_id, month), snapshot, now=now)
        # The memoized scan no longer reflects every persisted month.
        await self._cache.store.delete(self._families.memo.key(account_id))

    async def scan(self, account_id: str, *, now: datetime) -> list[MonthEntry[_SnapshotT]]:
        memo_key = self._families.memo.key(account_id)
        memo = await self._cache.get_raw(self._families.memo, memo_key, now=now)
        if memo is not None:
            entries = self._parse_memo(memo[0])
            if entries is not None:
                return entries

        prefix = f"{self._families.monthly.prefix}:{account_id}:"
        entries: list[MonthEntry[_SnapshotT]] = []
        for key in await self._cache.store.list_keys(prefix):
            month = key.rsplit(":", 1)[-1]
            try:
                timestamp = parse_month_key(month)
            except ValueError:
                logger.warning("Skipping snapshot with malformed month key=%s", key)
                continue
            cached = await self._cache.get(self._families.monthly, key, self._model, now=now)
            if cached is None:
                continue
            entries.append(MonthEntry(month=month, timestamp=timestamp, snapshot=cached.value))
        entries.sort(key=lambda entry: entry.timestamp)

        memo_payload = [
            {"month": entry.month, "snapshot": entry.snapshot.to_store()}
            for entry in entries
        ]
        await self._cache.put(self._families.memo, memo_key, memo_payload, now=now)
        return entries

    def _parse_memo(self, payload: object) -> list[MonthEntry[_SnapshotT]] | None:
        if not isinstance(payload, list):
            return None
        try:
            return [
                MonthEntry(
                    month=item["month"],
                    timestamp=parse_month_key(item["month"]),
                    snapshot=self._model.model_validate(item["snapshot"]),
                )
                for item in payload
            ]
        except (KeyError, TypeError, ValueError, ValidationError):
            logger.debug("Discarding unreadable history memo family=%s", self._families.memo.name, exc_info=True)
            return None


def core_history(cache: VersionedCache) -> MonthlyHistory[MonthlySnapshot]:
    return MonthlyHistory(cache, CORE_HISTORY, MonthlySnapshot)


def addon_monthly_history(cache: VersionedCache, families: HistoryFamilies) -> MonthlyHistory[AddonMonthlySnapshot]:
    return MonthlyHistory(cache, families, AddonMonthlySnapshot)
