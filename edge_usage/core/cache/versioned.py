from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, ValidationError

from edge_usage.core.cache.store import KeyValueStore
from edge_usage.core.metrics import get_metrics
from edge_usage.core.utils.time import from_epoch_seconds, to_epoch_seconds

logger = logging.getLogger(__name__)

_ModelT = TypeVar("_ModelT", bound=BaseModel)


@dataclass(frozen=True, slots=True)
class CacheFamily:
    """One cache tier: key prefix, storage TTL, schema version and freshness window."""

    name: str
    prefix: str
    ttl_seconds: int | None
    version: int | None = None
    max_age_seconds: float | None = None

    def key(self, *parts: str) -> str:
        return ":".join((self.prefix, *parts))


@dataclass(frozen=True, slots=True)
class CachedValue(Generic[_ModelT]):
    value: _ModelT
    cached_at: datetime


class VersionedCache:
    """Stores `{version, cachedAt, data}` envelopes; any mismatch reads as a miss."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    @property
    def store(self) -> KeyValueStore:
        return self._store

    async def get_raw(self, family: CacheFamily, key: str, *, now: datetime) -> tuple[dict, datetime] | None:
        envelope = await self._store.get(key)
        if not isinstance(envelope, dict) or "data" not in envelope:
            self._record(family, "miss")
            return None
        if family.version is not None and envelope.get("version") != family.version:
            self._record(family, "stale_version")
            return None
        cached_at = from_epoch_seconds(envelope.get("cachedAt"))
        if cached_at is None:
            self._record(family, "miss")
            return None
        if family.max_age_seconds is not None and (now - cached_at).total_seconds() >= family.max_age_seconds:
            self._record(family, "expired")
            return None
        self._record(family, "hit")
        return envelope["data"], cached_at

    async def get(
        self,
        family: CacheFamily,
        key: str,
        model: type[_ModelT],
        *,
        now: datetime,
    ) -> CachedValue[_ModelT] | None:
        raw = await self.get_raw(family, key, now=now)
        if raw is None:
            return None
        data, cached_at = raw
        try:
            return CachedValue(value=model.model_validate(data), cached_at=cached_at)
        except ValidationError:
            logger.debug("Discarding unreadable cache entry family=%s key=%s", family.name, key, exc_info=True)
            return None

    async def put(self, family: CacheFamily, key: str, value: BaseModel | dict | list, *, now: datetime) -> None:
        data = value.model_dump(mode="json", by_alias=True) if isinstance(value, BaseModel) else value
        envelope = {"version": family.version, "cachedAt": to_epoch_seconds(now), "data": data}
        await self._store.put(key, envelope, ttl_seconds=family.ttl_seconds)

    def _record(self, family: CacheFamily, result: str) -> None:
        get_metrics().observe_cache_lookup(family.name, result)
