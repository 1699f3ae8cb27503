from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

from edge_usage.core.utils.time import utcnow

JsonValue = Any


class KeyValueStore(Protocol):
    """Durable JSON map with per-key expiry. Backs both configuration and every cache tier."""

    async def get(self, key: str) -> JsonValue | None: ...

    async def put(self, key: str, value: JsonValue, *, ttl_seconds: int | None = None) -> None: ...

    async def list_keys(self, prefix: str) -> list[str]: ...

    async def delete(self, key: str) -> None: ...

    async def purge_expired(self) -> int: ...


def expiry_for(now: datetime, ttl_seconds: int | None) -> datetime | None:
    if ttl_seconds is None:
        return None
    return now + timedelta(seconds=ttl_seconds)


@dataclass(slots=True)
class _MemoryEntry:
    value: str
    expires_at: datetime | None

    def expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class MemoryKeyValueStore:
    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._entries: dict[str, _MemoryEntry] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def get(self, key: str) -> JsonValue | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expired(self._clock()):
                self._entries.pop(key, None)
                return None
            return json.loads(entry.value)

    async def put(self, key: str, value: JsonValue, *, ttl_seconds: int | None = None) -> None:
        async with self._lock:
            expires_at = expiry_for(self._clock(), ttl_seconds)
            self._entries[key] = _MemoryEntry(value=json.dumps(value), expires_at=expires_at)

    async def list_keys(self, prefix: str) -> list[str]:
        now = self._clock()
        async with self._lock:
            return sorted(
                key for key, entry in self._entries.items() if key.startswith(prefix) and not entry.expired(now)
            )

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def purge_expired(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expired(now)]
            for key in expired:
                del self._entries[key]
            return len(expired)
