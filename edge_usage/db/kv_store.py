from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable

from sqlalchemy import delete, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql import Insert, func

from edge_usage.core.cache.store import JsonValue, KeyValueStore, MemoryKeyValueStore, expiry_for
from edge_usage.core.config.settings import get_settings
from edge_usage.core.utils.time import utcnow
from edge_usage.db.models import KvEntry
from edge_usage.db.session import SessionLocal, session_scope


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class KvRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, key: str, *, now: datetime) -> str | None:
        result = await self._session.execute(
            select(KvEntry.value).where(
                KvEntry.key == key,
                or_(KvEntry.expires_at.is_(None), KvEntry.expires_at > now),
            )
        )
        return result.scalar_one_or_none()

    async def upsert(self, key: str, value: str, expires_at: datetime | None) -> None:
        await self._session.execute(self._build_upsert_statement(key, value, expires_at))
        await self._session.commit()

    async def list_keys(self, prefix: str, *, now: datetime) -> list[str]:
        result = await self._session.execute(
            select(KvEntry.key)
            .where(
                KvEntry.key.like(f"{_escape_like(prefix)}%", escape="\\"),
                or_(KvEntry.expires_at.is_(None), KvEntry.expires_at > now),
            )
            .order_by(KvEntry.key)
        )
        return list(result.scalars().all())

    async def delete(self, key: str) -> bool:
        result = await self._session.execute(delete(KvEntry).where(KvEntry.key == key).returning(KvEntry.key))
        await self._session.commit()
        return result.scalar_one_or_none() is not None

    async def delete_expired(self, *, now: datetime) -> int:
        result = await self._session.execute(
            delete(KvEntry).where(KvEntry.expires_at.is_not(None), KvEntry.expires_at <= now).returning(KvEntry.key)
        )
        await self._session.commit()
        return len(result.scalars().all())

    def _build_upsert_statement(self, key: str, value: str, expires_at: datetime | None) -> Insert:
        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            insert_fn = pg_insert
        elif dialect == "sqlite":
            insert_fn = sqlite_insert
        else:
            raise RuntimeError(f"KvEntry upsert unsupported for dialect={dialect!r}")
        statement = insert_fn(KvEntry).values(key=key, value=value, expires_at=expires_at)
        return statement.on_conflict_do_update(
            index_elements=[KvEntry.key],
            set_={
                "value": value,
                "expires_at": expires_at,
                "updated_at": func.now(),
            },
        )


class SqlKeyValueStore:
    """KeyValueStore over the `kv_entries` table; one short-lived session per call."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    @asynccontextmanager
    async def _repository(self) -> AsyncIterator[KvRepository]:
        async with session_scope(self._session_factory) as session:
            yield KvRepository(session)

    async def get(self, key: str) -> JsonValue | None:
        async with self._repository() as repo:
            raw = await repo.get(key, now=self._clock())
        if raw is None:
            return None
        return json.loads(raw)

    async def put(self, key: str, value: JsonValue, *, ttl_seconds: int | None = None) -> None:
        encoded = json.dumps(value, ensure_ascii=True, separators=(",", ":"))
        async with self._repository() as repo:
            await repo.upsert(key, encoded, expiry_for(self._clock(), ttl_seconds))

    async def list_keys(self, prefix: str) -> list[str]:
        async with self._repository() as repo:
            return await repo.list_keys(prefix, now=self._clock())

    async def delete(self, key: str) -> None:
        async with self._repository() as repo:
            await repo.delete(key)

    async def purge_expired(self) -> int:
        async with self._repository() as repo:
            return await repo.delete_expired(now=self._clock())


_memory_store: MemoryKeyValueStore | None = None


def get_kv_store() -> KeyValueStore:
    global _memory_store
    if get_settings().kv_backend == "memory":
        if _memory_store is None:
            _memory_store = MemoryKeyValueStore()
        return _memory_store
    return SqlKeyValueStore(SessionLocal)


def reset_memory_store() -> None:
    global _memory_store
    _memory_store = None
