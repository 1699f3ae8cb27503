from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    # Naive UTC everywhere: KV expiry columns, billing periods and cache ages.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_epoch_seconds(value: datetime) -> float:
    return to_utc_naive(value).replace(tzinfo=timezone.utc).timestamp()


def from_epoch_seconds(value: int | float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def to_iso_z(value: datetime) -> str:
    return to_utc_naive(value).strftime("%Y-%m-%dT%H:%M:%SZ")
