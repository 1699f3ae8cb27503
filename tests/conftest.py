from __future__ import annotations

import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Sequence

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

TEST_DB_DIR = Path(tempfile.mkdtemp(prefix="edge-usage-tests-"))
TEST_DB_PATH = TEST_DB_DIR / "store.db"

os.environ["EDGE_USAGE_DATABASE_URL"] = f"sqlite+aiosqlite:///{TEST_DB_PATH}"
os.environ["EDGE_USAGE_KV_BACKEND"] = "memory"
os.environ["EDGE_USAGE_API_TOKEN"] = "test-token"
os.environ["EDGE_USAGE_ANALYTICS_BASE_URL"] = "https://example.invalid/client/v4"
os.environ["EDGE_USAGE_PREWARM_ENABLED"] = "false"
os.environ["EDGE_USAGE_THRESHOLD_CHECK_ENABLED"] = "false"

from edge_usage.core.cache.store import KeyValueStore  # noqa: E402
from edge_usage.core.cache.versioned import VersionedCache  # noqa: E402
from edge_usage.core.clients.analytics import (  # noqa: E402
    AnalyticsApiError,
    BotTrafficTotals,
    CountTotals,
    ZoneTrafficTotals,
)
from edge_usage.core.config.settings import get_settings  # noqa: E402
from edge_usage.core.usage.models import ConfidenceInterval, ZoneInfo  # noqa: E402
from edge_usage.db.kv_store import reset_memory_store  # noqa: E402
from edge_usage.db.session import engine  # noqa: E402
from edge_usage.main import create_app  # noqa: E402
from edge_usage.modules.addons.bot_management import BotManagementFetcher  # noqa: E402
from edge_usage.modules.addons.zone_filtered import ZoneFilteredAddonCalculator  # noqa: E402
from edge_usage.modules.dashboard.service import DashboardMetricsService  # noqa: E402
from edge_usage.modules.usage.fetcher import AccountMetricsFetcher  # noqa: E402
from edge_usage.modules.usage.zones import ZoneDirectory  # noqa: E402


def enterprise_zone(zone_id: str, name: str | None = None) -> ZoneInfo:
    return ZoneInfo(id=zone_id, name=name or f"{zone_id}.example.com", plan_legacy_id="enterprise")


class StubAnalyticsSource:
    """In-memory stand-in for the analytics API. Every period returns the same per-zone numbers."""

    def __init__(
        self,
        *,
        zones: dict[str, list[ZoneInfo]] | None = None,
        traffic: dict[str, tuple[int, int]] | None = None,
        dns: dict[str, int] | None = None,
        bots: dict[str, BotTrafficTotals] | None = None,
        names: dict[str, str] | None = None,
    ) -> None:
        self.zones = zones or {}
        self.traffic = traffic or {}
        self.dns = dns or {}
        self.bots = bots or {}
        self.names = names or {}
        self.failing_accounts: set[str] = set()
        self.failing_dns: set[str] = set()
        self.calls: list[tuple[str, str]] = []

    async def list_zones(self, account_id: str) -> list[ZoneInfo]:
        self.calls.append(("list_zones", account_id))
        if account_id in self.failing_accounts:
            raise AnalyticsApiError(500, f"zones unavailable for {account_id}")
        return list(self.zones.get(account_id, []))

    async def fetch_account_name(self, account_id: str) -> str | None:
        self.calls.append(("account_name", account_id))
        return self.names.get(account_id)

    async def query_http_totals(
        self,
        zone_ids: Sequence[str],
        start: datetime,
        end: datetime,
        *,
        exclude_blocked: bool = True,
    ) -> list[ZoneTrafficTotals]:
        self.calls.append(("http_totals", ",".join(zone_ids)))
        rows: list[ZoneTrafficTotals] = []
        for zone_id in zone_ids:
            if zone_id not in self.traffic:
                continue
            requests, bytes_sent = self.traffic[zone_id]
            rows.append(
                ZoneTrafficTotals(
                    zone_id=zone_id,
                    requests=requests,
                    bytes=bytes_sent,
                    requests_confidence=ConfidenceInterval(
                        estimate=requests,
                        lower=requests * 0.9,
                        upper=requests * 1.1,
                        sample_size=100,
                    ),
                )
            )
        return rows

    async def query_dns_totals(self, zone_id: str, start: datetime, end: datetime) -> CountTotals:
        self.calls.append(("dns_totals", zone_id))
        if zone_id in self.failing_dns:
            raise AnalyticsApiError(503, "dns analytics unavailable")
        return CountTotals(count=self.dns.get(zone_id, 0))

    async def query_bot_totals(
        self,
        zone_id: str,
        start: datetime,
        end: datetime,
        *,
        bot_score_range: tuple[int, int] = (30, 99),
    ) -> BotTrafficTotals:
        self.calls.append(("bot_totals", zone_id))
        return self.bots.get(zone_id, BotTrafficTotals(likely_human=0, automated=0, likely_automated=0, verified_bot=0))


def build_service(source: StubAnalyticsSource, store: KeyValueStore) -> DashboardMetricsService:
    cache = VersionedCache(store)
    zones = ZoneDirectory(source, cache)
    return DashboardMetricsService(
        AccountMetricsFetcher(source, cache, zones=zones),
        ZoneFilteredAddonCalculator(cache),
        BotManagementFetcher(source, cache, zones=zones),
        cache,
    )


@pytest.fixture(autouse=True)
def reset_state():
    get_settings.cache_clear()
    reset_memory_store()
    yield
    reset_memory_store()


@pytest_asyncio.fixture(scope="session", autouse=True)
async def dispose_engine():
    yield
    await engine.dispose()


@pytest.fixture
def analytics_stub() -> StubAnalyticsSource:
    return StubAnalyticsSource(
        zones={"acc-1": [enterprise_zone("z1"), enterprise_zone("z2")]},
        traffic={"z1": (1_000, 60 * 1024**3), "z2": (500, 1024**3)},
        dns={"z1": 40, "z2": 10},
        names={"acc-1": "Primary Account"},
    )


@pytest.fixture
def service_factory():
    return build_service


@pytest_asyncio.fixture
async def app_instance():
    return create_app()


@pytest_asyncio.fixture
async def async_client(app_instance):
    async with app_instance.router.lifespan_context(app_instance):
        transport = ASGITransport(app=app_instance)
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            yield client
