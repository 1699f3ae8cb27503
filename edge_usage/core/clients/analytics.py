from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Protocol, Sequence

import aiohttp

from edge_usage.core.clients.http import get_http_client
from edge_usage.core.config.settings import Settings, get_settings
from edge_usage.core.errors import MissingApiTokenError
from edge_usage.core.metrics import get_metrics
from edge_usage.core.usage.models import ConfidenceInterval, ZoneInfo
from edge_usage.core.utils.time import to_iso_z

logger = logging.getLogger(__name__)

_ZONES_PAGE_SIZE = 1000
_CONFIDENCE_FIELDS = "estimate lower upper sampleSize"

# Blocked, challenged and DDoS-mitigated requests are never billed.
_BILLABLE_EXCLUSIONS: tuple[dict[str, str], ...] = (
    {"securitySource_neq": "l7ddos"},
    {"securityAction_neq": "block"},
    {"securityAction_neq": "challenge_failed"},
    {"securityAction_neq": "jschallenge_failed"},
    {"securityAction_neq": "managed_challenge_failed"},
)

HTTP_TOTALS_QUERY = f"""
query ZoneHttpTotals($zoneIds: [String!]!, $filter: ZoneHttpRequestsAdaptiveGroupsFilter_InputObject) {{
  viewer {{
    zones(filter: {{zoneTag_in: $zoneIds}}) {{
      zoneTag
      totals: httpRequestsAdaptiveGroups(filter: $filter, limit: 1) {{
        count
        sum {{ edgeResponseBytes }}
        confidence(level: 0.95) {{
          count {{ {_CONFIDENCE_FIELDS} }}
          sum {{ edgeResponseBytes {{ {_CONFIDENCE_FIELDS} }} }}
        }}
      }}
    }}
  }}
}}
"""

DNS_TOTALS_QUERY = f"""
query ZoneDnsTotals($zoneTag: string, $filter: ZoneDnsAnalyticsAdaptiveGroupsFilter_InputObject) {{
  viewer {{
    zones(filter: {{zoneTag: $zoneTag}}) {{
      queryTotals: dnsAnalyticsAdaptiveGroups(limit: 1, filter: $filter) {{
        count
        confidence(level: 0.95) {{ count {{ {_CONFIDENCE_FIELDS} }} }}
      }}
    }}
  }}
}}
"""

BOT_TOTALS_QUERY = f"""
query ZoneBotTotals(
  $zoneTag: string,
  $likelyHumanFilter: ZoneHttpRequestsAdaptiveGroupsFilter_InputObject,
  $automatedFilter: ZoneHttpRequestsAdaptiveGroupsFilter_InputObject,
  $likelyAutomatedFilter: ZoneHttpRequestsAdaptiveGroupsFilter_InputObject,
  $verifiedBotFilter: ZoneHttpRequestsAdaptiveGroupsFilter_InputObject
) {{
  viewer {{
    zones(filter: {{zoneTag: $zoneTag}}) {{
      likelyHuman: httpRequestsAdaptiveGroups(filter: $likelyHumanFilter, limit: 1) {{
        count
        confidence(level: 0.95) {{ count {{ {_CONFIDENCE_FIELDS} }} }}
      }}
      automated: httpRequestsAdaptiveGroups(filter: $automatedFilter, limit: 1) {{ count }}
      likelyAutomated: httpRequestsAdaptiveGroups(filter: $likelyAutomatedFilter, limit: 1) {{ count }}
      verifiedBot: httpRequestsAdaptiveGroups(filter: $verifiedBotFilter, limit: 1) {{ count }}
    }}
  }}
}}
"""


class AnalyticsApiError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


@dataclass(frozen=True, slots=True)
class ZoneTrafficTotals:
    zone_id: str
    requests: int
    bytes: int
    requests_confidence: ConfidenceInterval | None = None
    bytes_confidence: ConfidenceInterval | None = None


@dataclass(frozen=True, slots=True)
class CountTotals:
    count: int
    confidence: ConfidenceInterval | None = None


@dataclass(frozen=True, slots=True)
class BotTrafficTotals:
    likely_human: int
    automated: int
    likely_automated: int
    verified_bot: int
    confidence: ConfidenceInterval | None = None


class AnalyticsSource(Protocol):
    async def list_zones(self, account_id: str) -> list[ZoneInfo]: ...

    async def fetch_account_name(self, account_id: str) -> str | None: ...

    async def query_http_totals(
        self,
        zone_ids: Sequence[str],
        start: datetime,
        end: datetime,
        *,
        exclude_blocked: bool = True,
    ) -> list[ZoneTrafficTotals]: ...

    async def query_dns_totals(self, zone_id: str, start: datetime, end: datetime) -> CountTotals: ...

    async def query_bot_totals(
        self,
        zone_id: str,
        start: datetime,
        end: datetime,
        *,
        bot_score_range: tuple[int, int] = (30, 99),
    ) -> BotTrafficTotals: ...


def _interval(raw: object) -> ConfidenceInterval | None:
    if not isinstance(raw, Mapping) or raw.get("estimate") is None:
        return None
    estimate = float(raw["estimate"])
    return ConfidenceInterval(
        estimate=estimate,
        lower=float(raw.get("lower") if raw.get("lower") is not None else estimate),
        upper=float(raw.get("upper") if raw.get("upper") is not None else estimate),
        sample_size=int(raw.get("sampleSize") or 0),
    )


def _first(rows: object) -> Mapping[str, Any]:
    if isinstance(rows, list) and rows and isinstance(rows[0], Mapping):
        return rows[0]
    return {}


def _zones(data: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    viewer = data.get("viewer") or {}
    zones = viewer.get("zones") if isinstance(viewer, Mapping) else None
    if not isinstance(zones, list):
        return []
    return [zone for zone in zones if isinstance(zone, Mapping)]


def _date_filter(start: datetime, end: datetime) -> list[dict[str, str]]:
    return [{"datetime_geq": to_iso_z(start)}, {"datetime_leq": to_iso_z(end)}]


def _graphql_error_message(payload: Mapping[str, Any]) -> str | None:
    errors = payload.get("errors")
    if not errors:
        return None
    if isinstance(errors, list):
        messages = [
            str(error.get("message")) for error in errors if isinstance(error, Mapping) and error.get("message")
        ]
        if messages:
            return "; ".join(messages)
    return "GraphQL query failed"


async def _error_message_from_response(resp: aiohttp.ClientResponse) -> str:
    fallback = f"Analytics API returned {resp.status}"
    try:
        payload = await resp.json(content_type=None)
    except Exception:
        return fallback
    if isinstance(payload, Mapping):
        return _graphql_error_message(payload) or fallback
    return fallback


class AnalyticsClient:
    def __init__(
        self,
        api_token: str,
        *,
        base_url: str,
        timeout_seconds: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._api_token = api_token
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session

    def _client_session(self) -> aiohttp.ClientSession:
        return self._session or get_http_client().session

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_token}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json_body: Mapping[str, Any] | None = None,
        params: Mapping[str, str] | None = None,
    ) -> Mapping[str, Any]:
        url = f"{self._base_url}{path}"
        started = time.monotonic()
        status = "error"
        try:
            async with self._client_session().request(
                method,
                url,
                json=json_body,
                params=params,
                headers=self._headers(),
                timeout=self._timeout,
            ) as resp:
                if resp.status >= 400:
                    raise AnalyticsApiError(resp.status, await _error_message_from_response(resp))
                try:
                    payload = await resp.json(content_type=None)
                except Exception as exc:
                    raise AnalyticsApiError(502, "Invalid JSON from analytics API") from exc
                if not isinstance(payload, Mapping):
                    raise AnalyticsApiError(502, "Unexpected analytics API payload")
                status = "success"
                return payload
        except AnalyticsApiError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise AnalyticsApiError(502, str(exc) or exc.__class__.__name__) from exc
        finally:
            get_metrics().observe_analytics_query(operation, status, time.monotonic() - started)

    async def _graphql(self, operation: str, query: str, variables: Mapping[str, Any]) -> Mapping[str, Any]:
        payload = await self._request(
            operation,
            "POST",
            "/graphql",
            json_body={"query": query, "variables": variables},
        )
        data = payload.get("data")
        error_message = _graphql_error_message(payload)
        if not isinstance(data, Mapping):
            raise AnalyticsApiError(502, error_message or "Analytics API returned no data")
        if error_message:
            logger.warning("Analytics query returned partial errors operation=%s error=%s", operation, error_message)
        return data

    async def list_zones(self, account_id: str) -> list[ZoneInfo]:
        zones: list[ZoneInfo] = []
        page = 1
        while True:
            payload = await self._request(
                "list_zones",
                "GET",
                "/zones",
                params={"account.id": account_id, "per_page": str(_ZONES_PAGE_SIZE), "page": str(page)},
            )
            result = payload.get("result")
            if not isinstance(result, list):
                raise AnalyticsApiError(502, "Zones listing returned no result")
            for raw in result:
                if not isinstance(raw, Mapping):
                    continue
                account = raw.get("account") or {}
                owner = account.get("id") if isinstance(account, Mapping) else None
                if owner is not None and owner != account_id:
                    continue
                plan = raw.get("plan") or {}
                zones.append(
                    ZoneInfo(
                        id=str(raw.get("id")),
                        name=str(raw.get("name") or raw.get("id")),
                        account_id=owner or account_id,
                        plan_name=plan.get("name") if isinstance(plan, Mapping) else None,
                        plan_legacy_id=plan.get("legacy_id") if isinstance(plan, Mapping) else None,
                    )
                )
            info = payload.get("result_info") or {}
            total_pages = int(info.get("total_pages") or 1) if isinstance(info, Mapping) else 1
            if page >= total_pages:
                return zones
            page += 1

    async def fetch_account_name(self, account_id: str) -> str | None:
        try:
            payload = await self._request("account_name", "GET", f"/accounts/{account_id}")
        except AnalyticsApiError as exc:
            logger.debug("Account name lookup failed account_id=%s error=%s", account_id, exc.message)
            return None
        result = payload.get("result")
        if isinstance(result, Mapping) and result.get("name"):
            return str(result["name"])
        return None

    async def query_http_totals(
        self,
        zone_ids: Sequence[str],
        start: datetime,
        end: datetime,
        *,
        exclude_blocked: bool = True,
    ) -> list[ZoneTrafficTotals]:
        conditions: list[dict[str, str]] = [*_date_filter(start, end), {"requestSource": "eyeball"}]
        if exclude_blocked:
            conditions.extend(_BILLABLE_EXCLUSIONS)
        data = await self._graphql(
            "http_totals",
            HTTP_TOTALS_QUERY,
            {"zoneIds": list(zone_ids), "filter": {"AND": conditions}},
        )
        totals: list[ZoneTrafficTotals] = []
        for zone in _zones(data):
            row = _first(zone.get("totals"))
            confidence = row.get("confidence") or {}
            byte_sum = row.get("sum") or {}
            totals.append(
                ZoneTrafficTotals(
                    zone_id=str(zone.get("zoneTag")),
                    requests=int(row.get("count") or 0),
                    bytes=int(byte_sum.get("edgeResponseBytes") or 0),
                    requests_confidence=_interval(confidence.get("count")),
                    bytes_confidence=_interval((confidence.get("sum") or {}).get("edgeResponseBytes")),
                )
            )
        return totals

    async def query_dns_totals(self, zone_id: str, start: datetime, end: datetime) -> CountTotals:
        data = await self._graphql(
            "dns_totals",
            DNS_TOTALS_QUERY,
            {"zoneTag": zone_id, "filter": {"AND": _date_filter(start, end)}},
        )
        row = _first(_first(_zones(data)).get("queryTotals"))
        return CountTotals(
            count=int(row.get("count") or 0),
            confidence=_interval((row.get("confidence") or {}).get("count")),
        )

    async def query_bot_totals(
        self,
        zone_id: str,
        start: datetime,
        end: datetime,
        *,
        bot_score_range: tuple[int, int] = (30, 99),
    ) -> BotTrafficTotals:
        base = [{"requestSource": "eyeball"}, *_date_filter(start, end), {"botManagementDecision_neq": "other"}]
        not_verified = {"botScoreSrcName_neq": "verified_bot"}
        low, high = bot_score_range
        variables = {
            "zoneTag": zone_id,
            "likelyHumanFilter": {"AND": [*base, {"botScore_geq": low, "botScore_leq": high}, not_verified]},
            "automatedFilter": {"AND": [*base, {"botScore": 1}, not_verified]},
            "likelyAutomatedFilter": {"AND": [*base, {"botScore_geq": 2, "botScore_leq": 29}, not_verified]},
            "verifiedBotFilter": {"AND": [*base, {"botScoreSrcName": "verified_bot"}]},
        }
        data = await self._graphql("bot_totals", BOT_TOTALS_QUERY, variables)
        zone = _first(_zones(data))
        human = _first(zone.get("likelyHuman"))
        return BotTrafficTotals(
            likely_human=int(human.get("count") or 0),
            automated=int(_first(zone.get("automated")).get("count") or 0),
            likely_automated=int(_first(zone.get("likelyAutomated")).get("count") or 0),
            verified_bot=int(_first(zone.get("verifiedBot")).get("count") or 0),
            confidence=_interval((human.get("confidence") or {}).get("count")),
        )


def build_analytics_client(settings: Settings | None = None) -> AnalyticsClient:
    settings = settings or get_settings()
    if not settings.api_token:
        raise MissingApiTokenError()
    return AnalyticsClient(
        settings.api_token,
        base_url=settings.analytics_base_url,
        timeout_seconds=settings.analytics_timeout_seconds,
    )
