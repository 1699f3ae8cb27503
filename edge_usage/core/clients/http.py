from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Any

import aiohttp

from edge_usage.core.config.settings import get_settings

USER_AGENT = "edge-usage-dashboard"


@dataclass(slots=True)
class HttpClient:
    """Process-wide aiohttp session shared by the analytics client and webhook delivery."""

    session: aiohttp.ClientSession


_http_client: HttpClient | None = None


def _connector_options() -> dict[str, Any]:
    settings = get_settings()
    options: dict[str, Any] = {
        "limit": settings.http_client_connector_limit,
        "limit_per_host": settings.http_client_connector_limit_per_host,
        "keepalive_timeout": settings.http_client_keepalive_timeout_seconds,
        "ttl_dns_cache": settings.http_client_dns_cache_ttl_seconds,
    }
    # No-op with a DeprecationWarning from 3.12.12 on.
    if sys.version_info < (3, 12, 12):
        options["enable_cleanup_closed"] = True
    return options


async def init_http_client() -> HttpClient:
    global _http_client
    if _http_client is not None:
        return _http_client

    # Per-call timeouts are set by the callers; proxies come from HTTP(S)_PROXY/NO_PROXY.
    session = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=None),
        connector=aiohttp.TCPConnector(**_connector_options()),
        headers={"User-Agent": USER_AGENT},
        trust_env=True,
    )
    _http_client = HttpClient(session=session)
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is None:
        return
    await _http_client.session.close()
    _http_client = None


def get_http_client() -> HttpClient:
    if _http_client is None:
        raise RuntimeError("HTTP client not initialized; call init_http_client() first")
    return _http_client
