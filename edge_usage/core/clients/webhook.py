from __future__ import annotations

import asyncio
from typing import Any, Mapping

import aiohttp

from edge_usage.core.clients.http import get_http_client

_MAX_ERROR_BODY_CHARS = 500


class WebhookDeliveryError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


async def post_webhook(
    url: str,
    payload: Mapping[str, Any],
    *,
    timeout_seconds: float = 10.0,
    session: aiohttp.ClientSession | None = None,
) -> None:
    client_session = session or get_http_client().session
    timeout = aiohttp.ClientTimeout(total=timeout_seconds)
    try:
        async with client_session.post(url, json=payload, timeout=timeout) as resp:
            if resp.status >= 400:
                body = (await resp.text())[:_MAX_ERROR_BODY_CHARS]
                raise WebhookDeliveryError(f"Webhook returned {resp.status}: {body}", status_code=resp.status)
    except WebhookDeliveryError:
        raise
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise WebhookDeliveryError(str(exc) or exc.__class__.__name__) from exc
