"""HTTP webhook caller built on httpx."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..errors import DeliveryError
from .base import WebhookCaller

logger = logging.getLogger(__name__)


class HttpWebhookCaller(WebhookCaller):
    """POST JSON bodies with a per-call timeout."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._transport = transport

    async def post(self, url: str, body: Dict[str, Any], timeout_ms: int) -> int:
        timeout = httpx.Timeout(timeout_ms / 1000)
        try:
            async with httpx.AsyncClient(
                timeout=timeout, transport=self._transport
            ) as client:
                response = await client.post(url, json=body)
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Webhook {url} failed: {exc}") from exc
        logger.debug(f"Webhook {url} answered {response.status_code}")
        return response.status_code
