"""Notification transports."""
import logging
from typing import Any, Dict, Optional

import httpx

from organmatch.core.exceptions import TransientDeliveryError
from organmatch.services.interfaces import NotificationTransport

logger = logging.getLogger(__name__)


class WebhookTransport(NotificationTransport):
    """
    POSTs the payload as JSON to the party address (an http(s) URL).

    Connection problems and 5xx are transient; any other non-2xx answer is a
    refusal and reported as not delivered.
    """

    def __init__(self, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send(self, address: str, payload: Dict[str, Any]) -> bool:
        try:
            response = await self._client.post(address, json=payload)
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"Could not reach {address}: {e}") from e
        if response.status_code >= 500:
            raise TransientDeliveryError(f"{address} answered {response.status_code}")
        if response.status_code >= 400:
            logger.warning(f"Notification refused by {address}: {response.status_code}")
            return False
        return True
