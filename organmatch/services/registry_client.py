"""
HTTP adapter for the donor/recipient registry service.

Transport errors and 5xx responses are retried through RetryPolicy; 404 on a
single-record read means "unknown", other 4xx are raised as they are.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from organmatch.core.exceptions import NotFoundError, TransientDeliveryError, ValidationError
from organmatch.schemas.donor import Donor, OrganStatus, OrganType, Recipient, RecipientStatus
from organmatch.services.interfaces import Registry
from organmatch.services.retry import RetryPolicy

logger = logging.getLogger(__name__)


class RegistryClient(Registry):
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.retry_policy = retry_policy or RetryPolicy()
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request_once(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"Registry unreachable ({method} {path}): {e}") from e
        if response.status_code >= 500:
            raise TransientDeliveryError(f"Registry error {response.status_code} on {method} {path}")
        return response

    async def _request(self, method: str, path: str, allow_missing: bool = False, **kwargs) -> Optional[Any]:
        response = await self.retry_policy.run(
            self._request_once, method, path, context=f"registry {method} {path}", **kwargs
        )
        if response.status_code == 404:
            if allow_missing:
                return None
            raise NotFoundError(f"Registry has no resource at {path}")
        if response.status_code >= 400:
            logger.error(f"Registry rejected {method} {path}: {response.status_code} {response.text}")
            raise ValidationError(f"Registry rejected {method} {path} with status {response.status_code}")
        if not response.content:
            return None
        return response.json()

    async def list_available_donors(self, organ: OrganType) -> List[Donor]:
        data = await self._request("GET", "/donors", params={"organ": organ.value, "status": "available"})
        return [Donor.model_validate(item) for item in data or []]

    async def list_pending_recipients(self, organ: OrganType) -> List[Recipient]:
        data = await self._request("GET", "/recipients", params={"organ": organ.value, "status": "waiting"})
        return [Recipient.model_validate(item) for item in data or []]

    async def get_donor(self, donor_id: str) -> Optional[Donor]:
        data = await self._request("GET", f"/donors/{donor_id}", allow_missing=True)
        return Donor.model_validate(data) if data is not None else None

    async def get_recipient(self, recipient_id: str) -> Optional[Recipient]:
        data = await self._request("GET", f"/recipients/{recipient_id}", allow_missing=True)
        return Recipient.model_validate(data) if data is not None else None

    async def set_organ_status(self, donor_id: str, organ: OrganType, status: OrganStatus) -> None:
        await self._request("PUT", f"/donors/{donor_id}/organs/{organ.value}", json={"status": status.value})

    async def set_recipient_status(self, recipient_id: str, status: RecipientStatus) -> None:
        await self._request("PUT", f"/recipients/{recipient_id}/status", json={"status": status.value})

    async def record_death_confirmation(self, donor_id: str, certificate_hash: str, hospital_id: str) -> Donor:
        payload: Dict[str, Any] = {"certificate_hash": certificate_hash, "hospital_id": hospital_id}
        data = await self._request("POST", f"/donors/{donor_id}/death-confirmation", json=payload)
        return Donor.model_validate(data)
