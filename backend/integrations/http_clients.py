"""HTTP implementations of the engine capabilities.

Both clients speak JSON over ``httpx.AsyncClient``. Responses are
classified into the engine's provider errors:

- connect/read timeouts, network errors, 5xx and 429 -> TransientProviderError
- any other 4xx -> PermanentProviderError
"""

import logging
from typing import Any, Optional

import httpx

from core.constants import MessageKind
from core.exceptions import PermanentProviderError, TransientProviderError
from integrations.capabilities import (
    AppointmentCapability,
    ClientCapability,
    CreatedAppointment,
    DeliveryResult,
    MessagingCapability,
)

logger = logging.getLogger(__name__)


def _check_response(response: httpx.Response, operation: str) -> None:
    """Raise the provider error matching a non-2xx response."""
    if response.is_success:
        return
    detail = response.text[:500]
    message = f"{operation} failed with HTTP {response.status_code}: {detail}"
    if response.status_code >= 500 or response.status_code == 429:
        raise TransientProviderError(message)
    raise PermanentProviderError(message)


class _JsonApiClient:
    """Shared request plumbing for the provider clients."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self, extra: Optional[dict] = None) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json: Any = None,
        headers: Optional[dict] = None,
    ) -> Any:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    method, path, json=json, headers=self._headers(headers)
                )
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"{operation} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"{operation} network error: {exc}") from exc

        _check_response(response, operation)
        if not response.content:
            return None
        return response.json()


class MessagingGatewayClient(_JsonApiClient, MessagingCapability):
    """Messaging gateway: ``POST /messages`` with kind, to, body and subject."""

    async def send(
        self,
        kind: MessageKind,
        target: str,
        content: str,
        subject: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> DeliveryResult:
        kind_value = MessageKind(kind).value
        payload = {
            "kind": kind_value,
            "to": target,
            "body": content,
            "organization_id": organization_id,
        }
        if subject:
            payload["subject"] = subject

        try:
            data = await self._request("POST", "/messages", f"send {kind_value}", json=payload)
        except TransientProviderError as exc:
            logger.warning("Message to %s not delivered (transient): %s", target, exc)
            return DeliveryResult(
                success=False, kind=kind, target=target, error=str(exc), retryable=True
            )
        except PermanentProviderError as exc:
            logger.warning("Message to %s rejected: %s", target, exc)
            return DeliveryResult(
                success=False, kind=kind, target=target, error=str(exc), retryable=False
            )

        message_id = (data or {}).get("id") or (data or {}).get("message_id")
        return DeliveryResult.delivered(kind, target, provider_message_id=message_id)


class ClinicApiClient(_JsonApiClient, ClientCapability, AppointmentCapability):
    """CRM REST API for client facts, tags, notes and appointments."""

    def _client_path(self, organization_id: str, client_id: str) -> str:
        return f"/organizations/{organization_id}/clients/{client_id}"

    async def get_facts(self, organization_id: str, client_id: str) -> dict[str, Any]:
        data = await self._request(
            "GET", self._client_path(organization_id, client_id), "get client"
        )
        return data or {}

    async def apply_tag(self, organization_id: str, client_id: str, tag: str) -> None:
        await self._request(
            "POST",
            f"{self._client_path(organization_id, client_id)}/tags",
            "apply tag",
            json={"tag": tag},
        )

    async def remove_tag(
        self,
        organization_id: str,
        client_id: str,
        tag: Optional[str] = None,
        remove_all: bool = False,
    ) -> None:
        path = f"{self._client_path(organization_id, client_id)}/tags"
        if remove_all:
            await self._request("DELETE", path, "remove all tags")
        else:
            await self._request("DELETE", f"{path}/{tag}", "remove tag")

    async def add_note(self, organization_id: str, client_id: str, content: str) -> None:
        await self._request(
            "POST",
            f"{self._client_path(organization_id, client_id)}/notes",
            "add note",
            json={"content": content},
        )

    async def create_appointment(
        self,
        organization_id: str,
        client_id: str,
        appointment_type: str,
        start_at: int,
        duration_minutes: int,
        idempotency_key: str,
        title: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> CreatedAppointment:
        data = await self._request(
            "POST",
            f"/organizations/{organization_id}/appointments",
            "create appointment",
            json={
                "client_id": client_id,
                "type": appointment_type,
                "start_at": start_at,
                "duration_minutes": duration_minutes,
                "title": title or appointment_type,
                "notes": notes,
            },
            headers={"Idempotency-Key": idempotency_key},
        )
        data = data or {}
        return CreatedAppointment(
            appointment_id=str(data.get("id", "")),
            start_at=int(data.get("start_at", start_at)),
            appointment_type=data.get("type", appointment_type),
            metadata=data,
        )
