"""Nango proxy connector.

Requests go to ``{base_url}/proxy{endpoint}``; Nango injects the tenant's
OAuth credentials for the connection ``{tenant_id}-{provider}`` and forwards
the call to the provider.
"""

import logging
import os
from typing import Any

import httpx

from axiomflow.integrations.connector import (
    ConnectorAuthError,
    ConnectorError,
    HttpMethod,
    IntegrationConnector,
    TransientConnectorError,
)

logger = logging.getLogger(__name__)

NANGO_API_BASE = "https://api.nango.dev"


def connection_id(tenant_id: str, provider: str) -> str:
    return f"{tenant_id}-{provider}"


class NangoConnector(IntegrationConnector):
    """
    Integration connector backed by Nango's proxy API.

    Example:
        connector = NangoConnector(secret_key=os.environ["NANGO_SECRET_KEY"])
        contact = await connector.call(
            "acme", "hubspot", "/crm/v3/objects/contacts", "POST", {"properties": {...}}
        )
    """

    def __init__(
        self,
        secret_key: str | None = None,
        base_url: str = NANGO_API_BASE,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._secret_key = secret_key or os.environ.get("NANGO_SECRET_KEY", "")
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    def _headers(self, tenant_id: str, provider: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._secret_key}",
            "Connection-Id": connection_id(tenant_id, provider),
            "Provider-Config-Key": provider,
            "Accept": "application/json",
        }

    async def call(
        self,
        tenant_id: str,
        provider: str,
        endpoint: str,
        method: HttpMethod,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        path = endpoint if endpoint.startswith("/") else f"/{endpoint}"
        url = f"{self._base_url}/proxy{path}"
        kwargs: dict[str, Any] = {"headers": self._headers(tenant_id, provider)}
        if payload is not None:
            if method == "GET":
                kwargs["params"] = payload
            else:
                kwargs["json"] = payload

        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientConnectorError(f"{provider} request timed out", provider) from e
        except httpx.RequestError as e:
            raise TransientConnectorError(f"{provider} network error: {e}", provider) from e

        return self._handle_response(response, provider)

    def _handle_response(self, response: httpx.Response, provider: str) -> Any:
        status = response.status_code
        if status in (401, 403):
            raise ConnectorAuthError(
                f"{provider} rejected the connection credentials (HTTP {status})", provider, status
            )
        if status == 429 or status >= 500:
            raise TransientConnectorError(f"{provider} returned HTTP {status}", provider, status)
        if status >= 400:
            try:
                detail = response.json().get("message", response.text)
            except (ValueError, AttributeError):
                detail = response.text
            raise ConnectorError(
                f"{provider} API error (HTTP {status}): {detail}", provider, status
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
