"""Integration connector abstraction.

Tool nodes reach third-party APIs (HubSpot, Gmail, Slack ...) only through an
``IntegrationConnector``. OAuth and per-tenant credentials are the
connector's business; the engine passes a tenant id and gets back a
response or a classified error.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

from axiomflow.graph.errors import WorkflowError

HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]


class ConnectorError(WorkflowError):
    """A provider call failed permanently (bad request, not found ...)."""

    transient = False

    def __init__(self, message: str, provider: str = "", status_code: int | None = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


class ConnectorAuthError(ConnectorError):
    """The tenant's connection to the provider is missing, expired or lacks scopes."""


class TransientConnectorError(ConnectorError):
    """Network failure, rate limit or provider 5xx; safe to retry."""

    transient = True


class IntegrationConnector(ABC):
    """Performs provider API calls on behalf of a tenant."""

    @abstractmethod
    async def call(
        self,
        tenant_id: str,
        provider: str,
        endpoint: str,
        method: HttpMethod,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        """
        Call ``endpoint`` on ``provider`` with the tenant's connection.

        Raises:
            ConnectorAuthError: authentication/authorization failure
            TransientConnectorError: retryable failure
            ConnectorError: any other non-retryable failure
        """


@dataclass
class RecordedCall:
    tenant_id: str
    provider: str
    endpoint: str
    method: str
    payload: dict[str, Any] | None = None


@dataclass
class RecordingConnector(IntegrationConnector):
    """
    In-process connector that records calls and returns canned responses.

    ``responses`` maps ``"provider:endpoint"`` (or just ``endpoint``) to a
    value, an exception instance to raise, or a list consumed one entry per
    call.
    """

    responses: dict[str, Any] = field(default_factory=dict)
    default: Any = field(default_factory=lambda: {"ok": True})
    calls: list[RecordedCall] = field(default_factory=list)

    async def call(
        self,
        tenant_id: str,
        provider: str,
        endpoint: str,
        method: HttpMethod,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        self.calls.append(RecordedCall(tenant_id, provider, endpoint, method, payload))
        key = f"{provider}:{endpoint}"
        entry = self.responses.get(key, self.responses.get(endpoint, self.default))
        if isinstance(entry, list):
            entry = entry.pop(0) if entry else self.default
        if isinstance(entry, BaseException):
            raise entry
        return entry

    def calls_to(self, endpoint: str) -> list[RecordedCall]:
        return [c for c in self.calls if c.endpoint == endpoint]
