"""
Trigger sources - turn outside happenings into ``TriggerEvent``s.

Each source produces a ``(workflow_id, variables)`` pair and hands it to a
callback (usually ``WorkflowRuntime.trigger``):

- ``ScheduleTrigger``: fixed-interval ticks on the running event loop
- ``WebhookTrigger``: an inbound HTTP request (body, headers, query)
- ``EventTrigger``: ``EXTERNAL`` events published on the ``EventBus``
"""

import asyncio
import hashlib
import hmac
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from axiomflow.graph.errors import WorkflowError
from axiomflow.runtime.event_bus import EventBus, EventType, WorkflowEvent
from axiomflow.schemas.execution_state import utcnow

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"


@dataclass
class TriggerEvent:
    """A firing: which workflow to start and with what initial variables."""

    workflow_id: str
    variables: dict[str, Any] = field(default_factory=dict)
    source: str = "manual"
    tenant_id: str = ""
    received_at: datetime = field(default_factory=utcnow)


TriggerCallback = Callable[[TriggerEvent], Awaitable[Any]]


class WebhookSignatureError(WorkflowError):
    """An inbound webhook failed HMAC verification."""


@dataclass
class WebhookTrigger:
    """
    Maps inbound webhook requests to trigger events.

    The JSON body becomes the initial variables (query parameters fill in
    keys the body does not set). A non-JSON body is kept as ``raw_body``.
    With a ``secret``, requests must carry a valid HMAC-SHA256
    ``X-Hub-Signature-256`` header.
    """

    workflow_id: str
    secret: str | None = None
    tenant_id: str = ""

    def from_request(
        self,
        body: bytes | str | Mapping[str, Any] | None,
        headers: Mapping[str, str] | None = None,
        query: Mapping[str, str] | None = None,
    ) -> TriggerEvent:
        headers = {k.lower(): v for k, v in (headers or {}).items()}
        raw = body.encode("utf-8") if isinstance(body, str) else body

        if self.secret:
            payload_bytes = raw if isinstance(raw, bytes) else json.dumps(raw or {}).encode()
            if not self._verify(payload_bytes, headers.get(SIGNATURE_HEADER.lower(), "")):
                raise WebhookSignatureError(f"invalid webhook signature for '{self.workflow_id}'")

        if isinstance(raw, Mapping):
            payload: Any = dict(raw)
        elif raw:
            try:
                payload = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError):
                payload = {"raw_body": raw.decode("utf-8", errors="replace")}
        else:
            payload = {}
        if not isinstance(payload, dict):
            payload = {"payload": payload}

        variables = {**dict(query or {}), **payload}
        return TriggerEvent(
            workflow_id=self.workflow_id,
            variables=variables,
            source="webhook",
            tenant_id=self.tenant_id,
        )

    def _verify(self, body: bytes, signature_header: str) -> bool:
        if not signature_header.startswith("sha256="):
            return False
        expected = hmac.new(self.secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(signature_header[7:], expected)


class ScheduleTrigger:
    """
    Fires every ``interval_seconds`` while started.

    Each tick carries ``scheduled_at`` and a running ``tick`` number. A
    callback failure is logged and the schedule keeps ticking.
    """

    def __init__(
        self,
        workflow_id: str,
        interval_seconds: float,
        callback: TriggerCallback,
        variables: dict[str, Any] | None = None,
        tenant_id: str = "",
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.workflow_id = workflow_id
        self.interval_seconds = interval_seconds
        self.callback = callback
        self.variables = variables or {}
        self.tenant_id = tenant_id
        self.ticks = 0
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"⏱ Schedule for '{self.workflow_id}' every {self.interval_seconds}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            self.ticks += 1
            event = TriggerEvent(
                workflow_id=self.workflow_id,
                variables={
                    **self.variables,
                    "scheduled_at": utcnow().isoformat(),
                    "tick": self.ticks,
                },
                source="schedule",
                tenant_id=self.tenant_id,
            )
            try:
                await self.callback(event)
            except Exception as e:
                logger.error(f"Scheduled run of '{self.workflow_id}' failed: {e}")


class EventTrigger:
    """
    Starts a workflow for every ``EXTERNAL`` event named ``event_name``.

    Publish with ``bus.emit(EventType.EXTERNAL, "", name="lead.created",
    payload={...})``; the ``payload`` becomes the initial variables.
    """

    def __init__(
        self,
        workflow_id: str,
        event_name: str,
        event_bus: EventBus,
        callback: TriggerCallback,
        tenant_id: str = "",
    ):
        self.workflow_id = workflow_id
        self.event_name = event_name
        self.event_bus = event_bus
        self.callback = callback
        self.tenant_id = tenant_id
        self._subscription: str | None = None

    def start(self) -> None:
        if self._subscription is None:
            self._subscription = self.event_bus.subscribe([EventType.EXTERNAL], self._on_event)

    def stop(self) -> None:
        if self._subscription is not None:
            self.event_bus.unsubscribe(self._subscription)
            self._subscription = None

    async def _on_event(self, event: WorkflowEvent) -> None:
        if event.data.get("name") != self.event_name:
            return
        payload = event.data.get("payload") or {}
        await self.callback(
            TriggerEvent(
                workflow_id=self.workflow_id,
                variables=dict(payload),
                source=f"event:{self.event_name}",
                tenant_id=event.data.get("tenant_id", self.tenant_id),
            )
        )
