"""
Event Bus - pub/sub for execution lifecycle events.

The executor publishes what happens inside an execution (node started,
retry, edge traversed, fork/join, delegation, suspension); the runtime
publishes trigger firings. Applications publish ``EXTERNAL`` events, which
``EventTrigger`` turns into new executions.
"""

import asyncio
import itertools
import logging
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Kinds of workflow events."""

    EXECUTION_STARTED = "execution_started"
    EXECUTION_SUSPENDED = "execution_suspended"
    EXECUTION_RESUMED = "execution_resumed"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"

    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_RETRY = "node_retry"
    EDGE_TRAVERSED = "edge_traversed"

    BRANCH_FORKED = "branch_forked"
    BRANCH_JOINED = "branch_joined"
    DELEGATION = "delegation"

    TRIGGER_FIRED = "trigger_fired"
    EXTERNAL = "external"


@dataclass
class WorkflowEvent:
    """Something that happened in (or was sent into) the engine."""

    type: EventType
    workflow_id: str = ""
    execution_id: str | None = None
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)
    correlation_id: str | None = None

    def to_dict(self) -> dict:
        payload = {
            "type": str(self.type),
            "workflow_id": self.workflow_id,
            "execution_id": self.execution_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.correlation_id:
            payload["correlation_id"] = self.correlation_id
        return payload


EventHandler = Callable[[WorkflowEvent], Awaitable[None]]


@dataclass
class Subscription:
    """Event types plus optional workflow/execution/node filters."""

    id: str
    event_types: frozenset[EventType]
    handler: EventHandler
    filter_workflow: str | None = None
    filter_execution: str | None = None
    filter_node: str | None = None

    def matches(self, event: WorkflowEvent) -> bool:
        if event.type not in self.event_types:
            return False
        wanted = (
            (self.filter_workflow, event.workflow_id),
            (self.filter_execution, event.execution_id),
            (self.filter_node, event.node_id),
        )
        return all(expected is None or expected == actual for expected, actual in wanted)


class EventBus:
    """
    Async pub/sub bus with a bounded in-memory history.

    Handlers for one event run concurrently under a semaphore. A handler that
    raises is logged; the publisher and the other handlers carry on.

    Example:
        bus = EventBus()

        async def on_failed(event: WorkflowEvent):
            alert(event.execution_id, event.data["error"])

        bus.subscribe([EventType.EXECUTION_FAILED], on_failed)
    """

    def __init__(self, max_history: int = 1000, max_concurrent_handlers: int = 10):
        self._subscriptions: dict[str, Subscription] = {}
        self._history: deque[WorkflowEvent] = deque(maxlen=max_history)
        self._handler_slots = asyncio.Semaphore(max_concurrent_handlers)
        self._ids = itertools.count(1)

    def subscribe(
        self,
        event_types: Iterable[EventType],
        handler: EventHandler,
        filter_workflow: str | None = None,
        filter_node: str | None = None,
        filter_execution: str | None = None,
    ) -> str:
        """Register ``handler``; the returned id is what ``unsubscribe`` takes."""
        sub = Subscription(
            id=f"sub_{next(self._ids)}",
            event_types=frozenset(event_types),
            handler=handler,
            filter_workflow=filter_workflow,
            filter_execution=filter_execution,
            filter_node=filter_node,
        )
        self._subscriptions[sub.id] = sub
        logger.debug(f"Subscribed {sub.id} to {sorted(sub.event_types)}")
        return sub.id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    async def publish(self, event: WorkflowEvent) -> None:
        self._history.append(event)
        targets = [s for s in self._subscriptions.values() if s.matches(event)]
        if targets:
            await asyncio.gather(*(self._deliver(s, event) for s in targets))

    async def _deliver(self, subscription: Subscription, event: WorkflowEvent) -> None:
        async with self._handler_slots:
            try:
                await subscription.handler(event)
            except Exception as e:
                logger.error(f"Handler {subscription.id} failed on {event.type}: {e}")

    async def emit(
        self,
        event_type: EventType,
        workflow_id: str,
        execution_id: str | None = None,
        node_id: str | None = None,
        **data: Any,
    ) -> None:
        """Build a ``WorkflowEvent`` from keyword data and publish it."""
        await self.publish(WorkflowEvent(event_type, workflow_id, execution_id, node_id, data))

    async def emit_node_retry(
        self,
        workflow_id: str,
        execution_id: str,
        node_id: str,
        attempt: int,
        max_retries: int,
        error: str,
    ) -> None:
        await self.emit(
            EventType.NODE_RETRY,
            workflow_id,
            execution_id,
            node_id,
            attempt=attempt,
            max_retries=max_retries,
            error=error,
        )

    async def emit_edge_traversed(
        self,
        workflow_id: str,
        execution_id: str,
        source: str,
        target: str,
        handle: str | None = None,
    ) -> None:
        await self.emit(
            EventType.EDGE_TRAVERSED,
            workflow_id,
            execution_id,
            source,
            target=target,
            handle=handle,
        )

    # === History ===

    def get_history(
        self,
        event_type: EventType | None = None,
        workflow_id: str | None = None,
        execution_id: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowEvent]:
        """Matching events, most recent first."""
        matching = (
            e
            for e in reversed(self._history)
            if (event_type is None or e.type == event_type)
            and (workflow_id is None or e.workflow_id == workflow_id)
            and (execution_id is None or e.execution_id == execution_id)
        )
        return list(itertools.islice(matching, limit))

    def get_stats(self) -> dict:
        return {
            "total_events": len(self._history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": dict(Counter(str(e.type) for e in self._history)),
        }

    async def wait_for(
        self,
        event_type: EventType,
        workflow_id: str | None = None,
        node_id: str | None = None,
        execution_id: str | None = None,
        timeout: float | None = None,
    ) -> WorkflowEvent | None:
        """First matching event published from now on; None on timeout."""
        arrived: asyncio.Future[WorkflowEvent] = asyncio.get_running_loop().create_future()

        async def capture(event: WorkflowEvent) -> None:
            if not arrived.done():
                arrived.set_result(event)

        sub_id = self.subscribe(
            [event_type],
            capture,
            filter_workflow=workflow_id,
            filter_node=node_id,
            filter_execution=execution_id,
        )
        try:
            return await asyncio.wait_for(arrived, timeout)
        except TimeoutError:
            return None
        finally:
            self.unsubscribe(sub_id)
