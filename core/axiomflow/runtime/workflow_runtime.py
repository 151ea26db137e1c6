"""
Workflow Runtime - owns published workflows and starts executions from
trigger events.

Definitions are immutable once published: registering the same
``(id, version)`` again is accepted only if nothing changed. A trigger
always starts the latest published version; a resume continues with the
version the execution was started on.
"""

import asyncio
import logging
from typing import Any

from axiomflow.graph.errors import ResumeError, ResumeErrorKind, WorkflowError
from axiomflow.graph.executor import WorkflowExecutor
from axiomflow.graph.node import TriggerConfig
from axiomflow.graph.workflow import WorkflowDefinition
from axiomflow.runtime.event_bus import EventBus, EventType
from axiomflow.runtime.triggers import (
    EventTrigger,
    ScheduleTrigger,
    TriggerEvent,
    WebhookTrigger,
)
from axiomflow.schemas.execution_state import ExecutionState

logger = logging.getLogger(__name__)


class WorkflowNotFound(WorkflowError, LookupError):
    """No published workflow with the requested id/version."""


class WorkflowRuntime:
    """
    Top-level entry point for running published workflows.

    Example:
        runtime = WorkflowRuntime(WorkflowExecutor(store, model=provider))
        runtime.register(definition)

        state = await runtime.trigger(TriggerEvent("lead-gen", {"criteria": "fintech"}))
        if state.pending_input:
            await runtime.resume(state.pending_input.resume_token, {"decision": "approve"})

    ``start()`` also wires schedule and event triggers declared on the
    trigger nodes of registered workflows.
    """

    def __init__(self, executor: WorkflowExecutor, event_bus: EventBus | None = None):
        self.executor = executor
        self.event_bus = event_bus or executor.event_bus or EventBus()
        if executor.event_bus is None:
            executor.event_bus = self.event_bus
            executor.deps.event_bus = self.event_bus
        self._definitions: dict[tuple[str, int], WorkflowDefinition] = {}
        self._latest: dict[str, int] = {}
        self._schedules: list[ScheduleTrigger] = []
        self._event_triggers: list[EventTrigger] = []
        self._webhooks: dict[str, WebhookTrigger] = {}
        self._background: set[asyncio.Task] = set()
        self._running = False

    # === PUBLISHING ===

    def register(self, definition: WorkflowDefinition) -> None:
        """
        Publish a definition.

        Raises:
            WorkflowValidationError: the definition is malformed.
            WorkflowError: a different definition is already published under
                the same id and version.
        """
        existing = self._definitions.get(definition.key)
        if existing is not None:
            if existing.model_dump() != definition.model_dump():
                raise WorkflowError(
                    f"workflow '{definition.id}' v{definition.version} is already published; "
                    "publish changes as a new version"
                )
            return

        self.executor.compile(definition)
        self._definitions[definition.key] = definition.model_copy(deep=True)
        self._latest[definition.id] = max(self._latest.get(definition.id, 0), definition.version)
        logger.info(f"Published workflow '{definition.id}' v{definition.version}")

        if self._running:
            self._wire_triggers(self._definitions[definition.key])

    def get_definition(self, workflow_id: str, version: int | None = None) -> WorkflowDefinition:
        version = version if version is not None else self._latest.get(workflow_id)
        definition = self._definitions.get((workflow_id, version)) if version else None
        if definition is None:
            suffix = f" v{version}" if version else ""
            raise WorkflowNotFound(f"workflow '{workflow_id}'{suffix} is not published")
        return definition

    def list_workflows(self) -> list[dict[str, Any]]:
        return [
            {"id": d.id, "name": d.name, "version": d.version, "latest": self._latest[d.id]}
            for d in self._definitions.values()
        ]

    # === EXECUTION ===

    async def trigger(self, event: TriggerEvent) -> ExecutionState:
        """Start an execution of the latest version and run it until it settles."""
        definition = self.get_definition(event.workflow_id)
        await self.event_bus.emit(
            EventType.TRIGGER_FIRED,
            definition.id,
            source=event.source,
            version=definition.version,
        )
        return await self.executor.start(
            definition, event.variables, tenant_id=event.tenant_id
        )

    async def handle_webhook(
        self,
        workflow_id: str,
        body: bytes | str | dict | None,
        headers: dict[str, str] | None = None,
        query: dict[str, str] | None = None,
    ) -> ExecutionState:
        """Start ``workflow_id`` from an inbound webhook request."""
        webhook = self._webhooks.get(workflow_id) or WebhookTrigger(workflow_id)
        return await self.trigger(webhook.from_request(body, headers, query))

    def add_webhook(self, workflow_id: str, secret: str | None = None, tenant_id: str = "") -> None:
        self._webhooks[workflow_id] = WebhookTrigger(workflow_id, secret, tenant_id)

    async def resume(self, resume_token: str, decision: Any) -> ExecutionState:
        """
        Continue a suspended execution.

        Raises:
            ResumeError: NotFound, AlreadyResumed or Expired.
        """
        state = await self.executor.store.load_pending(resume_token)
        if state is None:
            raise ResumeError(ResumeErrorKind.NOT_FOUND, resume_token)
        definition = self.get_definition(state.workflow_id, state.workflow_version)
        return await self.executor.resume(definition, resume_token, decision)

    async def cancel(self, execution_id: str) -> bool:
        return await self.executor.cancel(execution_id)

    async def get_execution(self, execution_id: str) -> ExecutionState:
        """Raises ``ExecutionNotFound``."""
        return await self.executor.store.load(execution_id)

    async def expire_overdue(self) -> list[str]:
        return await self.executor.expire_overdue()

    # === LIFECYCLE ===

    async def start(self) -> None:
        """Wire schedule and event triggers of every registered workflow."""
        if self._running:
            return
        self._running = True
        for workflow_id, version in self._latest.items():
            self._wire_triggers(self._definitions[(workflow_id, version)])
        logger.info(
            f"WorkflowRuntime started ({len(self._schedules)} schedules, "
            f"{len(self._event_triggers)} event triggers)"
        )

    async def stop(self) -> None:
        if not self._running:
            return
        for schedule in self._schedules:
            await schedule.stop()
        for trigger in self._event_triggers:
            trigger.stop()
        self._schedules.clear()
        self._event_triggers.clear()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._running = False
        logger.info("WorkflowRuntime stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def _wire_triggers(self, definition: WorkflowDefinition) -> None:
        for node in definition.entry_nodes():
            config = node.parsed_config()
            assert isinstance(config, TriggerConfig)
            if config.trigger_type == "schedule" and config.interval_seconds:
                schedule = ScheduleTrigger(definition.id, config.interval_seconds, self._fire)
                schedule.start()
                self._schedules.append(schedule)
            elif config.trigger_type == "event" and config.event_type:
                trigger = EventTrigger(
                    definition.id, config.event_type, self.event_bus, self._fire
                )
                trigger.start()
                self._event_triggers.append(trigger)
            elif config.trigger_type == "webhook" and definition.id not in self._webhooks:
                self.add_webhook(definition.id)
            elif config.trigger_type == "schedule" and config.cron_expression:
                logger.warning(
                    f"Workflow '{definition.id}': cron schedules are not run in-process; "
                    "set intervalSeconds"
                )

    async def _fire(self, event: TriggerEvent) -> None:
        """Trigger callback for schedules and events: runs in the background."""
        task = asyncio.create_task(self.trigger(event))
        self._background.add(task)
        task.add_done_callback(self._settled)

    def _settled(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Triggered execution failed to start: {task.exception()}")

