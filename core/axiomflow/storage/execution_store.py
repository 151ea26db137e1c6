"""
Execution Store - persistence boundary for execution state.

The executor saves after every committed step. Each state carries a step
sequence number; a save older than what is already stored is dropped, so a
replayed step after a crash cannot overwrite newer progress.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any

from axiomflow.graph.errors import WorkflowError
from axiomflow.graph.workflow import WorkflowDefinition
from axiomflow.schemas.execution_state import ExecutionState, ExecutionStatus, utcnow

logger = logging.getLogger(__name__)


class ExecutionNotFound(WorkflowError, LookupError):
    """No execution with the requested id exists."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"execution '{execution_id}' not found")


def new_execution_id() -> str:
    return f"exec_{uuid.uuid4().hex}"


def new_execution_state(
    definition: WorkflowDefinition,
    initial_vars: dict[str, Any],
    tenant_id: str = "",
    trigger: dict[str, Any] | None = None,
) -> ExecutionState:
    """Fresh state: declared defaults overlaid with the trigger's variables."""
    variables = definition.default_variables()
    variables.update(initial_vars)
    return ExecutionState(
        execution_id=new_execution_id(),
        workflow_id=definition.id,
        workflow_version=definition.version,
        tenant_id=tenant_id,
        variables=variables,
        trigger=dict(trigger or {}),
    )


class ExecutionStore(ABC):
    """Durable storage for execution state."""

    @abstractmethod
    async def create(
        self,
        definition: WorkflowDefinition,
        initial_vars: dict[str, Any],
        tenant_id: str = "",
        trigger: dict[str, Any] | None = None,
    ) -> str:
        """Persist a new execution and return its id."""

    @abstractmethod
    async def load(self, execution_id: str) -> ExecutionState:
        """Load an execution. Raises ``ExecutionNotFound``."""

    @abstractmethod
    async def save(self, state: ExecutionState) -> bool:
        """Persist ``state``; returns False when it was older than the stored copy."""

    @abstractmethod
    async def load_pending(self, resume_token: str) -> ExecutionState | None:
        """The execution that issued ``resume_token``, or None if unknown."""

    @abstractmethod
    async def list_executions(
        self, status: ExecutionStatus | None = None
    ) -> list[ExecutionState]:
        """All executions, optionally filtered by status."""


class InMemoryExecutionStore(ExecutionStore):
    """Process-local store; states are copied in and out to avoid aliasing."""

    def __init__(self):
        self._states: dict[str, ExecutionState] = {}
        self._tokens: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def create(
        self,
        definition: WorkflowDefinition,
        initial_vars: dict[str, Any],
        tenant_id: str = "",
        trigger: dict[str, Any] | None = None,
    ) -> str:
        state = new_execution_state(definition, initial_vars, tenant_id, trigger)
        async with self._lock:
            self._states[state.execution_id] = state.model_copy(deep=True)
        return state.execution_id

    async def load(self, execution_id: str) -> ExecutionState:
        async with self._lock:
            state = self._states.get(execution_id)
            if state is None:
                raise ExecutionNotFound(execution_id)
            return state.model_copy(deep=True)

    async def save(self, state: ExecutionState) -> bool:
        async with self._lock:
            stored = self._states.get(state.execution_id)
            if stored is not None and state.step < stored.step:
                logger.debug(
                    "Dropping stale save of %s (step %d < %d)",
                    state.execution_id,
                    state.step,
                    stored.step,
                )
                return False
            state.updated_at = utcnow()
            self._states[state.execution_id] = state.model_copy(deep=True)
            if state.pending_input is not None:
                self._tokens[state.pending_input.resume_token] = state.execution_id
            return True

    async def load_pending(self, resume_token: str) -> ExecutionState | None:
        execution_id = self._tokens.get(resume_token)
        if execution_id is None:
            return None
        try:
            return await self.load(execution_id)
        except ExecutionNotFound:
            return None

    async def list_executions(
        self, status: ExecutionStatus | None = None
    ) -> list[ExecutionState]:
        async with self._lock:
            states = [s.model_copy(deep=True) for s in self._states.values()]
        if status is not None:
            states = [s for s in states if s.status == status]
        return sorted(states, key=lambda s: s.created_at)
