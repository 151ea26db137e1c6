"""
File Execution Store - one JSON document per execution.

Directory structure:
    {base_path}/
        executions/
            {execution_id}/state.json   # Latest committed state
        tokens/
            {resume_token}              # Execution id that issued the token

Writes use temp file + rename, and blocking I/O runs in a worker thread.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any

from axiomflow.graph.workflow import WorkflowDefinition
from axiomflow.schemas.execution_state import ExecutionState, ExecutionStatus, utcnow
from axiomflow.storage.execution_store import (
    ExecutionNotFound,
    ExecutionStore,
    new_execution_state,
)
from axiomflow.utils.io import atomic_write

logger = logging.getLogger(__name__)


class FileExecutionStore(ExecutionStore):
    """Execution store on the local filesystem; survives process restarts."""

    def __init__(self, base_path: Path | str):
        self.base_path = Path(base_path)
        self.executions_dir = self.base_path / "executions"
        self.tokens_dir = self.base_path / "tokens"
        # Serializes the read-compare-write in save()
        self._lock = asyncio.Lock()

    def _state_path(self, execution_id: str) -> Path:
        return self.executions_dir / execution_id / "state.json"

    def _read(self, execution_id: str) -> ExecutionState | None:
        path = self._state_path(execution_id)
        if not path.exists():
            return None
        return ExecutionState.model_validate_json(path.read_text(encoding="utf-8"))

    def _write(self, state: ExecutionState) -> None:
        path = self._state_path(state.execution_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with atomic_write(path) as f:
            f.write(state.model_dump_json(indent=2))

        if state.pending_input is not None:
            self.tokens_dir.mkdir(parents=True, exist_ok=True)
            token_path = self.tokens_dir / state.pending_input.resume_token
            if not token_path.exists():
                with atomic_write(token_path) as f:
                    f.write(state.execution_id)

    async def create(
        self,
        definition: WorkflowDefinition,
        initial_vars: dict[str, Any],
        tenant_id: str = "",
        trigger: dict[str, Any] | None = None,
    ) -> str:
        state = new_execution_state(definition, initial_vars, tenant_id, trigger)
        async with self._lock:
            await asyncio.to_thread(self._write, state)
        logger.debug(f"Created execution {state.execution_id}")
        return state.execution_id

    async def load(self, execution_id: str) -> ExecutionState:
        state = await asyncio.to_thread(self._read, execution_id)
        if state is None:
            raise ExecutionNotFound(execution_id)
        return state

    async def save(self, state: ExecutionState) -> bool:
        async with self._lock:
            stored = await asyncio.to_thread(self._read, state.execution_id)
            if stored is not None and state.step < stored.step:
                logger.debug(
                    f"Dropping stale save of {state.execution_id} "
                    f"(step {state.step} < {stored.step})"
                )
                return False
            state.updated_at = utcnow()
            await asyncio.to_thread(self._write, state)
            return True

    async def load_pending(self, resume_token: str) -> ExecutionState | None:
        def _lookup() -> str | None:
            token_path = self.tokens_dir / resume_token
            # Tokens are url-safe base64; anything else cannot be ours
            if token_path.parent != self.tokens_dir or not token_path.is_file():
                return None
            return token_path.read_text(encoding="utf-8").strip()

        execution_id = await asyncio.to_thread(_lookup)
        if execution_id is None:
            return None
        return await asyncio.to_thread(self._read, execution_id)

    async def list_executions(
        self, status: ExecutionStatus | None = None
    ) -> list[ExecutionState]:
        def _scan() -> list[ExecutionState]:
            if not self.executions_dir.exists():
                return []
            states = []
            for directory in sorted(self.executions_dir.iterdir()):
                try:
                    state = self._read(directory.name)
                except ValueError as e:
                    logger.error(f"Skipping unreadable execution {directory.name}: {e}")
                    continue
                if state is not None:
                    states.append(state)
            return states

        states = await asyncio.to_thread(_scan)
        if status is not None:
            states = [s for s in states if s.status == status]
        return sorted(states, key=lambda s: s.created_at)
