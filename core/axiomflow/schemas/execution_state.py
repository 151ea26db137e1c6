"""
Execution State Schema - the mutable record of one running workflow.

One ``ExecutionState`` exists per execution. It is created when a trigger
fires, mutated only by the executor's step-commit phase, and persisted to
the execution store after every step so a suspended or crashed execution can
be picked up again.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field

from axiomflow.graph.hitl import HumanInputRequest


def utcnow() -> datetime:
    return datetime.now(UTC)


class ExecutionStatus(StrEnum):
    """Lifecycle status of an execution."""

    RUNNING = "running"
    SUSPENDED = "suspended"  # Waiting on a human decision
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class Message(BaseModel):
    """One role-tagged entry of the message history."""

    role: Literal["system", "user", "assistant", "tool"]
    content: str
    name: str | None = None  # Agent or tool that produced the entry
    node_id: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[dict[str, Any]] = Field(default_factory=list)

    def to_llm(self) -> dict[str, Any]:
        """Shape expected by chat-completion style APIs."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name and self.role != "tool":
            payload["name"] = self.name
        if self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            payload["tool_calls"] = self.tool_calls
        return payload


class ExecutionError(BaseModel):
    """An entry of the append-only error list."""

    kind: str
    message: str
    node_id: str | None = None
    branch: str | None = None
    step: int = 0
    occurred_at: datetime = Field(default_factory=utcnow)
    details: dict[str, Any] = Field(default_factory=dict)


class ExecutionState(BaseModel):
    """Complete, serializable state of a workflow execution."""

    execution_id: str
    workflow_id: str
    workflow_version: int = 1
    tenant_id: str = ""

    status: ExecutionStatus = ExecutionStatus.RUNNING

    # Workflow variables plus one namespace per executed node
    variables: dict[str, Any] = Field(default_factory=dict)
    history: list[Message] = Field(default_factory=list)

    # More than one pointer only while a parallel region is running
    current_nodes: list[str] = Field(default_factory=list)
    path: list[str] = Field(default_factory=list)

    errors: list[ExecutionError] = Field(default_factory=list)

    # Step sequence number; the store uses it to drop stale saves
    step: int = 0
    retry_counts: dict[str, int] = Field(default_factory=dict)
    delegation_count: int = 0

    pending_input: HumanInputRequest | None = None
    resumed_tokens: list[str] = Field(default_factory=list)

    trigger: dict[str, Any] = Field(default_factory=dict)
    final_output: Any = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    model_config = {"extra": "allow"}

    @property
    def total_retries(self) -> int:
        return sum(self.retry_counts.values())

    @property
    def last_error(self) -> ExecutionError | None:
        return self.errors[-1] if self.errors else None

    def record_error(
        self,
        kind: str,
        message: str,
        node_id: str | None = None,
        branch: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ExecutionError:
        error = ExecutionError(
            kind=str(kind),
            message=message,
            node_id=node_id,
            branch=branch,
            step=self.step,
            details=details or {},
        )
        self.errors.append(error)
        return error

    def mark_failed(
        self,
        kind: str,
        message: str,
        node_id: str | None = None,
        branch: str | None = None,
        **details,
    ) -> None:
        self.record_error(kind, message, node_id=node_id, branch=branch, details=details or None)
        self.status = ExecutionStatus.FAILED
        self.completed_at = utcnow()

    def mark_completed(self, final_output: Any) -> None:
        self.status = ExecutionStatus.COMPLETED
        self.final_output = final_output
        self.current_nodes = []
        self.completed_at = utcnow()

    def summary(self) -> dict[str, Any]:
        """Queryable view for diagnosis of failed or suspended executions."""
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "workflow_version": self.workflow_version,
            "status": str(self.status),
            "current_nodes": list(self.current_nodes),
            "path": list(self.path),
            "steps": self.step,
            "retries": self.total_retries,
            "errors": [e.model_dump(mode="json") for e in self.errors],
            "pending_input": (
                self.pending_input.model_dump(mode="json") if self.pending_input else None
            ),
            "final_output": self.final_output,
        }
