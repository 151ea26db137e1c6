"""Schema definitions for persisted execution state."""

from axiomflow.schemas.execution_state import (
    ExecutionError,
    ExecutionState,
    ExecutionStatus,
    Message,
)

__all__ = ["ExecutionError", "ExecutionState", "ExecutionStatus", "Message"]
