"""Execution store collaborators."""

from axiomflow.storage.execution_store import (
    ExecutionNotFound,
    ExecutionStore,
    InMemoryExecutionStore,
    new_execution_state,
)
from axiomflow.storage.file_store import FileExecutionStore

__all__ = [
    "ExecutionNotFound",
    "ExecutionStore",
    "FileExecutionStore",
    "InMemoryExecutionStore",
    "new_execution_state",
]
