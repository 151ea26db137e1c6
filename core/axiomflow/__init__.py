"""
axiomflow - a workflow graph execution engine.

Workflows are declarative graphs of typed nodes (trigger, agent, tool,
condition, transform, loop, parallel, humanInput, output). The executor
walks them against a variable store, resolves ``{{templated}}`` inputs,
branches, forks and joins, delegates between agents, and suspends for
human decisions.

Example:
    from axiomflow import InMemoryExecutionStore, WorkflowExecutor, load_bundle

    bundle = load_bundle("examples/templates/lead_generation/workflow.json")
    executor = WorkflowExecutor(
        store=InMemoryExecutionStore(),
        model=LiteLLMProvider(load_engine_config()),
        agents=bundle.agent_catalog(),
    )
    state = await executor.start(bundle.workflow, {"criteria": "fintech"})
"""

from axiomflow.config import EngineConfig, ModelEndpoint, load_engine_config
from axiomflow.graph.errors import (
    ErrorKind,
    ResolutionError,
    ResolutionErrorKind,
    ResumeError,
    ResumeErrorKind,
    ValidationErrorKind,
    WorkflowError,
    WorkflowValidationError,
)
from axiomflow.graph.executor import WorkflowExecutor
from axiomflow.graph.expression import evaluate_condition, resolve
from axiomflow.graph.hitl import HumanDecision, HumanInputRequest
from axiomflow.graph.node import NodeResult, NodeSpec, NodeType
from axiomflow.graph.validator import CompiledGraph, validate, validate_all
from axiomflow.graph.workflow import (
    AgentDefinition,
    ToolDefinition,
    WorkflowBundle,
    WorkflowDefinition,
    load_bundle,
    load_workflow,
)
from axiomflow.llm import LiteLLMProvider, MockModelInvoker, ModelInvoker
from axiomflow.integrations import IntegrationConnector, NangoConnector
from axiomflow.runtime.event_bus import EventBus, EventType, WorkflowEvent
from axiomflow.runtime.triggers import EventTrigger, ScheduleTrigger, TriggerEvent, WebhookTrigger
from axiomflow.runtime.workflow_runtime import WorkflowRuntime
from axiomflow.schemas.execution_state import ExecutionState, ExecutionStatus, Message
from axiomflow.storage import ExecutionStore, FileExecutionStore, InMemoryExecutionStore

__version__ = "0.1.0"

__all__ = [
    # Definitions
    "AgentDefinition",
    "NodeSpec",
    "NodeType",
    "ToolDefinition",
    "WorkflowBundle",
    "WorkflowDefinition",
    "load_bundle",
    "load_workflow",
    # Validation
    "CompiledGraph",
    "validate",
    "validate_all",
    # Execution
    "EngineConfig",
    "ModelEndpoint",
    "load_engine_config",
    "WorkflowExecutor",
    "NodeResult",
    "ExecutionState",
    "ExecutionStatus",
    "Message",
    "HumanDecision",
    "HumanInputRequest",
    "resolve",
    "evaluate_condition",
    # Collaborators
    "ModelInvoker",
    "LiteLLMProvider",
    "MockModelInvoker",
    "IntegrationConnector",
    "NangoConnector",
    "ExecutionStore",
    "InMemoryExecutionStore",
    "FileExecutionStore",
    # Runtime
    "EventBus",
    "EventType",
    "WorkflowEvent",
    "TriggerEvent",
    "ScheduleTrigger",
    "WebhookTrigger",
    "EventTrigger",
    "WorkflowRuntime",
    # Errors
    "WorkflowError",
    "WorkflowValidationError",
    "ValidationErrorKind",
    "ResolutionError",
    "ResolutionErrorKind",
    "ResumeError",
    "ResumeErrorKind",
    "ErrorKind",
]
