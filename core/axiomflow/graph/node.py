"""
Node Protocol - the typed units of work in a workflow graph.

The node-type set is closed: every ``NodeSpec`` has one of the types in
``NodeType`` and a config validated by that type's config model. Each type
is executed by exactly one handler (see ``axiomflow.graph.nodes``).

A handler never mutates execution state. It receives a read-only
``NodeContext`` and returns a ``NodeResult``: values to merge into the
variable store, messages to append to the history, and a routing directive
telling the executor where to go next.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
)
from pydantic.alias_generators import to_camel

from axiomflow.graph.edge import EdgeSpec
from axiomflow.graph.errors import ErrorKind
from axiomflow.graph.expression import resolve, resolve_value
from axiomflow.graph.hitl import HumanInputRequest
from axiomflow.schemas.execution_state import Message, utcnow

if TYPE_CHECKING:
    from axiomflow.config import EngineConfig
    from axiomflow.graph.workflow import AgentDefinition, ToolDefinition
    from axiomflow.integrations.connector import IntegrationConnector
    from axiomflow.llm.provider import ModelInvoker
    from axiomflow.runtime.event_bus import EventBus


class NodeType(StrEnum):
    """The closed set of node types."""

    TRIGGER = "trigger"
    AGENT = "agent"
    TOOL = "tool"
    CONDITION = "condition"
    TRANSFORM = "transform"
    LOOP = "loop"
    PARALLEL = "parallel"
    HUMAN_INPUT = "humanInput"
    OUTPUT = "output"


# ---------------------------------------------------------------------------
# Per-type configuration
# ---------------------------------------------------------------------------


class NodeConfig(BaseModel):
    """Base for type-specific configs. Accepts camelCase or snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class TriggerConfig(NodeConfig):
    trigger_type: Literal["webhook", "schedule", "manual", "event"] = Field(
        default="manual", alias="type"
    )
    cron_expression: str | None = None
    interval_seconds: float | None = Field(default=None, gt=0)
    event_type: str | None = None
    webhook_path: str | None = None


class SupervisorConfig(NodeConfig):
    workers: list[str] = Field(min_length=1, description="Agent ids the supervisor may delegate to")
    complete_node: str | None = Field(
        default=None, description="Node to jump to once the supervisor stops delegating"
    )


class AgentConfig(NodeConfig):
    agent_id: str
    agent_name: str = ""
    system_prompt: str | None = None
    model_override: str | None = None
    input_mapping: dict[str, Any] = Field(default_factory=dict)
    output_key: str | None = None
    max_retries: int | None = Field(default=None, ge=0)
    timeout_ms: int | None = Field(default=None, gt=0)
    output_format: Literal["auto", "text", "json"] = "auto"
    supervisor: SupervisorConfig | None = None


class ToolConfig(NodeConfig):
    tool_id: str
    tool_name: str = ""
    provider: str | None = None
    endpoint: str | None = None
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] | None = None
    input_mapping: dict[str, Any] = Field(default_factory=dict)
    output_key: str | None = None


class BranchSpec(NodeConfig):
    id: str
    label: str = ""
    condition: str = ""
    default: bool = False

    @property
    def is_default(self) -> bool:
        return self.default or self.condition.strip().lower() in ("default", "else")


class ConditionConfig(NodeConfig):
    condition_type: Literal["expression", "llm"] = "expression"
    expression: str | None = None
    llm_prompt: str | None = None
    llm_model: str | None = None
    branches: list[BranchSpec] = Field(default_factory=list)
    output_key: str | None = None

    @property
    def handles(self) -> list[str]:
        return [b.id for b in self.branches]


class TransformConfig(NodeConfig):
    transform_type: Literal["jmespath", "template", "code"]
    expression: str
    input_key: str | None = None
    output_key: str | None = None


class SubgraphSpec(BaseModel):
    """A nested graph executed by loop nodes once per element."""

    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)
    entry: str | None = None


class LoopConfig(NodeConfig):
    source: str
    item_variable: str = "item"
    index_variable: str = "index"
    body: SubgraphSpec
    collect_key: str | None = None
    output_key: str | None = None
    max_iterations: int | None = Field(default=None, gt=0)


class ParallelConfig(NodeConfig):
    branches: list[str] = Field(default_factory=list)
    join: str | None = None


class HumanInputConfig(NodeConfig):
    prompt: str
    assign_to: str | None = None
    timeout_hours: float = Field(default=24.0, gt=0)
    options: list[str] = Field(default_factory=list)
    output_key: str | None = None


class OutputConfig(NodeConfig):
    outputs: dict[str, Any] = Field(default_factory=dict)
    output_key: str | None = None


CONFIG_MODELS: dict[NodeType, type[NodeConfig]] = {
    NodeType.TRIGGER: TriggerConfig,
    NodeType.AGENT: AgentConfig,
    NodeType.TOOL: ToolConfig,
    NodeType.CONDITION: ConditionConfig,
    NodeType.TRANSFORM: TransformConfig,
    NodeType.LOOP: LoopConfig,
    NodeType.PARALLEL: ParallelConfig,
    NodeType.HUMAN_INPUT: HumanInputConfig,
    NodeType.OUTPUT: OutputConfig,
}


class NodeSpec(BaseModel):
    """
    Specification for a node in the graph.

    ``config`` holds the raw type-specific settings (the visual builder stores
    them under ``data``); ``parsed_config()`` returns the validated model.

    Example:
        NodeSpec(
            id="research",
            type=NodeType.AGENT,
            config={"agentId": "leadResearcher", "outputKey": "leads"},
        )
    """

    id: str
    type: NodeType
    name: str = ""
    description: str = ""
    config: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("config", "data")
    )

    model_config = {"extra": "allow", "populate_by_name": True}

    _parsed: NodeConfig | None = PrivateAttr(default=None)

    def parsed_config(self) -> NodeConfig:
        """Validate and cache the type-specific config (raises pydantic.ValidationError)."""
        if self._parsed is None:
            self._parsed = CONFIG_MODELS[self.type].model_validate(self.config)
        return self._parsed

    @property
    def output_key(self) -> str:
        """Where the node's primary result lands in the variable store."""
        key = self.config.get("outputKey") or self.config.get("output_key")
        return key or self.id


SubgraphSpec.model_rebuild()
LoopConfig.model_rebuild()


# ---------------------------------------------------------------------------
# Routing directives
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Advance:
    """Follow static edges, optionally only those labelled ``handle``."""

    handle: str | None = None


@dataclass(frozen=True)
class Goto:
    """Dynamic override: continue at ``node_id``."""

    node_id: str


@dataclass(frozen=True)
class Suspend:
    """Halt until an external resume call supplies a decision."""

    reason: str
    resume_token: str
    deadline: datetime
    request: HumanInputRequest | None = None


@dataclass(frozen=True)
class Fail:
    """Stop the execution with a classified error."""

    kind: ErrorKind
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Fork:
    """Run ``branches`` concurrently until each reaches ``join``."""

    branches: tuple[str, ...]
    join: str | None = None


@dataclass(frozen=True)
class Complete:
    """Terminal: the execution is finished."""


Route = Advance | Goto | Suspend | Fail | Fork | Complete


@dataclass
class NodeResult:
    """
    The output contract of a handler.

    ``output`` is the node's primary result; the executor stores it under the
    node's output key and namespaces it under the node id. ``outputs`` holds
    any additional keys to merge.
    """

    route: Route = field(default_factory=Advance)
    output: Any = None
    outputs: dict[str, Any] = field(default_factory=dict)
    messages: list[Message] = field(default_factory=list)
    retries: int = 0
    delegations: int = 0
    latency_ms: int = 0
    # Set by supervisors and output nodes: the execution's final result
    final_output: Any = None

    @property
    def success(self) -> bool:
        return not isinstance(self.route, Fail)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str, **details: Any) -> "NodeResult":
        return cls(route=Fail(kind=kind, message=message, details=details))


@dataclass
class SubgraphOutcome:
    """What one run of a nested graph (a loop body) produced."""

    variables: dict[str, Any] = field(default_factory=dict)
    written: dict[str, Any] = field(default_factory=dict)
    messages: list[Message] = field(default_factory=list)
    retries: int = 0
    delegations: int = 0
    steps: int = 0
    failure: Fail | None = None


# ---------------------------------------------------------------------------
# Handler context
# ---------------------------------------------------------------------------


@dataclass
class HandlerDeps:
    """External collaborators and settings made available to handlers."""

    config: EngineConfig
    model: ModelInvoker | None = None
    connector: IntegrationConnector | None = None
    agents: Mapping[str, AgentDefinition] = field(default_factory=dict)
    tools: Mapping[str, ToolDefinition] = field(default_factory=dict)
    clock: Callable[[], datetime] | None = None
    subgraph_runner: Any = None  # WorkflowExecutor; runs loop bodies
    event_bus: EventBus | None = None

    def now(self) -> datetime:
        return self.clock() if self.clock else utcnow()


@dataclass
class NodeContext:
    """Read-only view of the execution handed to a handler."""

    node: NodeSpec
    variables: Mapping[str, Any]
    history: Sequence[Message]
    deps: HandlerDeps
    execution_id: str = ""
    workflow_id: str = ""
    tenant_id: str = ""
    trigger_payload: Mapping[str, Any] = field(default_factory=dict)
    delegation_budget: int = 0
    branch: str | None = None
    graph: Any = None  # CompiledGraph the node belongs to

    @property
    def config(self) -> Any:
        return self.node.parsed_config()

    def resolve(self, template: Any) -> Any:
        return resolve(template, self.variables, self.history)

    def resolve_mapping(self, mapping: Mapping[str, Any]) -> dict[str, Any]:
        return resolve_value(dict(mapping), self.variables, self.history)
