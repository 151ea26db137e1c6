"""
Workflow definition - the immutable, published graph an execution walks.

A definition bundles nodes, edges, a declared variable schema and a version
number. Agent and tool catalogs travel separately: they are passed to the
executor at construction so a definition only refers to them by id.
"""

import json
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from axiomflow.graph.edge import EdgeSpec
from axiomflow.graph.node import NodeSpec, NodeType


class VariableType(StrEnum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    ANY = "any"

    def accepts(self, value: Any) -> bool:
        if value is None or self is VariableType.ANY:
            return True
        if self is VariableType.STRING:
            return isinstance(value, str)
        if self is VariableType.NUMBER:
            return isinstance(value, int | float) and not isinstance(value, bool)
        if self is VariableType.BOOLEAN:
            return isinstance(value, bool)
        if self is VariableType.ARRAY:
            return isinstance(value, list | tuple)
        return isinstance(value, dict)


class VariableSpec(BaseModel):
    """A declared workflow variable."""

    name: str
    type: VariableType = VariableType.ANY
    default_value: Any = Field(
        default=None, validation_alias=AliasChoices("default_value", "defaultValue", "default")
    )
    description: str = ""

    model_config = {"extra": "allow", "populate_by_name": True}


class AgentDefinition(BaseModel):
    """An entry of the agent catalog handed to the executor."""

    id: str
    name: str = ""
    description: str = ""
    type: Literal["supervisor", "worker"] = "worker"
    system_prompt: str = ""
    model_id: str | None = None
    temperature: float | None = None
    tools: list[str] = Field(default_factory=list)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class ToolDefinition(BaseModel):
    """An entry of the tool catalog: which provider action a tool id maps to."""

    id: str
    name: str = ""
    description: str = ""
    provider: str
    endpoint: str
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class WorkflowDefinition(BaseModel):
    """
    A published workflow.

    Treat instances as immutable once handed to a runtime; publishing a change
    means publishing a new version.
    """

    id: str
    name: str = ""
    description: str = ""
    version: int = 1
    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)
    variables: list[VariableSpec] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    def get_node(self, node_id: str) -> NodeSpec | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def entry_nodes(self) -> list[NodeSpec]:
        return [n for n in self.nodes if n.type == NodeType.TRIGGER]

    def default_variables(self) -> dict[str, Any]:
        return {v.name: v.default_value for v in self.variables if v.default_value is not None}

    @property
    def key(self) -> tuple[str, int]:
        return (self.id, self.version)


class WorkflowBundle(BaseModel):
    """A definition file that may carry its own agent and tool catalogs."""

    workflow: WorkflowDefinition
    agents: list[AgentDefinition] = Field(default_factory=list)
    tools: list[ToolDefinition] = Field(default_factory=list)

    def agent_catalog(self) -> dict[str, AgentDefinition]:
        return {a.id: a for a in self.agents}

    def tool_catalog(self) -> dict[str, ToolDefinition]:
        return {t.id: t for t in self.tools}


def load_bundle(path: str | Path) -> WorkflowBundle:
    """
    Load a workflow file.

    Accepts either a bare definition or ``{"workflow": ..., "agents": [...],
    "tools": [...]}``.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if "workflow" in data:
        return WorkflowBundle.model_validate(data)
    return WorkflowBundle(workflow=WorkflowDefinition.model_validate(data))


def load_workflow(path: str | Path) -> WorkflowDefinition:
    return load_bundle(path).workflow
