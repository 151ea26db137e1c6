"""Handler protocol."""

from abc import ABC, abstractmethod
from typing import ClassVar

from axiomflow.graph.expression import stringify
from axiomflow.graph.node import NodeContext, NodeResult, NodeType


class NodeHandler(ABC):
    """Executes one node type. Handlers are stateless and shared across executions."""

    node_type: ClassVar[NodeType]

    @abstractmethod
    async def execute(self, ctx: NodeContext) -> NodeResult:
        """Run the node against the read-only context and return its result."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.node_type})"


def render_text(ctx: NodeContext, template: str | None) -> str:
    """Resolve a template and force a string result."""
    if not template:
        return ""
    return stringify(ctx.resolve(template))
