"""Trigger node: the entry point."""

from axiomflow.graph.node import NodeContext, NodeResult, NodeType
from axiomflow.graph.nodes.base import NodeHandler


class TriggerHandler(NodeHandler):
    """Exposes the firing event's payload as the trigger node's output."""

    node_type = NodeType.TRIGGER

    async def execute(self, ctx: NodeContext) -> NodeResult:
        return NodeResult(output=dict(ctx.trigger_payload))
