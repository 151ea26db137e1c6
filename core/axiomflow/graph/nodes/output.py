"""Output node: terminal."""

from axiomflow.graph.node import Complete, NodeContext, NodeResult, NodeType, OutputConfig
from axiomflow.graph.nodes.base import NodeHandler


class OutputHandler(NodeHandler):
    """
    Resolves ``outputs`` into the execution's final result and completes.

    Without an ``outputs`` mapping the node only completes: the final result
    stays whatever a supervisor already produced, or the variable store.
    """

    node_type = NodeType.OUTPUT

    async def execute(self, ctx: NodeContext) -> NodeResult:
        config: OutputConfig = ctx.config
        if not config.outputs:
            return NodeResult(route=Complete())
        final = ctx.resolve_mapping(config.outputs)
        return NodeResult(route=Complete(), output=final, final_output=final)
