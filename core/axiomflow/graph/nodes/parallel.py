"""Parallel node: hands the fork to the executor."""

from axiomflow.graph.node import Fork, NodeContext, NodeResult, NodeType, ParallelConfig
from axiomflow.graph.nodes.base import NodeHandler


class ParallelHandler(NodeHandler):
    node_type = NodeType.PARALLEL

    async def execute(self, ctx: NodeContext) -> NodeResult:
        config: ParallelConfig = ctx.config
        join = ctx.graph.parallel_joins.get(ctx.node.id) if ctx.graph else config.join
        return NodeResult(
            route=Fork(branches=tuple(config.branches), join=join),
            output={"branches": list(config.branches), "join": join},
        )
