"""Human input node: suspends the execution until a decision arrives."""

import logging

from axiomflow.graph.hitl import HumanInputRequest
from axiomflow.graph.node import HumanInputConfig, NodeContext, NodeResult, NodeType, Suspend
from axiomflow.graph.nodes.base import NodeHandler, render_text

logger = logging.getLogger(__name__)


class HumanInputHandler(NodeHandler):
    """
    Builds the pending request (prompt and assignee rendered against the
    variables) and routes ``suspend``. The decision is written under the
    node's output key when the execution is resumed.
    """

    node_type = NodeType.HUMAN_INPUT

    async def execute(self, ctx: NodeContext) -> NodeResult:
        config: HumanInputConfig = ctx.config
        request = HumanInputRequest.create(
            node_id=ctx.node.id,
            prompt=render_text(ctx, config.prompt),
            now=ctx.deps.now(),
            timeout_hours=config.timeout_hours,
            assignee=render_text(ctx, config.assign_to) or None,
            options=config.options,
        )
        logger.info(
            f"   ⏸ Waiting for input at '{ctx.node.id}' until {request.deadline.isoformat()}"
        )
        return NodeResult(
            route=Suspend(
                reason=request.prompt,
                resume_token=request.resume_token,
                deadline=request.deadline,
                request=request,
            )
        )
