"""Agent node: one model call, or a supervisor delegation loop."""

import logging
import time

from axiomflow.graph.delegation import SupervisorLoop
from axiomflow.graph.errors import ErrorKind
from axiomflow.graph.invocation import (
    agent_profile,
    call_model,
    format_inputs,
    invocation_failure,
    model_policy,
    parse_output,
)
from axiomflow.graph.node import AgentConfig, Fail, NodeContext, NodeResult, NodeType
from axiomflow.graph.nodes.base import NodeHandler, render_text
from axiomflow.llm.provider import ModelInvocationError
from axiomflow.schemas.execution_state import Message

logger = logging.getLogger(__name__)


class AgentHandler(NodeHandler):
    """
    Resolves ``inputMapping``, invokes the agent's model with its system
    prompt plus the running history, and stores the (optionally JSON-decoded)
    answer under ``outputKey``.
    """

    node_type = NodeType.AGENT

    async def execute(self, ctx: NodeContext) -> NodeResult:
        config: AgentConfig = ctx.config
        if config.supervisor is not None:
            return await SupervisorLoop(ctx, config).run()

        profile = agent_profile(
            ctx,
            config.agent_id,
            render_text(ctx, config.system_prompt) if config.system_prompt else None,
            config.model_override,
        )
        if profile is None:
            return NodeResult.fail(
                ErrorKind.MODEL_INVOCATION_FAILURE,
                f"agent '{config.agent_id}' is not in the agent catalog",
            )

        inputs = ctx.resolve_mapping(config.input_mapping)
        request = Message(role="user", content=format_inputs(inputs), node_id=ctx.node.id)

        policy = model_policy(ctx, config.max_retries)
        started = time.monotonic()
        try:
            response = await call_model(
                ctx,
                policy,
                profile.model_id,
                profile.system_prompt,
                [*ctx.history, request],
                timeout_ms=config.timeout_ms,
            )
        except (ModelInvocationError, TimeoutError) as e:
            logger.warning(
                f"   ✗ Agent '{profile.agent_id}' failed after {policy.retries} retries: {e}"
            )
            failure = invocation_failure(e, f"agent '{profile.agent_id}'", config.timeout_ms)
            return NodeResult(route=failure, retries=policy.retries)
        latency_ms = int((time.monotonic() - started) * 1000)

        try:
            output = parse_output(response.text, config.output_format)
        except ValueError as e:
            return NodeResult(
                route=Fail(
                    ErrorKind.MODEL_INVOCATION_FAILURE,
                    f"agent '{profile.agent_id}' returned invalid JSON: {e}",
                ),
                retries=policy.retries,
            )

        reply = Message(
            role="assistant", content=response.text, name=profile.name, node_id=ctx.node.id
        )
        logger.info(
            f"   ✓ Agent '{profile.agent_id}' answered",
            extra={"latency_ms": latency_ms, "model": response.model},
        )
        return NodeResult(
            output=output,
            messages=[request, reply],
            retries=policy.retries,
            latency_ms=latency_ms,
        )
