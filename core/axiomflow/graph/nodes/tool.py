"""Tool node: a provider action through the integration connector."""

import logging

from axiomflow.graph.errors import ErrorKind
from axiomflow.graph.node import Fail, NodeContext, NodeResult, NodeType, ToolConfig
from axiomflow.graph.nodes.base import NodeHandler, render_text
from axiomflow.graph.retry import RetryPolicy, retry_notifier
from axiomflow.integrations.connector import ConnectorAuthError, ConnectorError

logger = logging.getLogger(__name__)


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, ConnectorError) and error.transient


class ToolHandler(NodeHandler):
    """
    Calls ``provider``/``endpoint`` with the resolved ``inputMapping`` as payload.

    The tool catalog supplies provider, endpoint and method; node config may
    override any of them. Transient connector errors are retried up to the
    engine's ``tool_max_retries``; auth and other provider errors fail at once.
    """

    node_type = NodeType.TOOL

    async def execute(self, ctx: NodeContext) -> NodeResult:
        config: ToolConfig = ctx.config
        tool = ctx.deps.tools.get(config.tool_id)
        provider = config.provider or (tool.provider if tool else None)
        endpoint = config.endpoint or (tool.endpoint if tool else None)
        method = config.method or (tool.method if tool else "POST")

        if not provider or not endpoint:
            return NodeResult.fail(
                ErrorKind.TOOL_INVOCATION_FAILURE,
                f"tool '{config.tool_id}' has no provider/endpoint in the catalog or node config",
            )
        if ctx.deps.connector is None:
            return NodeResult.fail(
                ErrorKind.TOOL_INVOCATION_FAILURE, "no integration connector configured"
            )

        endpoint = render_text(ctx, endpoint)
        payload = ctx.resolve_mapping(config.input_mapping)

        limit = ctx.deps.config.tool_max_retries
        policy = RetryPolicy(
            max_retries=limit,
            backoff=ctx.deps.config.backoff,
            is_transient=_is_transient,
            on_retry=retry_notifier(ctx, limit),
        )
        try:
            response = await policy.run(
                lambda: ctx.deps.connector.call(
                    ctx.tenant_id, provider, endpoint, method, payload or None
                )
            )
        except ConnectorAuthError as e:
            logger.warning(f"   ✗ Tool '{config.tool_id}': {provider} auth failure")
            return NodeResult(
                route=Fail(
                    ErrorKind.TOOL_INVOCATION_FAILURE,
                    f"tool '{config.tool_id}': {e}",
                    {"auth": True, "provider": provider, "status_code": e.status_code},
                ),
                retries=policy.retries,
            )
        except ConnectorError as e:
            return NodeResult(
                route=Fail(
                    ErrorKind.TOOL_INVOCATION_FAILURE,
                    f"tool '{config.tool_id}': {e}",
                    {"transient": e.transient, "provider": provider, "status_code": e.status_code},
                ),
                retries=policy.retries,
            )

        logger.info(f"   ✓ Tool '{config.tool_id}' ({method} {provider}{endpoint})")
        return NodeResult(output=response, retries=policy.retries)
