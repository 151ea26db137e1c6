"""Transform node: pure data reshaping, no external calls."""

from collections import ChainMap
from typing import Any

import jmespath
from jmespath.exceptions import JMESPathError

from axiomflow.graph.errors import ErrorKind, ResolutionError
from axiomflow.graph.expression import MARKER_PATTERN, lookup_path, resolve
from axiomflow.graph.node import NodeContext, NodeResult, NodeType, TransformConfig
from axiomflow.graph.nodes.base import NodeHandler
from axiomflow.graph.safe_eval import SafeEvalError, safe_eval


class TransformHandler(NodeHandler):
    """
    Applies ``expression`` to an input value and stores the result.

    The input is ``inputKey`` (a dotted path or a template) or, when absent,
    the whole variable store. ``jmespath`` runs a JMESPath query over it,
    ``template`` renders the expression with the input bound as ``input``,
    and ``code`` evaluates a restricted Python expression over ``input`` and
    the variables. Errors fail the node with ``TransformError`` and are never
    retried.
    """

    node_type = NodeType.TRANSFORM

    async def execute(self, ctx: NodeContext) -> NodeResult:
        config: TransformConfig = ctx.config
        try:
            data = self._input(ctx, config)
            output = self._apply(ctx, config, data)
        except (
            ResolutionError,
            JMESPathError,
            SafeEvalError,
            ArithmeticError,
            LookupError,
            TypeError,
            ValueError,
        ) as e:
            return NodeResult.fail(
                ErrorKind.TRANSFORM_ERROR,
                f"{config.transform_type} transform failed: {e}",
                expression=config.expression,
            )
        return NodeResult(output=output)

    def _input(self, ctx: NodeContext, config: TransformConfig) -> Any:
        if not config.input_key:
            return dict(ctx.variables)
        if MARKER_PATTERN.search(config.input_key):
            return ctx.resolve(config.input_key)
        return lookup_path(config.input_key, ctx.variables, ctx.history)

    def _apply(self, ctx: NodeContext, config: TransformConfig, data: Any) -> Any:
        if config.transform_type == "jmespath":
            return jmespath.search(config.expression, data)
        scope = ChainMap({"input": data}, dict(ctx.variables))
        if config.transform_type == "template":
            return resolve(config.expression, scope, ctx.history)
        return safe_eval(config.expression, scope)
