"""Loop node: runs a nested sub-graph once per element of a sequence."""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import replace
from typing import Any

from axiomflow.graph.errors import ErrorKind
from axiomflow.graph.expression import MARKER_PATTERN, lookup_path
from axiomflow.graph.node import Fail, LoopConfig, NodeContext, NodeResult, NodeType
from axiomflow.graph.nodes.base import NodeHandler

logger = logging.getLogger(__name__)


class LoopHandler(NodeHandler):
    """
    Iterates ``source`` sequentially. Each iteration sees a copy of the
    variables with ``itemVariable``/``indexVariable`` bound, runs the body
    graph to its end, and contributes one element to the output list: the
    value at ``collectKey`` if set, otherwise everything the body wrote.

    The first failing iteration aborts the loop with the body's failure.
    """

    node_type = NodeType.LOOP

    async def execute(self, ctx: NodeContext) -> NodeResult:
        config: LoopConfig = ctx.config
        if MARKER_PATTERN.search(config.source):
            items = ctx.resolve(config.source)
        else:
            items = lookup_path(config.source, ctx.variables, ctx.history)

        if isinstance(items, str | bytes | Mapping) or not isinstance(items, Sequence):
            return NodeResult.fail(
                ErrorKind.RESOLUTION_ERROR,
                f"loop source {config.source!r} is {type(items).__name__}, expected a list",
                path=config.source,
            )

        limit = config.max_iterations or ctx.deps.config.max_loop_iterations
        if len(items) > limit:
            return NodeResult.fail(
                ErrorKind.LOOP_LIMIT_EXCEEDED,
                f"loop over {len(items)} items exceeds the limit of {limit} iterations",
                items=len(items),
                limit=limit,
            )

        body = ctx.graph.subgraphs[ctx.node.id]
        runner = ctx.deps.subgraph_runner
        collected: list[Any] = []
        messages = []
        retries = delegations = 0
        budget = ctx.delegation_budget

        for index, item in enumerate(items):
            scope = dict(ctx.variables)
            scope[config.item_variable] = item
            scope[config.index_variable] = index

            # Later iterations see the messages of earlier ones
            outcome = await runner.run_subgraph(
                body,
                scope,
                replace(
                    ctx,
                    history=[*ctx.history, *messages],
                    delegation_budget=budget - delegations,
                ),
            )
            messages.extend(outcome.messages)
            retries += outcome.retries
            delegations += outcome.delegations

            if outcome.failure is not None:
                failure = outcome.failure
                logger.warning(f"   ✗ Loop '{ctx.node.id}' aborted at iteration {index}")
                return NodeResult(
                    route=Fail(
                        failure.kind,
                        f"iteration {index}: {failure.message}",
                        {**failure.details, "iteration": index},
                    ),
                    output=collected,
                    messages=messages,
                    retries=retries,
                    delegations=delegations,
                )

            if config.collect_key:
                collected.append(outcome.variables.get(config.collect_key))
            else:
                collected.append(outcome.written)

        logger.info(f"   ✓ Loop '{ctx.node.id}' finished {len(items)} iteration(s)")
        return NodeResult(
            output=collected,
            messages=messages,
            retries=retries,
            delegations=delegations,
        )
