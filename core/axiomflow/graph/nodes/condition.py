"""Condition node: picks exactly one declared branch."""

import logging

from axiomflow.graph.errors import ErrorKind
from axiomflow.graph.expression import evaluate, evaluate_condition, stringify
from axiomflow.graph.invocation import (
    call_model,
    invocation_failure,
    model_policy,
)
from axiomflow.graph.node import (
    Advance,
    BranchSpec,
    ConditionConfig,
    Fail,
    NodeContext,
    NodeResult,
    NodeType,
)
from axiomflow.graph.nodes.base import NodeHandler, render_text
from axiomflow.llm.provider import ModelInvocationError
from axiomflow.schemas.execution_state import Message

logger = logging.getLogger(__name__)

CLASSIFIER_PROMPT = """You are a routing classifier inside a workflow.
Read the request and answer with exactly one of these labels and nothing else:
{labels}"""


def _literal(text: str) -> str:
    return text.strip().strip("'\"").lower()


class ConditionHandler(NodeHandler):
    """
    Routes ``advance(handle=branch.id)`` for the chosen branch.

    Expression conditions work in one of two modes:

    - node-level ``expression``: evaluated once; its value is matched against
      each branch's ``condition`` as a literal (``"true"``/``"false"`` or a
      category name)
    - no node-level expression: each branch's ``condition`` is a boolean
      expression, tried in declaration order; the first true one wins

    A default branch catches everything else. Without one, no match fails
    with ``NoMatchingBranch``.
    """

    node_type = NodeType.CONDITION

    async def execute(self, ctx: NodeContext) -> NodeResult:
        config: ConditionConfig = ctx.config
        if config.condition_type == "llm":
            return await self._classify(ctx, config)

        default = next((b for b in config.branches if b.is_default), None)
        candidates = [b for b in config.branches if not b.is_default]

        if config.expression is not None:
            value = evaluate(config.expression, ctx.variables, ctx.history)
            chosen = next(
                (b for b in candidates if _literal(b.condition) == stringify(value).lower()), None
            )
        else:
            value = None
            chosen = next(
                (
                    b
                    for b in candidates
                    if evaluate_condition(b.condition, ctx.variables, ctx.history)
                ),
                None,
            )

        return self._route(config, chosen or default, value)

    def _route(self, config: ConditionConfig, branch: BranchSpec | None, value) -> NodeResult:
        if branch is None:
            return NodeResult.fail(
                ErrorKind.NO_MATCHING_BRANCH,
                f"no branch of {[b.id for b in config.branches]} matched",
                value=value,
            )
        logger.info(f"   ⑂ Branch '{branch.id}' selected")
        return NodeResult(
            route=Advance(handle=branch.id),
            output={"branch": branch.id, "label": branch.label or branch.id, "value": value},
        )

    async def _classify(self, ctx: NodeContext, config: ConditionConfig) -> NodeResult:
        labels = {}
        for branch in config.branches:
            labels[branch.id.lower()] = branch
            if branch.label:
                labels[branch.label.lower()] = branch

        system_prompt = CLASSIFIER_PROMPT.format(
            labels="\n".join(f"- {b.label or b.id}" for b in config.branches)
        )
        request = Message(
            role="user",
            content=render_text(ctx, config.llm_prompt) or render_text(ctx, config.expression),
            node_id=ctx.node.id,
        )

        policy = model_policy(ctx, None)
        try:
            response = await call_model(
                ctx, policy, config.llm_model, system_prompt, [request]
            )
        except (ModelInvocationError, TimeoutError) as e:
            return NodeResult(
                route=invocation_failure(e, f"classifier '{ctx.node.id}'"), retries=policy.retries
            )

        answer = _literal(response.text)
        branch = labels.get(answer)
        if branch is None:
            return NodeResult(
                route=Fail(
                    ErrorKind.NO_MATCHING_BRANCH,
                    f"classifier answered {response.text.strip()!r}, "
                    f"expected one of {sorted(labels)}",
                    {"answer": response.text},
                ),
                retries=policy.retries,
            )

        result = self._route(config, branch, answer)
        result.retries = policy.retries
        return result
