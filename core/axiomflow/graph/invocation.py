"""
Model invocation helpers shared by agent nodes, supervisors and llm conditions.

Wraps ``ModelInvoker.invoke`` with the node's timeout and retry policy and
turns the ways a call can end into routing directives.
"""

import asyncio
import json
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from axiomflow.graph.errors import ErrorKind
from axiomflow.graph.expression import stringify
from axiomflow.graph.node import Fail, NodeContext
from axiomflow.graph.retry import RetryPolicy, retry_notifier
from axiomflow.llm.provider import (
    ModelInvocationError,
    ModelResponse,
    PermanentModelError,
    Tool,
)
from axiomflow.schemas.execution_state import Message

DEFAULT_TASK = "Proceed with your task."

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


@dataclass
class AgentProfile:
    """Who is being invoked: catalog entry merged with node-level overrides."""

    agent_id: str
    name: str
    system_prompt: str
    model_id: str | None


def agent_profile(
    ctx: NodeContext,
    agent_id: str,
    system_prompt: str | None = None,
    model_override: str | None = None,
) -> AgentProfile | None:
    """None when the agent is neither in the catalog nor defined inline."""
    agent = ctx.deps.agents.get(agent_id)
    if agent is None and system_prompt is None:
        return None
    return AgentProfile(
        agent_id=agent_id,
        name=(agent.name if agent and agent.name else agent_id),
        system_prompt=system_prompt if system_prompt is not None else agent.system_prompt,
        model_id=model_override or (agent.model_id if agent else None),
    )


def is_transient(error: BaseException) -> bool:
    return isinstance(error, ModelInvocationError) and error.transient


def model_policy(ctx: NodeContext, max_retries: int | None) -> RetryPolicy:
    config = ctx.deps.config
    limit = config.default_max_retries if max_retries is None else max_retries
    return RetryPolicy(
        max_retries=limit,
        backoff=config.backoff,
        is_transient=is_transient,
        on_retry=retry_notifier(ctx, limit),
    )


async def call_model(
    ctx: NodeContext,
    policy: RetryPolicy,
    model_id: str | None,
    system_prompt: str,
    history: Sequence[Message],
    tools: list[Tool] | None = None,
    timeout_ms: int | None = None,
) -> ModelResponse:
    """
    Invoke the model under ``policy``.

    A per-call ``timeout_ms`` cancels the in-flight call and raises
    ``TimeoutError``, which is never retried.
    """
    model = ctx.deps.model
    if model is None:
        raise PermanentModelError("no model invoker configured")

    async def _attempt() -> ModelResponse:
        call = model.invoke(model_id, system_prompt, history, tools)
        if timeout_ms:
            return await asyncio.wait_for(call, timeout=timeout_ms / 1000)
        return await call

    return await policy.run(_attempt)


def invocation_failure(error: BaseException, who: str, timeout_ms: int | None = None) -> Fail:
    if isinstance(error, TimeoutError):
        return Fail(
            ErrorKind.TIMEOUT,
            f"{who} did not answer within {timeout_ms}ms",
            {"timeout_ms": timeout_ms},
        )
    transient = isinstance(error, ModelInvocationError) and error.transient
    return Fail(
        ErrorKind.MODEL_INVOCATION_FAILURE,
        f"{who} failed: {error}",
        {"transient": transient},
    )


def format_inputs(inputs: Mapping[str, Any]) -> str:
    """Render resolved input mappings as the user turn."""
    if not inputs:
        return DEFAULT_TASK
    if len(inputs) == 1:
        (value,) = inputs.values()
        if isinstance(value, str):
            return value
    return "\n".join(f"{key}: {stringify(value)}" for key, value in inputs.items())


def parse_output(text: str, output_format: str = "auto") -> Any:
    """
    Interpret model text per the node's output format.

    ``json`` requires valid JSON (raises ``ValueError``), ``auto`` decodes
    text that looks like a JSON object or array, ``text`` keeps it verbatim.
    """
    if output_format == "text":
        return text
    candidate = text.strip()
    fenced = _FENCE.match(candidate)
    if fenced:
        candidate = fenced.group(1)
    if output_format == "json":
        return json.loads(candidate)
    if candidate[:1] in ("{", "["):
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            return text
    return text
