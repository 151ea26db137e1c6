"""
Supervisor delegation loop.

An agent node with a ``supervisor`` block runs this state machine instead of
a single model call::

    SUPERVISING --delegate(worker, task)--> DELEGATING(worker)
         ^                                        |
         +------------ worker result -------------+
    SUPERVISING --no delegation requested--> COMPLETE

Every turn the supervisor sees its worker roster, the current variable
snapshot, the worker results so far and a ``delegate`` tool. A response
without a delegation request ends the loop; its text becomes the
execution's final result. Each delegation consumes one unit of the
execution-wide delegation budget; running out fails the node with
``DelegationLimitExceeded``.

Delegation arguments are taken as given: ``task`` is opaque text and
``context`` an optional structured blob (a JSON string is decoded). Workers
do their own input checking.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from axiomflow.graph.errors import ErrorKind
from axiomflow.graph.expression import stringify
from axiomflow.graph.invocation import (
    agent_profile,
    call_model,
    format_inputs,
    invocation_failure,
    model_policy,
    parse_output,
)
from axiomflow.graph.node import (
    AgentConfig,
    Advance,
    Fail,
    Goto,
    NodeContext,
    NodeResult,
)
from axiomflow.llm.provider import ModelInvocationError, ModelResponse, Tool
from axiomflow.runtime.event_bus import EventType
from axiomflow.schemas.execution_state import Message

logger = logging.getLogger(__name__)

DELEGATE_TOOL_NAME = "delegate"
DEFAULT_WORKER_TASK = "Carry out your part of the workflow."

SUPERVISOR_PROMPT = """You are a workflow supervisor. Your job is to:
1. Understand the overall goal from the input
2. Break the work into steps
3. Delegate each step to the right worker with the `delegate` tool
4. Synthesize the workers' results
5. Answer without calling `delegate` once the goal is met; that answer is the final result

Available workers:
{roster}

Current workflow state:
{snapshot}"""


class DelegationState(StrEnum):
    SUPERVISING = "supervising"
    DELEGATING = "delegating"
    COMPLETE = "complete"


@dataclass
class Delegation:
    """A parsed delegate request."""

    worker: str
    task: str
    context: Any = None
    call_id: str | None = None


@dataclass
class DelegationRecord:
    worker: str
    task: str
    result: Any = None
    error: str | None = None


def delegate_tool(workers: list[str]) -> Tool:
    return Tool(
        name=DELEGATE_TOOL_NAME,
        description="Hand a task to one of the available workers and receive its result.",
        parameters={
            "type": "object",
            "properties": {
                "worker": {"type": "string", "enum": workers, "description": "Worker agent id"},
                "task": {"type": "string", "description": "The specific task to delegate"},
                "context": {
                    "type": "object",
                    "description": "Additional structured context for the worker",
                },
            },
            "required": ["worker", "task"],
        },
    )


def parse_delegations(response: ModelResponse) -> list[Delegation]:
    """
    Extract delegate requests from a supervisor turn.

    Tool calls named ``delegate`` are preferred; a plain-text JSON object of
    the form ``{"delegate": {"worker": ..., "task": ...}}`` is accepted from
    models without tool support.
    """
    delegations = []
    for call in response.tool_calls:
        if call.name != DELEGATE_TOOL_NAME:
            continue
        args = call.arguments or {}
        delegations.append(
            Delegation(
                worker=str(args.get("worker", "")),
                task=stringify(args.get("task", "")),
                context=_decode_context(args.get("context")),
                call_id=call.id,
            )
        )
    if delegations or response.tool_calls:
        return delegations

    try:
        payload = json.loads(response.text.strip())
    except (json.JSONDecodeError, AttributeError):
        return []
    request = payload.get("delegate") if isinstance(payload, dict) else None
    if isinstance(request, dict) and request.get("worker"):
        return [
            Delegation(
                worker=str(request["worker"]),
                task=stringify(request.get("task", "")),
                context=_decode_context(request.get("context")),
            )
        ]
    return []


def _decode_context(context: Any) -> Any:
    if isinstance(context, str) and context.strip()[:1] in ("{", "["):
        try:
            return json.loads(context)
        except json.JSONDecodeError:
            return context
    return context


@dataclass
class SupervisorLoop:
    """One run of the delegation state machine for a supervisor agent node."""

    ctx: NodeContext
    config: AgentConfig
    state: DelegationState = DelegationState.SUPERVISING
    used: int = 0
    retries: int = 0
    records: list[DelegationRecord] = field(default_factory=list)
    results: dict[str, Any] = field(default_factory=dict)
    messages: list[Message] = field(default_factory=list)

    @property
    def workers(self) -> list[str]:
        return self.config.supervisor.workers

    def _roster(self) -> str:
        lines = []
        for worker_id in self.workers:
            agent = self.ctx.deps.agents.get(worker_id)
            description = agent.description if agent else ""
            name = agent.name if agent and agent.name else worker_id
            lines.append(f"- {worker_id} ({name}): {description}".rstrip(": "))
        return "\n".join(lines)

    def _snapshot(self) -> str:
        snapshot = {"variables": dict(self.ctx.variables), "results": self.results}
        return json.dumps(snapshot, indent=2, default=str)

    def _system_prompt(self, base: str) -> str:
        prompt = SUPERVISOR_PROMPT.format(roster=self._roster(), snapshot=self._snapshot())
        return f"{base}\n\n{prompt}" if base else prompt

    def _fail(self, route: Fail) -> NodeResult:
        return NodeResult(
            route=route,
            messages=self.messages,
            retries=self.retries,
            delegations=self.used,
            output={"workers": self.results},
        )

    async def run(self) -> NodeResult:
        ctx, config = self.ctx, self.config
        profile = agent_profile(
            ctx,
            config.agent_id,
            stringify(ctx.resolve(config.system_prompt)) if config.system_prompt else None,
            config.model_override,
        )
        if profile is None:
            return NodeResult.fail(
                ErrorKind.MODEL_INVOCATION_FAILURE,
                f"supervisor agent '{config.agent_id}' is not in the agent catalog",
            )

        opening = Message(
            role="user",
            content=format_inputs(ctx.resolve_mapping(config.input_mapping)),
            node_id=ctx.node.id,
        )
        self.messages.append(opening)
        tools = [delegate_tool(self.workers)]

        while True:
            self.state = DelegationState.SUPERVISING
            policy = model_policy(ctx, config.max_retries)
            try:
                response = await call_model(
                    ctx,
                    policy,
                    profile.model_id,
                    self._system_prompt(profile.system_prompt),
                    [*ctx.history, *self.messages],
                    tools=tools,
                    timeout_ms=config.timeout_ms,
                )
            except (ModelInvocationError, TimeoutError) as e:
                self.retries += policy.retries
                return self._fail(
                    invocation_failure(e, f"supervisor '{profile.agent_id}'", config.timeout_ms)
                )
            self.retries += policy.retries

            delegations = parse_delegations(response)
            self.messages.append(
                Message(
                    role="assistant",
                    content=response.text,
                    name=profile.agent_id,
                    node_id=ctx.node.id,
                    tool_calls=[_tool_call_payload(d) for d in delegations if d.call_id],
                )
            )

            if not delegations:
                self.state = DelegationState.COMPLETE
                return self._complete(response, profile.agent_id)

            for delegation in delegations:
                if self.used >= ctx.delegation_budget:
                    return self._fail(
                        Fail(
                            ErrorKind.DELEGATION_LIMIT_EXCEEDED,
                            f"supervisor '{profile.agent_id}' exceeded the delegation limit "
                            f"({ctx.deps.config.max_delegations} cycles per execution)",
                            {"delegations": self.used},
                        )
                    )
                self.used += 1
                self.state = DelegationState.DELEGATING
                failure = await self._delegate(delegation)
                if failure is not None:
                    return self._fail(failure)

    async def _delegate(self, delegation: Delegation) -> Fail | None:
        ctx = self.ctx
        record = DelegationRecord(worker=delegation.worker, task=delegation.task)
        self.records.append(record)
        logger.info(
            f"   ⇢ Delegating to '{delegation.worker}' ({self.used}/{ctx.delegation_budget})",
            extra={"event": "delegation"},
        )
        if ctx.deps.event_bus is not None:
            await ctx.deps.event_bus.emit(
                EventType.DELEGATION,
                ctx.workflow_id,
                ctx.execution_id,
                ctx.node.id,
                worker=delegation.worker,
                task=delegation.task,
                cycle=self.used,
            )

        worker = (
            agent_profile(ctx, delegation.worker) if delegation.worker in self.workers else None
        )
        if worker is None:
            record.error = f"unknown worker '{delegation.worker}'"
            self._append_result(
                delegation,
                f"Error: '{delegation.worker}' is not an available worker. "
                f"Choose one of: {', '.join(self.workers)}.",
            )
            return None

        task = delegation.task or DEFAULT_WORKER_TASK
        if delegation.context not in (None, "", {}):
            task = f"{task}\n\nContext:\n{json.dumps(delegation.context, indent=2, default=str)}"

        policy = model_policy(ctx, self.config.max_retries)
        try:
            response = await call_model(
                ctx,
                policy,
                worker.model_id,
                worker.system_prompt,
                [Message(role="user", content=task, node_id=ctx.node.id)],
                timeout_ms=self.config.timeout_ms,
            )
        except (ModelInvocationError, TimeoutError) as e:
            record.error = str(e)
            return invocation_failure(e, f"worker '{worker.agent_id}'", self.config.timeout_ms)
        finally:
            self.retries += policy.retries

        record.result = parse_output(response.text)
        self.results[worker.agent_id] = record.result
        self._append_result(delegation, response.text)
        return None

    def _append_result(self, delegation: Delegation, content: str) -> None:
        if delegation.call_id:
            message = Message(
                role="tool",
                content=content,
                name=delegation.worker,
                tool_call_id=delegation.call_id,
                node_id=self.ctx.node.id,
            )
        else:
            message = Message(
                role="assistant", content=content, name=delegation.worker, node_id=self.ctx.node.id
            )
        self.messages.append(message)

    def _complete(self, response: ModelResponse, supervisor_id: str) -> NodeResult:
        final = parse_output(response.text, self.config.output_format)
        complete_node = self.config.supervisor.complete_node
        logger.info(
            f"   ✓ Supervisor '{supervisor_id}' complete after {self.used} delegation(s)"
        )
        return NodeResult(
            route=Goto(complete_node) if complete_node else Advance(),
            output={
                "result": final,
                "workers": self.results,
                "delegations": [asdict(record) for record in self.records],
            },
            messages=self.messages,
            retries=self.retries,
            delegations=self.used,
            final_output=final,
        )


def _tool_call_payload(delegation: Delegation) -> dict[str, Any]:
    arguments = {"worker": delegation.worker, "task": delegation.task}
    if delegation.context is not None:
        arguments["context"] = delegation.context
    return {
        "id": delegation.call_id,
        "type": "function",
        "function": {"name": DELEGATE_TOOL_NAME, "arguments": json.dumps(arguments, default=str)},
    }
