"""
Workflow Executor - interprets workflow graphs.

The executor:
1. Validates and compiles a WorkflowDefinition
2. Creates an ExecutionState in the execution store
3. Walks the graph one node at a time, committing each NodeResult
4. Persists the state after every committed step
5. Forks parallel regions, runs loop bodies, suspends on human input
6. Finishes with status completed, suspended or failed

Handlers never touch the ExecutionState. They get a read-only
``NodeContext`` and return a ``NodeResult``; ``_commit`` is the only place
the variable store and the message history change. Parallel branches and
loop iterations commit into their own ``_Frame`` copies, which are merged
back in declared order.
"""

import asyncio
import copy
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from axiomflow.config import EngineConfig
from axiomflow.graph.errors import (
    ErrorKind,
    ResolutionError,
    ResumeError,
    ResumeErrorKind,
)
from axiomflow.graph.hitl import HumanDecision, HumanInputRequest
from axiomflow.graph.node import (
    Advance,
    Complete,
    Fail,
    Fork,
    Goto,
    HandlerDeps,
    NodeContext,
    NodeResult,
    NodeSpec,
    SubgraphOutcome,
    Suspend,
)
from axiomflow.graph.nodes import get_handler
from axiomflow.graph.validator import CompiledGraph, check_inputs, validate
from axiomflow.graph.workflow import AgentDefinition, ToolDefinition, WorkflowDefinition
from axiomflow.integrations.connector import IntegrationConnector
from axiomflow.llm.provider import ModelInvoker
from axiomflow.observability import set_trace_context
from axiomflow.runtime.event_bus import EventBus, EventType
from axiomflow.schemas.execution_state import ExecutionState, ExecutionStatus, Message
from axiomflow.storage.execution_store import ExecutionStore

logger = logging.getLogger(__name__)


@dataclass
class _Run:
    """Identity of the execution a walk belongs to."""

    execution_id: str
    workflow_id: str
    tenant_id: str = ""
    trigger: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def of(cls, state: ExecutionState) -> "_Run":
        return cls(state.execution_id, state.workflow_id, state.tenant_id, state.trigger)


@dataclass
class _StepPool:
    """Steps left for all branches of a parallel region, nested forks included."""

    left: int


@dataclass
class _Limits:
    steps: int
    delegations: int
    pool: _StepPool | None = None

    def take_step(self, taken: int) -> bool:
        """Claim one step; False once the budget is spent."""
        if self.pool is None:
            return taken < self.steps
        if self.pool.left <= 0:
            return False
        self.pool.left -= 1
        return True


@dataclass
class _Frame:
    """Scratch state of a parallel branch or loop iteration."""

    variables: dict[str, Any]
    history: list[Message]
    path: list[str] = field(default_factory=list)
    retry_counts: dict[str, int] = field(default_factory=dict)
    step: int = 0
    delegation_count: int = 0
    final_output: Any = None
    written: dict[str, Any] = field(default_factory=dict)


@dataclass
class _Halt:
    """Why a walk stopped."""

    reason: Literal["done", "joined", "suspended", "failed"]
    node_id: str | None = None
    branch: str | None = None
    failure: Fail | None = None
    suspend: Suspend | None = None
    # Additional branch failures collected under the wait_all policy
    others: list["_Halt"] = field(default_factory=list)


class WorkflowExecutor:
    """
    Executes workflow definitions against an execution store.

    Example:
        executor = WorkflowExecutor(
            store=InMemoryExecutionStore(),
            model=LiteLLMProvider(config),
            connector=NangoConnector(secret_key),
            config=config,
            agents=bundle.agent_catalog(),
            tools=bundle.tool_catalog(),
        )

        state = await executor.start(definition, {"criteria": "fintech"})
        if state.status == ExecutionStatus.SUSPENDED:
            state = await executor.resume(
                definition, state.pending_input.resume_token, {"decision": "approve"}
            )
    """

    def __init__(
        self,
        store: ExecutionStore,
        model: ModelInvoker | None = None,
        connector: IntegrationConnector | None = None,
        config: EngineConfig | None = None,
        agents: Mapping[str, AgentDefinition] | None = None,
        tools: Mapping[str, ToolDefinition] | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.config = config or EngineConfig()
        self.event_bus = event_bus
        self.deps = HandlerDeps(
            config=self.config,
            model=model,
            connector=connector,
            agents=dict(agents or {}),
            tools=dict(tools or {}),
            clock=clock,
            subgraph_runner=self,
            event_bus=event_bus,
        )
        self._compiled: dict[tuple[str, int], CompiledGraph] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_requested: set[str] = set()
        self._resume_lock = asyncio.Lock()

    # === PUBLIC OPERATIONS ===

    def compile(self, definition: WorkflowDefinition) -> CompiledGraph:
        """Validate once per (id, version); raises WorkflowValidationError."""
        compiled = self._compiled.get(definition.key)
        if compiled is None:
            compiled = validate(
                definition, agents=self.deps.agents or None, tools=self.deps.tools or None
            )
            self._compiled[definition.key] = compiled
        return compiled

    async def start(
        self,
        definition: WorkflowDefinition,
        variables: dict[str, Any] | None = None,
        tenant_id: str = "",
        trigger: dict[str, Any] | None = None,
    ) -> ExecutionState:
        """
        Create an execution and run it until it completes, fails or suspends.

        ``variables`` are the firing event's initial bindings; they also become
        the trigger node's output unless a separate ``trigger`` payload is given.

        Raises:
            WorkflowValidationError: the definition or the inputs are invalid.
        """
        graph = self.compile(definition)
        variables = dict(variables or {})
        check_inputs(definition, variables)

        execution_id = await self.store.create(
            definition, variables, tenant_id, trigger if trigger is not None else variables
        )
        state = await self.store.load(execution_id)
        state.current_nodes = [graph.entry]
        await self.store.save(state)

        logger.info(
            f"🚀 Starting workflow '{definition.name or definition.id}' "
            f"v{definition.version} as {execution_id}"
        )
        await self._emit(EventType.EXECUTION_STARTED, _Run.of(state), tenant_id=tenant_id)
        return await self._launch(graph, state)

    async def resume(
        self,
        definition: WorkflowDefinition,
        resume_token: str,
        decision: Any,
    ) -> ExecutionState:
        """
        Continue a suspended execution with a human decision.

        Each token resumes its execution exactly once.

        Raises:
            ResumeError: NotFound for an unknown token, AlreadyResumed for a
                token that was already used, Expired past the deadline (the
                execution is then failed with kind Expired).
        """
        graph = self.compile(definition)
        async with self._resume_lock:
            state = await self.store.load_pending(resume_token)
            if state is None:
                raise ResumeError(ResumeErrorKind.NOT_FOUND, resume_token)
            if resume_token in state.resumed_tokens:
                raise ResumeError(
                    ResumeErrorKind.ALREADY_RESUMED,
                    resume_token,
                    f"execution {state.execution_id} was already resumed with this token",
                )

            pending = state.pending_input
            now = self.deps.now()
            if (
                state.status != ExecutionStatus.SUSPENDED
                or pending is None
                or pending.resume_token != resume_token
                or pending.is_expired(now)
            ):
                if state.status == ExecutionStatus.SUSPENDED:
                    await self._expire(state, pending)
                raise ResumeError(
                    ResumeErrorKind.EXPIRED,
                    resume_token,
                    f"execution {state.execution_id} is no longer waiting for input",
                )

            state.resumed_tokens.append(resume_token)
            state.pending_input = None
            state.status = ExecutionStatus.RUNNING
            node = graph.node(pending.node_id)
            answer = _decision(decision, now).to_output()
            _commit(state, node, NodeResult(output=answer), count=False)
            state.current_nodes = graph.next_nodes(node.id)[:1]
            await self.store.save(state)

        logger.info(f"▶ Resuming {state.execution_id} after '{pending.node_id}'")
        await self._emit(EventType.EXECUTION_RESUMED, _Run.of(state), pending.node_id)
        return await self._launch(graph, state)

    async def recover(self, definition: WorkflowDefinition, execution_id: str) -> ExecutionState:
        """
        Re-run a running execution from its persisted node pointer.

        Used after a crash: the step that was in flight is executed again.
        Suspended and finished executions are returned unchanged.
        """
        graph = self.compile(definition)
        state = await self.store.load(execution_id)
        if state.status != ExecutionStatus.RUNNING:
            return state
        if not state.current_nodes:
            state.current_nodes = [graph.entry] if not state.path else []
        logger.info(f"↻ Recovering {execution_id} at {state.current_nodes}")
        return await self._launch(graph, state)

    async def cancel(self, execution_id: str) -> bool:
        """
        Cancel an execution.

        A running execution has its task, every branch task and any in-flight
        call cancelled. A suspended one is failed directly. Returns False when
        there is nothing left to cancel.
        """
        task = self._tasks.get(execution_id)
        if task is not None and not task.done():
            self._cancel_requested.add(execution_id)
            task.cancel()
            return True

        state = await self.store.load(execution_id)
        if state.status != ExecutionStatus.SUSPENDED:
            return False
        state.pending_input = None
        state.mark_failed(ErrorKind.CANCELLED, "execution cancelled while suspended")
        state.step += 1
        await self.store.save(state)
        await self._emit(EventType.EXECUTION_FAILED, _Run.of(state), kind=ErrorKind.CANCELLED)
        return True

    async def expire_overdue(self, now: datetime | None = None) -> list[str]:
        """Fail every suspended execution whose deadline has passed."""
        now = now or self.deps.now()
        expired = []
        for state in await self.store.list_executions(ExecutionStatus.SUSPENDED):
            if state.pending_input is not None and state.pending_input.is_expired(now):
                await self._expire(state, state.pending_input)
                expired.append(state.execution_id)
        if expired:
            logger.info(f"⌛ Expired {len(expired)} suspended execution(s)")
        return expired

    async def run_subgraph(
        self,
        body: CompiledGraph,
        variables: dict[str, Any],
        ctx: NodeContext,
    ) -> SubgraphOutcome:
        """Run a loop body to its end on a private copy of the variables."""
        frame = _Frame(variables=variables, history=list(ctx.history))
        run = _Run(ctx.execution_id, ctx.workflow_id, ctx.tenant_id, dict(ctx.trigger_payload))
        halt = await self._walk(
            frame,
            body,
            body.entry,
            run,
            _Limits(self.config.max_steps, ctx.delegation_budget),
            branch=ctx.branch,
        )
        return SubgraphOutcome(
            variables=frame.variables,
            written=frame.written,
            messages=frame.history[len(ctx.history) :],
            retries=sum(frame.retry_counts.values()),
            delegations=frame.delegation_count,
            steps=frame.step,
            failure=halt.failure if halt.reason == "failed" else None,
        )

    # === EXECUTION LOOP ===

    async def _launch(self, graph: CompiledGraph, state: ExecutionState) -> ExecutionState:
        task = asyncio.create_task(self._drive(graph, state))
        self._tasks[state.execution_id] = task
        try:
            return await task
        finally:
            self._tasks.pop(state.execution_id, None)
            self._cancel_requested.discard(state.execution_id)

    async def _drive(self, graph: CompiledGraph, state: ExecutionState) -> ExecutionState:
        run = _Run.of(state)
        set_trace_context(execution_id=state.execution_id, workflow_id=state.workflow_id)
        start = state.current_nodes[0] if state.current_nodes else None
        limits = _Limits(self.config.max_steps, self.config.max_delegations)

        try:
            halt = await self._walk(state, graph, start, run, limits, persist=True)
        except asyncio.CancelledError:
            if state.execution_id not in self._cancel_requested:
                raise
            halt = _Halt(
                "failed",
                state.current_nodes[0] if state.current_nodes else None,
                failure=Fail(ErrorKind.CANCELLED, "execution cancelled"),
            )

        await self._finish(state, halt)
        return state

    async def _finish(self, state: ExecutionState, halt: _Halt) -> None:
        run = _Run.of(state)
        if halt.reason == "suspended":
            suspend = halt.suspend
            state.status = ExecutionStatus.SUSPENDED
            state.pending_input = suspend.request or HumanInputRequest(
                node_id=halt.node_id,
                prompt=suspend.reason,
                resume_token=suspend.resume_token,
                requested_at=self.deps.now(),
                deadline=suspend.deadline,
            )
            state.current_nodes = [halt.node_id]
            logger.info(f"⏸ Execution {state.execution_id} suspended at '{halt.node_id}'")
            await self.store.save(state)
            await self._emit(
                EventType.EXECUTION_SUSPENDED,
                run,
                halt.node_id,
                resume_token=suspend.resume_token,
                deadline=suspend.deadline.isoformat(),
            )
            return

        if halt.reason == "failed":
            for other in halt.others:
                state.record_error(
                    other.failure.kind,
                    other.failure.message,
                    node_id=other.node_id,
                    branch=other.branch,
                    details=other.failure.details,
                )
            failure = halt.failure
            state.mark_failed(
                failure.kind,
                failure.message,
                node_id=halt.node_id,
                branch=halt.branch,
                **failure.details,
            )
            logger.error(
                f"✗ Execution {state.execution_id} failed: [{failure.kind}] {failure.message}"
            )
            await self.store.save(state)
            await self._emit(
                EventType.EXECUTION_FAILED,
                run,
                halt.node_id,
                kind=str(failure.kind),
                message=failure.message,
            )
            return

        final = state.final_output
        if final is None:
            final = dict(state.variables)
        state.mark_completed(final)
        logger.info(
            f"✓ Execution {state.execution_id} completed in {state.step} steps "
            f"({state.total_retries} retries)"
        )
        await self.store.save(state)
        await self._emit(EventType.EXECUTION_COMPLETED, run, steps=state.step)

    async def _walk(
        self,
        target: ExecutionState | _Frame,
        graph: CompiledGraph,
        start: str | None,
        run: _Run,
        limits: _Limits,
        *,
        branch: str | None = None,
        stop_at: str | None = None,
        persist: bool = False,
    ) -> _Halt:
        """
        Step through ``graph`` from ``start`` until the walk ends.

        ``persist`` marks the top-level walk: it keeps ``current_nodes`` up to
        date, saves after every step and may suspend. Branch and loop-body
        walks stop at ``stop_at`` (the join) and cannot suspend.
        """
        current = start
        last = None
        while current is not None:
            if current == stop_at:
                return _Halt("joined", current, branch)
            if not limits.take_step(target.step):
                return _Halt(
                    "failed",
                    current,
                    branch,
                    Fail(
                        ErrorKind.STEP_LIMIT_EXCEEDED,
                        f"execution exceeded {limits.steps} steps",
                        {"steps": target.step},
                    ),
                )

            node = graph.node(current)
            result = await self._execute(node, target, graph, run, limits, branch)
            updates = _commit(target, node, result)
            if isinstance(target, _Frame):
                target.written.update(updates)
            last = current
            route = result.route

            if isinstance(route, Fail):
                return _Halt("failed", current, branch, route)
            if isinstance(route, Suspend):
                if not persist:
                    return _Halt(
                        "failed",
                        current,
                        branch,
                        Fail(
                            ErrorKind.INVALID_ROUTE,
                            f"'{current}' cannot suspend inside a parallel branch or loop body",
                        ),
                    )
                return _Halt("suspended", current, branch, suspend=route)
            if isinstance(route, Complete):
                return _Halt("done", current, branch)

            if isinstance(route, Fork):
                if persist:
                    target.current_nodes = list(route.branches)
                halt = await self._fork(target, graph, node, route, run, limits, branch)
                if halt is not None:
                    return halt
                current = route.join
            else:
                successor = self._successor(graph, node, route)
                if isinstance(successor, Fail):
                    return _Halt("failed", current, branch, successor)
                if successor is not None:
                    handle = route.handle if isinstance(route, Advance) else None
                    await self._emit(
                        EventType.EDGE_TRAVERSED, run, node.id, target=successor, handle=handle
                    )
                current = successor

            if persist:
                target.current_nodes = [current] if current is not None else []
                await self.store.save(target)

        return _Halt("done", last, branch)

    def _successor(self, graph: CompiledGraph, node: NodeSpec, route: Advance | Goto) -> Any:
        if isinstance(route, Goto):
            if graph.node(route.node_id) is None:
                return Fail(
                    ErrorKind.INVALID_ROUTE,
                    f"'{node.id}' routed to unknown node '{route.node_id}'",
                    {"target": route.node_id},
                )
            return route.node_id
        targets = graph.next_nodes(node.id, route.handle)
        if route.handle is not None and not targets:
            return Fail(
                ErrorKind.INVALID_ROUTE,
                f"'{node.id}' has no edge for branch '{route.handle}'",
                {"handle": route.handle},
            )
        return targets[0] if targets else None

    async def _execute(
        self,
        node: NodeSpec,
        target: ExecutionState | _Frame,
        graph: CompiledGraph,
        run: _Run,
        limits: _Limits,
        branch: str | None,
    ) -> NodeResult:
        ctx = NodeContext(
            node=node,
            variables=target.variables,
            history=target.history,
            deps=self.deps,
            execution_id=run.execution_id,
            workflow_id=run.workflow_id,
            tenant_id=run.tenant_id,
            trigger_payload=run.trigger,
            delegation_budget=max(limits.delegations - target.delegation_count, 0),
            branch=branch,
            graph=graph,
        )
        set_trace_context(node_id=node.id, branch=branch)
        prefix = f"[{branch}] " if branch else ""
        logger.info(
            f"{prefix}▶ Step {target.step + 1}: {node.name or node.id} ({node.type})",
            extra={"event": "node_started", "node_id": node.id, "node_type": str(node.type)},
        )
        await self._emit(EventType.NODE_STARTED, run, node.id, node_type=str(node.type))

        handler = get_handler(node.type)
        try:
            result = await handler.execute(ctx)
        except ResolutionError as e:
            result = NodeResult.fail(
                ErrorKind.RESOLUTION_ERROR, str(e), path=e.path, resolution_kind=str(e.kind)
            )
        except Exception as e:
            logger.exception(f"{prefix}✗ Handler for '{node.id}' raised")
            result = NodeResult.fail(ErrorKind.INTERNAL_ERROR, f"{type(e).__name__}: {e}")

        if result.success:
            logger.info(f"{prefix}   ✓ {node.id} done", extra={"latency_ms": result.latency_ms})
        else:
            failure = result.route
            logger.warning(f"{prefix}   ✗ {node.id}: [{failure.kind}] {failure.message}")
        await self._emit(
            EventType.NODE_COMPLETED,
            run,
            node.id,
            success=result.success,
            route=type(result.route).__name__.lower(),
            retries=result.retries,
            latency_ms=result.latency_ms,
        )
        return result

    # === PARALLEL REGIONS ===

    async def _fork(
        self,
        target: ExecutionState | _Frame,
        graph: CompiledGraph,
        node: NodeSpec,
        fork: Fork,
        run: _Run,
        limits: _Limits,
        branch: str | None,
    ) -> _Halt | None:
        """
        Run every branch of ``fork`` concurrently until it reaches the join,
        then merge. Returns a failed halt, or None to continue at the join.
        """
        logger.info(f"   ⑂ Fan-out: {len(fork.branches)} branches, join at '{fork.join}'")
        await self._emit(
            EventType.BRANCH_FORKED, run, node.id, branches=list(fork.branches), join=fork.join
        )

        remaining = _Limits(
            steps=limits.steps,
            delegations=max(limits.delegations - target.delegation_count, 0),
            pool=limits.pool or _StepPool(limits.steps - target.step),
        )
        frames = {
            name: _Frame(variables=copy.deepcopy(target.variables), history=list(target.history))
            for name in fork.branches
        }
        tasks = {
            name: asyncio.create_task(
                self._walk(
                    frames[name], graph, name, run, remaining, branch=name, stop_at=fork.join
                )
            )
            for name in fork.branches
        }

        try:
            if self.config.on_branch_failure == "fail_all":
                await self._first_failure(tasks)
            else:
                await asyncio.gather(*tasks.values())
        finally:
            for task in tasks.values():
                if not task.done():
                    task.cancel()

        halts = {
            name: task.result()
            for name, task in tasks.items()
            if task.done() and not task.cancelled()
        }
        base = len(target.history)
        merged: dict[str, Any] = {}
        results = {}
        for name in fork.branches:
            frame = frames[name]
            merged.update(frame.written)
            target.history.extend(frame.history[base:])
            target.path.extend(frame.path)
            for node_id, count in frame.retry_counts.items():
                target.retry_counts[node_id] = target.retry_counts.get(node_id, 0) + count
            target.step += frame.step
            target.delegation_count += frame.delegation_count
            if frame.final_output is not None:
                target.final_output = frame.final_output
            results[name] = frame.written

        namespace = dict(target.variables.get(node.id) or {})
        namespace["results"] = results
        merged[node.id] = namespace
        target.variables.update(merged)
        if isinstance(target, _Frame):
            target.written.update(merged)

        failures = [halts[name] for name in fork.branches if name in halts and halts[name].failure]
        if failures:
            first, *others = failures
            first.others.extend(others)
            logger.warning(f"   ⑃ Fan-in: {len(failures)}/{len(fork.branches)} branches failed")
            return first

        logger.info(f"   ⑃ Fan-in: all {len(fork.branches)} branches reached '{fork.join}'")
        await self._emit(
            EventType.BRANCH_JOINED, run, fork.join, parallel=node.id, branches=list(fork.branches)
        )
        return None

    @staticmethod
    async def _first_failure(tasks: dict[str, asyncio.Task]) -> None:
        """Wait for all branches, cancelling the rest as soon as one fails."""
        pending = set(tasks.values())
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            if any(task.result().failure for task in done):
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                return

    # === HELPERS ===

    async def _expire(self, state: ExecutionState, pending: HumanInputRequest | None) -> None:
        node_id = pending.node_id if pending else None
        deadline = pending.deadline.isoformat() if pending else "its deadline"
        state.mark_failed(
            ErrorKind.EXPIRED, f"no decision for '{node_id}' before {deadline}", node_id=node_id
        )
        state.step += 1
        await self.store.save(state)
        logger.warning(f"⌛ Execution {state.execution_id} expired at '{node_id}'")
        await self._emit(
            EventType.EXECUTION_FAILED, _Run.of(state), node_id, kind=str(ErrorKind.EXPIRED)
        )

    async def _emit(
        self, event_type: EventType, run: _Run, node_id: str | None = None, **data: Any
    ) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.emit(event_type, run.workflow_id, run.execution_id, node_id, **data)


def _commit(
    target: ExecutionState | _Frame,
    node: NodeSpec,
    result: NodeResult,
    count: bool = True,
) -> dict[str, Any]:
    """
    Apply a NodeResult: the step-commit phase.

    The node's output lands under its output key and, namespaced, under its
    id (``{"output": value, **value}`` for mappings). Failed results only
    record bookkeeping. Returns the variables written.
    """
    if count:
        target.step += 1
        target.path.append(node.id)
    if result.retries:
        target.retry_counts[node.id] = target.retry_counts.get(node.id, 0) + result.retries
    target.delegation_count += result.delegations
    target.history.extend(result.messages)
    if not result.success:
        return {}

    updates: dict[str, Any] = {}
    if result.output is not None:
        namespace = {"output": result.output}
        if isinstance(result.output, Mapping):
            namespace.update(result.output)
        updates[node.id] = namespace
        if node.output_key != node.id:
            updates[node.output_key] = result.output
    updates.update(result.outputs)
    target.variables.update(updates)
    if result.final_output is not None:
        target.final_output = result.final_output
    return updates


def _decision(decision: Any, now: datetime) -> HumanDecision:
    if isinstance(decision, HumanDecision):
        parsed = decision
    elif isinstance(decision, Mapping) and "decision" in decision:
        parsed = HumanDecision.model_validate(decision)
    else:
        parsed = HumanDecision(decision=decision)
    if parsed.responded_at is None:
        parsed = parsed.model_copy(update={"responded_at": now})
    return parsed
