"""
Tests for WorkflowExecutor: the step loop, routing, retries and limits.
"""

import asyncio

import pytest

from axiomflow.config import EngineConfig
from axiomflow.graph.errors import ErrorKind, ValidationErrorKind, WorkflowValidationError
from axiomflow.llm.mock import MockModelInvoker
from axiomflow.llm.provider import (
    ModelResponse,
    PermanentModelError,
    ToolCall,
    TransientModelError,
)
from axiomflow.runtime.event_bus import EventBus, EventType
from axiomflow.schemas.execution_state import ExecutionStatus


def _agent(node_id: str, agent_id: str = "scorer", **config) -> dict:
    return {"id": node_id, "type": "agent", "data": {"agentId": agent_id, **config}}


def _chain(*node_ids: str) -> list[dict]:
    return [{"source": a, "target": b} for a, b in zip(node_ids, node_ids[1:], strict=False)]


@pytest.fixture
def routing_workflow(make_workflow):
    """score -> check -> (hot: writer | cold: nurture transform)."""
    return make_workflow(
        [
            _agent("score", inputMapping={"lead": "{{lead}}"}, outputFormat="json"),
            {
                "id": "check",
                "type": "condition",
                "data": {
                    "branches": [
                        {"id": "hot", "condition": "{{score.score}} > 50"},
                        {"id": "cold", "default": True},
                    ]
                },
            },
            _agent("outreach", "writer", inputMapping={"name": "{{lead.name}}"}),
            {
                "id": "nurture",
                "type": "transform",
                "data": {"transformType": "template", "expression": "nurture {{lead.name}}"},
            },
        ],
        [
            *_chain("trigger", "score", "check"),
            {"source": "check", "target": "outreach", "sourceHandle": "hot"},
            {"source": "check", "target": "nurture", "sourceHandle": "cold"},
        ],
    )


class TestLinearExecution:
    @pytest.mark.asyncio
    async def test_agent_then_output(self, make_workflow, make_executor, store):
        wf = make_workflow(
            [
                _agent("score", inputMapping={"company": "{{company}}"}),
                {
                    "id": "done",
                    "type": "output",
                    "data": {"outputs": {"answer": "{{score.output}}"}},
                },
            ],
            _chain("trigger", "score", "done"),
        )
        model = MockModelInvoker(script=["score: 72"])
        executor = make_executor(model)

        state = await executor.start(wf, {"company": "Acme"})

        assert state.status == ExecutionStatus.COMPLETED
        assert state.path == ["trigger", "score", "done"]
        assert state.step == 3
        assert state.final_output == {"answer": "score: 72"}
        assert state.variables["trigger"] == {"output": {"company": "Acme"}, "company": "Acme"}
        assert model.calls[0].last_user_message == "Acme"
        assert model.calls[0].system_prompt == "Score the lead."
        assert [m.role for m in state.history] == ["user", "assistant"]

        stored = await store.load(state.execution_id)
        assert stored.status == ExecutionStatus.COMPLETED
        assert stored.step == 3

    @pytest.mark.asyncio
    async def test_json_output_is_namespaced(self, make_workflow, make_executor):
        wf = make_workflow(
            [_agent("score", outputFormat="json", outputKey="rating")], _chain("trigger", "score")
        )
        executor = make_executor(MockModelInvoker(script=['{"score": 80, "tier": "hot"}']))

        state = await executor.start(wf)

        assert state.variables["rating"] == {"score": 80, "tier": "hot"}
        assert state.variables["score"]["tier"] == "hot"
        assert state.variables["score"]["output"] == {"score": 80, "tier": "hot"}

    @pytest.mark.asyncio
    async def test_walk_ending_without_output_node_completes(self, make_workflow, make_executor):
        wf = make_workflow([_agent("score")], _chain("trigger", "score"))
        state = await make_executor().start(wf, {"company": "Acme"})

        assert state.status == ExecutionStatus.COMPLETED
        assert state.final_output["score"]["output"] == "ok"

    @pytest.mark.asyncio
    async def test_declared_defaults_are_applied(self, make_workflow, make_executor):
        wf = make_workflow(
            [_agent("score", inputMapping={"limit": "{{limit}}"})],
            _chain("trigger", "score"),
            variables=[{"name": "limit", "type": "number", "defaultValue": 5}],
        )
        model = MockModelInvoker()
        state = await make_executor(model).start(wf)

        assert state.variables["limit"] == 5
        assert model.calls[0].last_user_message == "limit: 5"

    @pytest.mark.asyncio
    async def test_invalid_definition_is_rejected_before_start(self, make_workflow, make_executor):
        wf = make_workflow([_agent("score")], [{"source": "trigger", "target": "ghost"}])
        with pytest.raises(WorkflowValidationError) as exc:
            await make_executor().start(wf)
        assert exc.value.kind == ValidationErrorKind.DANGLING_EDGE

    @pytest.mark.asyncio
    async def test_mistyped_input_is_rejected(self, make_workflow, make_executor, store):
        wf = make_workflow([], [], variables=[{"name": "limit", "type": "number"}])
        with pytest.raises(WorkflowValidationError):
            await make_executor().start(wf, {"limit": "ten"})
        assert await store.list_executions() == []


class TestConditions:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(("score", "branch"), [(75, "hot"), (30, "cold")])
    async def test_routes_on_score(self, routing_workflow, make_executor, score, branch):
        model = MockModelInvoker(script=[f'{{"score": {score}}}', "Hi Ada"])
        state = await make_executor(model).start(routing_workflow, {"lead": {"name": "Ada"}})

        assert state.status == ExecutionStatus.COMPLETED
        assert state.variables["check"]["branch"] == branch
        if branch == "hot":
            assert state.path[-1] == "outreach"
            assert "nurture" not in state.variables
        else:
            assert state.path[-1] == "nurture"
            assert state.variables["nurture"]["output"] == "nurture Ada"
            assert len(model.calls) == 1

    @pytest.mark.asyncio
    async def test_type_mismatch_fails_execution(self, routing_workflow, make_executor):
        model = MockModelInvoker(script=['{"score": "75"}'])
        state = await make_executor(model).start(routing_workflow, {"lead": {"name": "Ada"}})

        assert state.status == ExecutionStatus.FAILED
        assert state.last_error.kind == ErrorKind.RESOLUTION_ERROR
        assert state.last_error.node_id == "check"

    @pytest.mark.asyncio
    async def test_no_matching_branch(self, make_workflow, make_executor):
        wf = make_workflow(
            [
                {
                    "id": "route",
                    "type": "condition",
                    "data": {
                        "expression": "{{category}}",
                        "branches": [
                            {"id": "billing", "condition": "billing"},
                            {"id": "technical", "condition": "technical"},
                        ],
                    },
                },
                _agent("a"),
                _agent("b"),
            ],
            [
                {"source": "trigger", "target": "route"},
                {"source": "route", "target": "a", "sourceHandle": "billing"},
                {"source": "route", "target": "b", "sourceHandle": "technical"},
            ],
        )
        state = await make_executor().start(wf, {"category": "sales"})

        assert state.status == ExecutionStatus.FAILED
        assert state.last_error.kind == ErrorKind.NO_MATCHING_BRANCH

        state = await make_executor().start(wf, {"category": "Technical"})
        assert state.status == ExecutionStatus.COMPLETED
        assert state.path == ["trigger", "route", "b"]

    @pytest.mark.asyncio
    async def test_branch_without_edge_is_invalid_route(self, make_workflow, make_executor):
        wf = make_workflow(
            [
                {
                    "id": "route",
                    "type": "condition",
                    "data": {
                        "branches": [
                            {"id": "big", "condition": "{{size}} > 10"},
                            {"id": "small", "default": True},
                        ]
                    },
                },
                _agent("a"),
            ],
            [
                {"source": "trigger", "target": "route"},
                {"source": "route", "target": "a", "sourceHandle": "big"},
            ],
        )
        state = await make_executor().start(wf, {"size": 3})

        assert state.status == ExecutionStatus.FAILED
        assert state.last_error.kind == ErrorKind.INVALID_ROUTE
        assert state.last_error.details["handle"] == "small"

    @pytest.mark.asyncio
    async def test_llm_classifier(self, make_workflow, make_executor):
        wf = make_workflow(
            [
                {
                    "id": "route",
                    "type": "condition",
                    "data": {
                        "conditionType": "llm",
                        "llmPrompt": "Ticket: {{ticket}}",
                        "branches": [
                            {"id": "billing", "label": "Billing"},
                            {"id": "other", "label": "Other"},
                        ],
                    },
                },
                _agent("a"),
                _agent("b"),
            ],
            [
                {"source": "trigger", "target": "route"},
                {"source": "route", "target": "a", "sourceHandle": "billing"},
                {"source": "route", "target": "b", "sourceHandle": "other"},
            ],
        )
        model = MockModelInvoker(script=["Billing", "done"])
        state = await make_executor(model).start(wf, {"ticket": "refund please"})

        assert state.path == ["trigger", "route", "a"]
        assert model.calls[0].last_user_message == "Ticket: refund please"
        assert "- Billing" in model.calls[0].system_prompt


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, make_workflow, make_executor):
        wf = make_workflow([_agent("score", maxRetries=2)], _chain("trigger", "score"))
        model = MockModelInvoker(
            script=[TransientModelError("rate limited"), TransientModelError("503"), "fine"]
        )
        bus = EventBus()
        state = await make_executor(model, event_bus=bus).start(wf)

        assert state.status == ExecutionStatus.COMPLETED
        assert state.retry_counts == {"score": 2}
        assert state.variables["score"]["output"] == "fine"
        retries = bus.get_history(EventType.NODE_RETRY)
        assert [e.data["attempt"] for e in reversed(retries)] == [1, 2]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, make_workflow, make_executor):
        wf = make_workflow([_agent("score", maxRetries=2)], _chain("trigger", "score"))
        model = MockModelInvoker(default=TransientModelError("still down"))
        state = await make_executor(model).start(wf)

        assert state.status == ExecutionStatus.FAILED
        assert state.last_error.kind == ErrorKind.MODEL_INVOCATION_FAILURE
        assert state.last_error.details["transient"] is True
        assert state.retry_counts == {"score": 2}
        assert len(model.calls) == 3

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self, make_workflow, make_executor):
        wf = make_workflow([_agent("score", maxRetries=2)], _chain("trigger", "score"))
        model = MockModelInvoker(script=[PermanentModelError("bad request")])
        state = await make_executor(model).start(wf)

        assert state.status == ExecutionStatus.FAILED
        assert state.retry_counts == {}
        assert len(model.calls) == 1

    @pytest.mark.asyncio
    async def test_timeout(self, make_workflow, make_executor):
        wf = make_workflow([_agent("score", timeoutMs=20)], _chain("trigger", "score"))
        model = MockModelInvoker(default="late", delay=1.0)
        state = await make_executor(model).start(wf)

        assert state.status == ExecutionStatus.FAILED
        assert state.last_error.kind == ErrorKind.TIMEOUT
        assert state.last_error.details["timeout_ms"] == 20


class TestLimitsAndFailures:
    @pytest.mark.asyncio
    async def test_step_limit(self, make_workflow, make_executor):
        wf = make_workflow(
            [_agent("a"), _agent("b")],
            [*_chain("trigger", "a", "b"), {"source": "b", "target": "a"}],
        )
        executor = make_executor(config=EngineConfig(max_steps=5, retry_base_delay=0))
        state = await executor.start(wf)

        assert state.status == ExecutionStatus.FAILED
        assert state.last_error.kind == ErrorKind.STEP_LIMIT_EXCEEDED
        assert state.step == 5

    @pytest.mark.asyncio
    async def test_unresolvable_input(self, make_workflow, make_executor):
        wf = make_workflow(
            [_agent("score", inputMapping={"lead": "{{lead.email}}"})], _chain("trigger", "score")
        )
        state = await make_executor().start(wf, {"lead": {"name": "Ada"}})

        assert state.status == ExecutionStatus.FAILED
        assert state.last_error.kind == ErrorKind.RESOLUTION_ERROR
        assert state.last_error.details["path"] == "lead.email"
        assert state.path == ["trigger", "score"]

    @pytest.mark.asyncio
    async def test_unknown_agent_without_catalog_check(self, make_workflow, make_executor):
        wf = make_workflow([_agent("score", "ghost")], _chain("trigger", "score"))
        state = await make_executor(agents={}).start(wf)

        assert state.status == ExecutionStatus.FAILED
        assert state.last_error.kind == ErrorKind.MODEL_INVOCATION_FAILURE

    @pytest.mark.asyncio
    async def test_inline_system_prompt(self, make_workflow, make_executor):
        wf = make_workflow(
            [_agent("helper", "adhoc", systemPrompt="You help with {{topic}}.")],
            _chain("trigger", "helper"),
        )
        model = MockModelInvoker()
        state = await make_executor(model, agents={}).start(wf, {"topic": "billing"})

        assert state.status == ExecutionStatus.COMPLETED
        assert model.calls[0].system_prompt == "You help with billing."


class TestSupervisor:
    def _workflow(self, make_workflow):
        return make_workflow(
            [
                _agent(
                    "lead",
                    "coordinator",
                    inputMapping={"goal": "{{goal}}"},
                    supervisor={"workers": ["researcher", "writer"]},
                ),
                {"id": "done", "type": "output"},
            ],
            _chain("trigger", "lead", "done"),
        )

    @pytest.mark.asyncio
    async def test_delegates_then_completes(self, make_workflow, make_executor):
        model = MockModelInvoker(
            script=[
                ModelResponse(
                    text="",
                    tool_calls=[
                        ToolCall("c1", "delegate", {"worker": "researcher", "task": "Find Acme"})
                    ],
                ),
                "Acme sells anvils",
                "Summary: Acme sells anvils",
            ]
        )
        bus = EventBus()
        state = await make_executor(model, event_bus=bus).start(
            self._workflow(make_workflow), {"goal": "profile Acme"}
        )

        assert state.status == ExecutionStatus.COMPLETED
        assert state.final_output == "Summary: Acme sells anvils"
        assert state.delegation_count == 1
        assert state.variables["lead"]["workers"] == {"researcher": "Acme sells anvils"}
        assert model.calls[1].system_prompt == "Research the company."
        assert model.calls[1].last_user_message == "Find Acme"
        roster = model.calls[0].system_prompt
        assert "researcher (Researcher): Finds facts about a company" in roster
        assert [m.role for m in model.calls[2].history][-2:] == ["assistant", "tool"]
        assert len(bus.get_history(EventType.DELEGATION)) == 1

    @pytest.mark.asyncio
    async def test_delegation_limit(self, make_workflow, make_executor):
        def responder(call):
            if "workflow supervisor" in call.system_prompt:
                return ModelResponse(
                    text="",
                    tool_calls=[ToolCall("c", "delegate", {"worker": "writer", "task": "again"})],
                )
            return "draft"

        executor = make_executor(
            MockModelInvoker(responder=responder),
            config=EngineConfig(max_delegations=3, retry_base_delay=0),
        )
        state = await executor.start(self._workflow(make_workflow), {"goal": "loop forever"})

        assert state.status == ExecutionStatus.FAILED
        assert state.last_error.kind == ErrorKind.DELEGATION_LIMIT_EXCEEDED
        assert state.delegation_count == 3

    @pytest.mark.asyncio
    async def test_unknown_worker_is_reported_back(self, make_workflow, make_executor):
        model = MockModelInvoker(
            script=[
                '{"delegate": {"worker": "intern", "task": "coffee"}}',
                "Done without the intern",
            ]
        )
        state = await make_executor(model).start(self._workflow(make_workflow), {"goal": "x"})

        assert state.status == ExecutionStatus.COMPLETED
        assert state.final_output == "Done without the intern"
        assert "not an available worker" in model.calls[1].history[-1].content


class TestEvents:
    @pytest.mark.asyncio
    async def test_lifecycle_events(self, routing_workflow, make_executor):
        bus = EventBus()
        model = MockModelInvoker(script=['{"score": 90}', "Hi"])
        state = await make_executor(model, event_bus=bus).start(
            routing_workflow, {"lead": {"name": "Ada"}}
        )

        events = [e.type for e in reversed(bus.get_history(execution_id=state.execution_id))]
        assert events[0] == EventType.EXECUTION_STARTED
        assert events[-1] == EventType.EXECUTION_COMPLETED
        assert events.count(EventType.NODE_STARTED) == 4
        edges = bus.get_history(EventType.EDGE_TRAVERSED)
        assert {"target": "outreach", "handle": "hot"} in [e.data for e in edges]


class TestCancelAndRecover:
    @pytest.mark.asyncio
    async def test_cancel_running_execution(self, make_workflow, make_executor, store):
        wf = make_workflow([_agent("score")], _chain("trigger", "score"))
        executor = make_executor(MockModelInvoker(default="slow", delay=5.0))

        task = asyncio.create_task(executor.start(wf))
        for _ in range(100):
            await asyncio.sleep(0.01)
            running = await store.list_executions(ExecutionStatus.RUNNING)
            if running and running[0].path:
                break
        assert await executor.cancel(running[0].execution_id) is True

        state = await asyncio.wait_for(task, timeout=2)
        assert state.status == ExecutionStatus.FAILED
        assert state.last_error.kind == ErrorKind.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_finished_execution(self, make_workflow, make_executor):
        wf = make_workflow([], [])
        executor = make_executor()
        state = await executor.start(wf)
        assert await executor.cancel(state.execution_id) is False

    @pytest.mark.asyncio
    async def test_recover_running_execution(self, make_workflow, make_executor, store):
        wf = make_workflow(
            [_agent("score"), {"id": "done", "type": "output"}], _chain("trigger", "score", "done")
        )
        execution_id = await store.create(wf, {"company": "Acme"})
        state = await store.load(execution_id)
        state.current_nodes = ["score"]
        state.path = ["trigger"]
        state.step = 1
        await store.save(state)

        recovered = await make_executor().recover(wf, execution_id)

        assert recovered.status == ExecutionStatus.COMPLETED
        assert recovered.path == ["trigger", "score", "done"]
