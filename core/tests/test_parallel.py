"""Tests for parallel fan-out and join."""

import asyncio
import random

import pytest

from axiomflow.config import EngineConfig
from axiomflow.graph.errors import ErrorKind
from axiomflow.llm.mock import MockModelInvoker
from axiomflow.llm.provider import PermanentModelError
from axiomflow.runtime.event_bus import EventBus, EventType
from axiomflow.schemas.execution_state import ExecutionStatus


@pytest.fixture
def fan_workflow(make_workflow):
    """
    fan -> {alpha -> alpha_post, beta} -> merge -> done
    """
    return make_workflow(
        [
            {"id": "fan", "type": "parallel", "data": {"branches": ["alpha", "beta"]}},
            {
                "id": "alpha",
                "type": "agent",
                "data": {"agentId": "researcher", "inputMapping": {"task": "alpha"}},
            },
            {
                "id": "alpha_post",
                "type": "transform",
                "data": {"transformType": "template", "expression": "post {{alpha.output}}"},
            },
            {
                "id": "beta",
                "type": "agent",
                "data": {"agentId": "writer", "inputMapping": {"task": "beta"}},
            },
            {
                "id": "merge",
                "type": "transform",
                "data": {
                    "transformType": "template",
                    "expression": "{{alpha_post.output}} + {{beta.output}}",
                },
            },
            {"id": "done", "type": "output", "data": {"outputs": {"merged": "{{merge.output}}"}}},
        ],
        [
            {"source": "trigger", "target": "fan"},
            {"source": "alpha", "target": "alpha_post"},
            {"source": "alpha_post", "target": "merge"},
            {"source": "beta", "target": "merge"},
            {"source": "merge", "target": "done"},
        ],
    )


def _jittery_model(seed: int) -> MockModelInvoker:
    rng = random.Random(seed)

    async def responder(call):
        await asyncio.sleep(rng.uniform(0, 0.03))
        return f"{call.last_user_message} done"

    return MockModelInvoker(responder=responder)


class TestJoin:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", range(5))
    async def test_join_is_deterministic(self, fan_workflow, make_executor, seed):
        state = await make_executor(_jittery_model(seed)).start(fan_workflow)

        assert state.status == ExecutionStatus.COMPLETED
        assert state.final_output == {"merged": "post alpha done + beta done"}
        # Branch histories are appended in declared order, whichever finished first
        assert [m.content for m in state.history] == [
            "alpha",
            "alpha done",
            "beta",
            "beta done",
        ]
        assert state.path == ["trigger", "fan", "alpha", "alpha_post", "beta", "merge", "done"]
        assert list(state.variables["fan"]["results"]) == ["alpha", "beta"]
        assert state.variables["fan"]["results"]["beta"]["beta"]["output"] == "beta done"
        assert state.step == 7

    @pytest.mark.asyncio
    async def test_branches_run_concurrently(self, fan_workflow, make_executor):
        model = MockModelInvoker(default="x", delay=0.2)
        loop = asyncio.get_running_loop()
        started = loop.time()

        state = await make_executor(model).start(fan_workflow)

        assert state.status == ExecutionStatus.COMPLETED
        assert loop.time() - started < 0.35

    @pytest.mark.asyncio
    async def test_fork_and_join_events(self, fan_workflow, make_executor):
        bus = EventBus()
        await make_executor(_jittery_model(1), event_bus=bus).start(fan_workflow)

        forked = bus.get_history(EventType.BRANCH_FORKED)[0]
        joined = bus.get_history(EventType.BRANCH_JOINED)[0]
        assert forked.data == {"branches": ["alpha", "beta"], "join": "merge"}
        assert joined.node_id == "merge"


class TestBranchFailure:
    @pytest.mark.asyncio
    async def test_wait_all_records_failure_and_keeps_sibling(self, fan_workflow, make_executor):
        def responder(call):
            if call.last_user_message == "alpha":
                return PermanentModelError("model refused")
            return "beta done"

        state = await make_executor(MockModelInvoker(responder=responder)).start(fan_workflow)

        assert state.status == ExecutionStatus.FAILED
        assert state.last_error.kind == ErrorKind.MODEL_INVOCATION_FAILURE
        assert state.last_error.branch == "alpha"
        assert state.last_error.node_id == "alpha"
        assert state.variables["beta"]["output"] == "beta done"
        assert "merge" not in state.path

    @pytest.mark.asyncio
    async def test_fail_all_cancels_siblings(self, fan_workflow, make_executor):
        async def responder(call):
            if call.last_user_message == "alpha":
                return PermanentModelError("model refused")
            await asyncio.sleep(5)
            return "beta done"

        executor = make_executor(
            MockModelInvoker(responder=responder),
            config=EngineConfig(on_branch_failure="fail_all", retry_base_delay=0),
        )
        state = await asyncio.wait_for(executor.start(fan_workflow), timeout=2)

        assert state.status == ExecutionStatus.FAILED
        assert state.last_error.branch == "alpha"
        assert "beta" not in state.variables

    @pytest.mark.asyncio
    async def test_every_failed_branch_is_recorded(self, fan_workflow, make_executor):
        model = MockModelInvoker(default=PermanentModelError("down"))
        state = await make_executor(model).start(fan_workflow)

        assert state.status == ExecutionStatus.FAILED
        assert sorted(e.branch for e in state.errors) == ["alpha", "beta"]


def _template(node_id: str, expression: str) -> dict:
    return {
        "id": node_id,
        "type": "transform",
        "data": {"transformType": "template", "expression": expression},
    }


class TestNestedFork:
    @pytest.mark.asyncio
    async def test_inner_branch_writes_reach_outer_join(self, make_workflow, make_executor):
        """outer -> {a, inner -> {x, y} -> pair} -> report"""
        wf = make_workflow(
            [
                {"id": "outer", "type": "parallel", "data": {"branches": ["a", "inner"]}},
                _template("a", "A"),
                {"id": "inner", "type": "parallel", "data": {"branches": ["x", "y"]}},
                _template("x", "X"),
                _template("y", "Y"),
                _template("pair", "{{x.output}}{{y.output}}"),
                _template("report", "{{a.output}} {{x.output}} {{pair.output}}"),
            ],
            [
                {"source": "trigger", "target": "outer"},
                {"source": "x", "target": "pair"},
                {"source": "y", "target": "pair"},
                {"source": "a", "target": "report"},
                {"source": "pair", "target": "report"},
            ],
        )
        state = await make_executor().start(wf)

        assert state.status == ExecutionStatus.COMPLETED
        assert state.variables["report"]["output"] == "A X XY"
        inner_results = state.variables["outer"]["results"]["inner"]
        assert inner_results["x"]["output"] == "X"
        assert list(inner_results["inner"]["results"]) == ["x", "y"]
        assert state.step == len(state.path)


class TestStepBudget:
    @pytest.mark.asyncio
    async def test_branches_share_the_remaining_steps(self, fan_workflow, make_executor):
        # trigger and fan leave two steps for three branch nodes
        executor = make_executor(config=EngineConfig(max_steps=4, retry_base_delay=0))
        state = await executor.start(fan_workflow)

        assert state.status == ExecutionStatus.FAILED
        assert state.last_error.kind == ErrorKind.STEP_LIMIT_EXCEEDED
        assert state.step == 4
        assert "merge" not in state.path


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_reaches_every_branch(self, fan_workflow, make_executor, store):
        finished = []

        async def responder(call):
            await asyncio.sleep(5)
            finished.append(call.last_user_message)
            return "late"

        model = MockModelInvoker(responder=responder)
        executor = make_executor(model)
        task = asyncio.create_task(executor.start(fan_workflow))
        for _ in range(100):
            await asyncio.sleep(0.01)
            if len(model.calls) == 2:
                break
        assert len(model.calls) == 2

        running = await store.list_executions(ExecutionStatus.RUNNING)
        assert await executor.cancel(running[0].execution_id) is True
        state = await asyncio.wait_for(task, timeout=2)
        await asyncio.sleep(0.05)

        assert state.status == ExecutionStatus.FAILED
        assert state.last_error.kind == ErrorKind.CANCELLED
        assert finished == []
        saved = await store.load(state.execution_id)
        assert saved.status == ExecutionStatus.FAILED
        assert "alpha" not in saved.variables
        assert "beta" not in saved.variables
        assert saved.path == ["trigger", "fan"]
