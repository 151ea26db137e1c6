"""Tests for the workflow runtime and trigger sources."""

import asyncio
import hashlib
import hmac
import json

import pytest

from axiomflow.graph.errors import ResumeError, ResumeErrorKind, WorkflowError
from axiomflow.graph.workflow import WorkflowDefinition
from axiomflow.runtime.event_bus import EventBus, EventType
from axiomflow.runtime.triggers import (
    EventTrigger,
    ScheduleTrigger,
    TriggerEvent,
    WebhookSignatureError,
    WebhookTrigger,
)
from axiomflow.runtime.workflow_runtime import WorkflowNotFound, WorkflowRuntime
from axiomflow.schemas.execution_state import ExecutionStatus


def _greeting(version: int = 1, trigger: dict | None = None, text: str = "Hi {{name}}"):
    return WorkflowDefinition.model_validate(
        {
            "id": "greet",
            "name": "Greeter",
            "version": version,
            "nodes": [
                {"id": "trigger", "type": "trigger", "data": trigger or {}},
                {"id": "done", "type": "output", "data": {"outputs": {"greeting": text}}},
            ],
            "edges": [{"source": "trigger", "target": "done"}],
        }
    )


def _approval(version: int = 1, label: str = "v1"):
    return WorkflowDefinition.model_validate(
        {
            "id": "approval",
            "version": version,
            "nodes": [
                {"id": "trigger", "type": "trigger"},
                {"id": "ask", "type": "humanInput", "data": {"prompt": "Ship it?"}},
                {
                    "id": "done",
                    "type": "output",
                    "data": {"outputs": {"label": label, "decision": "{{ask.decision}}"}},
                },
            ],
            "edges": [
                {"source": "trigger", "target": "ask"},
                {"source": "ask", "target": "done"},
            ],
        }
    )


def _sign(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def runtime(make_executor) -> WorkflowRuntime:
    return WorkflowRuntime(make_executor())


class TestPublishing:
    def test_register_and_lookup(self, runtime):
        runtime.register(_greeting())
        runtime.register(_greeting(version=2, text="Hello {{name}}"))

        assert runtime.get_definition("greet").version == 2
        assert runtime.get_definition("greet", 1).version == 1
        assert {w["version"] for w in runtime.list_workflows()} == {1, 2}
        assert all(w["latest"] == 2 for w in runtime.list_workflows())

    def test_same_version_must_not_change(self, runtime):
        runtime.register(_greeting())
        runtime.register(_greeting())

        with pytest.raises(WorkflowError, match="already published"):
            runtime.register(_greeting(text="Changed {{name}}"))

    def test_published_copy_is_isolated(self, runtime):
        definition = _greeting()
        runtime.register(definition)
        definition.name = "Mutated"

        assert runtime.get_definition("greet").name == "Greeter"

    def test_unknown_workflow(self, runtime):
        with pytest.raises(WorkflowNotFound):
            runtime.get_definition("nope")
        runtime.register(_greeting())
        with pytest.raises(WorkflowNotFound):
            runtime.get_definition("greet", 7)


class TestTriggering:
    @pytest.mark.asyncio
    async def test_trigger_runs_latest_version(self, runtime):
        runtime.register(_greeting())
        runtime.register(_greeting(version=2, text="Hello {{name}}"))

        state = await runtime.trigger(TriggerEvent("greet", {"name": "Ada"}, tenant_id="acme"))

        assert state.status == ExecutionStatus.COMPLETED
        assert state.workflow_version == 2
        assert state.tenant_id == "acme"
        assert state.final_output == {"greeting": "Hello Ada"}
        fired = runtime.event_bus.get_history(EventType.TRIGGER_FIRED)[0]
        assert fired.data == {"source": "manual", "version": 2}

    @pytest.mark.asyncio
    async def test_get_execution(self, runtime):
        runtime.register(_greeting())
        state = await runtime.trigger(TriggerEvent("greet", {"name": "Ada"}))

        loaded = await runtime.get_execution(state.execution_id)
        assert loaded.final_output == {"greeting": "Hi Ada"}


class TestWebhooks:
    @pytest.mark.asyncio
    async def test_signed_request(self, runtime):
        runtime.register(_greeting())
        runtime.add_webhook("greet", secret="s3cret", tenant_id="acme")
        body = json.dumps({"name": "Ada"}).encode()

        state = await runtime.handle_webhook(
            "greet", body, headers={"x-hub-signature-256": _sign("s3cret", body)}
        )

        assert state.final_output == {"greeting": "Hi Ada"}
        assert state.tenant_id == "acme"
        assert state.trigger == {"name": "Ada"}

    @pytest.mark.asyncio
    async def test_bad_signature_is_rejected(self, runtime):
        runtime.register(_greeting())
        runtime.add_webhook("greet", secret="s3cret")
        body = json.dumps({"name": "Ada"}).encode()

        with pytest.raises(WebhookSignatureError):
            await runtime.handle_webhook(
                "greet", body, headers={"X-Hub-Signature-256": _sign("wrong", body)}
            )
        with pytest.raises(WebhookSignatureError):
            await runtime.handle_webhook("greet", body)

    def test_query_and_body_merge(self):
        event = WebhookTrigger("greet").from_request(
            '{"name": "Ada"}', query={"name": "ignored", "source": "form"}
        )
        assert event.variables == {"name": "Ada", "source": "form"}
        assert event.source == "webhook"

    def test_non_json_bodies(self):
        trigger = WebhookTrigger("greet")
        assert trigger.from_request(b"name=Ada").variables == {"raw_body": "name=Ada"}
        assert trigger.from_request(b"[1, 2]").variables == {"payload": [1, 2]}
        assert trigger.from_request(None).variables == {}


class TestResume:
    @pytest.mark.asyncio
    async def test_resume_uses_the_started_version(self, runtime):
        runtime.register(_approval())
        suspended = await runtime.trigger(TriggerEvent("approval"))
        runtime.register(_approval(version=2, label="v2"))

        state = await runtime.resume(suspended.pending_input.resume_token, "approve")

        assert state.status == ExecutionStatus.COMPLETED
        assert state.final_output == {"label": "v1", "decision": "approve"}

    @pytest.mark.asyncio
    async def test_unknown_token(self, runtime):
        with pytest.raises(ResumeError) as exc:
            await runtime.resume("missing", "approve")
        assert exc.value.kind == ResumeErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_cancel_and_expire(self, runtime, clock):
        runtime.register(_approval())
        first = await runtime.trigger(TriggerEvent("approval"))
        second = await runtime.trigger(TriggerEvent("approval"))

        assert await runtime.cancel(first.execution_id) is True
        clock.now = clock.now.replace(year=clock.now.year + 1)
        assert await runtime.expire_overdue() == [second.execution_id]


class TestTriggerSources:
    @pytest.mark.asyncio
    async def test_schedule_ticks(self):
        fired = []

        async def callback(event):
            fired.append(event)

        schedule = ScheduleTrigger("greet", 0.01, callback, variables={"name": "Ada"})
        schedule.start()
        while schedule.ticks < 2:
            await asyncio.sleep(0.01)
        await schedule.stop()

        assert not schedule.is_running
        assert [e.variables["tick"] for e in fired[:2]] == [1, 2]
        assert fired[0].variables["name"] == "Ada"
        assert fired[0].source == "schedule"

    @pytest.mark.asyncio
    async def test_schedule_survives_callback_errors(self):
        async def callback(event):
            raise RuntimeError("boom")

        schedule = ScheduleTrigger("greet", 0.01, callback)
        schedule.start()
        while schedule.ticks < 2:
            await asyncio.sleep(0.01)
        await schedule.stop()

    def test_schedule_interval_must_be_positive(self):
        async def callback(event):
            pass

        with pytest.raises(ValueError):
            ScheduleTrigger("greet", 0, callback)

    @pytest.mark.asyncio
    async def test_event_trigger(self):
        bus = EventBus()
        fired = []

        async def callback(event):
            fired.append(event)

        trigger = EventTrigger("greet", "lead.created", bus, callback)
        trigger.start()
        await bus.emit(EventType.EXTERNAL, "", name="lead.created", payload={"name": "Ada"})
        await bus.emit(EventType.EXTERNAL, "", name="lead.deleted", payload={"name": "Bob"})
        trigger.stop()
        await bus.emit(EventType.EXTERNAL, "", name="lead.created", payload={"name": "Cy"})

        assert [e.variables for e in fired] == [{"name": "Ada"}]
        assert fired[0].source == "event:lead.created"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_event_trigger_wiring(self, runtime):
        runtime.register(_greeting(trigger={"type": "event", "eventType": "lead.created"}))
        await runtime.start()
        assert runtime.is_running

        await runtime.event_bus.emit(
            EventType.EXTERNAL, "", name="lead.created", payload={"name": "Ada"}
        )
        completed = await runtime.event_bus.wait_for(
            EventType.EXECUTION_COMPLETED, workflow_id="greet", timeout=1
        )
        await runtime.stop()

        assert completed is not None
        state = await runtime.get_execution(completed.execution_id)
        assert state.final_output == {"greeting": "Hi Ada"}
        assert not runtime.is_running

    @pytest.mark.asyncio
    async def test_interval_schedule_wiring(self, runtime):
        runtime.register(
            _greeting(trigger={"type": "schedule", "intervalSeconds": 0.01}, text="tick {{tick}}")
        )
        await runtime.start()
        completed = await runtime.event_bus.wait_for(
            EventType.EXECUTION_COMPLETED, workflow_id="greet", timeout=1
        )
        await runtime.stop()

        assert completed is not None

    @pytest.mark.asyncio
    async def test_cron_schedule_is_not_run(self, runtime, caplog):
        runtime.register(_greeting(trigger={"type": "schedule", "cronExpression": "0 9 * * 1"}))
        await runtime.start()
        await runtime.stop()

        assert "cron schedules are not run in-process" in caplog.text

    @pytest.mark.asyncio
    async def test_webhook_trigger_registers_endpoint(self, runtime):
        runtime.register(_greeting(trigger={"type": "webhook"}))
        await runtime.start()

        state = await runtime.handle_webhook("greet", {"name": "Ada"})
        await runtime.stop()

        assert state.final_output == {"greeting": "Hi Ada"}
