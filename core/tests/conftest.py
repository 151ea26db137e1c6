"""Shared fixtures for engine tests."""

from datetime import UTC, datetime
from typing import Any

import pytest

from axiomflow.config import EngineConfig
from axiomflow.graph.executor import WorkflowExecutor
from axiomflow.graph.workflow import AgentDefinition, ToolDefinition, WorkflowDefinition
from axiomflow.integrations.connector import RecordingConnector
from axiomflow.llm.mock import MockModelInvoker
from axiomflow.observability import clear_trace_context
from axiomflow.storage.execution_store import InMemoryExecutionStore

AGENTS = {
    "scorer": AgentDefinition(id="scorer", name="Lead Scorer", system_prompt="Score the lead."),
    "writer": AgentDefinition(
        id="writer", name="Outreach Writer", system_prompt="Write a short outreach email."
    ),
    "researcher": AgentDefinition(
        id="researcher",
        name="Researcher",
        description="Finds facts about a company",
        system_prompt="Research the company.",
    ),
    "coordinator": AgentDefinition(
        id="coordinator", type="supervisor", system_prompt="Coordinate the team."
    ),
}

TOOLS = {
    "crm_create": ToolDefinition(
        id="crm_create", provider="hubspot", endpoint="/crm/v3/objects/contacts"
    ),
    "slack_notify": ToolDefinition(
        id="slack_notify", provider="slack", endpoint="/chat.postMessage"
    ),
}


class FakeClock:
    """Settable clock handed to the executor."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 1, 5, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture(autouse=True)
def _reset_trace_context():
    yield
    clear_trace_context()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(retry_base_delay=0)


@pytest.fixture
def store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def connector() -> RecordingConnector:
    return RecordingConnector()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_executor(store, connector, engine_config, clock):
    """Build an executor over the shared store/connector with a scripted model."""

    def _make(model: Any = None, **kwargs: Any) -> WorkflowExecutor:
        kwargs.setdefault("store", store)
        kwargs.setdefault("connector", connector)
        kwargs.setdefault("config", engine_config)
        kwargs.setdefault("agents", AGENTS)
        kwargs.setdefault("tools", TOOLS)
        kwargs.setdefault("clock", clock)
        return WorkflowExecutor(model=model or MockModelInvoker(default="ok"), **kwargs)

    return _make


@pytest.fixture
def make_workflow():
    """Build a definition; a trigger node with id ``trigger`` is prepended."""

    def _make(nodes: list[dict], edges: list[dict], **extra: Any) -> WorkflowDefinition:
        data = {
            "id": extra.pop("id", "wf"),
            "nodes": [{"id": "trigger", "type": "trigger"}, *nodes],
            "edges": edges,
            **extra,
        }
        return WorkflowDefinition.model_validate(data)

    return _make
