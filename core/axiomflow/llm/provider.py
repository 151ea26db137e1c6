"""Model invocation abstraction.

The engine never talks to a model API directly. Agent, condition and
supervisor handlers call ``ModelInvoker.invoke`` with a logical model id;
the invoker maps it to a concrete endpoint and classifies failures as
transient (retryable) or permanent.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from axiomflow.graph.errors import WorkflowError
from axiomflow.schemas.execution_state import Message


@dataclass
class Tool:
    """A tool schema offered to the model."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


@dataclass
class ToolCall:
    """A tool call requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass
class ModelResponse:
    """Response from a model invocation."""

    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    raw_response: Any = None


class ModelInvocationError(WorkflowError):
    """A model call failed."""

    transient = False

    def __init__(self, message: str, model_id: str | None = None):
        self.model_id = model_id
        super().__init__(message)


class TransientModelError(ModelInvocationError):
    """Network, rate-limit, timeout or 5xx failure; safe to retry."""

    transient = True


class PermanentModelError(ModelInvocationError):
    """Invalid request, auth or content failure; retrying will not help."""


class ModelInvoker(ABC):
    """Turns a prompt plus message history into text and optional tool calls."""

    @abstractmethod
    async def invoke(
        self,
        model_id: str | None,
        system_prompt: str,
        history: Sequence[Message],
        tools: list[Tool] | None = None,
    ) -> ModelResponse:
        """
        Invoke a model.

        Args:
            model_id: Logical model id; None selects the configured default
            system_prompt: System prompt for this call
            history: Role-tagged conversation, oldest first
            tools: Tool schemas the model may call

        Raises:
            TransientModelError: retryable failure
            PermanentModelError: non-retryable failure
        """
