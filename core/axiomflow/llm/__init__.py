"""Model invocation collaborators."""

from axiomflow.llm.litellm import LiteLLMProvider
from axiomflow.llm.mock import MockModelInvoker, ModelCall
from axiomflow.llm.provider import (
    ModelInvocationError,
    ModelInvoker,
    ModelResponse,
    PermanentModelError,
    Tool,
    ToolCall,
    TransientModelError,
)

__all__ = [
    "LiteLLMProvider",
    "MockModelInvoker",
    "ModelCall",
    "ModelInvocationError",
    "ModelInvoker",
    "ModelResponse",
    "PermanentModelError",
    "Tool",
    "ToolCall",
    "TransientModelError",
]
