"""Scripted model invoker for tests and dry runs."""

import asyncio
import inspect
import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from axiomflow.llm.provider import ModelInvoker, ModelResponse, Tool
from axiomflow.schemas.execution_state import Message


@dataclass
class ModelCall:
    """One recorded ``invoke`` call."""

    model_id: str | None
    system_prompt: str
    history: list[Message]
    tools: list[Tool] = field(default_factory=list)

    @property
    def last_user_message(self) -> str:
        for message in reversed(self.history):
            if message.role == "user":
                return message.content
        return ""


class MockModelInvoker(ModelInvoker):
    """
    Returns pre-programmed responses in order.

    Script entries may be a ``ModelResponse``, a string (the response text),
    a dict/list (JSON-encoded as the text) or an exception instance (raised).
    Alternatively pass ``responder``, a function of the ``ModelCall`` that
    returns any of those; it may be async.
    """

    def __init__(
        self,
        script: Sequence[Any] | None = None,
        responder: Callable[[ModelCall], Any] | None = None,
        default: Any = "",
        delay: float = 0.0,
    ):
        self.script = list(script or [])
        self.responder = responder
        self.default = default
        self.delay = delay
        self.calls: list[ModelCall] = []

    async def invoke(
        self,
        model_id: str | None,
        system_prompt: str,
        history: Sequence[Message],
        tools: list[Tool] | None = None,
    ) -> ModelResponse:
        call = ModelCall(model_id, system_prompt, list(history), list(tools or []))
        self.calls.append(call)

        if self.delay:
            await asyncio.sleep(self.delay)

        if self.responder is not None:
            entry = self.responder(call)
            if inspect.isawaitable(entry):
                entry = await entry
        elif self.script:
            entry = self.script.pop(0)
        else:
            entry = self.default

        if isinstance(entry, BaseException):
            raise entry
        if isinstance(entry, ModelResponse):
            return entry
        if isinstance(entry, str):
            return ModelResponse(text=entry, model=model_id or "mock")
        return ModelResponse(text=json.dumps(entry), model=model_id or "mock")
