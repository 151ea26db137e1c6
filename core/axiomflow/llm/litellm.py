"""LiteLLM-backed model invoker.

Logical model ids are resolved through ``EngineConfig.models``; an id with no
registry entry is passed to LiteLLM unchanged (``"openai/gpt-4o-mini"``,
``"anthropic/claude-sonnet-4-20250514"`` ...).
"""

import json
import logging
from collections.abc import Sequence
from typing import Any

import litellm

from axiomflow.config import EngineConfig
from axiomflow.llm.provider import (
    ModelInvoker,
    ModelResponse,
    PermanentModelError,
    Tool,
    ToolCall,
    TransientModelError,
)
from axiomflow.schemas.execution_state import Message

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    litellm.RateLimitError,
    litellm.APIConnectionError,
    litellm.Timeout,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
)


class LiteLLMProvider(ModelInvoker):
    """
    Model invoker for any provider LiteLLM supports.

    Example:
        config = EngineConfig(models={"fast": ModelEndpoint(model="openai/gpt-4o-mini")})
        invoker = LiteLLMProvider(config)
        response = await invoker.invoke("fast", "You score leads.", history)
    """

    def __init__(self, config: EngineConfig, max_tokens: int = 4096, **extra_kwargs: Any):
        self.config = config
        self.max_tokens = max_tokens
        self.extra_kwargs = extra_kwargs

    def _build_kwargs(
        self,
        model_id: str | None,
        system_prompt: str,
        history: Sequence[Message],
        tools: list[Tool] | None,
    ) -> dict[str, Any]:
        endpoint = self.config.endpoint_for(model_id)
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend(m.to_llm() for m in history)

        kwargs: dict[str, Any] = {
            "model": endpoint.model,
            "messages": messages,
            "max_tokens": endpoint.max_tokens or self.max_tokens,
            **self.extra_kwargs,
        }
        if endpoint.api_base:
            kwargs["api_base"] = endpoint.api_base
        if endpoint.api_key:
            kwargs["api_key"] = endpoint.api_key
        if endpoint.temperature is not None:
            kwargs["temperature"] = endpoint.temperature
        if tools:
            kwargs["tools"] = [t.to_openai() for t in tools]
        return kwargs

    async def invoke(
        self,
        model_id: str | None,
        system_prompt: str,
        history: Sequence[Message],
        tools: list[Tool] | None = None,
    ) -> ModelResponse:
        kwargs = self._build_kwargs(model_id, system_prompt, history, tools)
        try:
            response = await litellm.acompletion(**kwargs)
        except _TRANSIENT_ERRORS as e:
            logger.warning(
                "Transient model failure: %s", e, extra={"model": kwargs["model"]}
            )
            raise TransientModelError(str(e), model_id) from e
        except Exception as e:
            raise PermanentModelError(str(e), model_id) from e

        return self._parse(response, kwargs["model"])

    @staticmethod
    def _parse(response: Any, model: str) -> ModelResponse:
        message = response.choices[0].message
        tool_calls = []
        for call in getattr(message, "tool_calls", None) or []:
            raw_args = call.function.arguments or "{}"
            try:
                arguments = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
            except json.JSONDecodeError:
                arguments = {"_raw": raw_args}
            tool_calls.append(ToolCall(id=call.id, name=call.function.name, arguments=arguments))

        usage = getattr(response, "usage", None)
        return ModelResponse(
            text=message.content or "",
            tool_calls=tool_calls,
            model=getattr(response, "model", model) or model,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            raw_response=response,
        )
