"""LiteLLM provider implementation for multi-provider support."""

from __future__ import annotations

import copy
import json
import re
from typing import Any

import litellm
from litellm import acompletion
from loguru import logger

from sage_agent.errors import ProviderError, ProviderValidationError
from sage_agent.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from sage_agent.providers.openai_compat import JSON_ONLY_INSTRUCTION, append_system_instruction

_INVALID_REQUEST = re.compile(r"model|validation", re.IGNORECASE)


class LiteLLMProvider(LLMProvider):
    """
    LLM provider using LiteLLM for multi-provider support.

    Used when the configured provider is not a plain OpenAI-compatible
    endpoint. A custom ``api_base`` is treated as an OpenAI-compatible proxy.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "gemini/gemini-2.0-flash",
        extra_headers: dict[str, str] | None = None,
        timeout: float = 20.0,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.extra_headers = extra_headers or {}
        self.timeout = timeout

        litellm.suppress_debug_info = True
        litellm.drop_params = True

    def _resolve_model(self, model: str) -> str:
        """Route bare model names through the OpenAI-compatible adapter when proxied."""
        if self.api_base and not model.startswith("openai/"):
            return f"openai/{model}"
        return model

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        *,
        tool_choice: str | dict[str, Any] | None = None,
        response_format: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
    ) -> LLMResponse:
        resolved = self._resolve_model(model or self.default_model)
        kwargs: dict[str, Any] = {
            "model": resolved,
            "messages": copy.deepcopy(messages),
            "max_tokens": max_tokens,
            "temperature": temperature,
            "timeout": timeout or self.timeout,
        }
        key = api_key or self.api_key
        if key:
            kwargs["api_key"] = key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = tool_choice or "auto"
        if response_format == "json_object":
            if tools:
                append_system_instruction(kwargs["messages"], JSON_ONLY_INSTRUCTION)
            else:
                kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await acompletion(**kwargs)
        except Exception as e:
            status = getattr(e, "status_code", None)
            text = str(e)
            if status == 400 and _INVALID_REQUEST.search(text):
                raise ProviderValidationError(f"LiteLLM rejected request: {text}", status_code=status) from e
            raise ProviderError(f"LiteLLM call failed: {text}", status_code=status) from e
        return self._parse_response(response)

    def _parse_response(self, response: Any) -> LLMResponse:
        """Parse LiteLLM response into our standard format."""
        choice = response.choices[0]
        message = choice.message

        tool_calls = []
        for tc in getattr(message, "tool_calls", None) or []:
            args = tc.function.arguments
            if isinstance(args, str):
                try:
                    args = json.loads(args)
                except json.JSONDecodeError:
                    args = {"raw": args}
            tool_calls.append(ToolCallRequest(id=tc.id, name=tc.function.name, arguments=args))

        usage: dict[str, int] = {}
        if getattr(response, "usage", None):
            usage = {
                "prompt_tokens": int(response.usage.prompt_tokens or 0),
                "completion_tokens": int(response.usage.completion_tokens or 0),
                "total_tokens": int(response.usage.total_tokens or 0),
            }
        logger.debug(f"LiteLLM response finish_reason={choice.finish_reason}")
        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
        )

    def get_default_model(self) -> str:
        return self.default_model
