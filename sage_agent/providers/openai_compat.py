"""OpenAI-compatible chat completions provider over httpx."""

from __future__ import annotations

import copy
import re
from typing import Any

import httpx
from loguru import logger

from sage_agent.errors import ProviderError, ProviderValidationError
from sage_agent.providers.base import LLMProvider, LLMResponse

JSON_ONLY_INSTRUCTION = (
    " IMPORTANT: You must output strictly valid JSON only. "
    "Do not wrap in markdown blocks. No other text."
)

_JSON_MODE_REJECTED = re.compile(r"response_format|json_object|unknown field|unsupported", re.IGNORECASE)
_INVALID_REQUEST = re.compile(r"model|validation", re.IGNORECASE)


def normalize_base_url(base_url: str) -> str:
    """Trim, drop trailing slash and any /chat/completions suffix."""
    url = (base_url or "").strip().rstrip("/")
    if url.endswith("/chat/completions"):
        url = url[: -len("/chat/completions")]
    return url


def append_system_instruction(messages: list[dict[str, Any]], instruction: str) -> None:
    for message in messages:
        if message.get("role") == "system" and isinstance(message.get("content"), str):
            message["content"] = message["content"] + instruction
            return
    messages.insert(0, {"role": "system", "content": instruction.strip()})


class OpenAICompatibleProvider(LLMProvider):
    """
    Single-attempt chat client for OpenAI-compatible endpoints.

    JSON mode is negotiated down instead of failing: tools plus
    ``json_object`` becomes a prompt instruction, and a 400/422 rejecting
    ``response_format`` is replayed once without it. Retries for transient
    failures live in ``ResilientProvider``.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "gemini",
        timeout: float = 20.0,
        extra_headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(api_key, normalize_base_url(api_base or "https://gen.pollinations.ai/v1"))
        self.default_model = (default_model or "gemini").strip().lower()
        self.timeout = timeout
        self.extra_headers = extra_headers or {}
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def url(self) -> str:
        return f"{self.api_base}/chat/completions"

    def _headers(self, api_key: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json", **self.extra_headers}
        key = api_key or self.api_key
        if key:
            headers["Authorization"] = f"Bearer {key}"
        return headers

    def _build_payload(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str,
        max_tokens: int,
        temperature: float,
        tool_choice: str | dict[str, Any] | None,
        response_format: str | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": copy.deepcopy(messages),
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools:
            payload["tools"] = tools
            if tool_choice is not None:
                payload["tool_choice"] = tool_choice
        if response_format == "json_object":
            if tools:
                logger.info(f"Tools with JSON mode for {model}; moving JSON requirement into the prompt")
                append_system_instruction(payload["messages"], JSON_ONLY_INSTRUCTION)
            else:
                payload["response_format"] = {"type": "json_object"}
        return payload

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
        resolved_model = (model or self.default_model).strip().lower()
        payload = self._build_payload(
            messages, tools, resolved_model, max_tokens, temperature, tool_choice, response_format
        )
        headers = self._headers(api_key)
        logger.debug(f"Chat request to {self.url} model={resolved_model} messages={len(messages)}")

        response = await self._post(payload, headers, timeout)
        if (
            response.status_code in (400, 422)
            and "response_format" in payload
            and _JSON_MODE_REJECTED.search(response.text)
        ):
            logger.warning(
                f"JSON mode rejected by provider ({response.status_code}); retrying without response_format"
            )
            payload.pop("response_format", None)
            append_system_instruction(payload["messages"], JSON_ONLY_INSTRUCTION)
            response = await self._post(payload, headers, timeout)

        if response.status_code >= 400:
            body = response.text
            if response.status_code == 400 and _INVALID_REQUEST.search(body):
                raise ProviderValidationError(
                    f"Provider rejected request: {body[:200]}",
                    status_code=response.status_code,
                    body=body,
                )
            raise ProviderError(
                f"Provider API error: {response.status_code} {response.reason_phrase} - {body[:200]}",
                status_code=response.status_code,
                body=body,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"Provider returned invalid JSON: {e}", status_code=response.status_code) from e
        return self._parse_response(data)

    async def _post(
        self,
        payload: dict[str, Any],
        headers: dict[str, str],
        timeout: float | None,
    ) -> httpx.Response:
        try:
            return await self._client.post(
                self.url,
                json=payload,
                headers=headers,
                timeout=timeout or self.timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderError(f"Provider request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Provider request failed: {e}") from e

    def _parse_response(self, data: dict[str, Any]) -> LLMResponse:
        choices = data.get("choices") or [{}]
        choice = choices[0] if isinstance(choices[0], dict) else {}
        message = choice.get("message") or {}
        usage_raw = data.get("usage") or {}
        usage: dict[str, int] = {}
        if usage_raw:
            usage = {
                "prompt_tokens": int(usage_raw.get("prompt_tokens", 0) or 0),
                "completion_tokens": int(usage_raw.get("completion_tokens", 0) or 0),
                "total_tokens": int(usage_raw.get("total_tokens", 0) or 0),
            }
        return LLMResponse(
            content=message.get("content") or "",
            finish_reason=choice.get("finish_reason") or "stop",
            usage=usage,
        )

    def get_default_model(self) -> str:
        return self.default_model

    async def aclose(self) -> None:
        await self._client.aclose()
