"""Tool-call envelope: the JSON wire contract parsed out of model text."""

from __future__ import annotations

import json
import re
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from sage_agent.errors import EnvelopeParseError

_CODE_FENCE = re.compile(r"^```(?:json)?\s*\n?([\s\S]*?)\n?```$")
_ENVELOPE_KEYS = ('"type"', '"name"', '"calls"')

RETRY_PROMPT = (
    "Your previous response was not valid JSON. Output ONLY valid JSON matching the exact schema:\n"
    "{\n"
    '  "type": "tool_calls",\n'
    '  "calls": [{ "name": "<tool_name>", "args": { ... } }]\n'
    "}\n"
    "OR respond with a plain text answer if you don't need to use tools."
)


class ToolCall(BaseModel):
    """One requested invocation. Missing ``args`` means no arguments."""

    name: str = Field(min_length=1)
    args: dict[str, Any] = Field(default_factory=dict)

    @field_validator("args", mode="before")
    @classmethod
    def _default_args(cls, value: Any) -> Any:
        return {} if value is None else value


class ToolCallEnvelope(BaseModel):
    type: Literal["tool_calls"]
    calls: list[ToolCall]


def strip_code_fences(text: str) -> str:
    """Remove one surrounding ```/```json fence, if present."""
    stripped = (text or "").strip()
    match = _CODE_FENCE.match(stripped)
    if match:
        return match.group(1).strip()
    return stripped


def looks_like_json(text: str) -> bool:
    """Heuristic: JSON-shaped text that mentions an envelope key."""
    stripped = strip_code_fences(text)
    if not stripped.startswith(("{", "[")):
        return False
    return any(key in stripped for key in _ENVELOPE_KEYS)


def parse_envelope(text: str) -> ToolCallEnvelope:
    """
    Parse model text into a ``ToolCallEnvelope``.

    Raises:
        EnvelopeParseError: If the text is not JSON or not a valid envelope.
    """
    body = strip_code_fences(text)
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError) as e:
        raise EnvelopeParseError(f"Not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise EnvelopeParseError("Envelope must be a JSON object")
    try:
        return ToolCallEnvelope.model_validate(data)
    except ValidationError as e:
        raise EnvelopeParseError(f"Invalid tool call envelope: {e.error_count()} error(s)") from e


def try_parse_envelope(text: str) -> ToolCallEnvelope | None:
    try:
        return parse_envelope(text)
    except EnvelopeParseError:
        return None


def serialize_envelope(envelope: ToolCallEnvelope) -> str:
    return envelope.model_dump_json()
