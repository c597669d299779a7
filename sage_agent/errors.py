"""Error taxonomy for the turn pipeline."""

from __future__ import annotations

from typing import Literal

ToolErrorKind = Literal["validation", "execution", "timeout"]


class SageError(Exception):
    """Base class for pipeline errors."""


class ConfigError(SageError):
    """Fatal configuration problem detected at startup."""


class ToolError(SageError):
    """Base class for tool failures carrying a failure kind."""

    kind: ToolErrorKind = "execution"

    def __init__(self, message: str, *, tool_name: str = ""):
        super().__init__(message)
        self.tool_name = tool_name


class ToolValidationError(ToolError):
    kind: ToolErrorKind = "validation"


class ToolExecutionError(ToolError):
    kind: ToolErrorKind = "execution"


class ToolTimeoutError(ToolError):
    kind: ToolErrorKind = "timeout"

    def __init__(self, tool_name: str, timeout_ms: int):
        super().__init__(f'Tool "{tool_name}" timed out after {timeout_ms}ms', tool_name=tool_name)
        self.timeout_ms = timeout_ms


class ProviderError(SageError):
    """Network or HTTP failure talking to the model provider."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ProviderValidationError(ProviderError):
    """Provider rejected the request itself; retrying cannot help."""


class CircuitOpenError(SageError):
    """Circuit breaker is rejecting calls without contacting the provider."""

    def __init__(self, message: str = "Circuit breaker is OPEN"):
        super().__init__(message)


class EnvelopeParseError(SageError):
    """Model output is not a valid tool-call envelope."""
