"""Tool registry: the allowlist, argument validation and guarded execution."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from time import perf_counter
from typing import TYPE_CHECKING, Any

from loguru import logger
from pydantic import BaseModel, ValidationError

from sage_agent.agent.envelope import ToolCall
from sage_agent.agent.tools.base import Tool, ToolExecutionContext
from sage_agent.errors import (
    ConfigError,
    ToolError,
    ToolErrorKind,
    ToolExecutionError,
    ToolTimeoutError,
    ToolValidationError,
)

if TYPE_CHECKING:
    from sage_agent.observability.metrics import MetricsStore

MAX_ARGS_BYTES = 10 * 1024


@dataclass(slots=True)
class ToolValidation:
    ok: bool
    args: BaseModel | None = None
    error: str = ""


@dataclass(slots=True)
class ToolResult:
    """Outcome of one tool invocation."""
    name: str
    success: bool
    result: Any = None
    error: str = ""
    error_kind: ToolErrorKind | None = None
    latency_ms: float = 0.0

    @classmethod
    def failure(cls, name: str, error: ToolError, latency_ms: float) -> ToolResult:
        return cls(name=name, success=False, error=str(error), error_kind=error.kind, latency_ms=latency_ms)


def _format_validation_error(name: str, error: ValidationError) -> str:
    issues = []
    for item in error.errors():
        path = ".".join(str(part) for part in item.get("loc", ())) or "(root)"
        issues.append(f"{path}: {item.get('msg', 'invalid')}")
    return f'Invalid arguments for tool "{name}": ' + "; ".join(issues)


class ToolRegistry:
    """
    Registry for agent tools.

    The set of registered names is the only allowlist. Registering a name
    twice is a configuration error.
    """

    def __init__(self, max_args_bytes: int = MAX_ARGS_BYTES, metrics: MetricsStore | None = None):
        self._tools: dict[str, Tool] = {}
        self.max_args_bytes = max_args_bytes
        self.metrics = metrics

    def register(self, tool: Tool) -> None:
        """Register a tool; duplicate names are rejected."""
        if tool.name in self._tools:
            raise ConfigError(f'Tool "{tool.name}" is already registered')
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools

    @property
    def tool_names(self) -> list[str]:
        """Registered tool names in registration order."""
        return list(self._tools.keys())

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions in OpenAI format."""
        return [tool.to_schema() for tool in self._tools.values()]

    def validate(self, call: ToolCall) -> ToolValidation:
        """Check allowlist, serialized size, then schema; first failure wins."""
        tool = self._tools.get(call.name)
        if tool is None:
            allowed = ", ".join(self.tool_names) or "none"
            return ToolValidation(ok=False, error=f'Unknown tool: "{call.name}". Allowed tools: {allowed}')

        try:
            size = len(json.dumps(call.args).encode("utf-8"))
        except (TypeError, ValueError) as e:
            return ToolValidation(ok=False, error=f'Invalid arguments for tool "{call.name}": {e}')
        if size > self.max_args_bytes:
            return ToolValidation(
                ok=False,
                error=f"Tool arguments exceed maximum size ({size} > {self.max_args_bytes} bytes)",
            )

        try:
            args = tool.args_model.model_validate(call.args)
        except ValidationError as e:
            return ToolValidation(ok=False, error=_format_validation_error(call.name, e))
        return ToolValidation(ok=True, args=args)

    async def execute(self, call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        """Validate and run a call. Never raises for tool failures."""
        started = perf_counter()
        validation = self.validate(call)
        if not validation.ok or validation.args is None:
            error: ToolError = ToolValidationError(validation.error, tool_name=call.name)
            return ToolResult.failure(call.name, error, (perf_counter() - started) * 1000.0)

        tool = self._tools[call.name]
        try:
            result = await tool.execute(validation.args, ctx)
        except ToolError as e:
            return ToolResult.failure(call.name, e, (perf_counter() - started) * 1000.0)
        except Exception as e:
            error = ToolExecutionError(f"Tool execution failed: {e}", tool_name=call.name)
            return ToolResult.failure(call.name, error, (perf_counter() - started) * 1000.0)
        return ToolResult(
            name=call.name,
            success=True,
            result=result,
            latency_ms=(perf_counter() - started) * 1000.0,
        )

    async def execute_with_timeout(
        self,
        call: ToolCall,
        ctx: ToolExecutionContext,
        timeout: float,
    ) -> ToolResult:
        """
        Race a call against ``timeout`` seconds.

        On timeout the in-flight task is abandoned rather than cancelled; it
        may still finish later and its result is discarded.
        """
        log = logger.bind(trace_id=ctx.trace_id, tool=call.name)
        log.info(f"Tool invocation started: {call.name}")
        started = perf_counter()
        task = asyncio.ensure_future(self.execute(call, ctx))
        done, _ = await asyncio.wait({task}, timeout=timeout)

        if task in done:
            result = task.result()
        else:
            task.add_done_callback(_discard_orphan_result)
            timeout_ms = int(timeout * 1000)
            result = ToolResult.failure(call.name, ToolTimeoutError(call.name, timeout_ms), float(timeout_ms))

        if result.success:
            log.info(f"Tool invocation succeeded: {call.name} ({result.latency_ms:.0f}ms)")
        elif result.error_kind == "validation":
            log.warning(f"Tool invocation rejected: {result.error}")
        elif result.error_kind == "timeout":
            log.warning(f"Tool invocation timed out: {result.error}")
        else:
            log.warning(f"Tool invocation failed: {result.error}")

        if self.metrics is not None:
            self.metrics.record_tool_call(
                tool=call.name,
                success=result.success,
                latency_ms=(perf_counter() - started) * 1000.0,
                error_kind=result.error_kind or "",
                error=result.error,
            )
        return result

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools


def _discard_orphan_result(task: asyncio.Future[Any]) -> None:
    if task.cancelled():
        return
    logger.debug(f"Abandoned tool call finished after timeout; result discarded ({task.result().name})")
