"""Tests for the tool registry: allowlist, validation and guarded execution."""

import asyncio
from pathlib import Path
from typing import Any

import pytest
from pydantic import BaseModel, ConfigDict

from sage_agent.agent.envelope import ToolCall
from sage_agent.agent.tools.base import Tool, ToolExecutionContext
from sage_agent.agent.tools.registry import ToolRegistry
from sage_agent.agent.tools.voice import JoinVoiceTool, LeaveVoiceTool
from sage_agent.errors import ConfigError, ToolValidationError
from sage_agent.observability.metrics import MetricsStore

CTX = ToolExecutionContext(trace_id="trace-1", user_id="u1", channel_id="c1")


class EchoArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str


class EchoTool(Tool):
    args_model = EchoArgs

    @property
    def name(self) -> str:
        return "echo"

    @property
    def description(self) -> str:
        return "Echo the text back."

    async def execute(self, args: BaseModel, ctx: ToolExecutionContext) -> Any:
        return {"echo": args.text, "user": ctx.user_id}


class BrokenTool(Tool):
    @property
    def name(self) -> str:
        return "broken"

    @property
    def description(self) -> str:
        return "Always fails."

    async def execute(self, args: BaseModel, ctx: ToolExecutionContext) -> Any:
        raise RuntimeError("boom")


class PickyTool(Tool):
    @property
    def name(self) -> str:
        return "picky"

    @property
    def description(self) -> str:
        return "Rejects its input after schema validation."

    async def execute(self, args: BaseModel, ctx: ToolExecutionContext) -> Any:
        raise ToolValidationError("channel is not a voice channel", tool_name=self.name)


class SlowTool(Tool):
    @property
    def name(self) -> str:
        return "slow"

    @property
    def description(self) -> str:
        return "Takes too long."

    async def execute(self, args: BaseModel, ctx: ToolExecutionContext) -> Any:
        await asyncio.sleep(1.0)
        return "late"


class FakeVoiceController:
    def __init__(self):
        self.calls: list[tuple[str, ...]] = []

    async def join_user_channel(self, user_id: str, channel_id: str) -> str:
        self.calls.append(("join", user_id, channel_id))
        return "Joined your voice channel."

    async def leave(self, channel_id: str) -> str:
        self.calls.append(("leave", channel_id))
        return "Left the voice channel."


def _registry(**kwargs) -> ToolRegistry:
    registry = ToolRegistry(**kwargs)
    registry.register(EchoTool())
    registry.register(BrokenTool())
    registry.register(SlowTool())
    return registry


# ── Registration ───────────────────────────────────────────────────


def test_duplicate_registration_is_rejected():
    registry = _registry()
    with pytest.raises(ConfigError, match="already registered"):
        registry.register(EchoTool())


def test_definitions_use_args_model_schema():
    registry = _registry()
    definition = registry.get_definitions()[0]
    assert definition["function"]["name"] == "echo"
    params = definition["function"]["parameters"]
    assert "title" not in params
    assert params["properties"]["text"]["type"] == "string"
    assert registry.tool_names == ["echo", "broken", "slow"]
    assert len(registry) == 3 and "echo" in registry


# ── Validation ─────────────────────────────────────────────────────


def test_unknown_tool_lists_allowed_names():
    validation = _registry().validate(ToolCall(name="nope"))
    assert not validation.ok
    assert validation.error == 'Unknown tool: "nope". Allowed tools: echo, broken, slow'


def test_oversized_arguments_are_rejected():
    registry = _registry(max_args_bytes=20)
    validation = registry.validate(ToolCall(name="echo", args={"text": "x" * 100}))
    assert not validation.ok
    assert "exceed maximum size" in validation.error


def test_schema_errors_name_the_field():
    validation = _registry().validate(ToolCall(name="echo", args={}))
    assert not validation.ok
    assert validation.error.startswith('Invalid arguments for tool "echo"')
    assert "text" in validation.error


# ── Execution ──────────────────────────────────────────────────────


def test_execute_success_passes_context():
    result = asyncio.run(_registry().execute(ToolCall(name="echo", args={"text": "hi"}), CTX))
    assert result.success
    assert result.result == {"echo": "hi", "user": "u1"}


def test_execution_failure_is_captured():
    result = asyncio.run(_registry().execute(ToolCall(name="broken"), CTX))
    assert not result.success
    assert result.error_kind == "execution"
    assert result.error == "Tool execution failed: boom"


def test_validation_failure_is_returned_not_raised():
    result = asyncio.run(_registry().execute(ToolCall(name="missing"), CTX))
    assert not result.success
    assert result.error_kind == "validation"


def test_tool_raised_validation_error_keeps_its_kind():
    registry = _registry()
    registry.register(PickyTool())
    result = asyncio.run(registry.execute(ToolCall(name="picky"), CTX))
    assert not result.success
    assert result.error_kind == "validation"
    assert result.error == "channel is not a voice channel"


def test_validation_failure_carries_allowlist_message():
    result = asyncio.run(_registry().execute(ToolCall(name="missing"), CTX))
    assert result.name == "missing"
    assert result.error == 'Unknown tool: "missing". Allowed tools: echo, broken, slow'


def test_timeout_produces_timeout_result():
    result = asyncio.run(_registry().execute_with_timeout(ToolCall(name="slow"), CTX, timeout=0.01))
    assert not result.success
    assert result.error_kind == "timeout"
    assert result.error == 'Tool "slow" timed out after 10ms'


def test_tool_calls_are_recorded_in_metrics(tmp_path: Path):
    metrics = MetricsStore(tmp_path / "events.jsonl")
    registry = _registry(metrics=metrics)

    async def _run() -> None:
        await registry.execute_with_timeout(ToolCall(name="echo", args={"text": "a"}), CTX, timeout=1.0)
        await registry.execute_with_timeout(ToolCall(name="nope"), CTX, timeout=1.0)

    asyncio.run(_run())
    tools = metrics.snapshot()["tools"]
    assert tools["calls"] == 2
    assert tools["errors_by_kind"] == {"validation": 1}


# ── Voice tools ────────────────────────────────────────────────────


def test_voice_tools_delegate_to_controller():
    controller = FakeVoiceController()
    registry = ToolRegistry()
    registry.register(JoinVoiceTool(controller))
    registry.register(LeaveVoiceTool(controller))

    async def _run():
        joined = await registry.execute(ToolCall(name="join_voice_channel"), CTX)
        left = await registry.execute(ToolCall(name="leave_voice_channel"), CTX)
        return joined, left

    joined, left = asyncio.run(_run())
    assert joined.result == "Joined your voice channel."
    assert left.result == "Left the voice channel."
    assert controller.calls == [("join", "u1", "c1"), ("leave", "c1")]


def test_voice_tools_reject_unexpected_arguments():
    registry = ToolRegistry()
    registry.register(JoinVoiceTool(FakeVoiceController()))
    validation = registry.validate(ToolCall(name="join_voice_channel", args={"channel": "x"}))
    assert not validation.ok
