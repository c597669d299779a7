"""Agent tools module."""

from sage_agent.agent.tools.base import Tool, ToolExecutionContext
from sage_agent.agent.tools.registry import ToolRegistry, ToolResult
from sage_agent.agent.tools.voice import JoinVoiceTool, LeaveVoiceTool, VoiceController

__all__ = [
    "Tool",
    "ToolExecutionContext",
    "ToolRegistry",
    "ToolResult",
    "JoinVoiceTool",
    "LeaveVoiceTool",
    "VoiceController",
]
