"""Voice channel tools backed by an external voice controller."""

from __future__ import annotations

from typing import Any, Protocol

from loguru import logger
from pydantic import BaseModel

from sage_agent.agent.tools.base import Tool, ToolExecutionContext


class VoiceController(Protocol):
    """Gateway-side voice control. Implementations live outside this package."""

    async def join_user_channel(self, user_id: str, channel_id: str) -> str: ...

    async def leave(self, channel_id: str) -> str: ...


class JoinVoiceTool(Tool):
    """Join the requesting user's current voice channel."""

    def __init__(self, controller: VoiceController):
        self._controller = controller

    @property
    def name(self) -> str:
        return "join_voice_channel"

    @property
    def description(self) -> str:
        return (
            "Join the user's current voice channel. Use this when the user asks you to join voice, "
            "hop in vc, or speak to them."
        )

    async def execute(self, args: BaseModel, ctx: ToolExecutionContext) -> Any:
        try:
            return await self._controller.join_user_channel(ctx.user_id, ctx.channel_id)
        except Exception as e:
            logger.error(f"Failed to join voice for user {ctx.user_id}: {e}")
            return "I encountered an error trying to join the voice channel."


class LeaveVoiceTool(Tool):
    """Leave the voice channel in the originating guild."""

    def __init__(self, controller: VoiceController):
        self._controller = controller

    @property
    def name(self) -> str:
        return "leave_voice_channel"

    @property
    def description(self) -> str:
        return (
            "Leave the current voice channel. Use this when the user asks you to leave, "
            "disconnect, or stop speaking."
        )

    async def execute(self, args: BaseModel, ctx: ToolExecutionContext) -> Any:
        return await self._controller.leave(ctx.channel_id)
