"""Voice analytics expert: current voice presence and today's time in voice."""

from __future__ import annotations

import asyncio

from sage_agent.orchestration.experts.base import Expert, ExpertContext, ExpertName, ExpertPacket, clip
from sage_agent.orchestration.sources import VoiceSource, format_how_long_today, format_who_in_voice


class VoiceAnalyticsExpert(Expert):
    name = ExpertName.VOICE_ANALYTICS
    requires_guild = True
    dm_label = "Voice analytics"
    error_text = "Voice analytics: Error loading voice data."

    def __init__(self, voice: VoiceSource, max_chars: int = 1200):
        self.voice = voice
        self.max_chars = max_chars

    async def run(self, ctx: ExpertContext) -> ExpertPacket:
        guild_id = ctx.guild_id or ""
        presence, today_ms = await asyncio.gather(
            self.voice.who_is_in_voice(guild_id),
            self.voice.voice_ms_today(guild_id, ctx.user_id),
        )
        content = (
            "Voice analytics:\n"
            f"Current voice: {format_who_in_voice(presence)}\n"
            f"User today: {format_how_long_today(ctx.user_id, today_ms)}"
        )
        return ExpertPacket(
            name=self.name,
            content=clip(content, self.max_chars, "\n(truncated)"),
            structured={
                "channel_count": len(presence),
                "total_members": sum(len(channel.members) for channel in presence),
                "user_today_ms": today_ms,
            },
        )
