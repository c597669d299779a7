"""Summarizer expert: stored channel summaries, no model call."""

from __future__ import annotations

import asyncio

from sage_agent.orchestration.experts.base import Expert, ExpertContext, ExpertName, ExpertPacket, clip
from sage_agent.orchestration.sources import SummarySource


class SummarizerExpert(Expert):
    name = ExpertName.SUMMARIZER
    requires_guild = True
    dm_label = "Summarization context"
    error_text = "Summarization context: Error loading summaries."

    def __init__(self, summaries: SummarySource, max_chars: int = 600):
        self.summaries = summaries
        self.max_chars = max_chars

    async def run(self, ctx: ExpertContext) -> ExpertPacket:
        guild_id = ctx.guild_id or ""
        rolling, profile = await asyncio.gather(
            self.summaries.latest_summary(guild_id, ctx.channel_id, "rolling"),
            self.summaries.latest_summary(guild_id, ctx.channel_id, "profile"),
        )

        parts = []
        if rolling:
            parts.append(f"Recent: {rolling.summary_text}")
        if profile:
            parts.append(f"Profile: {profile.summary_text}")
        if not parts:
            return ExpertPacket(
                name=self.name,
                content="Summarization context: No stored summaries available. Use transcript directly.",
                structured={"rolling_summary": None, "profile_summary": None},
                token_estimate=20,
            )

        content = "Summarization context: " + " | ".join(parts)
        return ExpertPacket(
            name=self.name,
            content=clip(content, self.max_chars, "..."),
            structured={"has_rolling": rolling is not None, "has_profile": profile is not None},
        )
