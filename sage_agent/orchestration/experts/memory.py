"""Memory expert: the user's compressed long-term profile."""

from __future__ import annotations

from sage_agent.orchestration.experts.base import Expert, ExpertContext, ExpertName, ExpertPacket, clip
from sage_agent.orchestration.sources import ProfileSource


class MemoryExpert(Expert):
    name = ExpertName.MEMORY
    error_text = "User memory: Error loading profile."

    def __init__(self, profiles: ProfileSource, max_chars: int = 1000):
        self.profiles = profiles
        self.max_chars = max_chars

    async def run(self, ctx: ExpertContext) -> ExpertPacket:
        summary = await self.profiles.get_profile(ctx.user_id)
        if not summary or not summary.strip():
            return ExpertPacket(
                name=self.name,
                content="User memory: No personalization data available.",
                structured={"summary": None},
                token_estimate=10,
            )

        content = clip(summary, self.max_chars, "...")
        return ExpertPacket(
            name=self.name,
            content=f"User memory (compressed): {content}",
            structured={"summary": content, "truncated": content != summary},
        )
