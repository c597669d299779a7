"""Expert pool: run a route's experts concurrently with failure isolation."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

from loguru import logger

from sage_agent.orchestration.experts.base import Expert, ExpertContext, ExpertName, ExpertPacket
from sage_agent.orchestration.router import RouteDecision


def render_packets(packets: list[ExpertPacket]) -> str:
    """Join packets as ``[Name] content`` blocks for the expert_packets block."""
    return "\n\n".join(f"[{packet.name.value}] {packet.content}" for packet in packets)


class ExpertPool:
    """
    Registry of experts keyed by name.

    ``run`` never raises: a failing expert contributes a natural-language
    error packet in its slot, and guild-only experts answer with a DM notice
    when the turn has no guild.
    """

    def __init__(self, experts: Iterable[Expert] = ()):
        self._experts: dict[ExpertName, Expert] = {}
        for expert in experts:
            self.register(expert)

    def register(self, expert: Expert) -> None:
        self._experts[expert.name] = expert

    def get(self, name: ExpertName) -> Expert | None:
        return self._experts.get(name)

    @property
    def names(self) -> list[ExpertName]:
        return list(self._experts)

    def missing(self, names: Iterable[ExpertName]) -> list[ExpertName]:
        """Requested names with no registered expert, in request order."""
        return [name for name in names if name not in self._experts]

    async def _run_one(self, expert: Expert, ctx: ExpertContext) -> ExpertPacket:
        if expert.requires_guild and not ctx.guild_id:
            return expert.dm_packet()
        try:
            return await expert.run(ctx)
        except Exception as e:
            logger.warning(f"Expert {expert.name.value} failed: {e}")
            return expert.error_packet(e)

    async def run(
        self,
        route: RouteDecision,
        ctx: ExpertContext,
        *,
        skip_memory: bool = False,
    ) -> list[ExpertPacket]:
        """Run the route's experts; packets keep the route's expert order."""
        selected: list[Expert] = []
        for name in route.experts:
            if skip_memory and name == ExpertName.MEMORY:
                continue
            expert = self._experts.get(name)
            if expert is None:
                logger.debug(f"Expert {name.value} not registered, skipping")
                continue
            selected.append(expert)

        if not selected:
            return []
        packets = await asyncio.gather(*(self._run_one(expert, ctx) for expert in selected))
        return list(packets)
