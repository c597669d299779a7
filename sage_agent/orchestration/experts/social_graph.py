"""Social graph expert: strongest relationship edges around the user."""

from __future__ import annotations

from sage_agent.orchestration.experts.base import Expert, ExpertContext, ExpertName, ExpertPacket, clip
from sage_agent.orchestration.sources import RelationshipEdge, RelationshipSource


def edge_evidence(edge: RelationshipEdge) -> str:
    parts = []
    if edge.mentions > 0:
        parts.append(f"{edge.mentions} mentions")
    if edge.replies > 0:
        parts.append(f"{edge.replies} replies")
    minutes = round(edge.voice_overlap_ms / 60000)
    if minutes > 0:
        parts.append(f"{minutes}min voice")
    return ", ".join(parts) or "minimal activity"


class SocialGraphExpert(Expert):
    name = ExpertName.SOCIAL_GRAPH
    requires_guild = True
    dm_label = "Social context"
    error_text = "Social context: Error loading relationship graph."

    def __init__(self, relationships: RelationshipSource, max_edges: int = 10, max_chars: int = 1200):
        self.relationships = relationships
        self.max_edges = max_edges
        self.max_chars = max_chars

    async def run(self, ctx: ExpertContext) -> ExpertPacket:
        edges = await self.relationships.edges_for_user(ctx.guild_id or "", ctx.user_id, self.max_edges)
        if not edges:
            return ExpertPacket(
                name=self.name,
                content="Social context: No relationship data available for this user.",
                structured={"edges": []},
                token_estimate=15,
            )

        lines = [
            f"- User <@{edge.other(ctx.user_id)}>: {edge.weight * 100:.0f}% relationship ({edge_evidence(edge)})"
            for edge in edges
        ]
        content = "Social context: Top relationships for this user:\n" + "\n".join(lines)
        return ExpertPacket(
            name=self.name,
            content=clip(content, self.max_chars, "\n(truncated)"),
            structured={
                "edge_count": len(edges),
                "top_edges": [
                    {"user_a": e.user_a, "user_b": e.user_b, "weight": e.weight} for e in edges[:5]
                ],
            },
        )
