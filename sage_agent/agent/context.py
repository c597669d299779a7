"""Context builder for assembling budgeted model messages for one turn."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sage_agent.agent.budgeter import (
    BlockId,
    BudgetResult,
    ContextBlock,
    ContextBudgeter,
    ModelLimits,
    plan_budget,
)
from sage_agent.agent.tokens import Content, TokenEstimator, content_text, has_image, with_text
from sage_agent.config.schema import ContextConfig
from sage_agent.orchestration.sources import ChannelMessage, RelationshipEdge

TRANSCRIPT_HEADER = "Recent channel transcript (most recent last):"
RELATIONSHIP_HEADER = "Relationship hints (probabilistic):"
REPLY_REFERENCE_PREFIX = "The user is replying to this message:"


def render_transcript(messages: list[ChannelMessage], max_chars: int) -> str | None:
    """
    Render recent messages oldest to newest within ``max_chars``.

    Lines are filled newest first, so when the budget runs out the oldest
    messages are the ones left out. Returns None when nothing fits.
    """
    if not messages or len(TRANSCRIPT_HEADER) >= max_chars:
        return None

    lines: list[str] = []
    total = len(TRANSCRIPT_HEADER)
    for message in reversed(messages):
        line = (
            f"- @{message.author_name} (id:{message.author_id}) "
            f"[{message.timestamp.isoformat()}]: {message.content}"
        )
        if total + 1 + len(line) > max_chars:
            break
        lines.append(line)
        total += 1 + len(line)

    if not lines:
        return None
    return TRANSCRIPT_HEADER + "\n" + "\n".join(reversed(lines))


def _strength_label(weight: float) -> str:
    if weight >= 0.7:
        return "likely close"
    if weight >= 0.4:
        return "moderate"
    if weight >= 0.2:
        return "emerging"
    return "weak"


def _plural(count: int, singular: str, plural: str) -> str:
    return f"{count} {singular if count == 1 else plural}"


def render_relationship_hints(edges: list[RelationshipEdge], max_edges: int, max_chars: int) -> str | None:
    """Render deduplicated edges, strongest first, as probabilistic bullets."""
    unique: dict[tuple[str, str], RelationshipEdge] = {}
    for edge in edges:
        unique.setdefault((edge.user_a, edge.user_b), edge)
    ranked = sorted(unique.values(), key=lambda e: e.weight, reverse=True)[:max_edges]
    if not ranked:
        return None

    lines = [RELATIONSHIP_HEADER]
    for edge in ranked:
        evidence = []
        if edge.mentions > 0:
            evidence.append(_plural(edge.mentions, "mention", "mentions"))
        if edge.replies > 0:
            evidence.append(_plural(edge.replies, "reply", "replies"))
        minutes = round(edge.voice_overlap_ms / 60000)
        if minutes > 0:
            evidence.append(f"{minutes}m voice")
        evidence_text = ", ".join(evidence) or "no recent activity"
        lines.append(f"- <@{edge.user_a}> <-> <@{edge.user_b}>: {_strength_label(edge.weight)} ({evidence_text})")

    result = "\n".join(lines)
    if len(result) > max_chars:
        return result[: max(0, max_chars - 3)] + "..."
    return result


@dataclass(slots=True)
class TurnContext:
    """Everything that may be placed in front of the model for one turn."""
    user_content: Content
    user_profile_summary: str | None = None
    channel_profile_summary: str | None = None
    channel_rolling_summary: str | None = None
    relationship_hints: str | None = None
    expert_packets: str | None = None
    transcript: str | None = None
    intent_hint: str | None = None
    reply_to_bot_text: str | None = None
    reply_reference_content: Content | None = None


@dataclass(slots=True)
class BuiltContext:
    messages: list[dict[str, Any]]
    budget: BudgetResult
    blocks: list[ContextBlock] = field(default_factory=list)


class ContextBuilder:
    """
    Builds the prioritized context blocks for a turn and budgets them.

    Block priorities: user 110, base system 100, memory 90, channel profile
    70, rolling summary 60, relationship hints 55, expert packets and
    transcript 50, intent hint 45, reply context and reference 40.
    """

    def __init__(self, config: ContextConfig | None = None, *, notice_enabled: bool = True):
        self.config = config or ContextConfig()
        self.notice_enabled = notice_enabled

    def build_blocks(self, ctx: TurnContext, system_prompt: str, *, vision_enabled: bool = True) -> list[ContextBlock]:
        cfg = self.config
        blocks = [
            ContextBlock(
                id=BlockId.BASE_SYSTEM,
                role="system",
                content=system_prompt,
                priority=100,
                truncatable=False,
                hard_max_tokens=cfg.system_prompt_max_tokens,
            )
        ]

        def _add(block_id: BlockId, text: str | None, priority: int, max_tokens: int) -> None:
            if text:
                blocks.append(
                    ContextBlock(
                        id=block_id,
                        role="system",
                        content=text,
                        priority=priority,
                        hard_max_tokens=max_tokens,
                    )
                )

        if ctx.user_profile_summary:
            _add(
                BlockId.MEMORY,
                f"Personalization memory (may be incomplete): {ctx.user_profile_summary}",
                90,
                cfg.memory_max_tokens,
            )
        _add(BlockId.PROFILE_SUMMARY, ctx.channel_profile_summary, 70, cfg.profile_summary_max_tokens)
        _add(BlockId.ROLLING_SUMMARY, ctx.channel_rolling_summary, 60, cfg.rolling_summary_max_tokens)
        _add(BlockId.RELATIONSHIP_HINTS, ctx.relationship_hints, 55, cfg.relationship_hints_max_tokens)
        _add(BlockId.EXPERT_PACKETS, ctx.expert_packets, 50, cfg.expert_packets_max_tokens)
        _add(BlockId.TRANSCRIPT, ctx.transcript, 50, cfg.transcript_max_tokens)
        if ctx.intent_hint:
            _add(BlockId.INTENT_HINT, f"Intent hint: {ctx.intent_hint}", 45, cfg.reply_context_max_tokens)

        if ctx.reply_to_bot_text:
            blocks.append(
                ContextBlock(
                    id=BlockId.REPLY_CONTEXT,
                    role="assistant",
                    content=ctx.reply_to_bot_text,
                    priority=40,
                    hard_max_tokens=cfg.reply_context_max_tokens,
                )
            )

        if ctx.reply_reference_content:
            reference = self._strip_images(ctx.reply_reference_content, vision_enabled)
            text = f"{REPLY_REFERENCE_PREFIX}\n{content_text(reference)}".strip()
            blocks.append(
                ContextBlock(
                    id=BlockId.REPLY_REFERENCE,
                    role="user",
                    content=with_text(reference, text),
                    priority=40,
                    hard_max_tokens=cfg.reply_context_max_tokens,
                )
            )

        blocks.append(
            ContextBlock(
                id=BlockId.USER,
                role="user",
                content=self._strip_images(ctx.user_content, vision_enabled),
                priority=110,
                hard_max_tokens=cfg.user_max_tokens,
                min_tokens=10,
            )
        )
        return blocks

    @staticmethod
    def _strip_images(content: Content, vision_enabled: bool) -> Content:
        if vision_enabled or not has_image(content):
            return content
        return content_text(content) or "[image omitted]"

    def build(self, ctx: TurnContext, system_prompt: str, limits: ModelLimits) -> BuiltContext:
        """Build, budget and render the messages for one model call."""
        blocks = self.build_blocks(ctx, system_prompt, vision_enabled=limits.vision_enabled)
        budgeter = ContextBudgeter(TokenEstimator(limits.estimation), notice_enabled=self.notice_enabled)
        result = budgeter.budget(blocks, plan_budget(limits))
        return BuiltContext(messages=self.to_messages(result.blocks), budget=result, blocks=blocks)

    @staticmethod
    def to_messages(blocks: list[ContextBlock]) -> list[dict[str, Any]]:
        """Render blocks as chat messages, merging adjacent system blocks."""
        messages: list[dict[str, Any]] = []
        for block in blocks:
            previous = messages[-1] if messages else None
            if (
                previous is not None
                and block.role == "system"
                and previous["role"] == "system"
                and isinstance(block.content, str)
            ):
                previous["content"] = f"{previous['content']}\n\n{block.content}"
                continue
            messages.append({"role": block.role, "content": block.content})
        return messages
