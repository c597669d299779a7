"""System prompt composition from prioritized prompt blocks."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Literal

from sage_agent.agent.tokens import estimate_tokens

StyleLevel = Literal["low", "medium", "high"]
HumorLevel = Literal["none", "subtle", "normal", "high"]

PROMPT_BLOCK_OVERHEAD = 4


@dataclass(frozen=True, slots=True)
class PromptBlock:
    """A composable section of the system prompt. Higher priority renders first."""
    id: str
    title: str
    content: str
    priority: int = 0
    essential: bool = False


@dataclass(frozen=True, slots=True)
class StyleProfile:
    verbosity: StyleLevel = "medium"
    formality: StyleLevel = "medium"
    humor: HumorLevel = "normal"
    directness: StyleLevel = "medium"


IDENTITY_BLOCK = PromptBlock(
    id="identity",
    title="",
    priority=100,
    essential=True,
    content=(
        "You are Sage, a helpful personalized Discord chatbot.\n"
        "- Be concise, practical, and friendly.\n"
        "- Ask a clarifying question when needed.\n"
        "- If the user requests up-to-date facts, answer with current information if available."
    ),
)

SAFETY_BLOCK = PromptBlock(
    id="safety",
    title="Safety & Tools",
    priority=99,
    essential=True,
    content=(
        "- Never describe your internal process. Never mention searching, browsing, tools, "
        "function calls, or how you obtained information.\n"
        '- Do not say things like "I searched", "I looked up", "I found online", '
        '"I can\'t browse", or any equivalent.\n'
        '- When it improves trust, include a short "References:" section with 1-5 links or '
        "source names. Do not say you searched for them; just list them."
    ),
)

HUMOR_POLICY_BLOCK = PromptBlock(
    id="humor_policy",
    title="Humor Policy",
    priority=80,
    content=(
        "- Humor should be brief, non-disruptive, and never mean-spirited.\n"
        "- If the user indicates a serious context or asks for no jokes, disable all humor immediately."
    ),
)

_HUMOR_OFF = re.compile(r"\b(serious|no jokes|no humor|professional)\b")
_HUMOR_ON = re.compile(r"\b(joke|funny|hilarious|lol|lmao|crack me up)\b")
_BRIEF = re.compile(r"\b(brief|short|concise|summarize|tl;dr|quick)\b")
_DETAILED = re.compile(r"\b(detail|explain|elaborate|comprehensive|step-by-step|guide)\b")
_FORMAL = re.compile(r"\b(sir|madam|please|kindly|regards|thank you)\b")
_CASUAL = re.compile(r"\b(yo|sup|dude|bro|bruh|u|ur|plz)\b")
_ONLY = re.compile(r"\b(just|only|merely)\b")
_DELIVERABLE = re.compile(r"\b(code|answer|result)\b")


def classify_style(text: str) -> StyleProfile:
    """Infer reply style preferences from keyword and length heuristics."""
    lower = (text or "").lower()

    humor: HumorLevel = "normal"
    if _HUMOR_OFF.search(lower):
        humor = "none"
    elif _HUMOR_ON.search(lower):
        humor = "high"

    verbosity: StyleLevel = "medium"
    if _BRIEF.search(lower):
        verbosity = "low"
    elif _DETAILED.search(lower):
        verbosity = "high"
    elif len(lower.split()) < 5:
        verbosity = "low"

    formality: StyleLevel = "medium"
    if _FORMAL.search(lower):
        formality = "high"
    elif _CASUAL.search(lower):
        formality = "low"

    directness: StyleLevel = "medium"
    if _ONLY.search(lower) and _DELIVERABLE.search(lower):
        directness = "high"

    return StyleProfile(verbosity=verbosity, formality=formality, humor=humor, directness=directness)


def style_hint_block(style: StyleProfile) -> PromptBlock:
    return PromptBlock(
        id="style_hint",
        title="Style Hint",
        priority=85,
        content=(
            "Adjust your response to match the user's style:\n"
            f"- Verbosity: {style.verbosity}\n"
            f"- Formality: {style.formality}\n"
            f"- Humor: {style.humor}\n"
            f"- Directness: {style.directness}"
        ),
    )


def tool_protocol_block(tool_specs: list[dict[str, Any]]) -> PromptBlock:
    """Describe the JSON tool-call envelope and the allowed tools."""
    lines = []
    for spec in tool_specs:
        function = spec.get("function", spec)
        lines.append(f"- {function.get('name', '')}: {function.get('description', '')}")
    tools_text = "\n".join(lines) or "- (none)"
    return PromptBlock(
        id="tool_protocol",
        title="Actions",
        priority=75,
        content=(
            "If an action below is needed to answer, reply with ONLY this JSON and nothing else:\n"
            '{"type": "tool_calls", "calls": [{"name": "<action_name>", "args": {}}]}\n'
            "Otherwise answer normally in plain text.\n"
            f"Available actions:\n{tools_text}"
        ),
    )


def _block_cost(block: PromptBlock) -> int:
    return estimate_tokens(block.content) + PROMPT_BLOCK_OVERHEAD


def budget_system_prompt(blocks: list[PromptBlock], max_tokens: int) -> list[PromptBlock]:
    """Drop non-essential blocks, lowest priority first, until the prompt fits."""
    current = sum(_block_cost(block) for block in blocks)
    if current <= max_tokens:
        return list(blocks)

    droppable = sorted(
        (block for block in blocks if not block.essential),
        key=lambda block: (block.priority, block.title or block.id),
    )
    dropped: set[int] = set()
    for block in droppable:
        if current <= max_tokens:
            break
        current -= _block_cost(block)
        dropped.add(id(block))
    return [block for block in blocks if id(block) not in dropped]


def render_prompt_blocks(blocks: list[PromptBlock]) -> str:
    """Render by priority desc, then title and id, as ``## Title`` sections."""
    ordered = sorted(blocks, key=lambda block: (-block.priority, block.title, block.id))
    rendered = []
    for block in ordered:
        body = block.content.strip()
        if block.title.strip():
            rendered.append(f"## {block.title}\n{body}")
        elif body:
            rendered.append(body)
    return "\n\n".join(rendered)


def compose_system_prompt(
    *,
    style: StyleProfile | None = None,
    tool_specs: list[dict[str, Any]] | None = None,
    additional_blocks: list[PromptBlock] | None = None,
    max_tokens: int = 1500,
) -> str:
    """Compose the base system prompt for a chat turn."""
    blocks = [IDENTITY_BLOCK, SAFETY_BLOCK, HUMOR_POLICY_BLOCK]
    if style is not None:
        blocks.append(style_hint_block(style))
    if tool_specs:
        blocks.append(tool_protocol_block(tool_specs))
    if additional_blocks:
        blocks.extend(additional_blocks)
    return render_prompt_blocks(budget_system_prompt(blocks, max_tokens))
