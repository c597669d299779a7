"""Deterministic intent router: ordered keyword rules, first match wins."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Literal

from loguru import logger

from sage_agent.orchestration.experts.base import ExpertName

InvokedBy = Literal["mention", "reply", "wakeword", "autopilot", "command"]


class RouteKind(str, Enum):
    QA = "qa"
    SUMMARIZE = "summarize"
    VOICE_ANALYTICS = "voice_analytics"
    SOCIAL_GRAPH = "social_graph"
    MEMORY = "memory"
    ADMIN = "admin"
    IMAGE_GENERATE = "image_generate"


@dataclass(frozen=True, slots=True)
class RouteDecision:
    """Classified intent of one turn. Read-only once produced."""
    kind: RouteKind
    experts: tuple[ExpertName, ...]
    allow_tools: bool
    temperature: float
    rationale: str = ""


# Per-kind expert sets, tool policy and temperature.
ROUTE_DEFAULTS: dict[RouteKind, tuple[tuple[ExpertName, ...], bool, float]] = {
    RouteKind.SUMMARIZE: ((ExpertName.SUMMARIZER, ExpertName.MEMORY), False, 0.3),
    RouteKind.VOICE_ANALYTICS: ((ExpertName.VOICE_ANALYTICS, ExpertName.MEMORY), False, 0.5),
    RouteKind.SOCIAL_GRAPH: ((ExpertName.SOCIAL_GRAPH, ExpertName.MEMORY), False, 0.5),
    RouteKind.MEMORY: ((ExpertName.MEMORY,), False, 0.6),
    RouteKind.IMAGE_GENERATE: ((ExpertName.IMAGE_GENERATOR, ExpertName.MEMORY), False, 0.8),
    RouteKind.ADMIN: (
        (ExpertName.SOCIAL_GRAPH, ExpertName.VOICE_ANALYTICS, ExpertName.MEMORY),
        True,
        0.4,
    ),
    RouteKind.QA: ((ExpertName.MEMORY,), True, 0.7),
}


def decision_for(kind: RouteKind, rationale: str = "", temperature: float | None = None) -> RouteDecision:
    experts, allow_tools, default_temperature = ROUTE_DEFAULTS[kind]
    return RouteDecision(
        kind=kind,
        experts=experts,
        allow_tools=allow_tools,
        temperature=default_temperature if temperature is None else temperature,
        rationale=rationale,
    )


def _rx(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


_RULES: tuple[tuple[RouteKind, tuple[re.Pattern[str], ...], str], ...] = (
    (
        RouteKind.SUMMARIZE,
        _rx(
            r"\b(summarize|summarise|recap|tl;?dr|sum up|summary|catch me up)\b",
            r"\bwhat (are|were) (they|you all|y'all|people|we|everyone) (talking|discussing) about\b",
            r"\bwhat happened (today|here|earlier|while i was (away|gone))\b",
        ),
        "Summarization request detected",
    ),
    (
        RouteKind.VOICE_ANALYTICS,
        _rx(
            r"\b(who'?s?|who is|anyone|anybody) (in|on) (voice|vc)\b",
            r"\bin vc\b",
            r"\bvoice (channel|status|activity|stats)\b",
            r"\bcheck (the )?(voice|vc)\b",
            r"\bwho('?s| is) (online|active)\b",
            r"\bhow long\b.*\b(voice|vc)\b",
            r"\b(voice|vc) time\b",
            r"\bjoined voice\b",
        ),
        "Voice analytics query detected",
    ),
    (
        RouteKind.SOCIAL_GRAPH,
        _rx(
            r"\b(who'?s? working with|relationship|closest to|whoiswho)\b",
            r"\b(social graph|connections|network|my circle|my friends)\b",
            r"\bwho (knows|talks to|works with|hangs out with)\b",
        ),
        "Social graph query detected",
    ),
    (
        RouteKind.MEMORY,
        _rx(
            r"\b(remember|do i like|my preferences?|my profile|what do you know about me|forget me)\b",
            r"\bwhat (have you learned|do you remember) about me\b",
        ),
        "Memory query detected",
    ),
    (
        RouteKind.IMAGE_GENERATE,
        _rx(
            r"\b(draw|paint|sketch|illustrate|visuali[sz]e)\b",
            r"\b(generate|make|create|render) (me )?(an? )?(image|picture|pic|pfp|drawing|artwork|photo)\b",
        ),
        "Image generation request detected",
    ),
    (
        RouteKind.ADMIN,
        _rx(r"\b(admin|configure|config|settings|manage)\b"),
        "Admin context detected",
    ),
)


def route(text: str, invoked_by: InvokedBy = "mention", has_guild: bool = False) -> RouteDecision:
    """
    Classify an utterance with ordered keyword rules.

    An administrative command in a guild always routes to admin. Unmatched
    text falls back to open conversation (qa). Never raises.
    """
    if invoked_by == "command" and has_guild:
        return decision_for(RouteKind.ADMIN, "Slash command context detected")

    normalized = (text or "").lower()
    for kind, patterns, rationale in _RULES:
        if any(pattern.search(normalized) for pattern in patterns):
            logger.debug(f"Router matched {kind.value}: {rationale}")
            return decision_for(kind, rationale)
    return decision_for(RouteKind.QA, "Default Q&A route")
