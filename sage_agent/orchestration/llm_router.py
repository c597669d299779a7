"""Model-assisted intent router with deterministic fallbacks."""

from __future__ import annotations

import json
import math
import re
from typing import Any

from loguru import logger

from sage_agent.orchestration.experts.base import ExpertName
from sage_agent.orchestration.router import (
    ROUTE_DEFAULTS,
    InvokedBy,
    RouteDecision,
    RouteKind,
    decision_for,
)
from sage_agent.providers.base import LLMProvider

ROUTER_SYSTEM_PROMPT = """You are the Intent Classifier for Sage, an advanced Discord AI.
Your job is to route the user's request to the correct internal module based on their INTENT.

### AVAILABLE ROUTES

| Route | Function | Keywords & Triggers |
|:---|:---|:---|
| **image_generate** | Create or edit images. | "draw", "paint", "generate", "make it look like", "visualize", "turn this into" |
| **voice_analytics** | Voice channel stats/status. | "who is in voice", "vc stats", "time in voice", "voice activity" |
| **social_graph** | Relationship & vibe checks. | "who are my friends", "relationship tier", "who knows whom", "vibe check" |
| **memory** | User profile/memory ops. | "what do you know about me", "forget me", "my profile", "memories" |
| **summarize** | Recap conversations. | "summarize", "tl;dr", "recap", "catch me up", "what happened" |
| **admin** | Bot configuration/debug. | "configure", "settings", "debug" |
| **qa** | Conversational fallback. | EVERYTHING ELSE. Chat, coding, questions, banter. |

### REASONING LOGIC

1. **Analyze Context**: Look at the "Conversation History".
   - If the user says "make **it** pop" and the last bot message was an **image**, intent is `image_generate`.
   - If the user says "who is **that**" and the last message was about a user, intent is `qa` or `memory`.
2. **Check Explicit Intent**: "Draw a cat" -> `image_generate`; "Summarize this" -> `summarize`.
3. **Check Implicit Intent**: "Make me a pfp" -> `image_generate`; "Review this code" -> `qa`.
4. **Default Rule**: general questions, greetings and code questions route to `qa`. NEVER invent new routes.

### OUTPUT FORMAT

Return a SINGLE valid JSON object. No markdown.

{
  "reasoning": "Step-by-step logic explaining why this route was chosen.",
  "route": "qa" | "image_generate" | "summarize" | ... ,
  "experts": ["Memory", "Summarizer", ...],
  "temperature": 0.0 - 1.0 (suggested temp for this task)
}

**Valid Experts**: Summarizer, SocialGraph, Memory, VoiceAnalytics, ImageGenerator.
**Note**: You essentially ALWAYS include "Memory" unless it's a pure deterministic command."""

# Model-suggested temperatures fall back to these per route kind.
LLM_DEFAULT_TEMPERATURES: dict[RouteKind, float] = {
    RouteKind.SUMMARIZE: 0.3,
    RouteKind.VOICE_ANALYTICS: 0.5,
    RouteKind.SOCIAL_GRAPH: 0.5,
    RouteKind.MEMORY: 0.6,
    RouteKind.ADMIN: 0.4,
    RouteKind.QA: 0.8,
    RouteKind.IMAGE_GENERATE: 0.8,
}

DEFAULT_QA_ROUTE = RouteDecision(
    kind=RouteKind.QA,
    experts=(ExpertName.MEMORY,),
    allow_tools=True,
    temperature=0.8,
    rationale="Default Q&A route (fallback)",
)

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_TOOL_ROUTES = frozenset({RouteKind.QA, RouteKind.ADMIN})


def parse_router_response(content: str) -> dict[str, Any] | None:
    """Parse directly, then from a code fence, then the outermost braces."""
    candidates = [content or ""]
    fenced = _FENCED_JSON.search(content or "")
    if fenced:
        candidates.append(fenced.group(1).strip())
    braces = _JSON_OBJECT.search(content or "")
    if braces:
        candidates.append(braces.group(0))
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, TypeError):
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _history_text(history: list[dict[str, Any]], limit: int) -> str:
    lines = []
    for message in history[-limit:]:
        content = message.get("content")
        text = content if isinstance(content, str) else "[media]"
        lines.append(f"{message.get('role', 'user')}: {text}")
    return "\n".join(lines)


class LLMRouter:
    """
    Classify intent with a low-cost JSON-mode model call.

    Any call or parse failure yields ``DEFAULT_QA_ROUTE``; ``route`` never
    raises.
    """

    def __init__(
        self,
        provider: LLMProvider,
        *,
        model: str = "gemini-fast",
        temperature: float = 0.0,
        timeout: float = 45.0,
        history_limit: int = 7,
    ):
        self.provider = provider
        self.model = model
        self.temperature = temperature
        self.timeout = timeout
        self.history_limit = history_limit

    def build_messages(self, text: str, history: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = [{"role": "system", "content": ROUTER_SYSTEM_PROMPT}]
        if history:
            messages.append(
                {
                    "role": "user",
                    "content": (
                        "## Conversation History (for context)\n"
                        f"{_history_text(history, self.history_limit)}\n\n"
                        f"## Current Message\n{text}"
                    ),
                }
            )
        else:
            messages.append({"role": "user", "content": text})
        return messages

    async def route(
        self,
        text: str,
        *,
        invoked_by: InvokedBy = "mention",
        has_guild: bool = False,
        history: list[dict[str, Any]] | None = None,
        api_key: str | None = None,
    ) -> RouteDecision:
        if invoked_by == "command" and has_guild:
            return decision_for(RouteKind.ADMIN, "Slash command context detected")

        try:
            response = await self.provider.chat(
                messages=self.build_messages(text, history),
                model=self.model,
                temperature=self.temperature,
                response_format="json_object",
                api_key=api_key,
                timeout=self.timeout,
            )
        except Exception as e:
            logger.warning(f"Router: LLM call failed, using default route: {e}")
            return DEFAULT_QA_ROUTE

        parsed = parse_router_response(response.content or "")
        if parsed is None:
            logger.warning(f"Router: failed to parse LLM response: {(response.content or '')[:200]}")
            return DEFAULT_QA_ROUTE
        return self._to_decision(parsed)

    def _to_decision(self, parsed: dict[str, Any]) -> RouteDecision:
        try:
            kind = RouteKind(str(parsed.get("route", "")))
        except ValueError:
            kind = RouteKind.QA

        raw_experts = parsed.get("experts")
        if not isinstance(raw_experts, list):
            raw_experts = [ExpertName.MEMORY.value]
        experts: list[ExpertName] = []
        for name in raw_experts:
            try:
                expert = ExpertName(str(name))
            except ValueError:
                continue
            if expert not in experts:
                experts.append(expert)
        if not experts:
            experts.append(ExpertName.MEMORY)

        raw_temperature = parsed.get("temperature")
        if (
            isinstance(raw_temperature, (int, float))
            and not isinstance(raw_temperature, bool)
            and math.isfinite(raw_temperature)
        ):
            temperature = min(max(float(raw_temperature), 0.0), 1.0)
        else:
            temperature = LLM_DEFAULT_TEMPERATURES.get(kind, ROUTE_DEFAULTS[kind][2])

        reasoning = parsed.get("reasoning")
        decision = RouteDecision(
            kind=kind,
            experts=tuple(experts),
            allow_tools=kind in _TOOL_ROUTES,
            temperature=temperature,
            rationale=reasoning if isinstance(reasoning, str) and reasoning else f"LLM classified as {kind.value}",
        )
        logger.debug(f"Router: LLM decision {decision.kind.value} experts={[e.value for e in decision.experts]}")
        return decision
