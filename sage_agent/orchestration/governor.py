"""Output governor: length ceiling and meta-commentary policy."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from loguru import logger

from sage_agent.providers.base import LLMProvider

DEFAULT_MAX_CHARS = 2000
TRUNCATION_MARKER = "\n(truncated)"
REDACTION_MARKER = "[redacted]"

BANNED_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(browsing|browse|search the web|google search)\b", re.IGNORECASE),
    re.compile(r"\b(using tools|tools|tool|function calls?)\b", re.IGNORECASE),
    re.compile(r"\b(external apis?|api calls?)\b", re.IGNORECASE),
)

REWRITE_SYSTEM_PROMPT = (
    "You are a content rewriter. Rewrite the draft to remove any mentions of browsing, "
    "tools, APIs, or external searches. Keep the meaning and be concise."
)


@dataclass(slots=True)
class GovernorResult:
    final_text: str
    actions: list[str] = field(default_factory=list)
    flagged: bool = False

    @property
    def notes(self) -> str | None:
        if not self.actions:
            return None
        return "Governor actions: " + ", ".join(self.actions)


def has_banned_phrase(text: str) -> bool:
    return any(pattern.search(text) for pattern in BANNED_PATTERNS)


class Governor:
    """
    Final pass over a draft reply.

    The result never exceeds ``max_chars``. A draft with banned
    meta-commentary is flagged and either rewritten by the model or redacted;
    a rewrite that is empty, over length, or still banned is rejected.
    """

    def __init__(
        self,
        provider: LLMProvider | None = None,
        *,
        max_chars: int = DEFAULT_MAX_CHARS,
        rewrite_enabled: bool = True,
        model: str | None = None,
    ):
        self.provider = provider
        self.max_chars = max_chars
        self.rewrite_enabled = rewrite_enabled and provider is not None
        self.model = model

    def cap(self, text: str) -> str:
        if len(text) <= self.max_chars:
            return text
        head = text[: max(0, self.max_chars - len(TRUNCATION_MARKER))].rstrip()
        return (head + TRUNCATION_MARKER)[: self.max_chars]

    def redact(self, text: str) -> str:
        for pattern in BANNED_PATTERNS:
            text = pattern.sub(REDACTION_MARKER, text)
        return self.cap(text.strip())

    async def govern(
        self,
        draft: str,
        *,
        trace_id: str = "",
        api_key: str | None = None,
    ) -> GovernorResult:
        result = GovernorResult(final_text=draft)

        if len(result.final_text) > self.max_chars:
            result.final_text = self.cap(result.final_text)
            result.actions.append("trim:discord_limit")

        if not has_banned_phrase(result.final_text):
            return result

        result.flagged = True
        if not self.rewrite_enabled or self.provider is None:
            result.final_text = self.redact(result.final_text)
            result.actions.append("fallback:banned_phrase_trim")
            return result

        log = logger.bind(trace_id=trace_id)
        log.debug("Governor: banned phrase detected, attempting rewrite")
        try:
            response = await self.provider.chat(
                messages=[
                    {"role": "system", "content": REWRITE_SYSTEM_PROMPT},
                    {"role": "user", "content": f"Draft: {result.final_text}"},
                ],
                model=self.model,
                max_tokens=500,
                temperature=0.3,
                api_key=api_key,
            )
        except Exception as e:
            log.warning(f"Governor rewrite failed, using fallback trim: {e}")
            result.final_text = self.redact(result.final_text)
            result.actions.append("fallback:rewrite_error")
            return result

        rewritten = (response.content or "").strip()
        if rewritten and len(rewritten) <= self.max_chars and not has_banned_phrase(rewritten):
            result.final_text = rewritten
            result.actions.append("rewrite:banned_phrase")
        else:
            result.final_text = self.redact(result.final_text)
            result.actions.append("fallback:banned_phrase_trim")
        return result
