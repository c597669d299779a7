"""Heuristic token estimation for text and multimodal content."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any

Content = str | list[dict[str, Any]]

_NON_WORD = re.compile(r"[^\w\s]")


@dataclass(frozen=True, slots=True)
class TokenEstimateOptions:
    chars_per_token: float = 4.0
    code_chars_per_token: float = 3.5
    image_tokens: int = 1200
    message_overhead_tokens: int = 4


def estimate_tokens(text: str, chars_per_token: float = 4.0) -> int:
    """Estimate token count as ceil(len / chars_per_token)."""
    if not text:
        return 0
    return math.ceil(len(text) / max(chars_per_token, 0.1))


def looks_like_code(text: str) -> bool:
    if "```" in text:
        return True
    stripped = text.strip()
    if (stripped.startswith("{") and stripped.endswith("}")) or (
        stripped.startswith("[") and stripped.endswith("]")
    ):
        return True
    if not stripped:
        return False
    return len(_NON_WORD.findall(stripped)) / len(stripped) >= 0.3


def content_text(content: Content | None) -> str:
    """Concatenate the text parts of a message content."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return "\n".join(
        str(part.get("text", "")) for part in content if part.get("type") == "text" and part.get("text")
    )


def has_image(content: Content | None) -> bool:
    if not isinstance(content, list):
        return False
    return any(part.get("type") == "image_url" for part in content)


def with_text(content: Content, text: str) -> Content:
    """
    Return content with its text replaced by ``text``.

    For multimodal content the text goes into the first text part and the
    other text parts are blanked. A text part is never left empty next to an
    image, since some providers reject empty text parts.
    """
    if isinstance(content, str):
        return text
    parts: list[dict[str, Any]] = []
    placed = False
    image_present = has_image(content)
    for part in content:
        if part.get("type") == "text":
            if not placed:
                parts.append({"type": "text", "text": text or (" " if image_present else "")})
                placed = True
            else:
                parts.append({"type": "text", "text": ""})
        else:
            parts.append(dict(part))
    if not placed and text:
        parts.insert(0, {"type": "text", "text": text})
    return parts


class TokenEstimator:
    """Estimator used by every sizing decision in the pipeline."""

    def __init__(self, options: TokenEstimateOptions | None = None):
        self.options = options or TokenEstimateOptions()

    @property
    def message_overhead(self) -> int:
        return self.options.message_overhead_tokens

    def estimate_text(self, text: str) -> int:
        if not text:
            return 0
        ratio = self.options.code_chars_per_token if looks_like_code(text) else self.options.chars_per_token
        return estimate_tokens(text, ratio)

    def estimate_content(self, content: Content | None) -> int:
        if content is None:
            return 0
        if isinstance(content, str):
            return self.estimate_text(content)
        total = 0
        for part in content:
            if part.get("type") == "text":
                total += self.estimate_text(str(part.get("text", "")))
            elif part.get("type") == "image_url":
                total += self.options.image_tokens
        return total

    def estimate_message(self, message: dict[str, Any]) -> int:
        return self.estimate_content(message.get("content")) + self.message_overhead

    def estimate_messages(self, messages: list[dict[str, Any]]) -> int:
        return sum(self.estimate_message(message) for message in messages)
