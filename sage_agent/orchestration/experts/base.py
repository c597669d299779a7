"""Expert packet types and the expert interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sage_agent.agent.tokens import Content, estimate_tokens


class ExpertName(str, Enum):
    MEMORY = "Memory"
    SOCIAL_GRAPH = "SocialGraph"
    VOICE_ANALYTICS = "VoiceAnalytics"
    SUMMARIZER = "Summarizer"
    IMAGE_GENERATOR = "ImageGenerator"


@dataclass(slots=True)
class ExpertAttachment:
    data: bytes
    filename: str
    mimetype: str = "image/jpeg"


@dataclass(slots=True)
class ExpertPacket:
    """Bounded context contribution from one expert."""
    name: ExpertName
    content: str
    structured: dict[str, Any] | None = None
    token_estimate: int | None = None
    binary: ExpertAttachment | None = None

    def __post_init__(self) -> None:
        if self.token_estimate is None:
            self.token_estimate = estimate_tokens(self.content)


@dataclass(slots=True)
class ExpertContext:
    """Inputs shared by all experts of one turn."""
    user_id: str
    channel_id: str
    guild_id: str | None = None
    user_text: str = ""
    user_content: Content | None = None
    reply_reference_content: Content | None = None
    history: list[dict[str, Any]] = field(default_factory=list)
    api_key: str | None = None


def clip(text: str, max_chars: int, suffix: str) -> str:
    """Cut ``text`` to ``max_chars`` and append ``suffix`` when cut."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars].strip() + suffix


class Expert(ABC):
    """A backend data source turned into a context packet."""

    name: ExpertName
    requires_guild: bool = False
    dm_label: str = ""
    error_text: str = ""

    @abstractmethod
    async def run(self, ctx: ExpertContext) -> ExpertPacket:
        """Produce a packet. Raising is allowed; the pool isolates failures."""
        pass

    def dm_packet(self) -> ExpertPacket:
        return ExpertPacket(
            name=self.name,
            content=f"{self.dm_label}: Not available in DM context.",
            token_estimate=10,
        )

    def error_packet(self, error: BaseException) -> ExpertPacket:
        return ExpertPacket(
            name=self.name,
            content=self.error_text or f"{self.name.value}: Error loading data.",
            structured={"error": str(error)},
            token_estimate=15,
        )
