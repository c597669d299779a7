"""Read-side data sources consulted by experts and the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Protocol

SummaryKind = Literal["rolling", "profile"]


@dataclass(slots=True)
class RelationshipEdge:
    """Weighted interaction edge between two users of one guild."""
    user_a: str
    user_b: str
    weight: float
    mentions: int = 0
    replies: int = 0
    voice_overlap_ms: int = 0

    def other(self, user_id: str) -> str:
        return self.user_b if self.user_a == user_id else self.user_a


@dataclass(slots=True)
class VoiceMember:
    user_id: str
    display_name: str | None = None


@dataclass(slots=True)
class VoiceChannelPresence:
    channel_id: str
    members: list[VoiceMember] = field(default_factory=list)


@dataclass(slots=True)
class ChannelSummary:
    summary_text: str
    window_start: datetime | None = None
    window_end: datetime | None = None


@dataclass(slots=True)
class ChannelMessage:
    """One stored channel message used for transcripts and history."""
    message_id: str
    author_id: str
    author_name: str
    content: str
    timestamp: datetime
    is_bot: bool = False


class ProfileSource(Protocol):
    async def get_profile(self, user_id: str) -> str | None: ...

    async def save_profile(self, user_id: str, summary: str) -> None: ...


class RelationshipSource(Protocol):
    async def edges_for_user(self, guild_id: str, user_id: str, limit: int) -> list[RelationshipEdge]: ...

    async def top_edges(self, guild_id: str, limit: int, min_weight: float = 0.0) -> list[RelationshipEdge]: ...


class VoiceSource(Protocol):
    async def who_is_in_voice(self, guild_id: str) -> list[VoiceChannelPresence]: ...

    async def voice_ms_today(self, guild_id: str, user_id: str) -> int: ...


class SummarySource(Protocol):
    async def latest_summary(self, guild_id: str, channel_id: str, kind: SummaryKind) -> ChannelSummary | None: ...


class MessageSource(Protocol):
    async def recent_messages(self, guild_id: str | None, channel_id: str, limit: int) -> list[ChannelMessage]: ...


class InMemoryProfileSource:
    """Dict-backed profile store."""

    def __init__(self, profiles: dict[str, str] | None = None):
        self.profiles: dict[str, str] = dict(profiles or {})

    async def get_profile(self, user_id: str) -> str | None:
        return self.profiles.get(user_id)

    async def save_profile(self, user_id: str, summary: str) -> None:
        self.profiles[user_id] = summary


class InMemoryRelationshipSource:
    def __init__(self, edges: dict[str, list[RelationshipEdge]] | None = None):
        self.edges: dict[str, list[RelationshipEdge]] = {k: list(v) for k, v in (edges or {}).items()}

    async def edges_for_user(self, guild_id: str, user_id: str, limit: int) -> list[RelationshipEdge]:
        matching = [e for e in self.edges.get(guild_id, []) if user_id in (e.user_a, e.user_b)]
        matching.sort(key=lambda e: e.weight, reverse=True)
        return matching[:limit]

    async def top_edges(self, guild_id: str, limit: int, min_weight: float = 0.0) -> list[RelationshipEdge]:
        matching = [e for e in self.edges.get(guild_id, []) if e.weight >= min_weight]
        matching.sort(key=lambda e: e.weight, reverse=True)
        return matching[:limit]


class InMemoryVoiceSource:
    def __init__(
        self,
        presence: dict[str, list[VoiceChannelPresence]] | None = None,
        today_ms: dict[tuple[str, str], int] | None = None,
    ):
        self.presence = dict(presence or {})
        self.today_ms = dict(today_ms or {})

    async def who_is_in_voice(self, guild_id: str) -> list[VoiceChannelPresence]:
        return list(self.presence.get(guild_id, []))

    async def voice_ms_today(self, guild_id: str, user_id: str) -> int:
        return self.today_ms.get((guild_id, user_id), 0)


class InMemorySummarySource:
    def __init__(self, summaries: dict[tuple[str, str, str], ChannelSummary] | None = None):
        self.summaries = dict(summaries or {})

    async def latest_summary(self, guild_id: str, channel_id: str, kind: SummaryKind) -> ChannelSummary | None:
        return self.summaries.get((guild_id, channel_id, kind))


class InMemoryMessageSource:
    """Per-channel message log, oldest first."""

    def __init__(self):
        self.channels: dict[str, list[ChannelMessage]] = {}

    def add(self, channel_id: str, message: ChannelMessage) -> None:
        self.channels.setdefault(channel_id, []).append(message)

    async def recent_messages(self, guild_id: str | None, channel_id: str, limit: int) -> list[ChannelMessage]:
        if limit <= 0:
            return []
        return list(self.channels.get(channel_id, [])[-limit:])


def format_duration(ms: int) -> str:
    """Render a duration as ``1h 5m``, ``12m`` or ``40s``."""
    total_seconds = max(0, int(ms) // 1000)
    total_minutes = total_seconds // 60
    hours, minutes = divmod(total_minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m"
    return f"{total_seconds % 60}s"


def format_who_in_voice(presence: list[VoiceChannelPresence]) -> str:
    if not presence:
        return "No one is in voice right now."
    lines = ["In voice right now:"]
    for channel in presence:
        if channel.members:
            members = ", ".join(m.display_name or f"<@{m.user_id}>" for m in channel.members)
        else:
            members = "(empty)"
        lines.append(f"- Channel <#{channel.channel_id}>: {members}")
    return "\n".join(lines)


def format_how_long_today(user_id: str, ms: int) -> str:
    return f"<@{user_id}> has been in voice for ~{format_duration(ms)} today (UTC)."
