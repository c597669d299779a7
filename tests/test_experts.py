"""Tests for context experts and the expert pool."""

import asyncio
import random
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from loguru import logger

from sage_agent.config.schema import ImageConfig
from sage_agent.orchestration.experts import (
    Expert,
    ExpertContext,
    ExpertName,
    ExpertPacket,
    ImageGenExpert,
    MemoryExpert,
    SocialGraphExpert,
    SummarizerExpert,
    VoiceAnalyticsExpert,
)
from sage_agent.orchestration.experts.image_gen import IMAGE_READY_NOTE
from sage_agent.orchestration.pool import ExpertPool, render_packets
from sage_agent.orchestration.router import RouteKind, decision_for
from sage_agent.orchestration.sources import (
    ChannelSummary,
    InMemoryProfileSource,
    InMemoryRelationshipSource,
    InMemorySummarySource,
    InMemoryVoiceSource,
    RelationshipEdge,
    VoiceChannelPresence,
    VoiceMember,
    format_duration,
)
from sage_agent.providers.base import LLMProvider, LLMResponse

GUILD_CTX = ExpertContext(user_id="u1", channel_id="c1", guild_id="g1", user_text="hello")
DM_CTX = ExpertContext(user_id="u1", channel_id="dm1", guild_id=None, user_text="hello")


class RefinerProvider(LLMProvider):
    def __init__(self, reply: str | Exception):
        super().__init__()
        self.reply = reply
        self.calls: list[dict[str, Any]] = []

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        **kwargs: Any,
    ) -> LLMResponse:
        self.calls.append({"messages": messages, "model": model, "temperature": temperature})
        if isinstance(self.reply, Exception):
            raise self.reply
        return LLMResponse(content=self.reply)

    def get_default_model(self) -> str:
        return "refiner"


class FailingSource:
    async def edges_for_user(self, guild_id: str, user_id: str, limit: int):
        raise RuntimeError("db offline")

    async def top_edges(self, guild_id: str, limit: int, min_weight: float = 0.0):
        raise RuntimeError("db offline")


# ── Individual experts ─────────────────────────────────────────────


def test_memory_expert_without_profile():
    packet = asyncio.run(MemoryExpert(InMemoryProfileSource()).run(GUILD_CTX))
    assert packet.name is ExpertName.MEMORY
    assert packet.content == "User memory: No personalization data available."


def test_memory_expert_clips_long_profiles():
    profiles = InMemoryProfileSource({"u1": "likes cats " * 200})
    packet = asyncio.run(MemoryExpert(profiles, max_chars=100).run(GUILD_CTX))
    assert packet.content.startswith("User memory (compressed): likes cats")
    assert packet.content.endswith("...")
    assert packet.structured["truncated"] is True
    assert packet.token_estimate > 0


def test_social_graph_expert_renders_edges():
    edges = [RelationshipEdge("u1", "u2", 0.85, mentions=3, replies=2, voice_overlap_ms=300_000)]
    expert = SocialGraphExpert(InMemoryRelationshipSource({"g1": edges}))
    packet = asyncio.run(expert.run(GUILD_CTX))
    assert "- User <@u2>: 85% relationship (3 mentions, 2 replies, 5min voice)" in packet.content
    assert packet.structured["edge_count"] == 1


def test_social_graph_expert_without_edges():
    packet = asyncio.run(SocialGraphExpert(InMemoryRelationshipSource()).run(GUILD_CTX))
    assert packet.content == "Social context: No relationship data available for this user."


def test_voice_analytics_expert_reports_presence_and_time():
    voice = InMemoryVoiceSource(
        presence={"g1": [VoiceChannelPresence("vc1", [VoiceMember("u2", "Alice"), VoiceMember("u3")])]},
        today_ms={("g1", "u1"): 65 * 60_000},
    )
    packet = asyncio.run(VoiceAnalyticsExpert(voice).run(GUILD_CTX))
    assert "- Channel <#vc1>: Alice, <@u3>" in packet.content
    assert "<@u1> has been in voice for ~1h 5m today (UTC)." in packet.content
    assert packet.structured["total_members"] == 2


def test_summarizer_expert_combines_summaries():
    now = datetime.now(timezone.utc)
    summaries = InMemorySummarySource(
        {
            ("g1", "c1", "rolling"): ChannelSummary("Talked about games.", now - timedelta(minutes=30), now),
            ("g1", "c1", "profile"): ChannelSummary("A gaming channel."),
        }
    )
    packet = asyncio.run(SummarizerExpert(summaries).run(GUILD_CTX))
    assert packet.content == "Summarization context: Recent: Talked about games. | Profile: A gaming channel."


def test_summarizer_expert_without_summaries():
    packet = asyncio.run(SummarizerExpert(InMemorySummarySource()).run(GUILD_CTX))
    assert "No stored summaries available" in packet.content


def test_format_duration():
    assert format_duration(40_000) == "40s"
    assert format_duration(12 * 60_000) == "12m"
    assert format_duration(65 * 60_000) == "1h 5m"


# ── Image generation ───────────────────────────────────────────────


def test_image_expert_refines_and_fetches():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, content=b"jpeg-bytes", headers={"content-type": "image/jpeg"})

    provider = RefinerProvider("a red fox, watercolor")
    expert = ImageGenExpert(
        provider,
        ImageConfig(base_url="https://img.example/image/", model="klein-large", api_key="img-key"),
        transport=httpx.MockTransport(handler),
        rng=random.Random(7),
    )
    ctx = ExpertContext(user_id="u1", channel_id="c1", guild_id="g1", user_text="draw a fox")
    packet = asyncio.run(expert.run(ctx))

    expected_seed = random.Random(7).randrange(1_000_000)
    assert packet.content == IMAGE_READY_NOTE
    assert packet.binary is not None
    assert packet.binary.data == b"jpeg-bytes"
    assert packet.binary.filename == f"sage_a_red_fox__watercolo_{expected_seed}.jpg"
    assert packet.structured["refined_prompt"] == "a red fox, watercolor"

    params = requests[0].url.params
    assert requests[0].url.host == "img.example"
    assert params["model"] == "klein-large"
    assert params["nologo"] == "true"
    assert params["seed"] == str(expected_seed)
    assert params["key"] == "img-key"
    assert provider.calls[0]["model"] == "gemini"
    assert provider.calls[0]["messages"][-1]["content"] == "Request: draw a fox"


def test_image_expert_passes_reference_image_to_refiner():
    image_part = {"type": "image_url", "image_url": {"url": "https://cdn.example/cat.png"}}
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, content=b"img")

    provider = RefinerProvider("a cat in space")
    expert = ImageGenExpert(provider, transport=httpx.MockTransport(handler), rng=random.Random(1))
    ctx = ExpertContext(
        user_id="u1",
        channel_id="c1",
        user_text="put it in space",
        user_content=[{"type": "text", "text": "put it in space"}, image_part],
    )
    asyncio.run(expert.run(ctx))

    refiner_user = provider.calls[0]["messages"][-1]["content"]
    assert refiner_user[1] == image_part
    assert requests[0].url.params["image"] == "https://cdn.example/cat.png"


def test_image_expert_falls_back_to_raw_prompt_when_refiner_fails():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"img")

    expert = ImageGenExpert(RefinerProvider(RuntimeError("down")), transport=httpx.MockTransport(handler))
    packet = asyncio.run(expert.run(GUILD_CTX))
    assert packet.structured["refined_prompt"] == "hello"
    assert packet.binary is not None


def test_image_expert_reports_http_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="render failed")

    expert = ImageGenExpert(RefinerProvider("a fox"), transport=httpx.MockTransport(handler))
    packet = asyncio.run(expert.run(GUILD_CTX))
    assert packet.content.startswith("[ImageGenerator] Failed to generate image:")
    assert packet.binary is None


def test_image_expert_requires_prompt_text():
    expert = ImageGenExpert(RefinerProvider("unused"))
    ctx = ExpertContext(user_id="u1", channel_id="c1", user_text="  ")
    packet = asyncio.run(expert.run(ctx))
    assert packet.content == "ImageGenerator: Missing prompt text."


# ── Pool ───────────────────────────────────────────────────────────


def _pool() -> ExpertPool:
    return ExpertPool(
        [
            MemoryExpert(InMemoryProfileSource({"u1": "prefers short answers"})),
            SocialGraphExpert(InMemoryRelationshipSource()),
            VoiceAnalyticsExpert(InMemoryVoiceSource()),
        ]
    )


def test_pool_returns_dm_notices_for_guild_only_experts():
    packets = asyncio.run(_pool().run(decision_for(RouteKind.ADMIN), DM_CTX))
    assert [p.name for p in packets] == [ExpertName.SOCIAL_GRAPH, ExpertName.VOICE_ANALYTICS, ExpertName.MEMORY]
    assert packets[0].content == "Social context: Not available in DM context."
    assert packets[1].content == "Voice analytics: Not available in DM context."
    assert packets[2].content == "User memory (compressed): prefers short answers"


def test_pool_isolates_failing_experts():
    pool = ExpertPool([SocialGraphExpert(FailingSource()), MemoryExpert(InMemoryProfileSource())])
    packets = asyncio.run(pool.run(decision_for(RouteKind.SOCIAL_GRAPH), GUILD_CTX))
    assert packets[0].content == "Social context: Error loading relationship graph."
    assert packets[0].structured == {"error": "db offline"}
    assert packets[1].name is ExpertName.MEMORY


def test_pool_skips_memory_and_unregistered_experts():
    pool = ExpertPool([MemoryExpert(InMemoryProfileSource())])
    packets = asyncio.run(pool.run(decision_for(RouteKind.SUMMARIZE), GUILD_CTX, skip_memory=True))
    assert packets == []


def test_pool_reports_unregistered_experts():
    pool = ExpertPool([MemoryExpert(InMemoryProfileSource())])
    route = decision_for(RouteKind.SUMMARIZE)
    assert pool.missing(route.experts) == [ExpertName.SUMMARIZER]

    messages: list[str] = []
    sink_id = logger.add(lambda message: messages.append(str(message)), level="DEBUG")
    try:
        packets = asyncio.run(pool.run(route, GUILD_CTX))
    finally:
        logger.remove(sink_id)

    assert [p.name for p in packets] == [ExpertName.MEMORY]
    assert any("Expert Summarizer not registered" in m for m in messages)


def test_pool_runs_experts_concurrently():
    class SlowExpert(Expert):
        def __init__(self, name: ExpertName, started: list[str], gate: asyncio.Event):
            self.name = name
            self.started = started
            self.gate = gate

        async def run(self, ctx: ExpertContext) -> ExpertPacket:
            self.started.append(self.name.value)
            if len(self.started) == 2:
                self.gate.set()
            await asyncio.wait_for(self.gate.wait(), timeout=1.0)
            return ExpertPacket(name=self.name, content=self.name.value)

    async def _run() -> list[ExpertPacket]:
        started: list[str] = []
        gate = asyncio.Event()
        pool = ExpertPool(
            [
                SlowExpert(ExpertName.SUMMARIZER, started, gate),
                SlowExpert(ExpertName.MEMORY, started, gate),
            ]
        )
        return await pool.run(decision_for(RouteKind.SUMMARIZE), GUILD_CTX)

    packets = asyncio.run(_run())
    assert render_packets(packets) == "[Summarizer] Summarizer\n\n[Memory] Memory"
