"""Turn orchestrator: one utterance in, one governed reply out."""

from __future__ import annotations

import asyncio
import math
import re
from dataclasses import dataclass, field, replace
from time import perf_counter
from typing import Any

from loguru import logger

from sage_agent.agent.budgeter import resolve_model_limits
from sage_agent.agent.context import (
    ContextBuilder,
    TurnContext,
    render_relationship_hints,
    render_transcript,
)
from sage_agent.agent.profile import ProfileUpdater
from sage_agent.agent.prompt import StyleProfile, classify_style, compose_system_prompt
from sage_agent.agent.runtime import TurnTraceStore, new_trace_id
from sage_agent.agent.tokens import Content, content_text
from sage_agent.agent.tool_loop import ToolCallLoop
from sage_agent.agent.tools.base import ToolExecutionContext
from sage_agent.agent.tools.registry import ToolRegistry
from sage_agent.config.schema import Config
from sage_agent.errors import CircuitOpenError, ProviderError
from sage_agent.observability.metrics import MetricsStore
from sage_agent.orchestration.experts.base import ExpertAttachment, ExpertContext, ExpertPacket
from sage_agent.orchestration.governor import Governor
from sage_agent.orchestration.llm_router import LLMRouter
from sage_agent.orchestration.pool import ExpertPool, render_packets
from sage_agent.orchestration.router import InvokedBy, RouteDecision, route
from sage_agent.orchestration.sources import (
    ChannelSummary,
    MessageSource,
    ProfileSource,
    RelationshipSource,
    SummarySource,
    VoiceSource,
    format_how_long_today,
    format_who_in_voice,
)
from sage_agent.providers.base import LLMProvider
from sage_agent.utils.concurrency import BackgroundWorkQueue, KeyedAdmission

FALLBACK_REPLY = "I'm having trouble connecting right now. Please try again later."
SILENCE_MARKER = "[SILENCE]"
RELATIONSHIP_HINTS_MAX_CHARS = 1200

_WHO_IN_VOICE = re.compile(r"\bwho('?s| is)? in voice\b")
_HOW_LONG_TODAY = re.compile(r"\bhow long\b.*\bvoice today\b|\btime in voice today\b")


@dataclass(slots=True)
class TurnRequest:
    """Inputs of one turn."""
    user_id: str
    channel_id: str
    user_text: str
    guild_id: str | None = None
    message_id: str = ""
    user_content: Content | None = None
    user_profile_summary: str | None = None
    reply_to_bot_text: str | None = None
    reply_reference_content: Content | None = None
    intent: str | None = None
    mentioned_user_ids: list[str] = field(default_factory=list)
    invoked_by: InvokedBy = "mention"
    trace_id: str | None = None
    api_key: str | None = None


@dataclass(slots=True)
class TurnResult:
    reply_text: str
    trace_id: str
    route: RouteDecision | None = None
    actions: list[str] = field(default_factory=list)
    flagged: bool = False
    tools_executed: bool = False
    attachments: list[ExpertAttachment] = field(default_factory=list)
    style: StyleProfile | None = None
    messages: list[dict[str, Any]] = field(default_factory=list)


def _summary_block(title: str, summary: ChannelSummary | None) -> str | None:
    if summary is None or not summary.summary_text.strip():
        return None
    return f"{title}:\n{summary.summary_text.strip()}"


def _rolling_title(summary: ChannelSummary | None) -> str:
    if summary is not None and summary.window_start and summary.window_end:
        minutes = max(1, round((summary.window_end - summary.window_start).total_seconds() / 60))
        return f"Channel rolling summary (last {minutes}m)"
    return "Channel rolling summary"


class TurnOrchestrator:
    """
    The turn orchestrator composes the pipeline.

    It:
    1. Serializes turns per user
    2. Answers plain voice presence questions directly
    3. Routes the utterance and gathers expert packets
    4. Builds and budgets the context
    5. Calls the model, through the tool loop when tools are allowed
    6. Governs the draft and records trace, metrics and profile updates
    """

    def __init__(
        self,
        provider: LLMProvider,
        *,
        config: Config | None = None,
        model: str | None = None,
        registry: ToolRegistry | None = None,
        experts: ExpertPool | None = None,
        governor: Governor | None = None,
        llm_router: LLMRouter | None = None,
        messages: MessageSource | None = None,
        summaries: SummarySource | None = None,
        relationships: RelationshipSource | None = None,
        voice: VoiceSource | None = None,
        profiles: ProfileSource | None = None,
        profile_updater: ProfileUpdater | None = None,
        traces: TurnTraceStore | None = None,
        metrics: MetricsStore | None = None,
    ):
        self.config = config or Config()
        self.provider = provider
        self.model = model or self.config.provider.model or provider.get_default_model()
        self.metrics = metrics
        self.registry = registry or ToolRegistry(
            max_args_bytes=self.config.tool_loop.max_args_bytes,
            metrics=metrics,
        )
        self.experts = experts or ExpertPool()
        self.governor = governor or Governor(
            provider,
            max_chars=self.config.governor.max_chars,
            rewrite_enabled=self.config.governor.rewrite_enabled,
            model=self.model,
        )
        self.llm_router = llm_router
        self.messages = messages
        self.summaries = summaries
        self.relationships = relationships
        self.voice = voice
        self.profiles = profiles
        self.profile_updater = profile_updater
        self.traces = traces
        self.context = ContextBuilder(self.config.context, notice_enabled=self.config.budget.truncation_notice)
        self.tool_loop = ToolCallLoop(
            provider,
            self.registry,
            max_rounds=self.config.tool_loop.max_rounds,
            max_calls_per_round=self.config.tool_loop.max_calls_per_round,
            tool_timeout=self.config.tool_loop.tool_timeout_seconds,
        )
        self.admission = KeyedAdmission(limit=1)
        self.background = BackgroundWorkQueue()

    async def run_turn(self, request: TurnRequest) -> TurnResult:
        """Process one turn; turns of the same user never overlap."""
        if not request.trace_id:
            request = replace(request, trace_id=new_trace_id())
        async with self.admission.hold(f"user:{request.user_id}"):
            try:
                return await self._run_turn(request)
            except Exception as e:
                logger.bind(trace_id=request.trace_id).exception(f"Unexpected error while processing turn: {e}")
                self._trace_end(request.trace_id, FALLBACK_REPLY, governor={}, tools=None, error=str(e))
                return TurnResult(reply_text=FALLBACK_REPLY, trace_id=request.trace_id)

    async def _run_turn(self, request: TurnRequest) -> TurnResult:
        trace_id = request.trace_id or ""
        started = perf_counter()
        log = logger.bind(trace_id=trace_id)

        fast_reply = await self._voice_fast_path(request)
        if fast_reply is not None:
            self._record_turn("voice_fast_path", started, success=True)
            return TurnResult(reply_text=fast_reply, trace_id=trace_id)

        history = await self._load_history(request)
        decision = await self._route(request, history)
        log.debug(f"Router decision: {decision.kind.value} ({decision.rationale})")

        user_content: Content = request.user_content if request.user_content is not None else request.user_text
        expert_ctx = ExpertContext(
            user_id=request.user_id,
            channel_id=request.channel_id,
            guild_id=request.guild_id,
            user_text=request.user_text,
            user_content=user_content,
            reply_reference_content=request.reply_reference_content,
            history=history,
            api_key=request.api_key,
        )
        packets = await self.experts.run(decision, expert_ctx, skip_memory=bool(request.user_profile_summary))
        self._trace_start(trace_id, request, decision, packets)

        transcript, rolling, channel_profile, hints = await self._load_channel_context(request)

        style = classify_style(request.user_text)
        use_tools = decision.allow_tools and len(self.registry) > 0
        system_prompt = compose_system_prompt(
            style=style,
            tool_specs=self.registry.get_definitions() if use_tools else None,
            max_tokens=self.config.context.system_prompt_max_tokens,
        )
        limits = resolve_model_limits(self.config.budget, self.model)
        built = self.context.build(
            TurnContext(
                user_content=user_content,
                user_profile_summary=request.user_profile_summary,
                channel_profile_summary=channel_profile,
                channel_rolling_summary=rolling,
                relationship_hints=hints,
                expert_packets=render_packets(packets) or None,
                transcript=transcript,
                intent_hint=request.intent,
                reply_to_bot_text=request.reply_to_bot_text,
                reply_reference_content=request.reply_reference_content,
            ),
            system_prompt,
            limits,
        )
        log.debug(
            f"Built context with {len(packets)} expert packets "
            f"({built.budget.total_tokens}/{built.budget.available_tokens} tokens)"
        )

        tools_executed = False
        tool_results: list[dict[str, Any]] | None = None
        error = ""
        try:
            if use_tools:
                loop_result = await self.tool_loop.run(
                    built.messages,
                    ToolExecutionContext(trace_id=trace_id, user_id=request.user_id, channel_id=request.channel_id),
                    model=self.model,
                    temperature=decision.temperature,
                    api_key=request.api_key,
                )
                draft = loop_result.reply_text
                tools_executed = loop_result.tools_executed
                if loop_result.results:
                    tool_results = [
                        {"name": r.name, "success": r.success, "error": r.error, "latency_ms": round(r.latency_ms, 2)}
                        for r in loop_result.results
                    ]
            else:
                response = await self.provider.chat(
                    messages=built.messages,
                    model=self.model,
                    temperature=decision.temperature,
                    api_key=request.api_key,
                )
                draft = response.content or ""
        except (ProviderError, CircuitOpenError) as e:
            log.error(f"LLM call error: {e}")
            error = str(e)
            draft = FALLBACK_REPLY

        attachments = [packet.binary for packet in packets if packet.binary is not None]

        if SILENCE_MARKER in draft.strip():
            log.info("Agent chose silence")
            self._trace_end(trace_id, "", governor={}, tools=tool_results, error=error)
            self._record_turn(decision.kind.value, started, success=not error, tools_executed=tools_executed)
            return TurnResult(
                reply_text="",
                trace_id=trace_id,
                route=decision,
                tools_executed=tools_executed,
                style=style,
                messages=built.messages,
            )

        governed = await self.governor.govern(draft, trace_id=trace_id, api_key=request.api_key)
        self._trace_end(
            trace_id,
            governed.final_text,
            governor={"actions": governed.actions, "flagged": governed.flagged},
            tools=tool_results,
            error=error,
        )
        self._record_turn(
            decision.kind.value,
            started,
            success=not error,
            flagged=governed.flagged,
            tools_executed=tools_executed,
            error=error,
        )
        if not error and governed.final_text:
            self._schedule_profile_update(request, governed.final_text)

        log.debug("Chat turn complete")
        return TurnResult(
            reply_text=governed.final_text,
            trace_id=trace_id,
            route=decision,
            actions=governed.actions,
            flagged=governed.flagged,
            tools_executed=tools_executed,
            attachments=attachments,
            style=style,
            messages=built.messages,
        )

    async def _voice_fast_path(self, request: TurnRequest) -> str | None:
        if self.voice is None or not request.guild_id:
            return None
        normalized = request.user_text.lower()
        who = bool(_WHO_IN_VOICE.search(normalized))
        how_long = bool(_HOW_LONG_TODAY.search(normalized))
        if not (who or how_long):
            return None
        try:
            if who:
                return format_who_in_voice(await self.voice.who_is_in_voice(request.guild_id))
            target = request.mentioned_user_ids[0] if request.mentioned_user_ids else request.user_id
            ms = await self.voice.voice_ms_today(request.guild_id, target)
            return format_how_long_today(target, ms)
        except Exception as e:
            logger.warning(f"Voice fast-path failed, falling back to router: {e}")
            return None

    async def _load_history(self, request: TurnRequest) -> list[dict[str, Any]]:
        if self.messages is None or not request.guild_id:
            return []
        try:
            recent = await self.messages.recent_messages(
                request.guild_id, request.channel_id, self.config.context.history_messages
            )
        except Exception as e:
            logger.warning(f"Failed to load conversation history (non-fatal): {e}")
            return []
        return [{"role": "assistant" if m.is_bot else "user", "content": m.content} for m in recent]

    async def _route(self, request: TurnRequest, history: list[dict[str, Any]]) -> RouteDecision:
        if self.config.router.mode == "llm" and self.llm_router is not None:
            return await self.llm_router.route(
                request.user_text,
                invoked_by=request.invoked_by,
                has_guild=bool(request.guild_id),
                history=history,
                api_key=request.api_key,
            )
        return route(request.user_text, request.invoked_by, bool(request.guild_id))

    async def _load_channel_context(
        self, request: TurnRequest
    ) -> tuple[str | None, str | None, str | None, str | None]:
        """Transcript, rolling summary, channel profile and relationship hints; each best effort."""
        guild_id = request.guild_id
        if not guild_id:
            return None, None, None, None
        cfg = self.config.context
        transcript = rolling = channel_profile = hints = None

        if self.messages is not None:
            try:
                recent = await self.messages.recent_messages(guild_id, request.channel_id, cfg.transcript_max_messages)
                transcript = render_transcript(recent, cfg.transcript_max_chars)
            except Exception as e:
                logger.warning(f"Failed to load transcript (non-fatal): {e}")

        if self.summaries is not None:
            try:
                rolling_summary, profile_summary = await asyncio.gather(
                    self.summaries.latest_summary(guild_id, request.channel_id, "rolling"),
                    self.summaries.latest_summary(guild_id, request.channel_id, "profile"),
                )
                rolling = _summary_block(_rolling_title(rolling_summary), rolling_summary)
                channel_profile = _summary_block("Channel profile (long-term)", profile_summary)
            except Exception as e:
                logger.warning(f"Failed to load channel summaries (non-fatal): {e}")

        if self.relationships is not None:
            half = math.ceil(cfg.relationship_hints_max_edges / 2)
            try:
                top, own = await asyncio.gather(
                    self.relationships.top_edges(guild_id, half, 0.1),
                    self.relationships.edges_for_user(guild_id, request.user_id, half),
                )
                hints = render_relationship_hints(
                    [*top, *own], cfg.relationship_hints_max_edges, RELATIONSHIP_HINTS_MAX_CHARS
                )
            except Exception as e:
                logger.warning(f"Failed to load relationship hints (non-fatal): {e}")

        return transcript, rolling, channel_profile, hints

    def _trace_start(
        self,
        trace_id: str,
        request: TurnRequest,
        decision: RouteDecision,
        packets: list[ExpertPacket],
    ) -> None:
        if self.traces is None:
            return
        ok = self.traces.start(
            trace_id,
            guild_id=request.guild_id,
            channel_id=request.channel_id,
            user_id=request.user_id,
            route_kind=decision.kind.value,
            router={
                "kind": decision.kind.value,
                "experts": [e.value for e in decision.experts],
                "unavailable_experts": [e.value for e in self.experts.missing(decision.experts)],
                "allow_tools": decision.allow_tools,
                "temperature": decision.temperature,
                "rationale": decision.rationale,
            },
            experts=[{"name": p.name.value, "structured": p.structured} for p in packets],
        )
        if not ok:
            logger.warning(f"Failed to persist trace start ({trace_id})")

    def _trace_end(
        self,
        trace_id: str,
        reply_text: str,
        *,
        governor: dict[str, Any],
        tools: list[dict[str, Any]] | None,
        error: str,
    ) -> None:
        if self.traces is None:
            return
        if not self.traces.end(trace_id, reply_text=reply_text, governor=governor, tools=tools, error=error):
            logger.warning(f"Failed to persist trace end ({trace_id})")

    def _record_turn(
        self,
        route_kind: str,
        started: float,
        *,
        success: bool,
        flagged: bool = False,
        tools_executed: bool = False,
        error: str = "",
    ) -> None:
        if self.metrics is None:
            return
        self.metrics.record_turn(
            route=route_kind,
            latency_ms=(perf_counter() - started) * 1000.0,
            success=success,
            flagged=flagged,
            tools_executed=tools_executed,
            error=error,
        )

    def _schedule_profile_update(self, request: TurnRequest, reply_text: str) -> None:
        if self.profile_updater is None or self.profiles is None:
            return
        updater = self.profile_updater
        profiles = self.profiles

        async def _update() -> None:
            previous = await profiles.get_profile(request.user_id)
            summary = await updater.update(
                previous,
                content_text(request.user_content) or request.user_text,
                reply_text,
                api_key=request.api_key,
            )
            if summary and summary != previous:
                await profiles.save_profile(request.user_id, summary)
                logger.debug(f"Profile updated for user {request.user_id}")

        self.background.submit(f"profile:{request.user_id}", _update)

    async def shutdown(self) -> None:
        """Wait for pending background work."""
        await self.background.drain()
