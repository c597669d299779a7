"""Embeddable Agent API for Python applications."""

from __future__ import annotations

import asyncio
from typing import Any

from sage_agent.agent.loop import TurnOrchestrator, TurnRequest, TurnResult
from sage_agent.agent.profile import ProfileUpdater
from sage_agent.agent.runtime import TurnTraceStore
from sage_agent.agent.tools.registry import ToolRegistry
from sage_agent.agent.tools.voice import JoinVoiceTool, LeaveVoiceTool, VoiceController
from sage_agent.config.loader import load_config
from sage_agent.config.schema import Config
from sage_agent.observability.metrics import MetricsStore
from sage_agent.orchestration.experts import (
    ImageGenExpert,
    MemoryExpert,
    SocialGraphExpert,
    SummarizerExpert,
    VoiceAnalyticsExpert,
)
from sage_agent.orchestration.llm_router import LLMRouter
from sage_agent.orchestration.pool import ExpertPool
from sage_agent.orchestration.sources import (
    InMemoryProfileSource,
    MessageSource,
    ProfileSource,
    RelationshipSource,
    SummarySource,
    VoiceSource,
)
from sage_agent.providers.base import LLMProvider
from sage_agent.providers.factory import build_provider


class Agent:
    """Small embeddable wrapper around TurnOrchestrator for direct use in Python."""

    def __init__(
        self,
        config: Config | None = None,
        *,
        provider: LLMProvider | None = None,
        profiles: ProfileSource | None = None,
        messages: MessageSource | None = None,
        summaries: SummarySource | None = None,
        relationships: RelationshipSource | None = None,
        voice: VoiceSource | None = None,
        voice_controller: VoiceController | None = None,
    ):
        self.config = config or load_config()
        self.metrics = MetricsStore(self.config.metrics_path) if self.config.metrics.enabled else None
        self.provider = provider or build_provider(self.config, metrics=self.metrics)
        self.profiles = profiles or InMemoryProfileSource()

        registry = ToolRegistry(max_args_bytes=self.config.tool_loop.max_args_bytes, metrics=self.metrics)
        if voice_controller is not None:
            registry.register(JoinVoiceTool(voice_controller))
            registry.register(LeaveVoiceTool(voice_controller))

        pool = ExpertPool([MemoryExpert(self.profiles), ImageGenExpert(self.provider, self.config.image)])
        if relationships is not None:
            pool.register(SocialGraphExpert(relationships))
        if voice is not None:
            pool.register(VoiceAnalyticsExpert(voice))
        if summaries is not None:
            pool.register(SummarizerExpert(summaries))

        router_cfg = self.config.router
        llm_router = None
        if router_cfg.mode == "llm":
            llm_router = LLMRouter(
                self.provider,
                model=router_cfg.model,
                temperature=router_cfg.temperature,
                timeout=router_cfg.timeout_seconds,
                history_limit=self.config.context.history_messages,
            )

        self.orchestrator = TurnOrchestrator(
            self.provider,
            config=self.config,
            registry=registry,
            experts=pool,
            llm_router=llm_router,
            messages=messages,
            summaries=summaries,
            relationships=relationships,
            voice=voice,
            profiles=self.profiles,
            profile_updater=ProfileUpdater(self.provider),
            traces=TurnTraceStore(self.config.trace_path) if self.config.trace.enabled else None,
            metrics=self.metrics,
        )
        self._closed = False

    async def turn(self, request: TurnRequest) -> TurnResult:
        """Run a full turn and return the structured result."""
        self._ensure_open()
        return await self.orchestrator.run_turn(request)

    async def ask(
        self,
        content: str,
        *,
        user_id: str = "embed",
        channel_id: str = "embed",
        guild_id: str | None = None,
        api_key: str | None = None,
    ) -> str:
        """Process one direct message through the agent."""
        result = await self.turn(
            TurnRequest(
                user_id=user_id,
                channel_id=channel_id,
                guild_id=guild_id,
                user_text=content,
                user_profile_summary=await self.profiles.get_profile(user_id),
                api_key=api_key,
            )
        )
        return result.reply_text

    def ask_sync(
        self,
        content: str,
        *,
        user_id: str = "embed",
        channel_id: str = "embed",
        guild_id: str | None = None,
    ) -> str:
        """Sync wrapper for ask()."""
        self._ensure_open()
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(self._ask_and_drain(content, user_id, channel_id, guild_id))
        raise RuntimeError("ask_sync() cannot run inside an active event loop; use await ask(...).")

    async def _ask_and_drain(self, content: str, user_id: str, channel_id: str, guild_id: str | None) -> str:
        reply = await self.ask(content, user_id=user_id, channel_id=channel_id, guild_id=guild_id)
        await self.orchestrator.shutdown()
        return reply

    async def _close_async(self) -> None:
        if self._closed:
            return
        await self.orchestrator.shutdown()
        await self.provider.aclose()
        self._closed = True

    def close(self) -> None:
        """Close the embedded agent in sync contexts."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self._close_async())
            return
        raise RuntimeError(
            "close() cannot run inside an active event loop; use await aclose() or async with Agent()."
        )

    async def aclose(self) -> None:
        """Close the embedded agent in async contexts."""
        await self._close_async()

    async def __aenter__(self) -> Agent:
        self._ensure_open()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self._close_async()

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("Agent is closed. Create a new Agent instance to continue.")
