import asyncio
from typing import Any

import pytest

from sage_agent.agent.api import Agent
from sage_agent.agent.loop import TurnRequest, TurnResult
from sage_agent.config.schema import Config
from sage_agent.orchestration.sources import InMemoryProfileSource
from sage_agent.providers.base import LLMProvider, LLMResponse


class DummyProvider(LLMProvider):
    def __init__(self):
        super().__init__()
        self.closed = False

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        **kwargs: Any,
    ) -> LLMResponse:
        if kwargs.get("response_format") == "json_object":
            return LLMResponse(content='{"summary": "Says hello a lot."}')
        return LLMResponse(content="embedded-ok")

    def get_default_model(self) -> str:
        return "dummy-model"

    async def aclose(self) -> None:
        self.closed = True


def _build_agent(tmp_path, monkeypatch, **kwargs: Any) -> Agent:
    monkeypatch.setenv("SAGE_HOME", str(tmp_path / "data"))
    return Agent(config=Config(), provider=kwargs.pop("provider", DummyProvider()), **kwargs)


def test_embedded_agent_ask_sync(tmp_path, monkeypatch):
    agent = _build_agent(tmp_path, monkeypatch)
    result = agent.ask_sync("hello from embed")
    assert result == "embedded-ok"


def test_embedded_agent_updates_profile_after_turn(tmp_path, monkeypatch):
    profiles = InMemoryProfileSource()
    agent = _build_agent(tmp_path, monkeypatch, profiles=profiles)

    assert agent.ask_sync("hello again", user_id="u42") == "embedded-ok"
    assert asyncio.run(profiles.get_profile("u42")) == "Says hello a lot."


def test_embedded_agent_turn_returns_result(tmp_path, monkeypatch):
    agent = _build_agent(tmp_path, monkeypatch)

    async def _run() -> TurnResult:
        async with agent:
            return await agent.turn(TurnRequest(user_id="u1", channel_id="c1", user_text="what's up?"))

    result = asyncio.run(_run())
    assert result.reply_text == "embedded-ok"
    assert result.route is not None and result.route.kind == "qa"
    assert agent.orchestrator.traces.get(result.trace_id)["status"] == "ok"


def test_embedded_agent_close_blocks_future_calls(tmp_path, monkeypatch):
    provider = DummyProvider()
    agent = _build_agent(tmp_path, monkeypatch, provider=provider)

    agent.close()
    agent.close()

    assert provider.closed is True
    with pytest.raises(RuntimeError, match="Agent is closed"):
        agent.ask_sync("hello again")


def test_embedded_agent_async_context_manager(tmp_path, monkeypatch):
    agent = _build_agent(tmp_path, monkeypatch)

    async def _run() -> str:
        async with agent:
            return await agent.ask("hello from async context")

    result = asyncio.run(_run())
    assert result == "embedded-ok"

    with pytest.raises(RuntimeError, match="Agent is closed"):
        agent.ask_sync("one more message")


def test_embedded_agent_sync_calls_refuse_running_loop(tmp_path, monkeypatch):
    agent = _build_agent(tmp_path, monkeypatch)

    async def _run() -> None:
        with pytest.raises(RuntimeError, match="active event loop"):
            agent.ask_sync("inside a loop")
        await agent.aclose()

    asyncio.run(_run())
