"""Bounded tool-call loop over plain chat completions."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from sage_agent.agent.envelope import RETRY_PROMPT, looks_like_json, try_parse_envelope
from sage_agent.agent.tools.base import ToolExecutionContext
from sage_agent.agent.tools.registry import ToolRegistry, ToolResult
from sage_agent.providers.base import LLMProvider

FINAL_ANSWER_PROMPT = (
    "Tool budget exhausted. Answer the user now in plain text using the results above. "
    "Do not request any more tools."
)


@dataclass(slots=True)
class ToolLoopResult:
    reply_text: str
    tools_executed: bool = False
    rounds_completed: int = 0
    results: list[ToolResult] = field(default_factory=list)


def format_tool_results(results: list[ToolResult]) -> dict[str, Any]:
    """Synthesize the user-role message summarizing one round of results."""
    lines = []
    for result in results:
        if result.success:
            lines.append(f'Tool "{result.name}" result: {json.dumps(result.result, default=str)}')
        else:
            lines.append(f'Tool "{result.name}" error: {result.error}')
    return {"role": "user", "content": "[Tool Results]\n" + "\n".join(lines)}


class ToolCallLoop:
    """
    Run the JSON envelope tool protocol against a provider.

    Each round asks the model for a completion. Plain text ends the loop.
    A valid envelope has its calls clipped to ``max_calls_per_round`` and run
    sequentially, each raced against ``tool_timeout`` seconds. Text that looks
    like a broken envelope gets exactly one repair round at temperature 0.
    After ``max_rounds`` a final completion is forced.
    """

    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolRegistry,
        *,
        max_rounds: int = 2,
        max_calls_per_round: int = 3,
        tool_timeout: float = 10.0,
    ):
        self.provider = provider
        self.registry = registry
        self.max_rounds = max(0, max_rounds)
        self.max_calls_per_round = max(0, max_calls_per_round)
        self.tool_timeout = tool_timeout

    async def _complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str | None,
        temperature: float,
        api_key: str | None,
    ) -> str:
        response = await self.provider.chat(
            messages=messages,
            model=model,
            temperature=temperature,
            api_key=api_key,
        )
        return response.content or ""

    async def run(
        self,
        messages: list[dict[str, Any]],
        ctx: ToolExecutionContext,
        *,
        model: str | None = None,
        temperature: float = 0.7,
        api_key: str | None = None,
    ) -> ToolLoopResult:
        """
        Drive the loop to a final reply.

        Provider errors propagate; tool failures never do.
        """
        working = list(messages)
        all_results: list[ToolResult] = []
        rounds = 0
        repair_attempted = False

        while rounds < self.max_rounds:
            text = await self._complete(working, model=model, temperature=temperature, api_key=api_key)
            envelope = try_parse_envelope(text)

            if envelope is None and not repair_attempted and looks_like_json(text):
                repair_attempted = True
                logger.debug(f"Envelope parse failed, attempting repair: {text[:200]}")
                working.append({"role": "assistant", "content": text})
                working.append({"role": "user", "content": RETRY_PROMPT})
                text = await self._complete(working, model=model, temperature=0.0, api_key=api_key)
                envelope = try_parse_envelope(text)
                if envelope is None:
                    return ToolLoopResult(
                        reply_text=text,
                        tools_executed=bool(all_results),
                        rounds_completed=rounds,
                        results=all_results,
                    )

            if envelope is None:
                return ToolLoopResult(
                    reply_text=text,
                    tools_executed=bool(all_results),
                    rounds_completed=rounds,
                    results=all_results,
                )

            calls = envelope.calls[: self.max_calls_per_round]
            if len(envelope.calls) > self.max_calls_per_round:
                logger.warning(
                    f"Truncating tool calls to limit ({len(envelope.calls)} requested, "
                    f"{self.max_calls_per_round} allowed)"
                )

            round_results: list[ToolResult] = []
            for call in calls:
                round_results.append(await self.registry.execute_with_timeout(call, ctx, self.tool_timeout))
            all_results.extend(round_results)
            rounds += 1

            working.append({"role": "assistant", "content": text})
            working.append(format_tool_results(round_results))

        working.append({"role": "system", "content": FINAL_ANSWER_PROMPT})
        final_text = await self._complete(working, model=model, temperature=temperature, api_key=api_key)
        return ToolLoopResult(
            reply_text=final_text,
            tools_executed=bool(all_results),
            rounds_completed=rounds,
            results=all_results,
        )
