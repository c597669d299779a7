"""Turn, LLM and tool metrics appended to a JSONL file and aggregated on demand."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Annotated, Any, Literal

from loguru import logger
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from sage_agent.utils.helpers import ensure_dir

ERROR_MAX_CHARS = 500


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


class _Event(BaseModel):
    ts: datetime = Field(default_factory=_utc_now)
    success: bool = False
    latency_ms: float = 0.0
    error: str = ""

    @field_validator("ts")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @field_validator("error")
    @classmethod
    def _clip_error(cls, value: str) -> str:
        return value.strip()[:ERROR_MAX_CHARS]

    @field_validator("latency_ms")
    @classmethod
    def _round_latency(cls, value: float) -> float:
        return round(value, 2)


class LLMCallEvent(_Event):
    type: Literal["llm_call"] = "llm_call"
    model: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0


class ToolCallEvent(_Event):
    type: Literal["tool_call"] = "tool_call"
    tool: str = ""
    error_kind: str = ""


class TurnEvent(_Event):
    type: Literal["turn"] = "turn"
    route: str = ""
    flagged: bool = False
    tools_executed: bool = False


MetricsEvent = Annotated[LLMCallEvent | ToolCallEvent | TurnEvent, Field(discriminator="type")]
_EVENT_ADAPTER: TypeAdapter[MetricsEvent] = TypeAdapter(MetricsEvent)


def _pct(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return round((numerator / denominator) * 100.0, 2)


def _p95(values: list[float]) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    return round(ordered[int(0.95 * (len(ordered) - 1))], 2)


def _call_stats(events: list[LLMCallEvent] | list[ToolCallEvent]) -> dict[str, Any]:
    ok = sum(1 for e in events if e.success)
    return {
        "calls": len(events),
        "success": ok,
        "errors": len(events) - ok,
        "success_rate": _pct(ok, len(events)),
        "latency_ms_p95": _p95([e.latency_ms for e in events]),
    }


class MetricsStore:
    """
    Append-only metrics sink.

    Each ``record_*`` call writes one JSON line and returns False instead of
    raising when the file cannot be written. ``snapshot`` reads the file back,
    skipping lines that are not valid events.
    """

    def __init__(self, events_path: Path):
        self.events_path = events_path
        ensure_dir(events_path.parent)

    def _append(self, event: LLMCallEvent | ToolCallEvent | TurnEvent) -> bool:
        try:
            with self.events_path.open("a", encoding="utf-8") as handle:
                handle.write(event.model_dump_json() + "\n")
        except OSError as e:
            logger.warning(f"Failed to write metrics event to {self.events_path}: {e}")
            return False
        return True

    def record_llm_call(
        self,
        *,
        model: str,
        success: bool,
        latency_ms: float,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        error: str = "",
    ) -> bool:
        return self._append(
            LLMCallEvent(
                model=(model or "").strip(),
                success=success,
                latency_ms=latency_ms,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                error=error or "",
            )
        )

    def record_tool_call(
        self,
        *,
        tool: str,
        success: bool,
        latency_ms: float,
        error_kind: str = "",
        error: str = "",
    ) -> bool:
        return self._append(
            ToolCallEvent(
                tool=(tool or "").strip(),
                success=success,
                latency_ms=latency_ms,
                error_kind=(error_kind or "").strip(),
                error=error or "",
            )
        )

    def record_turn(
        self,
        *,
        route: str,
        latency_ms: float,
        success: bool,
        flagged: bool = False,
        tools_executed: bool = False,
        error: str = "",
    ) -> bool:
        return self._append(
            TurnEvent(
                route=(route or "").strip(),
                success=success,
                latency_ms=latency_ms,
                flagged=flagged,
                tools_executed=tools_executed,
                error=error or "",
            )
        )

    def events(self, since: datetime | None = None) -> list[LLMCallEvent | ToolCallEvent | TurnEvent]:
        """Parsed events, oldest first, optionally only those at or after ``since``."""
        try:
            lines = self.events_path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning(f"Failed to read metrics events from {self.events_path}: {e}")
            return []

        parsed = []
        for line in lines:
            if not line.strip():
                continue
            try:
                event = _EVENT_ADAPTER.validate_json(line)
            except ValidationError:
                continue
            if since is None or event.ts >= since:
                parsed.append(event)
        return parsed

    def snapshot(self, hours: int = 24) -> dict[str, Any]:
        """Aggregate the events of the last ``hours`` hours."""
        window_hours = max(1, int(hours))
        events = self.events(since=_utc_now() - timedelta(hours=window_hours))

        llm = [e for e in events if isinstance(e, LLMCallEvent)]
        tools = [e for e in events if isinstance(e, ToolCallEvent)]
        turns = [e for e in events if isinstance(e, TurnEvent)]

        tool_stats = _call_stats(tools)
        tool_stats["errors_by_kind"] = dict(Counter(e.error_kind or "unknown" for e in tools if not e.success))

        return {
            "window_hours": window_hours,
            "generated_at": _utc_now().isoformat(),
            "events_file": str(self.events_path),
            "totals": {"events": len(events)},
            "llm": _call_stats(llm),
            "tools": tool_stats,
            "turns": {
                "count": len(turns),
                "success": sum(1 for e in turns if e.success),
                "flagged": sum(1 for e in turns if e.flagged),
                "latency_ms_p95": _p95([e.latency_ms for e in turns]),
                "routes": dict(Counter(e.route or "unknown" for e in turns)),
            },
        }
