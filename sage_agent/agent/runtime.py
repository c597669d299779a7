"""Turn trace storage: one JSON document per processed turn."""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from sage_agent.utils.helpers import compact_preview, ensure_dir


def _now_iso() -> str:
    return datetime.now().isoformat()


def new_trace_id() -> str:
    timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
    return f"{timestamp}-{uuid.uuid4().hex[:8]}"


class TurnTraceStore:
    """
    Store turn traces under ``<directory>/<trace_id>.json``.

    ``start`` records routing and expert output; ``end`` adds the governor
    outcome, tool results and the final reply. Writes are atomic and failures
    return False instead of raising.
    """

    def __init__(self, directory: Path):
        self.directory = ensure_dir(Path(directory).expanduser())

    def _trace_path(self, trace_id: str) -> Path:
        return self.directory / f"{trace_id}.json"

    def _safe_read(self, path: Path) -> dict[str, Any] | None:
        try:
            if not path.exists():
                return None
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None

    def _safe_write(self, path: Path, payload: dict[str, Any]) -> bool:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            tmp_path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
            tmp_path.replace(path)
            return True
        except (OSError, TypeError, ValueError):
            return False

    def start(
        self,
        trace_id: str,
        *,
        guild_id: str | None,
        channel_id: str,
        user_id: str,
        route_kind: str,
        router: dict[str, Any] | None = None,
        experts: list[dict[str, Any]] | None = None,
        tokens: dict[str, Any] | None = None,
    ) -> bool:
        """Create or refresh the start half of a trace."""
        path = self._trace_path(trace_id)
        payload = self._safe_read(path) or {
            "trace_id": trace_id,
            "created_at": _now_iso(),
            "guild_id": guild_id,
            "channel_id": channel_id,
            "user_id": user_id,
            "governor": {},
            "tools": None,
            "reply_text": "",
            "status": "running",
        }
        payload["route_kind"] = route_kind
        payload["router"] = router or {}
        payload["experts"] = experts or []
        payload["tokens"] = tokens or {}
        payload["updated_at"] = _now_iso()
        return self._safe_write(path, payload)

    def end(
        self,
        trace_id: str,
        *,
        reply_text: str,
        governor: dict[str, Any] | None = None,
        tools: list[dict[str, Any]] | None = None,
        error: str = "",
    ) -> bool:
        """Record the outcome of a started trace."""
        path = self._trace_path(trace_id)
        payload = self._safe_read(path)
        if payload is None:
            return False
        now = _now_iso()
        payload["governor"] = governor or {}
        payload["tools"] = tools
        payload["reply_text"] = reply_text
        payload["reply_preview"] = compact_preview(reply_text, limit=240)
        payload["status"] = "error" if error else "ok"
        payload["error"] = compact_preview(error, limit=600)
        payload["updated_at"] = now
        payload["finished_at"] = now
        return self._safe_write(path, payload)

    def get(self, trace_id: str) -> dict[str, Any] | None:
        return self._safe_read(self._trace_path(trace_id))

    def list_recent(
        self,
        *,
        guild_id: str | None = None,
        channel_id: str | None = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        """Most recent traces first, optionally filtered by guild or channel."""
        traces: list[dict[str, Any]] = []
        for path in sorted(self.directory.glob("*.json"), reverse=True):
            if len(traces) >= limit:
                break
            payload = self._safe_read(path)
            if not payload:
                continue
            if guild_id and payload.get("guild_id") != guild_id:
                continue
            if channel_id and payload.get("channel_id") != channel_id:
                continue
            traces.append(payload)
        return traces
