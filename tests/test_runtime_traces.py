from pathlib import Path

from sage_agent.agent.runtime import TurnTraceStore, new_trace_id


def _start(store: TurnTraceStore, trace_id: str, *, guild_id: str | None = "g1", channel_id: str = "c1") -> bool:
    return store.start(
        trace_id,
        guild_id=guild_id,
        channel_id=channel_id,
        user_id="u1",
        route_kind="qa",
        router={"kind": "qa", "rationale": "Default Q&A route"},
        experts=[{"name": "Memory", "structured": {"summary": None}}],
    )


def test_trace_start_and_end_round_trip(tmp_path: Path):
    store = TurnTraceStore(tmp_path / "traces")
    trace_id = new_trace_id()

    assert _start(store, trace_id)
    running = store.get(trace_id)
    assert running["status"] == "running"
    assert running["route_kind"] == "qa"

    assert store.end(
        trace_id,
        reply_text="Hello there!",
        governor={"actions": [], "flagged": False},
        tools=[{"name": "ping", "success": True}],
    )
    finished = store.get(trace_id)
    assert finished["status"] == "ok"
    assert finished["reply_text"] == "Hello there!"
    assert finished["tools"] == [{"name": "ping", "success": True}]
    assert finished["experts"][0]["name"] == "Memory"
    assert "finished_at" in finished


def test_trace_end_with_error(tmp_path: Path):
    store = TurnTraceStore(tmp_path)
    _start(store, "t-1")
    store.end("t-1", reply_text="fallback", error="Provider API error: 503")
    trace = store.get("t-1")
    assert trace["status"] == "error"
    assert trace["error"] == "Provider API error: 503"


def test_trace_end_without_start_is_rejected(tmp_path: Path):
    store = TurnTraceStore(tmp_path)
    assert store.end("never-started", reply_text="x") is False
    assert store.get("never-started") is None


def test_list_recent_filters_and_limits(tmp_path: Path):
    store = TurnTraceStore(tmp_path)
    _start(store, "20260101000001-a", channel_id="c1")
    _start(store, "20260101000002-b", channel_id="c2")
    _start(store, "20260101000003-c", channel_id="c1", guild_id=None)

    assert [t["trace_id"] for t in store.list_recent()] == [
        "20260101000003-c",
        "20260101000002-b",
        "20260101000001-a",
    ]
    assert [t["trace_id"] for t in store.list_recent(channel_id="c1")] == ["20260101000003-c", "20260101000001-a"]
    assert [t["trace_id"] for t in store.list_recent(guild_id="g1", limit=1)] == ["20260101000002-b"]


def test_corrupt_trace_files_are_skipped(tmp_path: Path):
    store = TurnTraceStore(tmp_path)
    (tmp_path / "broken.json").write_text("{oops", encoding="utf-8")
    _start(store, "ok-trace")
    assert [t["trace_id"] for t in store.list_recent()] == ["ok-trace"]
