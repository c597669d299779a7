import json
from pathlib import Path

from sage_agent.observability.metrics import MetricsStore


def test_metrics_store_snapshot(tmp_path: Path):
    store = MetricsStore(tmp_path / "events.jsonl")
    store.record_llm_call(model="gemini", success=True, latency_ms=800, prompt_tokens=120, completion_tokens=40)
    store.record_llm_call(model="gemini", success=False, latency_ms=1200, error="timeout")
    store.record_tool_call(tool="join_voice_channel", success=True, latency_ms=300)
    store.record_tool_call(
        tool="join_voice_channel", success=False, latency_ms=10000, error_kind="timeout", error="timed out"
    )
    store.record_turn(route="qa", latency_ms=1500, success=True, tools_executed=True)
    store.record_turn(route="summarize", latency_ms=900, success=True, flagged=True)
    store.record_turn(route="qa", latency_ms=50, success=False, error="provider down")

    snap = store.snapshot(hours=24)
    assert snap["totals"]["events"] == 7
    assert snap["llm"]["calls"] == 2
    assert snap["llm"]["success_rate"] == 50.0
    assert snap["tools"]["calls"] == 2
    assert snap["tools"]["errors_by_kind"] == {"timeout": 1}
    assert snap["turns"]["count"] == 3
    assert snap["turns"]["success"] == 2
    assert snap["turns"]["flagged"] == 1
    assert snap["turns"]["routes"] == {"qa": 2, "summarize": 1}


def test_metrics_snapshot_ignores_old_and_corrupt_lines(tmp_path: Path):
    path = tmp_path / "events.jsonl"
    path.write_text(
        "\n".join(
            [
                json.dumps({"type": "turn", "route": "qa", "success": True, "ts": "2000-01-01T00:00:00+00:00"}),
                "not json",
                json.dumps(["not", "a", "dict"]),
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    store = MetricsStore(path)
    store.record_turn(route="memory", latency_ms=10, success=True)

    snap = store.snapshot(hours=1)
    assert snap["totals"]["events"] == 1
    assert snap["turns"]["routes"] == {"memory": 1}


def test_metrics_errors_are_truncated(tmp_path: Path):
    store = MetricsStore(tmp_path / "events.jsonl")
    store.record_llm_call(model="gemini", success=False, latency_ms=1, error="x" * 2000)
    event = json.loads((tmp_path / "events.jsonl").read_text(encoding="utf-8").strip())
    assert len(event["error"]) == 500
    assert event["type"] == "llm_call"
