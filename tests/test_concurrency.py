"""Tests for per-key admission and the background work queue."""

import asyncio

from loguru import logger

from sage_agent.utils.concurrency import BackgroundWorkQueue, KeyedAdmission


def test_same_key_is_serialized():
    admission = KeyedAdmission(limit=1)
    state = {"active": 0, "max": 0}

    async def _work() -> None:
        state["active"] += 1
        state["max"] = max(state["max"], state["active"])
        await asyncio.sleep(0.01)
        state["active"] -= 1

    async def _run() -> None:
        await asyncio.gather(*(admission.run("user:1", _work) for _ in range(4)))

    asyncio.run(_run())
    assert state["max"] == 1
    assert admission.active_keys() == []


def test_different_keys_run_in_parallel():
    admission = KeyedAdmission(limit=1)

    async def _run() -> list[str]:
        both_started = asyncio.Event()
        started: list[str] = []

        async def _work(key: str) -> str:
            started.append(key)
            if len(started) == 2:
                both_started.set()
            await asyncio.wait_for(both_started.wait(), timeout=1.0)
            return key

        return await asyncio.gather(
            admission.run("user:1", lambda: _work("user:1")),
            admission.run("user:2", lambda: _work("user:2")),
        )

    assert asyncio.run(_run()) == ["user:1", "user:2"]


def test_active_keys_visible_while_held():
    admission = KeyedAdmission()

    async def _run() -> list[str]:
        async with admission.hold("channel:9"):
            return admission.active_keys()

    assert asyncio.run(_run()) == ["channel:9"]
    assert admission.active_keys() == []


def test_background_failures_are_logged_not_raised():
    queue = BackgroundWorkQueue()
    messages: list[str] = []
    sink_id = logger.add(lambda message: messages.append(str(message)), level="WARNING")

    async def _boom() -> None:
        raise RuntimeError("summary store offline")

    async def _run() -> int:
        queue.submit("profile:u1", _boom)
        await queue.drain()
        return queue.pending

    try:
        pending = asyncio.run(_run())
    finally:
        logger.remove(sink_id)

    assert pending == 0
    assert any("Background task profile:u1 failed: summary store offline" in m for m in messages)


def test_background_cancel_all():
    queue = BackgroundWorkQueue()

    async def _forever() -> None:
        await asyncio.sleep(10)

    async def _run() -> int:
        queue.submit("slow", _forever)
        await asyncio.sleep(0)
        await queue.cancel_all()
        await asyncio.sleep(0)
        return queue.pending

    assert asyncio.run(_run()) == 0
