"""Tests for the circuit breaker and the retrying provider wrapper."""

import asyncio
from pathlib import Path
from typing import Any

import pytest

from sage_agent.errors import CircuitOpenError, ProviderError, ProviderValidationError
from sage_agent.observability.metrics import MetricsStore
from sage_agent.providers.base import LLMProvider, LLMResponse
from sage_agent.providers.resilience import CircuitBreaker, CircuitState, ResilientProvider

# ── Helpers ────────────────────────────────────────────────────────


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class FlakyProvider(LLMProvider):
    """Raises the queued errors first, then answers."""

    def __init__(self, errors: list[Exception] | None = None, content: str = "ok"):
        super().__init__()
        self.errors = list(errors or [])
        self.content = content
        self.calls = 0
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
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return LLMResponse(content=self.content, usage={"prompt_tokens": 10, "completion_tokens": 2})

    def get_default_model(self) -> str:
        return "flaky"

    async def aclose(self) -> None:
        self.closed = True


async def _fail() -> None:
    raise ProviderError("down")


async def _ok() -> str:
    return "ok"


def _trip(breaker: CircuitBreaker, times: int) -> None:
    async def _run() -> None:
        for _ in range(times):
            with pytest.raises(ProviderError):
                await breaker.call(_fail)

    asyncio.run(_run())


# ── Circuit breaker ────────────────────────────────────────────────


def test_opens_after_threshold_and_rejects_without_calling():
    breaker = CircuitBreaker(failure_threshold=5, reset_timeout=60.0, clock=FakeClock())
    _trip(breaker, 5)
    assert breaker.state is CircuitState.OPEN

    called = []

    async def _tracked() -> str:
        called.append(True)
        return "ok"

    with pytest.raises(CircuitOpenError):
        asyncio.run(breaker.call(_tracked))
    assert called == []


def test_success_resets_consecutive_failures():
    breaker = CircuitBreaker(failure_threshold=5, clock=FakeClock())
    _trip(breaker, 4)
    assert asyncio.run(breaker.call(_ok)) == "ok"
    assert breaker.failure_count == 0
    _trip(breaker, 4)
    assert breaker.state is CircuitState.CLOSED


def test_half_open_trial_success_closes():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout=30.0, clock=clock)
    _trip(breaker, 2)
    clock.now += 30.0
    assert breaker.state is CircuitState.HALF_OPEN

    assert asyncio.run(breaker.call(_ok)) == "ok"
    assert breaker.state is CircuitState.CLOSED
    assert breaker.failure_count == 0


def test_half_open_trial_failure_reopens_and_restarts_timeout():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout=30.0, clock=clock)
    _trip(breaker, 2)
    clock.now += 30.0
    _trip(breaker, 1)
    assert breaker.state is CircuitState.OPEN

    clock.now += 29.0
    assert breaker.state is CircuitState.OPEN
    clock.now += 1.0
    assert breaker.state is CircuitState.HALF_OPEN


def test_half_open_admits_a_single_trial_call():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=10.0, clock=clock)
    _trip(breaker, 1)
    clock.now += 10.0

    async def _run() -> str:
        gate = asyncio.Event()

        async def _slow_trial() -> str:
            await gate.wait()
            return "trial"

        trial = asyncio.create_task(breaker.call(_slow_trial))
        await asyncio.sleep(0)
        with pytest.raises(CircuitOpenError):
            await breaker.call(_ok)
        gate.set()
        return await trial

    assert asyncio.run(_run()) == "trial"
    assert breaker.state is CircuitState.CLOSED


async def _invalid() -> None:
    raise ProviderValidationError("bad model", status_code=400)


def test_validation_errors_open_the_breaker():
    breaker = CircuitBreaker(failure_threshold=5, clock=FakeClock())
    attempts = 0

    async def _counted_invalid() -> None:
        nonlocal attempts
        attempts += 1
        await _invalid()

    async def _run() -> None:
        for _ in range(5):
            with pytest.raises(ProviderValidationError):
                await breaker.call(_counted_invalid)
        with pytest.raises(CircuitOpenError):
            await breaker.call(_counted_invalid)

    asyncio.run(_run())
    assert breaker.state is CircuitState.OPEN
    assert attempts == 5


def test_validation_error_in_half_open_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=10.0, clock=clock)
    _trip(breaker, 1)
    clock.now += 10.0
    assert breaker.state is CircuitState.HALF_OPEN

    with pytest.raises(ProviderValidationError):
        asyncio.run(breaker.call(_invalid))
    assert breaker.state is CircuitState.OPEN


# ── Resilient provider ─────────────────────────────────────────────


def _resilient(inner: LLMProvider, delays: list[float], **kwargs) -> ResilientProvider:
    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    return ResilientProvider(inner, sleep=_sleep, **kwargs)


def test_transient_errors_are_retried_with_backoff():
    delays: list[float] = []
    inner = FlakyProvider([ProviderError("502"), ProviderError("503")])
    provider = _resilient(inner, delays, max_retries=2, backoff_base=0.5)

    response = asyncio.run(provider.chat(messages=[{"role": "user", "content": "hi"}]))

    assert response.content == "ok"
    assert inner.calls == 3
    assert delays == [1.0, 2.0]
    assert provider.breaker.failure_count == 0


def test_exhausted_retries_count_once_against_breaker():
    delays: list[float] = []
    inner = FlakyProvider([ProviderError("down")] * 3)
    provider = _resilient(inner, delays, max_retries=2)

    with pytest.raises(ProviderError, match="down"):
        asyncio.run(provider.chat(messages=[]))
    assert inner.calls == 3
    assert provider.breaker.failure_count == 1


def test_validation_error_is_not_retried():
    delays: list[float] = []
    inner = FlakyProvider([ProviderValidationError("invalid model", status_code=400)])
    provider = _resilient(inner, delays)

    with pytest.raises(ProviderValidationError):
        asyncio.run(provider.chat(messages=[]))
    assert inner.calls == 1
    assert delays == []
    assert provider.breaker.failure_count == 1


def test_open_breaker_short_circuits_provider():
    delays: list[float] = []
    inner = FlakyProvider([ProviderError("down")])
    provider = _resilient(
        inner,
        delays,
        max_retries=0,
        breaker=CircuitBreaker(failure_threshold=1, clock=FakeClock()),
    )

    with pytest.raises(ProviderError):
        asyncio.run(provider.chat(messages=[]))
    with pytest.raises(CircuitOpenError):
        asyncio.run(provider.chat(messages=[]))
    assert inner.calls == 1


def test_llm_calls_are_recorded(tmp_path: Path):
    delays: list[float] = []
    metrics = MetricsStore(tmp_path / "events.jsonl")
    provider = _resilient(FlakyProvider([ProviderError("502")]), delays, metrics=metrics)

    asyncio.run(provider.chat(messages=[]))

    llm = metrics.snapshot()["llm"]
    assert llm["calls"] == 2
    assert llm["errors"] == 1


def test_aclose_is_forwarded():
    inner = FlakyProvider()
    provider = ResilientProvider(inner)
    asyncio.run(provider.aclose())
    assert inner.closed
    assert provider.get_default_model() == "flaky"
