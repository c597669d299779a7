"""Circuit breaker and retrying provider wrapper."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from time import perf_counter
from typing import TYPE_CHECKING, Any, TypeVar

from loguru import logger

from sage_agent.errors import CircuitOpenError, ProviderError, ProviderValidationError
from sage_agent.providers.base import LLMProvider, LLMResponse

if TYPE_CHECKING:
    from sage_agent.observability.metrics import MetricsStore

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    CLOSED counts failures and opens at ``failure_threshold``. OPEN rejects
    with ``CircuitOpenError`` until ``reset_timeout`` seconds pass, then
    becomes HALF_OPEN. HALF_OPEN admits a single probe: success closes the
    breaker, failure re-opens it and restarts the timeout. Concurrent calls
    during the probe are rejected.

    Every failed call counts, request-validation errors included.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        *,
        name: str = "provider",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = max(1, failure_threshold)
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._clock() - self._opened_at >= self.reset_timeout:
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def _transition(self, new_state: CircuitState) -> None:
        if new_state is self._state:
            return
        logger.warning(f"Circuit breaker '{self.name}': {self._state.value} -> {new_state.value}")
        self._state = new_state

    def _admit(self) -> bool:
        """Return True when the admitted call is the half-open probe."""
        state = self.state
        if state is CircuitState.OPEN:
            raise CircuitOpenError()
        if state is CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitOpenError("Circuit breaker is HALF_OPEN; probe already in flight")
            self._probe_in_flight = True
            return True
        return False

    def record_success(self) -> None:
        self._failures = 0
        self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self._failures += 1
        if self._state is CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            self._opened_at = self._clock()
            self._transition(CircuitState.OPEN)

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` under breaker protection."""
        is_probe = self._admit()
        try:
            result = await fn()
        except Exception:
            self.record_failure()
            raise
        else:
            self.record_success()
            return result
        finally:
            if is_probe:
                self._probe_in_flight = False


class ResilientProvider(LLMProvider):
    """
    Provider wrapper adding bounded retries inside a circuit breaker.

    Transient ``ProviderError``s are retried with exponential backoff
    (``backoff_base * 2**retry``). ``ProviderValidationError`` aborts at once.
    The breaker sees one outcome per logical call, after retries.
    """

    def __init__(
        self,
        inner: LLMProvider,
        *,
        breaker: CircuitBreaker | None = None,
        max_retries: int = 2,
        backoff_base: float = 0.5,
        metrics: MetricsStore | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        super().__init__(inner.api_key, inner.api_base)
        self.inner = inner
        self.breaker = breaker or CircuitBreaker()
        self.max_attempts = max(0, max_retries) + 1
        self.backoff_base = backoff_base
        self.metrics = metrics
        self._sleep = sleep

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        **kwargs: Any,
    ) -> LLMResponse:
        async def _attempts() -> LLMResponse:
            return await self._chat_with_retry(
                messages=messages,
                tools=tools,
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                **kwargs,
            )

        return await self.breaker.call(_attempts)

    async def _chat_with_retry(self, *, model: str | None, **kwargs: Any) -> LLMResponse:
        model_name = model or self.inner.get_default_model()
        last_error: ProviderError | None = None
        for attempt in range(1, self.max_attempts + 1):
            started = perf_counter()
            try:
                response = await self.inner.chat(model=model, **kwargs)
            except ProviderValidationError as e:
                self._record(model_name, started, error=str(e))
                logger.error(f"Provider rejected request for {model_name}; not retrying: {e}")
                raise
            except ProviderError as e:
                self._record(model_name, started, error=str(e))
                last_error = e
                if attempt < self.max_attempts:
                    delay = self.backoff_base * (2 ** attempt)
                    logger.warning(
                        f"LLM call failed on {model_name} (attempt {attempt}/{self.max_attempts}); "
                        f"retrying in {delay:.2f}s: {e}"
                    )
                    await self._sleep(delay)
                continue
            self._record(model_name, started, usage=response.usage)
            return response

        logger.error(f"LLM call failed on {model_name} after {self.max_attempts} attempts")
        if last_error is not None:
            raise last_error
        raise ProviderError("LLM call failed without response")

    def _record(
        self,
        model: str,
        started: float,
        *,
        usage: dict[str, int] | None = None,
        error: str = "",
    ) -> None:
        if self.metrics is None:
            return
        usage = usage or {}
        self.metrics.record_llm_call(
            model=model,
            success=not error,
            latency_ms=(perf_counter() - started) * 1000.0,
            prompt_tokens=int(usage.get("prompt_tokens", 0) or 0),
            completion_tokens=int(usage.get("completion_tokens", 0) or 0),
            error=error,
        )

    def get_default_model(self) -> str:
        return self.inner.get_default_model()

    async def aclose(self) -> None:
        await self.inner.aclose()
