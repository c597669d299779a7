"""Provider factory keyed by the configured provider name."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from loguru import logger

from sage_agent.config.schema import Config
from sage_agent.errors import ConfigError
from sage_agent.providers.base import LLMProvider
from sage_agent.providers.openai_compat import OpenAICompatibleProvider
from sage_agent.providers.resilience import CircuitBreaker, ResilientProvider

if TYPE_CHECKING:
    from sage_agent.observability.metrics import MetricsStore

ProviderFactory = Callable[[Config], LLMProvider]


def _build_openai_compatible(config: Config) -> LLMProvider:
    provider_cfg = config.provider
    return OpenAICompatibleProvider(
        api_key=provider_cfg.api_key or None,
        api_base=provider_cfg.base_url,
        default_model=provider_cfg.model,
        timeout=provider_cfg.timeout_seconds,
        extra_headers=provider_cfg.extra_headers,
    )


def _build_litellm(config: Config) -> LLMProvider:
    from sage_agent.providers.litellm_provider import LiteLLMProvider

    provider_cfg = config.provider
    return LiteLLMProvider(
        api_key=provider_cfg.api_key or None,
        api_base=provider_cfg.base_url or None,
        default_model=provider_cfg.model,
        extra_headers=provider_cfg.extra_headers,
        timeout=provider_cfg.timeout_seconds,
    )


PROVIDER_FACTORIES: dict[str, ProviderFactory] = {
    "openai_compatible": _build_openai_compatible,
    "pollinations": _build_openai_compatible,
    "litellm": _build_litellm,
}


def build_provider(
    config: Config,
    *,
    provider_factories: dict[str, ProviderFactory] | None = None,
    metrics: MetricsStore | None = None,
) -> ResilientProvider:
    """Build the runtime provider wrapped with retries and a circuit breaker."""
    factories = {**PROVIDER_FACTORIES, **(provider_factories or {})}
    name = (config.provider.name or "openai_compatible").strip().lower()
    builder = factories.get(name)
    if builder is None:
        raise ConfigError(
            f"Unknown provider '{config.provider.name}'. Known providers: {', '.join(sorted(factories))}"
        )
    logger.debug(f"Building provider '{name}' with model {config.provider.model}")
    breaker = CircuitBreaker(
        failure_threshold=config.breaker.failure_threshold,
        reset_timeout=config.breaker.reset_timeout_seconds,
        name=name,
    )
    return ResilientProvider(
        builder(config),
        breaker=breaker,
        max_retries=config.provider.max_retries,
        backoff_base=config.provider.backoff_base_seconds,
        metrics=metrics,
    )
