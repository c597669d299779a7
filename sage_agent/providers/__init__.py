"""LLM provider abstraction module."""

from sage_agent.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from sage_agent.providers.factory import PROVIDER_FACTORIES, build_provider
from sage_agent.providers.openai_compat import OpenAICompatibleProvider
from sage_agent.providers.resilience import CircuitBreaker, CircuitState, ResilientProvider

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "ToolCallRequest",
    "OpenAICompatibleProvider",
    "CircuitBreaker",
    "CircuitState",
    "ResilientProvider",
    "PROVIDER_FACTORIES",
    "build_provider",
]
