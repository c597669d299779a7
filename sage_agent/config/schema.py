"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from sage_agent.utils.helpers import get_data_path


def _default_trace_dir() -> str:
    return str(get_data_path() / "traces")


def _default_metrics_path() -> str:
    return str(get_data_path() / "metrics" / "events.jsonl")


class ProviderConfig(BaseModel):
    """Model provider connection settings."""
    name: str = "openai_compatible"  # openai_compatible | litellm
    base_url: str = "https://gen.pollinations.ai/v1"
    api_key: str = ""
    model: str = "gemini"
    timeout_seconds: float = 20.0
    max_retries: int = 2
    backoff_base_seconds: float = 0.5
    extra_headers: dict[str, str] = Field(default_factory=dict)


class BreakerConfig(BaseModel):
    """Circuit breaker thresholds."""
    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0


class ModelLimitsOverride(BaseModel):
    """Per-model overrides of the budget defaults."""
    max_context_tokens: int | None = None
    max_output_tokens: int | None = None
    safety_margin_tokens: int | None = None
    vision_enabled: bool | None = None
    chars_per_token: float | None = None
    code_chars_per_token: float | None = None
    image_tokens: int | None = None


def _builtin_model_overrides() -> dict[str, ModelLimitsOverride]:
    return {
        "gemini": ModelLimitsOverride(vision_enabled=True),
        "deepseek": ModelLimitsOverride(vision_enabled=False),
        "openai-large": ModelLimitsOverride(vision_enabled=False),
        "qwen-coder": ModelLimitsOverride(vision_enabled=False),
    }


class BudgetConfig(BaseModel):
    """Context window budget defaults."""
    max_input_tokens: int = 8000
    reserved_output_tokens: int = 1200
    safety_margin_tokens: int = 200
    chars_per_token: float = 4.0
    image_tokens: int = 1200
    message_overhead_tokens: int = 4
    truncation_notice: bool = True
    model_overrides: dict[str, ModelLimitsOverride] = Field(default_factory=_builtin_model_overrides)


class ContextConfig(BaseModel):
    """Per-block token ceilings and transcript limits."""
    system_prompt_max_tokens: int = 1500
    transcript_max_tokens: int = 1800
    rolling_summary_max_tokens: int = 1200
    profile_summary_max_tokens: int = 1200
    memory_max_tokens: int = 1500
    reply_context_max_tokens: int = 800
    user_max_tokens: int = 2500
    expert_packets_max_tokens: int = 1200
    relationship_hints_max_tokens: int = 600
    transcript_max_messages: int = 40
    transcript_max_chars: int = 12000
    relationship_hints_max_edges: int = 10
    history_messages: int = 7


class ToolLoopConfig(BaseModel):
    """Tool-call loop bounds."""
    max_rounds: int = 2
    max_calls_per_round: int = 3
    tool_timeout_seconds: float = 10.0
    max_args_bytes: int = 10 * 1024


class RouterConfig(BaseModel):
    """Intent router selection."""
    mode: str = "deterministic"  # deterministic | llm
    model: str = "gemini-fast"
    temperature: float = 0.0
    timeout_seconds: float = 45.0


class GovernorConfig(BaseModel):
    """Output governor policy."""
    max_chars: int = 2000
    rewrite_enabled: bool = True


class ImageConfig(BaseModel):
    """Image generation endpoint."""
    base_url: str = "https://gen.pollinations.ai/image"
    model: str = "klein-large"
    refiner_model: str = "gemini"
    api_key: str = ""
    timeout_seconds: float = 60.0


class TraceConfig(BaseModel):
    """Turn trace persistence."""
    enabled: bool = True
    directory: str = Field(default_factory=_default_trace_dir)


class MetricsConfig(BaseModel):
    """JSONL metrics sink."""
    enabled: bool = True
    events_path: str = Field(default_factory=_default_metrics_path)


class Config(BaseSettings):
    """Root configuration for Sage Agent."""
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    breaker: BreakerConfig = Field(default_factory=BreakerConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    tool_loop: ToolLoopConfig = Field(default_factory=ToolLoopConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    governor: GovernorConfig = Field(default_factory=GovernorConfig)
    image: ImageConfig = Field(default_factory=ImageConfig)
    trace: TraceConfig = Field(default_factory=TraceConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    @property
    def trace_path(self) -> Path:
        """Get expanded trace directory."""
        return Path(self.trace.directory).expanduser()

    @property
    def metrics_path(self) -> Path:
        """Get expanded metrics events path."""
        return Path(self.metrics.events_path).expanduser()

    model_config = SettingsConfigDict(
        env_prefix="SAGE_",
        env_nested_delimiter="__",
    )
