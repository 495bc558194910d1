"""Settings via pydantic-settings with TALON_ env prefix.

Provider credentials live under ``providers`` and can be supplied either
as a JSON blob (TALON_PROVIDERS='{"deepseek": {"api_key": "..."}}') or
with the nested delimiter (TALON_PROVIDERS__DEEPSEEK__API_KEY=...).
"""

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Lower = cheaper, tried first by the fallback executor
DEFAULT_PRIORITIES: dict[str, int] = {
    "opencode": 0,
    "deepseek": 1,
    "openrouter": 2,
    "openai": 3,
    "anthropic": 4,
}
DEFAULT_PRIORITY = 5

# Higher = better answers for complex tasks
DEFAULT_QUALITY: dict[str, int] = {
    "anthropic": 5,
    "openai": 4,
    "openrouter": 3,
    "deepseek": 2,
    "opencode": 1,
}

# Providers that run without an API key
KEYLESS_PROVIDERS = frozenset({"opencode", "ollama"})


class ProviderSettings(BaseModel):
    """Configuration for one LLM provider."""

    api_key: str = ""
    base_url: str | None = None
    models: list[str] = Field(default_factory=list)
    priority: int | None = None
    quality: int | None = None
    requires_key: bool | None = None

    def has_credential(self, provider_id: str) -> bool:
        """True if the provider can be called (key present or not needed)."""
        requires_key = self.requires_key
        if requires_key is None:
            requires_key = provider_id not in KEYLESS_PROVIDERS
        if not requires_key:
            return True
        return bool(self.api_key) and not self.api_key.startswith("${")

    def resolved_priority(self, provider_id: str) -> int:
        if self.priority is not None:
            return self.priority
        return DEFAULT_PRIORITIES.get(provider_id, DEFAULT_PRIORITY)

    def resolved_quality(self, provider_id: str) -> int:
        if self.quality is not None:
            return self.quality
        return DEFAULT_QUALITY.get(provider_id, 0)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TALON_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    agent_id: str = "talon-default"
    agent_name: str = "Talon"
    system_prompt: str = ""
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000

    # LLM
    model: str = "deepseek/deepseek-chat"  # provider/model
    providers: dict[str, ProviderSettings] = Field(default_factory=dict)
    max_tokens: int = 4096
    temperature: float = 0.7
    max_iterations: int = Field(10, ge=1, le=50)  # tool call cycles per turn
    llm_timeout: float = 90.0  # seconds per provider call
    api_timeout_connect: int = 10
    api_timeout_read: int = 120

    # Fallback
    fallback_max_retries: int = Field(3, ge=1)
    fallback_retry_delay: float = 1.0
    rate_limit_cooldown: float = 30.0

    # Context window guard
    context_default_window: int = 128_000
    context_windows: dict[str, int] = Field(default_factory=dict)
    context_warn_threshold: int = 32_000  # remaining tokens
    context_hard_floor: int = 16_000  # remaining tokens
    max_history_messages: int = Field(40, ge=1)

    # Memory compression
    compression_enabled: bool = True
    compression_message_threshold: int = 100
    compression_token_ratio: float = Field(0.8, gt=0.0, le=1.0)
    compression_keep_recent: int = 10
    max_summary_tokens: int = 800
    compression_max_tokens: int = 1000
    compression_temperature: float = 0.3
    compression_message_max_tokens: int = 200

    # Tools
    tool_output_max_chars: int = 8000

    # Sessions
    max_sessions: int = 100

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "Settings":
        if self.context_hard_floor > self.context_warn_threshold:
            raise ValueError(
                f"context_hard_floor ({self.context_hard_floor}) must be <= "
                f"context_warn_threshold ({self.context_warn_threshold})"
            )
        if self.compression_keep_recent >= self.compression_message_threshold:
            raise ValueError(
                "compression_keep_recent must be smaller than "
                "compression_message_threshold"
            )
        return self

    @property
    def default_provider_id(self) -> str:
        return self.model.split("/", 1)[0]

    @property
    def default_model_name(self) -> str:
        """Model part of ``model``; the whole string when it has no provider prefix."""
        parts = self.model.split("/", 1)
        return parts[1] if len(parts) == 2 and parts[1] else self.model
