from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from llm_failover.gateway.types import (
    DEFAULT_ENDPOINTS,
    DEFAULT_MODELS,
    ProviderConfig,
    ProviderName,
    RequalifyPolicy,
)


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Mistral
    mistral_api_key: str = ""
    mistral_endpoint: str = DEFAULT_ENDPOINTS[ProviderName.MISTRAL]
    mistral_model: str = DEFAULT_MODELS[ProviderName.MISTRAL][0]

    # Cerebras (comma-separated, tried in order)
    cerebras_api_key: str = ""
    cerebras_endpoint: str = DEFAULT_ENDPOINTS[ProviderName.CEREBRAS]
    cerebras_models: str = ",".join(DEFAULT_MODELS[ProviderName.CEREBRAS])

    # OpenRouter
    openrouter_api_key: str = ""
    openrouter_endpoint: str = DEFAULT_ENDPOINTS[ProviderName.OPENROUTER]
    openrouter_model: str = DEFAULT_MODELS[ProviderName.OPENROUTER][0]
    openrouter_app_url: str = ""  # sent as HTTP-Referer
    openrouter_app_name: str = ""  # sent as X-Title

    # Failover
    ai_provider_priority: str = "mistral,cerebras,openrouter"
    ai_high_traffic_threshold_ms: int = 120_000  # error burst length that marks high traffic
    ai_cooldown_ms: int = 300_000  # quiet time before a benched provider is retried
    ai_requalify_policy: RequalifyPolicy = RequalifyPolicy.FULL
    ai_request_timeout_seconds: float = 60.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    @field_validator("ai_provider_priority")
    @classmethod
    def _check_priority(cls, value: str) -> str:
        names = _split_csv(value)
        unknown = [n for n in names if n not in {p.value for p in ProviderName}]
        if unknown:
            raise ValueError(f"Unknown provider(s) in AI_PROVIDER_PRIORITY: {', '.join(unknown)}")
        return value

    @property
    def priority(self) -> list[ProviderName]:
        return [ProviderName(n) for n in _split_csv(self.ai_provider_priority)]

    def provider_configs(self) -> dict[ProviderName, ProviderConfig]:
        """Configs for every provider that has an API key."""
        candidates = {
            ProviderName.MISTRAL: ProviderConfig(
                provider=ProviderName.MISTRAL,
                api_key=self.mistral_api_key,
                endpoint=self.mistral_endpoint,
                models=[self.mistral_model],
            ),
            ProviderName.CEREBRAS: ProviderConfig(
                provider=ProviderName.CEREBRAS,
                api_key=self.cerebras_api_key,
                endpoint=self.cerebras_endpoint,
                models=_split_csv(self.cerebras_models),
            ),
            ProviderName.OPENROUTER: ProviderConfig(
                provider=ProviderName.OPENROUTER,
                api_key=self.openrouter_api_key,
                endpoint=self.openrouter_endpoint,
                models=[self.openrouter_model],
            ),
        }
        return {name: cfg for name, cfg in candidates.items() if cfg.api_key}

    def has_any_provider(self) -> bool:
        return bool(self.provider_configs())

    def validate_providers(self) -> None:
        """Raise if no provider can be used."""
        if not self.has_any_provider():
            raise ValueError(
                "At least one AI provider API key must be configured: "
                "MISTRAL_API_KEY, CEREBRAS_API_KEY, or OPENROUTER_API_KEY"
            )


settings = Settings()
