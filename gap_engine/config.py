"""Engine configuration using pydantic-settings."""

from functools import lru_cache
from typing import ClassVar, Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "KeywordGapEngine"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "development"

    # Session state (Redis)
    redis_url: str = "redis://localhost:6379/0"
    cache_ttl_seconds: int = 86400  # 24 hours
    session_key_prefix: str = "keyword_gaps"

    # LLM Configuration
    default_llm_model: str = "openai:gpt-4o-mini"
    llm_max_retries: int = 3

    # Per-tier model overrides
    dev_model_standard: str | None = None
    dev_model_fast: str | None = None
    prod_model_standard: str | None = None
    prod_model_fast: str | None = None

    _MODEL_DEFAULTS: ClassVar[dict[str, dict[str, str]]] = {
        "development": {
            "standard": "openai:gpt-4o-mini",
            "fast": "openai:gpt-4o-mini",
        },
        "staging": {
            "standard": "openai:gpt-4o-mini",
            "fast": "openai:gpt-4o-mini",
        },
        "production": {
            "standard": "openai:gpt-4o",
            "fast": "openai:gpt-4o-mini",
        },
    }

    def get_model(self, tier: str = "standard") -> str:
        """Resolve the model string for a given tier based on environment.

        Priority: env var override > built-in defaults > default_llm_model fallback.
        """
        env_prefix = "dev" if self.environment in ("development", "staging") else "prod"
        override = getattr(self, f"{env_prefix}_model_{tier}", None)
        if isinstance(override, str) and override:
            return override

        env_defaults = self._MODEL_DEFAULTS.get(self.environment, {})
        resolved = env_defaults.get(tier, self.default_llm_model)
        if isinstance(resolved, str):
            return resolved
        return self.default_llm_model

    # DataForSEO
    dataforseo_login: str | None = None
    dataforseo_password: str | None = None
    dataforseo_timeout_seconds: float = 60.0

    # Gap resolution
    gap_direct_max_position: int = 30
    gap_inference_sample_size: int = 50
    gap_outbound_timeout_seconds: float = 60.0
    gap_default_target_count: int = 100
    gap_top_opportunity_count: int = 5
    synthetic_records_per_competitor: int = 12

    # Session view defaults
    selection_limit: int = 10
    default_page_size: int = 15
    default_location_code: int = 2840

    @field_validator("gap_outbound_timeout_seconds", "dataforseo_timeout_seconds")
    @classmethod
    def _bound_timeout(cls, value: float) -> float:
        """Clamp outbound timeouts to (0, 120] seconds."""
        if value <= 0:
            raise ValueError("Outbound timeouts must be positive.")
        return min(float(value), 120.0)

    @field_validator("selection_limit", "default_page_size", "synthetic_records_per_competitor")
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Value must be at least 1.")
        return value

    def session_key(self, session_id: str, part: str) -> str:
        """Build the namespaced session-store key for one piece of session state."""
        return f"{self.session_key_prefix}:{session_id}:{part}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()

    return settings


settings = get_settings()
