"""Configuration management using Pydantic Settings."""

import logging
from functools import lru_cache
from typing import Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase Configuration
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: SecretStr = SecretStr("")

    # LLM providers
    ANTHROPIC_API_KEY: SecretStr = SecretStr("")
    OPENAI_API_KEY: SecretStr = SecretStr("")
    LLM_PROVIDER: Literal["litellm", "anthropic"] = "anthropic"
    LLM_MODEL: str = "claude-sonnet-4-20250514"

    # Embeddings
    EMBEDDING_PROVIDER: Literal["openai", "litellm"] = "openai"
    EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBEDDING_DIMENSIONS: int = 1536
    EMBEDDING_MAX_INPUT_CHARS: int = 8000

    # Stored credential encryption
    ENCRYPTION_KEY: SecretStr = SecretStr("")

    # Application Settings
    APP_ENV: Literal["development", "staging", "production"] = "development"

    # Logging
    LOG_FORMAT: Literal["text", "json"] = "text"
    LOG_LEVEL: str = "INFO"

    # Similarity index / profile storage
    VECTOR_TABLE: str = "example_records"
    VECTOR_MATCH_FUNCTION: str = "match_example_records"
    VECTOR_SEARCH_LIMIT: int = 50
    VECTOR_SCORE_THRESHOLD: float = 0.3
    VECTOR_SCROLL_PAGE_SIZE: int = 500
    PROFILE_TABLE: str = "tone_preferences"

    # Ingestion pipeline
    PIPELINE_BATCH_SIZE: int = 100
    PIPELINE_ERROR_THRESHOLD: float = 0.1
    PIPELINE_RETRY_ATTEMPTS: int = 3
    PIPELINE_RETRY_INITIAL_DELAY: float = 1.0  # seconds
    PIPELINE_RETRY_BACKOFF_FACTOR: float = 2.0

    # Example selection
    EXAMPLE_COUNT: int = 25
    EXAMPLE_MAX_DIRECT_FRACTION: float = 0.6
    EXAMPLE_DIRECT_SEARCH_LIMIT: int = 50
    EXAMPLE_CATEGORY_SEARCH_LIMIT: int = 100

    # Writing pattern analysis
    PATTERN_BATCH_SIZE: int = 50
    PATTERN_EXAMPLE_COUNT: int = 10
    PATTERN_UNIQUE_EXPRESSIONS_COUNT: int = 15
    PATTERN_NEGATIVE_PATTERN_COUNT: int = 10
    PATTERN_ANALYSIS_MAX_TOKENS: int = 4000
    PATTERN_ANALYSIS_TEMPERATURE: float = 0.3
    PATTERN_ANALYSIS_PARSE_RETRIES: int = 2
    PATTERN_CONFIDENCE_MAX: float = 0.99

    @field_validator("SUPABASE_URL")
    @classmethod
    def validate_supabase_url(cls, v: str) -> str:
        """Validate that SUPABASE_URL is a valid URL."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("SUPABASE_URL must start with http:// or https://")
        return v.rstrip("/") if v else v

    @field_validator("PIPELINE_ERROR_THRESHOLD", "EXAMPLE_MAX_DIRECT_FRACTION")
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        """Validate that ratio settings fall within [0, 1]."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("value must be between 0 and 1")
        return v

    @field_validator(
        "PIPELINE_BATCH_SIZE",
        "PIPELINE_RETRY_ATTEMPTS",
        "PATTERN_BATCH_SIZE",
        "EXAMPLE_COUNT",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate that counts are at least one."""
        if v < 1:
            raise ValueError("value must be >= 1")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.APP_ENV == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.APP_ENV == "production"

    @property
    def is_configured(self) -> bool:
        """Check if required settings are configured."""
        return bool(
            self.SUPABASE_URL
            and self.SUPABASE_SERVICE_ROLE_KEY.get_secret_value()
            and self._llm_key()
        )

    def _llm_key(self) -> str:
        if self.LLM_PROVIDER == "anthropic":
            return self.ANTHROPIC_API_KEY.get_secret_value()
        return self.ANTHROPIC_API_KEY.get_secret_value() or self.OPENAI_API_KEY.get_secret_value()

    def validate_startup(self) -> None:
        """Validate that all required secrets are configured.

        Raises:
            ValueError: If any required secret is missing or empty.
        """
        required_secrets = {
            "SUPABASE_URL": self.SUPABASE_URL,
            "SUPABASE_SERVICE_ROLE_KEY": self.SUPABASE_SERVICE_ROLE_KEY.get_secret_value(),
        }
        if self.LLM_PROVIDER == "anthropic":
            required_secrets["ANTHROPIC_API_KEY"] = self.ANTHROPIC_API_KEY.get_secret_value()
        if self.EMBEDDING_PROVIDER == "openai":
            required_secrets["OPENAI_API_KEY"] = self.OPENAI_API_KEY.get_secret_value()
        missing = [name for name, value in required_secrets.items() if not value]
        if missing:
            raise ValueError(f"Required secrets are missing or empty: {', '.join(missing)}")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


settings = get_settings()
