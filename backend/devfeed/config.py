"""
Application configuration using Pydantic Settings.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PipelineLimits(BaseSettings):
    """Concurrency and timeout budgets for an aggregation run."""

    model_config = SettingsConfigDict(env_prefix="PIPELINE_")

    # Source fan-out
    source_concurrency: int = Field(default=4, ge=1, le=32)
    source_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Per-source fetch budget (seconds)",
    )

    # AI enrichment
    enrichment_concurrency: int = Field(default=3, ge=1, le=16)
    enrichment_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-item provider call budget (seconds)",
    )

    # Whole run
    run_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Budget for one aggregation run, fetch and enrichment included",
    )

    max_items_per_source: int = Field(default=30, ge=1, le=200)


class CacheQuotaSettings(BaseSettings):
    """TTL cache and AI quota configuration."""

    model_config = SettingsConfigDict(env_prefix="CACHE_")

    ttl_hours: float = Field(default=12.0, gt=0)

    # AI-enabled fresh runs per calendar day
    ai_quota_production: int = Field(default=2, ge=0)
    ai_quota_development: int = Field(default=20, ge=0)


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "devfeed"
    app_version: str = "0.1.0"
    debug: bool = Field(default=False)
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = Field(default="INFO")

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./devfeed.db",
        description="Async database URL (SQLAlchemy format)",
    )

    # Source and profile definitions
    config_dir: Path = Field(
        default=Path("./config"),
        description="Directory holding sources.yaml and profiles/",
    )

    # AI providers (all optional)
    ai_provider: Optional[Literal["anthropic", "openai", "extractive"]] = Field(
        default=None,
        description="Preferred provider, tried before the others",
    )
    anthropic_api_key: str | None = Field(default=None)
    anthropic_model: str = Field(default="claude-3-5-haiku-latest")
    openai_api_key: str | None = Field(default=None)
    openai_model: str = Field(default="gpt-4o-mini")
    extractive_provider_enabled: bool = Field(
        default=False,
        description="Allow the offline extractive summarizer as a provider",
    )

    # Source credentials
    github_token: str | None = Field(default=None)
    user_agent: str = Field(default="devfeed/0.1 (+https://github.com/devfeed)")

    # Sync endpoint / background job
    cron_secret: str | None = Field(default=None)
    auto_enrich_submissions: bool = Field(default=True)
    background_sync_enabled: bool = Field(default=False)
    background_sync_interval_minutes: int = Field(default=60, ge=1)
    sync_batch_size: int = Field(default=10, ge=1, le=100)
    sync_max_batches: int = Field(default=5, ge=1)

    # Engagement tracking
    tracking_queue_size: int = Field(default=1000, ge=1)

    # CORS
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
    )

    # Nested groups
    pipeline: PipelineLimits = Field(default_factory=PipelineLimits)
    cache: CacheQuotaSettings = Field(default_factory=CacheQuotaSettings)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def ai_quota_limit(self) -> int:
        """AI-enabled runs allowed per period for the current environment."""
        if self.environment == "production":
            return self.cache.ai_quota_production
        return self.cache.ai_quota_development

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache.ttl_hours * 3600


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
