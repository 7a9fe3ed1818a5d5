"""Configuration management for ERIS.

Uses pydantic-settings to load configuration from environment variables.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_env_file() -> Path | None:
    """Search for .env file in common locations."""
    cwd = Path.cwd()
    check_dir = cwd
    for _ in range(5):
        if (check_dir / ".env").exists():
            return check_dir / ".env"
        parent = check_dir.parent
        if parent == check_dir:
            break
        check_dir = parent

    # backend/src/eris/config.py -> project root
    project_root = Path(__file__).resolve().parent.parent.parent.parent
    if (project_root / ".env").exists():
        return project_root / ".env"

    return None


_env_file = _find_env_file()

ScorerName = Literal["token_sort_ratio", "token_set_ratio", "ratio", "wratio", "jaro_winkler"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=str(_env_file) if _env_file else ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================
    # Environment
    # =========================
    environment: Literal["development", "staging", "production", "test"] = "development"

    # =========================
    # PostgreSQL
    # =========================
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "eris"
    postgres_user: str = "eris"
    postgres_password: str = Field(default="", repr=False)
    database_url_override: str | None = Field(
        default=None,
        repr=False,
        description="Full SQLAlchemy URL; takes precedence over the postgres_* fields",
    )
    db_echo: bool = False
    db_pool_size: int = 10
    db_max_overflow: int = 20

    @computed_field
    @property
    def database_url(self) -> str:
        """SQLAlchemy async database URL."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @computed_field
    @property
    def database_url_sync(self) -> str:
        """Synchronous database URL for Alembic."""
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # =========================
    # Identity Matching
    # =========================
    match_medium_threshold: float = Field(default=0.65, ge=0.0, le=1.0)
    match_high_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    match_scorer: ScorerName = "token_sort_ratio"
    postcode_boost: float = Field(default=0.05, ge=0.0, le=0.5)

    # =========================
    # Companies House
    # =========================
    companies_house_api_key: str = Field(default="", repr=False)
    companies_house_enabled: bool = False
    companies_house_base_url: str = "https://api.company-information.service.gov.uk"
    companies_house_max_candidates: int = 3
    companies_house_timeout_ms: int = 10_000

    # =========================
    # Source Adapter Defaults
    # =========================
    adapter_page_size: int = 100
    adapter_rate_limit_delay_ms: int = 200
    adapter_timeout_ms: int = 30_000
    adapter_retry_attempts: int = 3
    adapter_retry_delay_ms: int = 1_000
    adapter_user_agent: str = "ERIS/0.1 (enforcement record ingestion)"

    # =========================
    # Progress Events
    # =========================
    event_queue_size: int = 1_000

    # =========================
    # Logging
    # =========================
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"

    @model_validator(mode="after")
    def _check_thresholds(self) -> "Settings":
        if self.match_medium_threshold >= self.match_high_threshold:
            raise ValueError(
                "match_medium_threshold must be lower than match_high_threshold "
                f"({self.match_medium_threshold} >= {self.match_high_threshold})"
            )
        return self

    @property
    def companies_house_available(self) -> bool:
        """Whether the Companies House index can be queried."""
        return self.companies_house_enabled and bool(self.companies_house_api_key)

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
