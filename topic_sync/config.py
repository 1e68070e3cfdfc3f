"""
Configuration settings for the topic inference sync service.
Uses Pydantic Settings for type-safe environment variable loading.
"""
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).parent.parent / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # DATABASE CONFIGURATION
    # ==========================================================================
    database_url: str = Field(
        default="sqlite:///data/topic_sync.db",
        description="SQLAlchemy database URL for topic history",
    )

    # ==========================================================================
    # ALLORA CHAIN API CONFIGURATION
    # ==========================================================================
    allora_api_base_url: str = Field(
        default="https://allora-api.testnet.allora.network",
        description="Allora chain REST API base URL",
    )
    emissions_version: str = Field(
        default="v9",
        description="Emissions module version segment used in inference paths",
    )
    allora_rate_limit_rps: float = Field(
        default=10.0,
        ge=1.0,
        le=100.0,
        description="Allora chain API rate limit (requests per second)",
    )

    # ==========================================================================
    # FORGE API CONFIGURATION (competitions + leaderboards)
    # ==========================================================================
    forge_base_url: str = Field(
        default="https://forge.allora.network",
        description="Allora Forge base URL",
    )
    forge_rate_limit_rps: float = Field(
        default=5.0,
        ge=1.0,
        le=50.0,
        description="Forge API rate limit",
    )
    leaderboard_max_pages: int = Field(
        default=0,
        ge=0,
        description="Maximum leaderboard pages per competition (0 = unlimited)",
    )

    # ==========================================================================
    # GENERAL API SETTINGS
    # ==========================================================================
    api_timeout_seconds: int = Field(default=30, ge=5, le=300)
    max_concurrency: int = Field(default=10, ge=1, le=50)

    # ==========================================================================
    # RETRY CONFIGURATION
    # ==========================================================================
    retry_max_attempts: int = Field(default=3, ge=1, le=20)
    backoff_base_seconds: float = Field(default=1.0, ge=0.0, le=10.0)
    backoff_max_seconds: float = Field(default=30.0, ge=0.0, le=300.0)
    backoff_jitter: float = Field(default=0.5, ge=0.0, le=5.0)

    # ==========================================================================
    # SCHEDULING CONFIGURATION
    # ==========================================================================

    # Topic refresh pass - fetches the latest inference for every active topic
    topic_refresh_interval_seconds: int = Field(
        default=60, ge=1, le=86400, description="Seconds between topic refresh passes"
    )

    # Competition monitor - rediscovers the active topic set from Forge
    competition_monitor_enabled: bool = Field(default=True)
    competition_refresh_interval_minutes: int = Field(
        default=60, ge=1, le=1440, description="Minutes between competition listing refreshes"
    )
    data_retention_days: int = Field(
        default=30, ge=1, le=3650, description="Days of topic history kept in the database"
    )

    # Topics tracked before the first competition listing arrives
    default_active_topics: Annotated[list[str], NoDecode] = Field(default_factory=list)

    # ==========================================================================
    # SYNC BEHAVIOUR
    # ==========================================================================
    leaderboard_enrichment_enabled: bool = Field(default=True)

    # Serialize scheduled and forced refreshes of the same topic
    serialize_topic_refresh: bool = Field(default=False)

    # ==========================================================================
    # SERVER
    # ==========================================================================
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8080, ge=1, le=65535)

    # ==========================================================================
    # LOGGING
    # ==========================================================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    structured_logging: bool = Field(default=True)
    debug: bool = Field(default=False)

    @field_validator("default_active_topics", mode="before")
    @classmethod
    def split_topics(cls, v):
        """Accept a comma separated string for the default topic list."""
        if isinstance(v, str):
            return [t.strip() for t in v.split(",") if t.strip()]
        return v

    # ==========================================================================
    # DERIVED PROPERTIES
    # ==========================================================================

    @property
    def inference_path_template(self) -> str:
        """Path of the latest network inference endpoint for a topic."""
        return f"/emissions/{self.emissions_version}/latest_network_inferences/{{topic_id}}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
