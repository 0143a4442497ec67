from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_placeholder(value: str) -> bool:
    lowered = value.strip().casefold()
    return lowered.startswith("your_") and lowered.endswith("_here")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    db_path: Path = Field(
        default=Path("data/protest-tracker.db"), validation_alias="DB_PATH"
    )
    user_agent: str = Field(
        default="protest-tracker/0.1", validation_alias="USER_AGENT"
    )
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    default_event_duration_hours: float = Field(
        default=4, gt=0, validation_alias="DEFAULT_EVENT_DURATION_HOURS"
    )
    lifecycle_tick_seconds: float = Field(
        default=60, gt=0, validation_alias="LIFECYCLE_TICK_SECONDS"
    )

    geocoding_cache_size_limit: int = Field(
        default=1000, ge=1, validation_alias="GEOCODING_CACHE_SIZE_LIMIT"
    )
    geocoding_rate_limit_per_second: int = Field(
        default=10, ge=1, validation_alias="GEOCODING_RATE_LIMIT_PER_SECOND"
    )
    geocoding_timeout_seconds: float = Field(
        default=30, gt=0, validation_alias="GEOCODING_TIMEOUT_SECONDS"
    )
    google_maps_api_key: str | None = Field(
        default=None, validation_alias="GOOGLE_MAPS_API_KEY"
    )

    nyc_permits_enabled: bool = Field(default=True, validation_alias="NYC_PERMITS_ENABLED")

    news_api_key: str | None = Field(default=None, validation_alias="NEWS_API_KEY")
    news_api_sources: str = Field(
        default="bbc-news,cnn,the-new-york-times", validation_alias="NEWS_API_SOURCES"
    )
    news_api_max_articles: int = Field(
        default=50, ge=1, le=100, validation_alias="NEWS_API_MAX_ARTICLES"
    )

    twitter_bearer_token: str | None = Field(
        default=None, validation_alias="TWITTER_BEARER_TOKEN"
    )
    twitter_max_results_per_request: int = Field(
        default=100, ge=10, le=100, validation_alias="TWITTER_MAX_RESULTS_PER_REQUEST"
    )
    twitter_search_days_back: int = Field(
        default=7, ge=1, le=7, validation_alias="TWITTER_SEARCH_DAYS_BACK"
    )

    feeds_dir: Path = Field(default=Path("feeds"), validation_alias="FEEDS_DIR")

    source_run_timeout_seconds: float = Field(
        default=300, gt=0, validation_alias="SOURCE_RUN_TIMEOUT_SECONDS"
    )
    source_run_concurrency: int = Field(
        default=1, ge=1, validation_alias="SOURCE_RUN_CONCURRENCY"
    )
    source_run_interval_seconds: float = Field(
        default=0, ge=0, validation_alias="SOURCE_RUN_INTERVAL_SECONDS"
    )

    @field_validator(
        "google_maps_api_key", "news_api_key", "twitter_bearer_token", mode="after"
    )
    @classmethod
    def _drop_placeholder_credentials(cls, value: str | None) -> str | None:
        if value is None or not value.strip() or _is_placeholder(value):
            return None
        return value.strip()
