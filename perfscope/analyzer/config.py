"""
Configuration for the analytics service
"""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class AnalyzerConfig(BaseSettings):
    """Configuration for the analytics service"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    data_source: str = Field(
        default="postgres",
        description="Where sessions and metrics are read from (postgres, rest)"
    )
    data_store_url: str = Field(
        default="http://localhost:54321/rest/v1",
        description="Base URL of the hosted REST data store"
    )
    data_store_key: Optional[str] = Field(
        default=None,
        validation_alias="DATA_STORE_KEY",
        description="API key for the hosted data store"
    )
    request_timeout: float = Field(
        default=30.0,
        description="HTTP request timeout in seconds"
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    session_limit: int = Field(
        default=500,
        description="Maximum sessions fetched per analysis"
    )
    metric_limit: int = Field(
        default=5000,
        description="Maximum metric rows fetched per analysis"
    )
    analysis_window_days: int = Field(
        default=30,
        description="How far back an analysis reads data"
    )

    journey_window_hours: float = Field(
        default=1.0,
        description="Gap between sessions that starts a new journey"
    )
    completed_min_routes: int = Field(
        default=3,
        description="Minimum route visits for a completed journey"
    )
    completed_min_duration_ms: int = Field(
        default=30_000,
        description="Minimum journey duration for a completed journey"
    )
    abandoned_max_routes: int = Field(
        default=1,
        description="Journeys with at most this many visits are abandoned"
    )
    abandoned_max_duration_ms: int = Field(
        default=10_000,
        description="Journeys shorter than this are abandoned"
    )

    live_bucket_ms: int = Field(
        default=1000,
        description="Bucket width of the live trend stream"
    )
    live_grace_seconds: float = Field(
        default=2.0,
        description="Idle time before a live bucket is closed"
    )

    early_warning_confidence: float = Field(
        default=0.6,
        description="Minimum confidence of an early warning"
    )

    kv_backend: str = Field(
        default="memory",
        description="Key-value store backend (memory, redis)"
    )
    login_max_attempts: int = Field(
        default=5,
        description="Failed logins before the account is locked"
    )
    login_window_seconds: int = Field(
        default=15 * 60,
        description="Window for counting failed logins and lock duration"
    )
    realtime_session_ttl_seconds: int = Field(
        default=5 * 60,
        description="Lifetime of a realtime session entry without heartbeat"
    )


def load_config() -> AnalyzerConfig:
    """Load configuration from environment variables and .env file"""
    return AnalyzerConfig()
