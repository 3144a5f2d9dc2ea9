"""
AuditChain configuration.

Values come from ``AUDITCHAIN_*`` environment variables or a .env file.
Timeouts and retry bounds are range-checked so a misconfiguration can
never turn a best-effort side channel into a blocking one.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache
from typing import Annotated

from pydantic import BeforeValidator, Field, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"


class LogLevel(StrEnum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


def _split_csv(value: str | list[str]) -> list[str]:
    if isinstance(value, str):
        value = value.split(",")
    return [item.strip() for item in value if item.strip()]


class Settings(BaseSettings):
    """Type-checked settings for the audit log, its cache and its stream."""

    model_config = SettingsConfigDict(
        env_prefix="AUDITCHAIN_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ────────────────────────────────────────────────────── #
    app_name: str = Field(default="AuditChain", description="Human-readable application name")
    app_version: str = Field(default="1.0.0", description="Semantic version string")
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment environment (development|testing|production)",
    )
    debug: bool = Field(default=False, description="Debug mode; rejected in production")

    # ── Server ─────────────────────────────────────────────────────────── #
    host: str = Field(default="127.0.0.1", description="Bind host (local-only by default)")
    port: int = Field(default=8000, ge=1024, le=65535, description="Bind port")
    cors_origins: Annotated[list[str], NoDecode, BeforeValidator(_split_csv)] = Field(
        default=["http://localhost:5173"],
        description="Origins allowed to call the API (list or comma-separated)",
    )

    # ── Database ───────────────────────────────────────────────────────── #
    database_url: str = Field(
        default="sqlite+aiosqlite:///./auditchain.db",
        description=(
            "Async SQLAlchemy connection string. "
            "Use sqlite+aiosqlite:// for local or postgresql+asyncpg:// for production."
        ),
    )
    db_pool_size: int = Field(default=5, ge=1, le=50, description="Connection pool size")
    db_max_overflow: int = Field(default=10, ge=0, le=100, description="Pool max overflow")
    db_echo: bool = Field(default=False, description="Log all SQL statements (debug only)")
    run_migrations_on_startup: bool = Field(
        default=True,
        description="Apply Alembic migrations when the application starts",
    )

    # ── Redis ──────────────────────────────────────────────────────────── #
    redis_url: str = Field(
        default="redis://127.0.0.1:6379/0",
        description="Redis URL shared by the cache accelerator and the streaming emitter",
    )
    redis_timeout_seconds: float = Field(
        default=2.0,
        gt=0,
        le=10,
        description="Upper bound on any single Redis round trip",
    )

    # ── Hash chain ─────────────────────────────────────────────────────── #
    chain_append_max_retries: int = Field(
        default=5,
        ge=0,
        le=50,
        description="Conflicting appends retried this many times before ChainContentionError",
    )

    # ── Cache ──────────────────────────────────────────────────────────── #
    cache_enabled: bool = Field(default=True, description="Enable the cache-aside accelerator")
    cache_ttl_recent_seconds: int = Field(
        default=900, ge=1, description="TTL for events younger than the recent window"
    )
    cache_ttl_old_seconds: int = Field(
        default=7200, ge=1, description="TTL for events older than the recent window"
    )
    cache_recent_window_seconds: int = Field(
        default=3600, ge=1, description="Age below which an event counts as recent"
    )
    cache_ttl_timeline_seconds: int = Field(default=600, ge=1, description="Entity timeline TTL")
    cache_ttl_stats_seconds: int = Field(default=300, ge=1, description="Aggregate statistics TTL")
    cache_invalidation_attempts: int = Field(
        default=3, ge=1, le=10, description="Tries for the post-anonymization cache purge"
    )
    cache_invalidation_backoff_seconds: float = Field(
        default=0.05, ge=0, le=5, description="Linear backoff between those tries"
    )

    # ── Streaming ──────────────────────────────────────────────────────── #
    streaming_enabled: bool = Field(default=True, description="Emit committed events to Redis")
    stream_key: str = Field(default="audit:events:stream", description="Redis stream for events")
    dead_letter_key: str = Field(
        default="audit:events:dlq", description="Redis stream for undeliverable events"
    )
    stream_max_retries: int = Field(
        default=3, ge=0, le=10, description="Retry attempts before an event is dead-lettered"
    )
    stream_backoff_base_seconds: float = Field(
        default=0.5, ge=0, le=30, description="Base delay for exponential emit backoff"
    )
    stream_circuit_breaker_threshold: int = Field(
        default=5, ge=1, le=100, description="Consecutive failures before the emit circuit opens"
    )
    stream_circuit_breaker_timeout_seconds: int = Field(
        default=30, ge=1, le=3600, description="Seconds before an open circuit lets a trial call through"
    )
    subscriber_queue_size: int = Field(
        default=1000, ge=1, le=100_000, description="Per-subscriber live event buffer"
    )

    # ── Retention ──────────────────────────────────────────────────────── #
    retention_sweep_interval_seconds: int = Field(
        default=3600, ge=1, description="Interval between background retention sweeps"
    )
    retention_sweep_batch_size: int = Field(
        default=500, ge=1, le=10_000, description="Events expired per committed batch"
    )
    retention_purge_min_age_days: int = Field(
        default=30, ge=1, description="Minimum days past retention before physical deletion"
    )
    system_origin: str = Field(default="auditchain", description="Origin stamped into metadata")
    system_version: str = Field(default="1.0.0", description="Version stamped into metadata")

    # ── Rate Limiting ──────────────────────────────────────────────────── #
    rate_limit_default: str = Field(
        default="600/minute",
        description="Default rate limit string (slowapi format)",
    )

    # ── Logging ────────────────────────────────────────────────────────── #
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Minimum log level")
    log_json: bool = Field(default=True, description="Emit logs as JSON (False for dev console)")

    # ── Validators ─────────────────────────────────────────────────────── #

    @model_validator(mode="after")
    def production_safety_checks(self) -> Settings:
        if self.environment != Environment.PRODUCTION:
            return self
        # SQL echo would write personal data from event payloads to the log
        if self.debug or self.db_echo:
            raise ValueError("debug and db_echo must be off in production")
        if "*" in self.cors_origins:
            raise ValueError("wildcard CORS origin is not allowed in production")
        return self

    @model_validator(mode="after")
    def cache_tiers_are_ordered(self) -> Settings:
        if self.cache_ttl_recent_seconds > self.cache_ttl_old_seconds:
            raise ValueError("cache_ttl_recent_seconds must not exceed cache_ttl_old_seconds")
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings; components also accept an explicit instance."""
    return Settings()
