"""
Configuration Module for the Skyreader auth service

This module defines the configuration system for the service, using Pydantic for
settings validation and dependency injection through AppKeys.

The Settings class serves as the central configuration point, loaded from environment
variables with defaults suitable for development environments. All application
components access settings and shared resources through typed AppKeys.

Key configuration areas include:
- Service identification and networking
- Database and cache connections
- Encryption of DPoP keys at rest
- Session refresh policy (thresholds, backoff, lockout)
- Monitoring and observability
"""

import asyncio
import logging
from typing import Final, Optional

from aiohttp import ClientSession, web
from cryptography.fernet import Fernet
from pydantic import (
    AliasChoices,
    Field,
    field_validator,
    PostgresDsn,
    RedisDsn,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from redis import asyncio as redis
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    async_sessionmaker,
    AsyncSession,
)

from social.skyreader.auth.app.metrics import MetricsClient
from social.skyreader.auth.app.ratelimit import RateLimiter
from social.skyreader.auth.model.health import HealthGauge
from social.skyreader.auth.session.store import SessionStore


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for the auth service.

    Environment variables are automatically mapped to settings fields, with aliases
    where a platform convention exists. For example, the database connection string
    can be set with either PG_DSN or DATABASE_URL.
    """

    model_config = SettingsConfigDict(arbitrary_types_allowed=True)

    # Environment and debugging settings
    debug: bool = False
    """
    Enable debug mode for verbose logging and development features.
    Set with DEBUG=true environment variable.
    """

    # Network and service identification settings
    http_port: int = Field(alias="port", default=8787)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    public_base_url: str = "http://127.0.0.1:8787"
    """
    Externally reachable base URL of this service. The OAuth client_id and
    redirect_uri are derived from it, so authorization servers must be able
    to fetch `{public_base_url}/.well-known/client-metadata`.
    Set with PUBLIC_BASE_URL environment variable.
    """

    frontend_url: str = "http://127.0.0.1:5173"
    """
    Frontend origin the callback redirects to after login.
    Set with FRONTEND_URL environment variable.
    """

    client_name: str = "Skyreader"
    """Human readable client name published in the client metadata document"""

    oauth_scope: str = "atproto transition:generic"
    """
    Scope requested from the authorization server.
    Set with OAUTH_SCOPE environment variable.
    """

    plc_hostname: str = "plc.directory"
    """
    Hostname for the PLC directory service for did:plc resolution.
    Set with PLC_HOSTNAME environment variable.
    """

    default_handle_suffix: str = "bsky.social"
    """
    Domain appended to handles typed without a dot, e.g. `alice` becomes
    `alice.bsky.social`.
    Set with DEFAULT_HANDLE_SUFFIX environment variable.
    """

    http_timeout: float = 10.0
    """
    Total timeout in seconds for every outbound HTTP request.
    Set with HTTP_TIMEOUT environment variable.
    """

    # Monitoring and error reporting
    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    # Database and cache connections
    redis_dsn: RedisDsn = Field(
        "redis://valkey:6379/1?decode_responses=True",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """
    Redis connection string for pending authorizations, sessions and locks.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    pg_dsn: PostgresDsn = Field(
        "postgresql+asyncpg://postgres:password@db/skyreader",
        validation_alias=AliasChoices("pg_dsn", "database_url"),
    )  # type: ignore
    """
    PostgreSQL connection string for user records.
    Set with PG_DSN or DATABASE_URL environment variables.
    """

    # Security and cryptography settings
    encryption_key: Fernet = Fernet(Fernet.generate_key())
    """
    Fernet key used to encrypt session DPoP private keys at rest in the cache.
    Can be set to a Fernet object or base64-encoded key string. When unset a
    random key is generated, which invalidates all sessions on restart.
    Set with ENCRYPTION_KEY environment variable.
    """

    # Login and session lifecycle
    pending_authorization_ttl: int = 600
    """
    Seconds an unfinished login attempt stays valid.
    Set with PENDING_AUTHORIZATION_TTL environment variable.
    """

    session_ttl: int = 30 * 24 * 3600
    """
    Cache TTL for a session record, renewed on every write.
    Set with SESSION_TTL environment variable.
    """

    refresh_grace_period: int = 30 * 24 * 3600
    """
    How long after access token expiry a session may still be refreshed before
    the sweep removes it.
    Set with REFRESH_GRACE_PERIOD environment variable.
    """

    refresh_threshold: int = 300
    """
    Refresh proactively once the access token expires within this many seconds.
    Set with REFRESH_THRESHOLD environment variable.
    """

    refresh_max_failures: int = 5
    """
    Consecutive refresh failures after which the session is locked out.
    Set with REFRESH_MAX_FAILURES environment variable.
    """

    refresh_backoff_base: int = 30
    """
    Base delay in seconds for refresh backoff.
    Actual delay = min(base_delay * (2 ^ failures), cap)
    Set with REFRESH_BACKOFF_BASE environment variable.
    """

    refresh_backoff_cap: int = 3600
    """
    Upper bound in seconds for refresh backoff.
    Set with REFRESH_BACKOFF_CAP environment variable.
    """

    refresh_lock_ttl: int = 30
    """
    Seconds an exclusive refresh claim lives without renewal. The holder
    extends it every third of this while the refresh runs, so it only lapses
    when the holder stops responding.
    Set with REFRESH_LOCK_TTL environment variable.
    """

    refresh_lock_wait: float = 15.0
    """
    Seconds a caller that lost the refresh claim waits for the winner.
    Set with REFRESH_LOCK_WAIT environment variable.
    """

    sweep_interval: int = 3600
    """
    Seconds between sweeps of expired authorizations and dead sessions.
    Set with SWEEP_INTERVAL environment variable.
    """

    # Rate limiting
    rate_limit_requests: int = 100
    """Requests allowed per identity and resource within one window"""

    rate_limit_window: int = 60
    """Fixed rate limit window length in seconds"""

    # Monitoring and observability settings
    metrics_backend: str = "none"
    """
    Metrics backend, one of `telegraf` or `none`.
    Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    @property
    def client_id(self) -> str:
        return f"{self.public_base_url}/.well-known/client-metadata"

    @property
    def redirect_uri(self) -> str:
        return f"{self.public_base_url}/api/auth/callback"

    @field_validator("public_base_url", "frontend_url", mode="after")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("encryption_key", mode="before")
    @classmethod
    def decode_encryption_key(cls, v) -> Fernet:
        """
        Validate and process the encryption_key setting.

        This validator accepts either:
        - An existing Fernet object (for programmatic configuration)
        - A base64-encoded string containing a Fernet key

        Raises:
            ValueError: If the input is neither a Fernet object nor a valid base64 key
        """
        if isinstance(v, Fernet):
            return v
        elif isinstance(v, str):
            return Fernet(v)
        raise ValueError(
            "encryption_key must be a Fernet object or a base64-encoded key string"
        )


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)
"""AppKey for accessing the SQLAlchemy async database engine"""

DatabaseSessionMakerAppKey: Final = web.AppKey(
    "database_session_maker", async_sessionmaker[AsyncSession]
)
"""AppKey for accessing the SQLAlchemy async session factory"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
"""AppKey for accessing the Redis client"""

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)
"""AppKey for accessing the health monitoring gauge"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client"""

SessionStoreAppKey: Final = web.AppKey("session_store", SessionStore)
"""AppKey for the session store"""

RateLimiterAppKey: Final = web.AppKey("rate_limiter", RateLimiter)
"""AppKey for the per-identity rate limiter"""

SweepTaskAppKey: Final = web.AppKey("sweep_task", asyncio.Task[None])
"""AppKey for the background task that removes dead authorizations and sessions"""

TickHealthTaskAppKey: Final = web.AppKey("tick_health_task", asyncio.Task[None])
"""AppKey for the background task that monitors service health"""
