"""
Configuration Module

Settings for the auth core service, loaded from environment variables through pydantic-settings, and the typed
AppKeys that carry shared resources on the aiohttp application.

Configuration areas:
- Service identification and networking
- Store selection, database and cache connections
- Password hashing, password policy and expiration
- Session lifetime, concurrency and cookie attributes
- Verification token lifetimes
- Per-action rate limit rules
- Background sweep intervals
- Monitoring and email delivery
"""

import asyncio
import json
import logging
from datetime import timedelta
from typing import Any, Dict, Final, List, Optional

from aiohttp import ClientSession, web
from pydantic import (
    AliasChoices,
    Field,
    PostgresDsn,
    RedisDsn,
    field_validator,
)
from pydantic_settings import BaseSettings
from redis import asyncio as redis
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)

from social.graze.authcore.app.metrics import MetricsClient
from social.graze.authcore.core.orchestrator import AuthConfig
from social.graze.authcore.core.password_policy import ExpirationPolicy, PasswordPolicy
from social.graze.authcore.core.rate_limiter import DEFAULT_RATE_LIMITS, RateLimitRule
from social.graze.authcore.core.session_manager import CookiePolicy, SessionConfig
from social.graze.authcore.model.health import HealthGauge

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for the auth core.

    Every field can be set from the environment variable of the same name (case-insensitive). Aliases are provided
    where deployments commonly use another name, e.g. the database connection string can be set with either PG_DSN
    or DATABASE_URL.
    """

    # Environment and debugging settings
    debug: bool = False
    """
    Enable debug mode for verbose logging.
    Set with DEBUG=true environment variable.
    """

    environment: str = "development"
    """
    Deployment environment, 'development' or 'production'. Production turns on Secure and SameSite=Strict for the
    session cookie.
    Set with ENVIRONMENT environment variable.
    """

    # Network and service identification settings
    http_port: int = Field(alias="port", default=5100)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    public_url: str = "http://localhost:5100"
    """
    Public base URL used to build the links sent in verification and password reset emails.
    Set with PUBLIC_URL environment variable.
    """

    worker_id: str
    """
    Unique identifier for this worker instance (required, no default).
    Used to tag metrics and to claim background sweeps.
    Set with WORKER_ID environment variable.
    """

    # Monitoring and error reporting
    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    # Store selection, database and cache connections
    store_backend: str = "postgres"
    """
    Store adapters to use, 'postgres' or 'memory'.
    Set with STORE_BACKEND environment variable.
    """

    store_timeout_seconds: float = 5.0
    """
    Upper bound on each store transaction. A store call that takes longer is treated as a store failure.
    Set with STORE_TIMEOUT_SECONDS environment variable.
    """

    redis_dsn: RedisDsn = Field(
        "redis://valkey:6379/1?decode_responses=True",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """
    Redis connection string for sweep claims and the strict session limit lock.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    pg_dsn: PostgresDsn = Field(
        "postgresql+asyncpg://postgres:password@db/authcore",
        validation_alias=AliasChoices("pg_dsn", "database_url"),
    )  # type: ignore
    """
    PostgreSQL connection string for database access.
    Set with PG_DSN or DATABASE_URL environment variables.
    """

    # Monitoring and observability settings
    metrics_backend: str = "telegraf"
    """
    Metrics backend, 'telegraf' or 'none'.
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

    statsd_prefix: str = "authcore"
    """
    Prefix for all StatsD metrics from this service.
    Set with STATSD_PREFIX environment variable.
    """

    # Password hashing and policy
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    """
    bcrypt cost factor. Each increment doubles the time to hash a password.
    Set with BCRYPT_ROUNDS environment variable.
    """

    password_min_length: int = 8
    password_max_length: int = 128
    password_require_uppercase: bool = True
    password_require_lowercase: bool = True
    password_require_digit: bool = True
    password_require_symbol: bool = True
    password_reject_common: bool = True

    password_history_limit: int = 5
    """
    Number of previous passwords that cannot be reused.
    Set with PASSWORD_HISTORY_LIMIT environment variable.
    """

    password_expiration_enabled: bool = False
    password_max_age_days: int = 90
    password_warning_days: int = 7
    password_grace_logins: int = 3
    """
    Sign-ins allowed after the password expired before a change is forced.
    Set with PASSWORD_GRACE_LOGINS environment variable.
    """

    # Sessions
    session_max_age_seconds: int = 86400
    """
    Session lifetime, refreshed on every validated use. Also the cookie Max-Age.
    Set with SESSION_MAX_AGE_SECONDS environment variable.
    """

    session_inactivity_timeout_seconds: int = 3600
    """
    Idle time after which a session times out.
    Set with SESSION_INACTIVITY_TIMEOUT_SECONDS environment variable.
    """

    max_concurrent_sessions: int = 3
    suspicious_activity_threshold: int = 2
    """
    Number of distinct IP addresses or user agents among a session's recent activity that marks it suspicious.
    """

    suspicious_activity_window: int = 10
    """Number of recent activity events inspected by anomaly detection."""

    session_cookie_name: str = "auth_session"
    session_cookie_domain: Optional[str] = None

    strict_session_limit: bool = False
    """
    Serialise session creation per principal with a Redis lock, so concurrent sign-ins can never exceed
    max_concurrent_sessions. Off by default: the limit is best-effort and may be exceeded by one under a race.
    Set with STRICT_SESSION_LIMIT environment variable.
    """

    # Verification tokens
    email_verification_ttl_minutes: int = 1440
    password_reset_ttl_minutes: int = 60

    # Rate limiting
    rate_limits: Dict[str, RateLimitRule] = Field(
        default_factory=lambda: dict(DEFAULT_RATE_LIMITS)
    )
    """
    Rate limit rules per action type, as a JSON object, e.g.
    RATE_LIMITS='{"login": {"maxAttempts": 10, "windowMinutes": 15, "lockoutMinutes": 5}}'.
    Rules given here replace the default rule for the same action; other defaults are kept.
    """

    # Background sweeps
    token_sweep_interval_seconds: int = 900
    session_sweep_interval_seconds: int = 300
    attempt_prune_interval_seconds: int = 3600
    attempt_retention_days: int = 90
    """
    Attempt log entries older than this are deleted by the prune sweep.
    Set with ATTEMPT_RETENTION_DAYS environment variable.
    """

    # Email delivery
    email_webhook_url: Optional[str] = None
    """
    URL the verification and password reset emails are POSTed to as JSON. Emails are only logged when not set.
    Set with EMAIL_WEBHOOK_URL environment variable.
    """

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        v = v.lower()
        if v not in ("development", "production"):
            raise ValueError("environment must be 'development' or 'production'")
        return v

    @field_validator("rate_limits", mode="before")
    @classmethod
    def merge_rate_limits(cls, v: Any) -> Dict[str, Any]:
        """
        Merge configured rules over the defaults.

        Accepts a mapping or a JSON string. Values may be `RateLimitRule` objects or plain dictionaries.
        """
        if isinstance(v, str):
            v = json.loads(v)
        if not isinstance(v, dict):
            raise ValueError("rate_limits must be a JSON object keyed by action type")
        merged: Dict[str, Any] = dict(DEFAULT_RATE_LIMITS)
        merged.update(v)
        return merged

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def password_policy(self) -> PasswordPolicy:
        return PasswordPolicy(
            min_length=self.password_min_length,
            max_length=self.password_max_length,
            require_uppercase=self.password_require_uppercase,
            require_lowercase=self.password_require_lowercase,
            require_digit=self.password_require_digit,
            require_symbol=self.password_require_symbol,
            reject_common=self.password_reject_common,
            history_limit=self.password_history_limit,
        )

    def expiration_policy(self) -> ExpirationPolicy:
        return ExpirationPolicy(
            enabled=self.password_expiration_enabled,
            max_age_days=self.password_max_age_days,
            warning_days=self.password_warning_days,
            grace_logins=self.password_grace_logins,
        )

    def session_config(self) -> SessionConfig:
        return SessionConfig(
            max_age=timedelta(seconds=self.session_max_age_seconds),
            inactivity_timeout=timedelta(seconds=self.session_inactivity_timeout_seconds),
            max_concurrent_sessions=self.max_concurrent_sessions,
            suspicious_activity_threshold=self.suspicious_activity_threshold,
            suspicious_activity_window=self.suspicious_activity_window,
            cookie=CookiePolicy.for_environment(
                self.is_production,
                name=self.session_cookie_name,
                max_age=self.session_max_age_seconds,
                domain=self.session_cookie_domain,
            ),
        )

    def auth_config(self) -> AuthConfig:
        return AuthConfig(
            public_url=self.public_url,
            email_verification_ttl_minutes=self.email_verification_ttl_minutes,
            password_reset_ttl_minutes=self.password_reset_ttl_minutes,
        )


SWEEP_LOCK_PREFIX = "authcore:sweep"
"""
Redis key prefix for sweep claims. One key per sweep name holds the worker id that owns the current interval.
"""

SESSION_GUARD_PREFIX = "authcore:session_guard"
"""Redis key prefix for the per-principal session creation lock."""

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

TickHealthTaskAppKey: Final = web.AppKey("tick_health_task", asyncio.Task[None])
"""AppKey for the background task that drains the health gauge"""

SweepTasksAppKey: Final = web.AppKey("sweep_tasks", List[asyncio.Task[None]])
"""AppKey for the background sweep tasks"""
