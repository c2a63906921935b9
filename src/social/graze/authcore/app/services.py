"""
Service wiring.

`build_auth_services` builds every subsystem once, from settings and the shared resources created at start-up, and
returns them together as `AuthServices`. The aiohttp application stores the result under `AuthServicesAppKey`;
nothing in the core reaches for module-level state.
"""

import logging
from dataclasses import dataclass
from typing import Final, Optional

from aiohttp import ClientSession, web
from redis import asyncio as redis

from social.graze.authcore.app.config import SESSION_GUARD_PREFIX, Settings
from social.graze.authcore.app.metrics import MetricsClient
from social.graze.authcore.core.audit import AuditLogger
from social.graze.authcore.core.clock import Clock
from social.graze.authcore.core.hashing import PasswordHasher
from social.graze.authcore.core.mailer import LoggingMailer, Mailer, WebhookMailer
from social.graze.authcore.core.orchestrator import AuthOrchestrator
from social.graze.authcore.core.password_policy import PasswordPolicyEngine
from social.graze.authcore.core.rate_limiter import RateLimiter
from social.graze.authcore.core.session_manager import (
    NullSessionGuard,
    RedisSessionGuard,
    SessionGuard,
    SessionManager,
)
from social.graze.authcore.core.tokens import TokenService
from social.graze.authcore.model.health import HealthGauge
from social.graze.authcore.store.factory import Stores

logger = logging.getLogger(__name__)


@dataclass
class AuthServices:
    stores: Stores
    audit: AuditLogger
    hasher: PasswordHasher
    rate_limiter: RateLimiter
    sessions: SessionManager
    tokens: TokenService
    policy: PasswordPolicyEngine
    mailer: Mailer
    orchestrator: AuthOrchestrator


def build_auth_services(
    settings: Settings,
    stores: Stores,
    metrics_client: MetricsClient,
    health_gauge: Optional[HealthGauge] = None,
    redis_client: Optional[redis.Redis] = None,
    http_session: Optional[ClientSession] = None,
    clock: Optional[Clock] = None,
    mailer: Optional[Mailer] = None,
) -> AuthServices:
    clock = clock or Clock()
    audit = AuditLogger(metrics_client, health_gauge)
    hasher = PasswordHasher(settings.bcrypt_rounds)

    guard: SessionGuard = NullSessionGuard()
    if settings.strict_session_limit:
        if redis_client is None:
            raise ValueError("strict_session_limit requires a redis client")
        guard = RedisSessionGuard(redis_client, key_prefix=SESSION_GUARD_PREFIX)

    if mailer is None:
        if settings.email_webhook_url and http_session is not None:
            mailer = WebhookMailer(http_session, settings.email_webhook_url)
        else:
            logger.warning("No email webhook configured; emails will only be logged")
            mailer = LoggingMailer()

    rate_limiter = RateLimiter(
        stores.attempts, settings.rate_limits, clock, audit, metrics_client
    )
    sessions = SessionManager(
        stores.sessions,
        settings.session_config(),
        clock,
        audit,
        metrics_client,
        guard=guard,
    )
    tokens = TokenService(stores.tokens, clock, audit)
    policy = PasswordPolicyEngine(
        stores.history,
        hasher,
        clock,
        policy=settings.password_policy(),
        expiration=settings.expiration_policy(),
    )
    orchestrator = AuthOrchestrator(
        credentials=stores.credentials,
        rate_limiter=rate_limiter,
        sessions=sessions,
        tokens=tokens,
        policy=policy,
        hasher=hasher,
        mailer=mailer,
        audit=audit,
        config=settings.auth_config(),
        clock=clock,
        metrics_client=metrics_client,
    )
    return AuthServices(
        stores=stores,
        audit=audit,
        hasher=hasher,
        rate_limiter=rate_limiter,
        sessions=sessions,
        tokens=tokens,
        policy=policy,
        mailer=mailer,
        orchestrator=orchestrator,
    )


AuthServicesAppKey: Final = web.AppKey("auth_services", AuthServices)
"""AppKey for the wired auth services"""
