"""
Tests for service wiring and store selection.
"""

from unittest.mock import MagicMock

import pytest

from social.graze.authcore.app.config import Settings
from social.graze.authcore.app.services import build_auth_services
from social.graze.authcore.core.mailer import LoggingMailer, WebhookMailer
from social.graze.authcore.core.session_manager import NullSessionGuard, RedisSessionGuard
from social.graze.authcore.store.factory import build_stores
from social.graze.authcore.store.memory import (
    MemoryAttemptStore,
    MemoryCredentialStore,
    MemorySessionStore,
    MemoryTokenStore,
)
from tests.test_helpers import STRONG_PASSWORD, MockStatsdClient


@pytest.fixture
def settings():
    return Settings(worker_id="worker-1", bcrypt_rounds=4)


class TestBuildAuthServices:
    @pytest.mark.asyncio
    async def test_end_to_end_sign_up(self, settings, clock, health_gauge):
        metrics = MockStatsdClient()
        services = build_auth_services(
            settings, build_stores("memory"), metrics, health_gauge=health_gauge, clock=clock
        )

        signed_up = await services.orchestrator.sign_up("bob@example.com", STRONG_PASSWORD)
        assert signed_up.success is True

        authenticated = await services.orchestrator.authenticate(signed_up.session.token)
        assert authenticated.success is True
        assert authenticated.principal.email == "bob@example.com"

        assert isinstance(services.sessions.guard, NullSessionGuard)
        assert isinstance(services.mailer, LoggingMailer)
        assert services.stores.history is services.stores.credentials

    def test_strict_session_limit_requires_redis(self, clock):
        settings = Settings(worker_id="w", bcrypt_rounds=4, strict_session_limit=True)
        with pytest.raises(ValueError):
            build_auth_services(settings, build_stores("memory"), MockStatsdClient(), clock=clock)

    def test_strict_session_limit_with_redis(self, clock, fake_redis_client):
        settings = Settings(worker_id="w", bcrypt_rounds=4, strict_session_limit=True)
        services = build_auth_services(
            settings,
            build_stores("memory"),
            MockStatsdClient(),
            redis_client=fake_redis_client,
            clock=clock,
        )
        assert isinstance(services.sessions.guard, RedisSessionGuard)

    def test_webhook_mailer(self, clock):
        settings = Settings(
            worker_id="w", bcrypt_rounds=4, email_webhook_url="https://mail.internal/send"
        )
        services = build_auth_services(
            settings,
            build_stores("memory"),
            MockStatsdClient(),
            http_session=MagicMock(),
            clock=clock,
        )
        assert isinstance(services.mailer, WebhookMailer)
        assert services.mailer.webhook_url == "https://mail.internal/send"

    def test_webhook_without_http_session_logs(self, clock):
        settings = Settings(
            worker_id="w", bcrypt_rounds=4, email_webhook_url="https://mail.internal/send"
        )
        services = build_auth_services(
            settings, build_stores("memory"), MockStatsdClient(), clock=clock
        )
        assert isinstance(services.mailer, LoggingMailer)


class TestBuildStores:
    def test_memory(self):
        stores = build_stores("MEMORY")

        assert isinstance(stores.attempts, MemoryAttemptStore)
        assert isinstance(stores.sessions, MemorySessionStore)
        assert isinstance(stores.tokens, MemoryTokenStore)
        assert isinstance(stores.credentials, MemoryCredentialStore)

    def test_postgres_requires_session_maker(self):
        with pytest.raises(ValueError, match="session maker"):
            build_stores("postgres")

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Invalid store backend"):
            build_stores("sqlite")
