"""
Shared test configuration and fixtures for the auth core tests.

Subsystems are wired over the in-memory stores with a frozen clock and a recording metrics client. The SQL adapter
tests get a throwaway PostgreSQL database per test and are skipped when no server is reachable.
"""

import os
import uuid
import pytest
import pytest_asyncio
import fakeredis.aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from social.graze.authcore.core.audit import AuditLogger
from social.graze.authcore.core.hashing import PasswordHasher
from social.graze.authcore.core.orchestrator import AuthConfig, AuthOrchestrator
from social.graze.authcore.core.password_policy import PasswordPolicyEngine
from social.graze.authcore.core.rate_limiter import DEFAULT_RATE_LIMITS, RateLimiter
from social.graze.authcore.core.session_manager import SessionConfig, SessionManager
from social.graze.authcore.core.tokens import TokenService
from social.graze.authcore.model import attempts, principal, sessions, verification  # noqa: F401
from social.graze.authcore.model.base import Base
from social.graze.authcore.model.health import HealthGauge
from social.graze.authcore.store.memory import (
    MemoryAttemptStore,
    MemoryCredentialStore,
    MemorySessionStore,
    MemoryTokenStore,
)
from tests.test_helpers import FrozenClock, MockStatsdClient, RecordingMailer


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def metrics():
    return MockStatsdClient()


@pytest.fixture
def health_gauge():
    return HealthGauge()


@pytest.fixture
def audit(metrics, health_gauge):
    return AuditLogger(metrics, health_gauge)


@pytest.fixture
def hasher():
    # Lowest bcrypt cost keeps the suite fast.
    return PasswordHasher(rounds=4)


@pytest.fixture
def attempt_store():
    return MemoryAttemptStore()


@pytest.fixture
def session_store():
    return MemorySessionStore()


@pytest.fixture
def token_store():
    return MemoryTokenStore()


@pytest.fixture
def credential_store():
    return MemoryCredentialStore()


@pytest.fixture
def rate_limiter(attempt_store, clock, audit, metrics):
    return RateLimiter(attempt_store, DEFAULT_RATE_LIMITS, clock, audit, metrics)


@pytest.fixture
def session_config():
    return SessionConfig()


@pytest.fixture
def session_manager(session_store, session_config, clock, audit, metrics):
    return SessionManager(session_store, session_config, clock, audit, metrics)


@pytest.fixture
def token_service(token_store, clock, audit):
    return TokenService(token_store, clock, audit)


@pytest.fixture
def policy_engine(credential_store, hasher, clock):
    return PasswordPolicyEngine(credential_store, hasher, clock)


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def orchestrator(
    credential_store,
    rate_limiter,
    session_manager,
    token_service,
    policy_engine,
    hasher,
    mailer,
    audit,
    clock,
    metrics,
):
    return AuthOrchestrator(
        credentials=credential_store,
        rate_limiter=rate_limiter,
        sessions=session_manager,
        tokens=token_service,
        policy=policy_engine,
        hasher=hasher,
        mailer=mailer,
        audit=audit,
        config=AuthConfig(public_url="https://auth.example.com"),
        clock=clock,
        metrics_client=metrics,
    )


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield client
    await client.flushall()
    await client.aclose()


# Test database configuration
TEST_DB_HOST = os.getenv("TEST_DB_HOST", "postgres")
TEST_DB_PORT = os.getenv("TEST_DB_PORT", "5432")
TEST_DB_USER = os.getenv("TEST_DB_USER", "postgres")
TEST_DB_PASSWORD = os.getenv("TEST_DB_PASSWORD", "password")

# Admin URL for database creation/deletion (connects to postgres database)
ADMIN_DATABASE_URL = f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@{TEST_DB_HOST}:{TEST_DB_PORT}/postgres"


async def check_postgres_available():
    """Check if PostgreSQL is available for testing."""
    try:
        admin_engine = create_async_engine(ADMIN_DATABASE_URL, echo=False)
        async with admin_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        await admin_engine.dispose()
        return True
    except Exception:
        return False


@pytest_asyncio.fixture(scope="function")
async def test_database():
    """Create and clean up test database for each test function."""
    if not await check_postgres_available():
        pytest.skip("PostgreSQL database not available for testing")

    unique_db_name = f"authcore_test_{uuid.uuid4().hex[:8]}"
    unique_db_url = (
        f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@"
        f"{TEST_DB_HOST}:{TEST_DB_PORT}/{unique_db_name}"
    )

    admin_engine = create_async_engine(
        ADMIN_DATABASE_URL, echo=False, isolation_level="AUTOCOMMIT"
    )

    try:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"CREATE DATABASE {unique_db_name}"))

        yield unique_db_url

    finally:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"DROP DATABASE IF EXISTS {unique_db_name}"))
        await admin_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def engine(test_database):
    """Create async SQLAlchemy engine with all tables."""
    engine = create_async_engine(test_database, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def database_session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
