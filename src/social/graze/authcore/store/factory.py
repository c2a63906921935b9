import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from social.graze.authcore.store.base import (
    AttemptStore,
    CredentialStore,
    PasswordHistoryStore,
    SessionStore,
    TokenStore,
)
from social.graze.authcore.store.memory import (
    MemoryAttemptStore,
    MemoryCredentialStore,
    MemorySessionStore,
    MemoryTokenStore,
)
from social.graze.authcore.store.sql import (
    SqlAttemptStore,
    SqlCredentialStore,
    SqlSessionStore,
    SqlTokenStore,
)

logger = logging.getLogger(__name__)


@dataclass
class Stores:
    """One adapter per store interface, chosen together at start-up."""

    attempts: AttemptStore
    sessions: SessionStore
    tokens: TokenStore
    credentials: CredentialStore
    history: PasswordHistoryStore


def build_stores(
    backend: str,
    database_session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
    timeout_seconds: float = 5.0,
) -> Stores:
    """
    Create the store adapters for the configured backend.

    Args:
        backend: 'postgres' or 'memory'
        database_session_maker: Session factory, required for 'postgres'
        timeout_seconds: Upper bound on each store transaction

    Raises:
        ValueError: If the backend is unknown or its requirements are missing
    """
    backend = backend.lower()

    if backend == "postgres":
        if database_session_maker is None:
            raise ValueError("postgres store backend requires a database session maker")
        credentials = SqlCredentialStore(database_session_maker, timeout_seconds)
        return Stores(
            attempts=SqlAttemptStore(database_session_maker, timeout_seconds),
            sessions=SqlSessionStore(database_session_maker, timeout_seconds),
            tokens=SqlTokenStore(database_session_maker, timeout_seconds),
            credentials=credentials,
            history=credentials,
        )

    elif backend == "memory":
        logger.warning("Using in-memory stores; state is lost on restart")
        memory_credentials = MemoryCredentialStore()
        return Stores(
            attempts=MemoryAttemptStore(),
            sessions=MemorySessionStore(),
            tokens=MemoryTokenStore(),
            credentials=memory_credentials,
            history=memory_credentials,
        )

    raise ValueError(
        f"Invalid store backend: {backend}. Supported backends: 'postgres', 'memory'"
    )
