"""
Store capability interfaces.

Every adapter failure (driver error, lost connection, query timeout) is raised as `StoreError`. Callers decide what
a store failure means for them: the rate limiter fails open, session validation fails closed, the orchestrator
reports `SERVER_ERROR`.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from social.graze.authcore.store.records import (
    AttemptRecord,
    PasswordHistoryRecord,
    PrincipalRecord,
    SessionActivityRecord,
    SessionRecord,
    TokenRecord,
)


class StoreError(Exception):
    """
    Raised when a backing store cannot complete an operation.

    The static constructors mirror the failure modes the adapters see so that log lines carry a stable error code.
    """

    def __init__(self, message: str, operation: str):
        super().__init__(message)
        self.operation = operation

    @staticmethod
    def timeout(operation: str) -> "StoreError":
        """The operation did not finish within the configured store timeout."""
        return StoreError(f"error-store-1000 {operation} timed out", operation)

    @staticmethod
    def unavailable(operation: str, cause: BaseException) -> "StoreError":
        """The driver raised while running the operation."""
        return StoreError(
            f"error-store-1001 {operation} failed: {type(cause).__name__}", operation
        )


class DuplicateEmailError(Exception):
    """A principal with the same (case-insensitive) email already exists."""

    def __init__(self, email: str):
        super().__init__("error-store-1002 email already registered")
        self.email = email


class AttemptStore(ABC):
    """Append-only log of authentication-adjacent attempts."""

    @abstractmethod
    async def add_attempt(self, record: AttemptRecord) -> None:
        pass

    @abstractmethod
    async def list_attempts(
        self, identifier: str, action: str, since: datetime
    ) -> List[AttemptRecord]:
        """Attempts for (identifier, action) at or after `since`, oldest first."""
        pass

    @abstractmethod
    async def query_attempts(
        self,
        since: datetime,
        identifier: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[AttemptRecord]:
        """Attempts at or after `since`, optionally filtered, oldest first."""
        pass

    @abstractmethod
    async def delete_attempts_before(self, cutoff: datetime) -> int:
        pass


class SessionStore(ABC):
    """Sessions and their activity trail."""

    @abstractmethod
    async def insert_session(self, session: SessionRecord) -> None:
        pass

    @abstractmethod
    async def get_session_by_token_hash(self, token_hash: str) -> Optional[SessionRecord]:
        pass

    @abstractmethod
    async def list_active_sessions(self, principal_id: str) -> List[SessionRecord]:
        """Active sessions for a principal, most recent activity first."""
        pass

    @abstractmethod
    async def touch_session(
        self, session_id: str, last_activity: datetime, expires_at: datetime
    ) -> None:
        pass

    @abstractmethod
    async def deactivate_session(self, session_id: str, reason: str) -> bool:
        """Flip an active session to inactive. Returns False if it was already inactive."""
        pass

    @abstractmethod
    async def list_stale_sessions(
        self,
        now: datetime,
        inactive_since: datetime,
        principal_id: Optional[str] = None,
        limit: int = 500,
    ) -> List[SessionRecord]:
        """Active sessions past `expires_at` or idle since before `inactive_since`."""
        pass

    @abstractmethod
    async def add_activity(self, event: SessionActivityRecord) -> None:
        pass

    @abstractmethod
    async def recent_activity(
        self, session_id: str, limit: int
    ) -> List[SessionActivityRecord]:
        """The most recent `limit` events for a session, newest first."""
        pass


class TokenStore(ABC):
    """Single-use verification tokens, keyed by the digest of the token value."""

    @abstractmethod
    async def replace_token(self, record: TokenRecord) -> None:
        """Delete every token of the same (identifier, token_type) and insert `record`, atomically."""
        pass

    @abstractmethod
    async def get_token(self, token_hash: str) -> Optional[TokenRecord]:
        """Read a token without consuming it."""
        pass

    @abstractmethod
    async def consume_token(self, token_hash: str) -> Optional[TokenRecord]:
        """Atomically read and delete a token. Returns None when it does not exist."""
        pass

    @abstractmethod
    async def delete_expired_tokens(self, now: datetime) -> int:
        pass

    @abstractmethod
    async def list_tokens(self, identifier: str) -> List[TokenRecord]:
        pass


class PasswordHistoryStore(ABC):
    """Bounded history of prior password hashes."""

    @abstractmethod
    async def list_password_history(
        self, principal_id: str, limit: int
    ) -> List[PasswordHistoryRecord]:
        """The most recent `limit` entries, newest first."""
        pass

    @abstractmethod
    async def add_password_history(self, entry: PasswordHistoryRecord) -> None:
        pass

    @abstractmethod
    async def prune_password_history(self, principal_id: str, keep: int) -> int:
        """Delete all but the `keep` most recent entries. Returns the number deleted."""
        pass


class CredentialStore(ABC):
    """Principals and their current password credential."""

    @abstractmethod
    async def get_principal(self, principal_id: str) -> Optional[PrincipalRecord]:
        pass

    @abstractmethod
    async def get_principal_by_email(self, email: str) -> Optional[PrincipalRecord]:
        """Case-insensitive lookup."""
        pass

    @abstractmethod
    async def create_principal(
        self,
        principal: PrincipalRecord,
        seed_history: Optional[PasswordHistoryRecord] = None,
    ) -> None:
        """Insert a principal and its first history entry in one transaction.

        Raises `DuplicateEmailError` when the email is already registered.
        """
        pass

    @abstractmethod
    async def update_credential(
        self,
        principal_id: str,
        password_hash: str,
        password_set_at: datetime,
        previous: Optional[PasswordHistoryRecord] = None,
        history_limit: Optional[int] = None,
    ) -> int:
        """Replace the credential and reset the grace login counter.

        In the same transaction, `previous` is pushed into password history (unless it already is the newest entry)
        and history is pruned to `history_limit` entries. Returns the number of pruned entries.
        """
        pass

    @abstractmethod
    async def mark_verified(self, principal_id: str, verified_at: datetime) -> None:
        pass

    @abstractmethod
    async def record_grace_login(self, principal_id: str) -> int:
        """Increment and return the number of grace logins used."""
        pass
