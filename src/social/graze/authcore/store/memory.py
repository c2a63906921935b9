"""
In-memory store adapters.

Dict-backed implementations of the store interfaces, used by the test suite and for local development with
`STORE_BACKEND=memory`. Records are copied on the way in and on the way out so callers never share mutable state
with the store, matching the detached rows the SQL adapters return.
"""
import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from social.graze.authcore.store.base import (
    AttemptStore,
    CredentialStore,
    DuplicateEmailError,
    PasswordHistoryStore,
    SessionStore,
    TokenStore,
)
from social.graze.authcore.store.records import (
    AttemptRecord,
    PasswordHistoryRecord,
    PrincipalRecord,
    SessionActivityRecord,
    SessionRecord,
    TokenRecord,
)


class MemoryAttemptStore(AttemptStore):
    def __init__(self) -> None:
        self._attempts: List[AttemptRecord] = []
        self._lock = asyncio.Lock()

    async def add_attempt(self, record: AttemptRecord) -> None:
        async with self._lock:
            self._attempts.append(replace(record))
            self._attempts.sort(key=lambda a: a.created_at)

    async def list_attempts(
        self, identifier: str, action: str, since: datetime
    ) -> List[AttemptRecord]:
        return await self.query_attempts(since, identifier=identifier, action=action)

    async def query_attempts(
        self,
        since: datetime,
        identifier: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[AttemptRecord]:
        async with self._lock:
            return [
                replace(a)
                for a in self._attempts
                if a.created_at >= since
                and (identifier is None or a.identifier == identifier)
                and (action is None or a.action == action)
            ]

    async def delete_attempts_before(self, cutoff: datetime) -> int:
        async with self._lock:
            kept = [a for a in self._attempts if a.created_at >= cutoff]
            removed = len(self._attempts) - len(kept)
            self._attempts = kept
            return removed


class MemorySessionStore(SessionStore):
    def __init__(self) -> None:
        self._sessions: Dict[str, SessionRecord] = {}
        self._activity: Dict[str, List[SessionActivityRecord]] = {}
        self._lock = asyncio.Lock()

    async def insert_session(self, session: SessionRecord) -> None:
        async with self._lock:
            self._sessions[session.guid] = replace(session)

    async def get_session_by_token_hash(self, token_hash: str) -> Optional[SessionRecord]:
        async with self._lock:
            for session in self._sessions.values():
                if session.token_hash == token_hash:
                    return replace(session)
            return None

    async def list_active_sessions(self, principal_id: str) -> List[SessionRecord]:
        async with self._lock:
            active = [
                replace(s)
                for s in self._sessions.values()
                if s.principal_id == principal_id and s.is_active
            ]
        return sorted(active, key=lambda s: s.last_activity, reverse=True)

    async def touch_session(
        self, session_id: str, last_activity: datetime, expires_at: datetime
    ) -> None:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.last_activity = last_activity
                session.expires_at = expires_at

    async def deactivate_session(self, session_id: str, reason: str) -> bool:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.is_active:
                return False
            session.is_active = False
            session.deactivated_reason = reason
            return True

    async def list_stale_sessions(
        self,
        now: datetime,
        inactive_since: datetime,
        principal_id: Optional[str] = None,
        limit: int = 500,
    ) -> List[SessionRecord]:
        async with self._lock:
            stale = [
                replace(s)
                for s in self._sessions.values()
                if s.is_active
                and (principal_id is None or s.principal_id == principal_id)
                and (s.expires_at < now or s.last_activity < inactive_since)
            ]
        return stale[:limit]

    async def add_activity(self, event: SessionActivityRecord) -> None:
        async with self._lock:
            self._activity.setdefault(event.session_id, []).append(replace(event))

    async def recent_activity(
        self, session_id: str, limit: int
    ) -> List[SessionActivityRecord]:
        async with self._lock:
            events = self._activity.get(session_id, [])
            return [replace(e) for e in reversed(events[-limit:])]

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        """Lookup by id, regardless of state. Not part of the store interface."""
        async with self._lock:
            session = self._sessions.get(session_id)
            return replace(session) if session is not None else None


class MemoryTokenStore(TokenStore):
    def __init__(self) -> None:
        self._tokens: Dict[str, TokenRecord] = {}
        self._lock = asyncio.Lock()

    async def replace_token(self, record: TokenRecord) -> None:
        async with self._lock:
            for token_hash, existing in list(self._tokens.items()):
                if (
                    existing.identifier == record.identifier
                    and existing.token_type == record.token_type
                ):
                    del self._tokens[token_hash]
            self._tokens[record.token_hash] = replace(record)

    async def get_token(self, token_hash: str) -> Optional[TokenRecord]:
        async with self._lock:
            token = self._tokens.get(token_hash)
            return replace(token) if token is not None else None

    async def consume_token(self, token_hash: str) -> Optional[TokenRecord]:
        async with self._lock:
            return self._tokens.pop(token_hash, None)

    async def delete_expired_tokens(self, now: datetime) -> int:
        async with self._lock:
            expired = [h for h, t in self._tokens.items() if t.expires_at < now]
            for token_hash in expired:
                del self._tokens[token_hash]
            return len(expired)

    async def list_tokens(self, identifier: str) -> List[TokenRecord]:
        async with self._lock:
            return [replace(t) for t in self._tokens.values() if t.identifier == identifier]


class MemoryCredentialStore(CredentialStore, PasswordHistoryStore):
    """Principals and password history share one lock so sign-up stays atomic."""

    def __init__(self) -> None:
        self._principals: Dict[str, PrincipalRecord] = {}
        self._history: Dict[str, List[PasswordHistoryRecord]] = {}
        self._lock = asyncio.Lock()

    async def get_principal(self, principal_id: str) -> Optional[PrincipalRecord]:
        async with self._lock:
            principal = self._principals.get(principal_id)
            return replace(principal) if principal is not None else None

    async def get_principal_by_email(self, email: str) -> Optional[PrincipalRecord]:
        email = email.strip().lower()
        async with self._lock:
            for principal in self._principals.values():
                if principal.email == email:
                    return replace(principal)
            return None

    async def create_principal(
        self,
        principal: PrincipalRecord,
        seed_history: Optional[PasswordHistoryRecord] = None,
    ) -> None:
        async with self._lock:
            email = principal.email.strip().lower()
            if any(p.email == email for p in self._principals.values()):
                raise DuplicateEmailError(email)
            self._principals[principal.guid] = replace(principal, email=email)
            if seed_history is not None:
                self._history.setdefault(principal.guid, []).append(replace(seed_history))

    async def update_credential(
        self,
        principal_id: str,
        password_hash: str,
        password_set_at: datetime,
        previous: Optional[PasswordHistoryRecord] = None,
        history_limit: Optional[int] = None,
    ) -> int:
        async with self._lock:
            principal = self._principals.get(principal_id)
            if principal is None:
                return 0
            principal.password_hash = password_hash
            principal.password_set_at = password_set_at
            principal.grace_logins_used = 0
            principal.updated_at = password_set_at

            if previous is not None:
                newest = self._newest_first(principal_id)[:1]
                if not newest or newest[0].password_hash != previous.password_hash:
                    self._history.setdefault(principal_id, []).append(replace(previous))
            if history_limit is None:
                return 0
            return self._prune(principal_id, history_limit)

    async def mark_verified(self, principal_id: str, verified_at: datetime) -> None:
        async with self._lock:
            principal = self._principals.get(principal_id)
            if principal is not None:
                principal.email_verified_at = verified_at
                principal.updated_at = verified_at

    async def record_grace_login(self, principal_id: str) -> int:
        async with self._lock:
            principal = self._principals.get(principal_id)
            if principal is None:
                return 0
            principal.grace_logins_used += 1
            return principal.grace_logins_used

    async def list_password_history(
        self, principal_id: str, limit: int
    ) -> List[PasswordHistoryRecord]:
        async with self._lock:
            return [replace(e) for e in self._newest_first(principal_id)[:limit]]

    async def add_password_history(self, entry: PasswordHistoryRecord) -> None:
        async with self._lock:
            self._history.setdefault(entry.principal_id, []).append(replace(entry))

    async def prune_password_history(self, principal_id: str, keep: int) -> int:
        async with self._lock:
            return self._prune(principal_id, keep)

    def _prune(self, principal_id: str, keep: int) -> int:
        entries = self._newest_first(principal_id)
        self._history[principal_id] = list(reversed(entries[:keep]))
        return max(0, len(entries) - keep)

    def _newest_first(self, principal_id: str) -> List[PasswordHistoryRecord]:
        # stable sort keeps insertion order for entries written at the same instant
        entries = sorted(self._history.get(principal_id, []), key=lambda e: e.created_at)
        return list(reversed(entries))
