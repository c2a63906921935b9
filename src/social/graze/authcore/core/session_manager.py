"""
Session Manager

Session lifecycle: `created -> active -> {expired | logged out | evicted | invalidated}`. Every terminal state is
reached by flipping the active flag and appending an activity event; sessions are never deleted, so the session and
activity tables together form the audit trail.

Creating a session makes room before inserting: the principal's stale sessions are timed out, then the oldest
sessions by last activity are evicted until fewer than `max_concurrent_sessions` remain. A new sign-in therefore
always succeeds while the number of surviving older sessions stays bounded. Without a `SessionGuard` two concurrent
sign-ins for one principal can transiently leave one session more than the limit; `RedisSessionGuard` serialises
the make-room-then-insert sequence per principal when strict enforcement is configured.

Anomaly detection is a best-effort heuristic: when the last N activity events of a session show at least
`suspicious_activity_threshold` distinct IP addresses or user agents, the session is flagged and invalidated.

Validation fails closed: if the store cannot answer, the session is reported invalid.
"""
import contextlib
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

from redis import asyncio as redis
from redis.exceptions import LockError, RedisError
from ulid import ULID

from social.graze.authcore.app.metrics import MetricsClient
from social.graze.authcore.core.audit import AuditLogger, SecurityEventType
from social.graze.authcore.core.clock import Clock
from social.graze.authcore.core.hashing import digest_token
from social.graze.authcore.store.base import SessionStore, StoreError
from social.graze.authcore.store.records import (
    ClientMetadata,
    SessionActivityRecord,
    SessionRecord,
)

logger = logging.getLogger(__name__)

SESSION_TOKEN_BYTES = 32

REASON_LOGOUT = "logout"
REASON_TIMEOUT = "timeout"
REASON_CONCURRENT_LIMIT = "concurrent_limit"
REASON_SUSPICIOUS = "suspicious"
REASON_SECURITY = "security"

ACTIVITY_LOGIN = "login"
ACTIVITY_ACTIVITY = "activity"
ACTIVITY_LOGOUT = "logout"
ACTIVITY_TIMEOUT = "timeout"
ACTIVITY_SUSPICIOUS = "suspicious"
ACTIVITY_CONCURRENT_LIMIT = "concurrent_limit"

_ACTIVITY_FOR_REASON = {
    REASON_TIMEOUT: ACTIVITY_TIMEOUT,
    REASON_CONCURRENT_LIMIT: ACTIVITY_CONCURRENT_LIMIT,
    REASON_SUSPICIOUS: ACTIVITY_SUSPICIOUS,
}


@dataclass(frozen=True)
class CookiePolicy:
    """Attributes for the cookie that carries the session token."""

    name: str = "auth_session"
    max_age: int = 86400
    http_only: bool = True
    secure: bool = False
    same_site: str = "Lax"
    path: str = "/"
    domain: Optional[str] = None

    @staticmethod
    def for_environment(
        production: bool,
        name: str = "auth_session",
        max_age: int = 86400,
        domain: Optional[str] = None,
    ) -> "CookiePolicy":
        return CookiePolicy(
            name=name,
            max_age=max_age,
            secure=production,
            same_site="Strict" if production else "Lax",
            domain=domain,
        )


@dataclass(frozen=True)
class SessionConfig:
    max_age: timedelta = timedelta(hours=24)
    inactivity_timeout: timedelta = timedelta(hours=1)
    max_concurrent_sessions: int = 3
    suspicious_activity_threshold: int = 2
    suspicious_activity_window: int = 10
    cookie: CookiePolicy = field(default_factory=CookiePolicy)


@dataclass(frozen=True)
class SessionGrant:
    token: str
    session_id: str
    principal_id: str
    expires_at: datetime
    cookie: CookiePolicy


@dataclass(frozen=True)
class SessionValidation:
    valid: bool
    principal_id: Optional[str] = None
    session_id: Optional[str] = None
    suspicious: bool = False
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None


class SessionGuard(ABC):
    """Serialises session creation for one principal."""

    @abstractmethod
    def hold(self, principal_id: str) -> contextlib.AbstractAsyncContextManager:
        pass


class NullSessionGuard(SessionGuard):
    """Best-effort enforcement: no serialisation."""

    @contextlib.asynccontextmanager
    async def hold(self, principal_id: str) -> AsyncIterator[None]:
        yield


class RedisSessionGuard(SessionGuard):
    """Per-principal Redis lock around the make-room-then-insert sequence."""

    def __init__(
        self,
        redis_client: redis.Redis,
        lock_timeout: float = 10.0,
        blocking_timeout: float = 5.0,
        key_prefix: str = "authcore:session_guard",
    ):
        self.redis_client = redis_client
        self.lock_timeout = lock_timeout
        self.blocking_timeout = blocking_timeout
        self.key_prefix = key_prefix

    @contextlib.asynccontextmanager
    async def hold(self, principal_id: str) -> AsyncIterator[None]:
        lock = self.redis_client.lock(
            f"{self.key_prefix}:{principal_id}",
            timeout=self.lock_timeout,
            blocking_timeout=self.blocking_timeout,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            raise StoreError.unavailable("session_guard", e) from e
        if not acquired:
            raise StoreError.timeout("session_guard")
        try:
            yield
        finally:
            with contextlib.suppress(LockError, RedisError):
                await lock.release()


class SessionManager:
    def __init__(
        self,
        store: SessionStore,
        config: SessionConfig,
        clock: Clock,
        audit: AuditLogger,
        metrics_client: MetricsClient,
        guard: Optional[SessionGuard] = None,
    ):
        self.store = store
        self.config = config
        self.clock = clock
        self.audit = audit
        self.metrics_client = metrics_client
        self.guard = guard or NullSessionGuard()

    async def create_session(
        self, principal_id: str, client: Optional[ClientMetadata] = None
    ) -> SessionGrant:
        client = client or ClientMetadata()
        token = secrets.token_hex(SESSION_TOKEN_BYTES)
        session_id = str(ULID())

        async with self.guard.hold(principal_id):
            now = self.clock.now()
            await self._expire_stale(principal_id, now)

            active = await self.store.list_active_sessions(principal_id)
            survivors = max(0, self.config.max_concurrent_sessions - 1)
            for evicted in active[survivors:]:
                await self._end(
                    evicted,
                    REASON_CONCURRENT_LIMIT,
                    client,
                    now,
                    {"evicted_by": session_id},
                )

            expires_at = now + self.config.max_age
            await self.store.insert_session(
                SessionRecord(
                    guid=session_id,
                    principal_id=principal_id,
                    token_hash=digest_token(token),
                    created_at=now,
                    expires_at=expires_at,
                    last_activity=now,
                    ip_address=client.ip_address,
                    user_agent=client.user_agent,
                )
            )
            await self._log(session_id, ACTIVITY_LOGIN, client, now)

        self.metrics_client.increment("authcore.session.created", 1)
        return SessionGrant(
            token=token,
            session_id=session_id,
            principal_id=principal_id,
            expires_at=expires_at,
            cookie=self.config.cookie,
        )

    async def validate_session(
        self, token: Optional[str], client: Optional[ClientMetadata] = None
    ) -> SessionValidation:
        client = client or ClientMetadata()
        if not token:
            return self._validated(SessionValidation(valid=False, reason="missing"))

        try:
            session = await self.store.get_session_by_token_hash(digest_token(token))
            if session is None:
                return self._validated(SessionValidation(valid=False, reason="not_found"))

            if not session.is_active:
                return self._validated(
                    SessionValidation(
                        valid=False,
                        principal_id=session.principal_id,
                        session_id=session.guid,
                        reason=session.deactivated_reason or "inactive",
                    )
                )

            now = self.clock.now()
            if self._is_stale(session, now):
                await self._end(session, REASON_TIMEOUT, client, now)
                return self._validated(
                    SessionValidation(
                        valid=False,
                        principal_id=session.principal_id,
                        session_id=session.guid,
                        reason=REASON_TIMEOUT,
                    )
                )

            await self._log(session.guid, ACTIVITY_ACTIVITY, client, now)
            expires_at = now + self.config.max_age
            await self.store.touch_session(session.guid, now, expires_at)

            if await self._detect_anomaly(session, client, now):
                return self._validated(
                    SessionValidation(
                        valid=False,
                        principal_id=session.principal_id,
                        session_id=session.guid,
                        suspicious=True,
                        reason=REASON_SUSPICIOUS,
                    )
                )

            return self._validated(
                SessionValidation(
                    valid=True,
                    principal_id=session.principal_id,
                    session_id=session.guid,
                    expires_at=expires_at,
                )
            )
        except StoreError as e:
            logger.warning("session validation failed closed: %s", e)
            await self.audit.security_event(
                SecurityEventType.STORE_UNAVAILABLE,
                "high",
                client=client,
                operation=e.operation,
                policy="fail_closed",
            )
            return self._validated(
                SessionValidation(valid=False, reason="store_unavailable")
            )

    async def destroy_session(
        self, token: str, client: Optional[ClientMetadata] = None
    ) -> bool:
        session = await self.store.get_session_by_token_hash(digest_token(token))
        if session is None or not session.is_active:
            return False
        return await self._end(
            session, REASON_LOGOUT, client or ClientMetadata(), self.clock.now()
        )

    async def invalidate_all_sessions(
        self,
        principal_id: str,
        reason: str = REASON_SECURITY,
        client: Optional[ClientMetadata] = None,
    ) -> int:
        """Deactivate every active session for a principal. Returns the number deactivated."""
        now = self.clock.now()
        ended = 0
        for session in await self.store.list_active_sessions(principal_id):
            if await self._end(session, reason, client or ClientMetadata(), now):
                ended += 1
        if ended:
            logger.info(
                "invalidated %d sessions for %s (%s)", ended, principal_id, reason
            )
        return ended

    async def list_sessions(self, principal_id: str) -> List[SessionRecord]:
        """Active sessions for a principal, most recent activity first."""
        return await self.store.list_active_sessions(principal_id)

    async def sweep_stale_sessions(self, limit: int = 500) -> int:
        """Time out active sessions that expired or went idle without being validated again."""
        now = self.clock.now()
        stale = await self.store.list_stale_sessions(
            now, now - self.config.inactivity_timeout, limit=limit
        )
        ended = 0
        for session in stale:
            if await self._end(session, REASON_TIMEOUT, ClientMetadata(), now):
                ended += 1
        return ended

    def _is_stale(self, session: SessionRecord, now: datetime) -> bool:
        return (
            now > session.expires_at
            or now - session.last_activity > self.config.inactivity_timeout
        )

    async def _expire_stale(self, principal_id: str, now: datetime) -> None:
        stale = await self.store.list_stale_sessions(
            now, now - self.config.inactivity_timeout, principal_id=principal_id
        )
        for session in stale:
            await self._end(session, REASON_TIMEOUT, ClientMetadata(), now)

    async def _detect_anomaly(
        self, session: SessionRecord, client: ClientMetadata, now: datetime
    ) -> bool:
        events = await self.store.recent_activity(
            session.guid, self.config.suspicious_activity_window
        )
        threshold = self.config.suspicious_activity_threshold
        ip_addresses = sorted({e.ip_address for e in events if e.ip_address})
        user_agents = sorted({e.user_agent for e in events if e.user_agent})

        detail: Optional[Dict[str, Any]] = None
        if len(ip_addresses) >= threshold:
            detail = {"reason": "rapid_ip_changes", "ip_addresses": ip_addresses}
        elif len(user_agents) >= threshold:
            detail = {"reason": "user_agent_changes", "user_agents": user_agents}
        if detail is None:
            return False

        await self._log(session.guid, ACTIVITY_SUSPICIOUS, client, now, detail)
        await self.store.deactivate_session(session.guid, REASON_SUSPICIOUS)
        self.metrics_client.increment(
            "authcore.session.suspicious", 1, tag_dict={"reason": detail["reason"]}
        )
        await self.audit.security_event(
            SecurityEventType.SUSPICIOUS_SESSION,
            "high",
            principal_id=session.principal_id,
            client=client,
            session_id=session.guid,
            reason=detail["reason"],
            distinct_count=max(len(ip_addresses), len(user_agents)),
        )
        return True

    async def _end(
        self,
        session: SessionRecord,
        reason: str,
        client: ClientMetadata,
        now: datetime,
        detail: Optional[Dict[str, Any]] = None,
    ) -> bool:
        if not await self.store.deactivate_session(session.guid, reason):
            return False
        event_detail = {"reason": reason}
        event_detail.update(detail or {})
        await self._log(
            session.guid,
            _ACTIVITY_FOR_REASON.get(reason, ACTIVITY_LOGOUT),
            client,
            now,
            event_detail,
        )
        self.metrics_client.increment(
            "authcore.session.ended", 1, tag_dict={"reason": reason}
        )
        return True

    async def _log(
        self,
        session_id: str,
        action: str,
        client: ClientMetadata,
        now: datetime,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.store.add_activity(
            SessionActivityRecord(
                guid=str(ULID()),
                session_id=session_id,
                action=action,
                created_at=now,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                detail=detail or {},
            )
        )

    def _validated(self, result: SessionValidation) -> SessionValidation:
        self.metrics_client.increment(
            "authcore.session.validated",
            1,
            tag_dict={"valid": str(result.valid).lower(), "reason": result.reason or "ok"},
        )
        return result
