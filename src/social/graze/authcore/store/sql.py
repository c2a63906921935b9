"""
PostgreSQL store adapters.

Every public method runs in its own transaction (`async with session.begin()`) and the whole transaction is bounded
by the store timeout. Timeouts and driver errors are converted to `StoreError` at this boundary; the unique email
constraint on principals is reported as `DuplicateEmailError`.
"""
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy import delete, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from social.graze.authcore.model.attempts import AuthAttempt
from social.graze.authcore.model.principal import PasswordHistory, Principal
from social.graze.authcore.model.sessions import SessionActivity, UserSession
from social.graze.authcore.model.verification import VerificationToken
from social.graze.authcore.store.base import (
    AttemptStore,
    CredentialStore,
    DuplicateEmailError,
    PasswordHistoryStore,
    SessionStore,
    StoreError,
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

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SqlStore:
    """Shared transaction and timeout handling for the SQL adapters."""

    def __init__(
        self,
        database_session_maker: async_sessionmaker[AsyncSession],
        timeout_seconds: float = 5.0,
    ):
        self.database_session_maker = database_session_maker
        self.timeout_seconds = timeout_seconds

    async def _run(
        self, operation: str, work: Callable[[AsyncSession], Awaitable[T]]
    ) -> T:
        async def _transaction() -> T:
            async with self.database_session_maker() as database_session:
                async with database_session.begin():
                    return await work(database_session)

        try:
            return await asyncio.wait_for(_transaction(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.warning("store operation %s timed out", operation)
            raise StoreError.timeout(operation) from e
        except (SQLAlchemyError, OSError) as e:
            logger.warning("store operation %s failed: %s", operation, e)
            raise StoreError.unavailable(operation, e) from e


def _attempt_record(row: AuthAttempt) -> AttemptRecord:
    return AttemptRecord(
        guid=row.guid,
        identifier=row.identifier,
        action=row.action,
        success=row.success,
        created_at=row.created_at,
        principal_id=row.principal_guid,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
    )


def _session_record(row: UserSession) -> SessionRecord:
    return SessionRecord(
        guid=row.guid,
        principal_id=row.principal_guid,
        token_hash=row.token_hash,
        created_at=row.created_at,
        expires_at=row.expires_at,
        last_activity=row.last_activity,
        is_active=row.is_active,
        deactivated_reason=row.deactivated_reason,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
    )


def _principal_record(row: Principal) -> PrincipalRecord:
    return PrincipalRecord(
        guid=row.guid,
        email=row.email,
        created_at=row.created_at,
        updated_at=row.updated_at,
        name=row.name,
        email_verified_at=row.email_verified_at,
        password_hash=row.password_hash,
        password_set_at=row.password_set_at,
        grace_logins_used=row.grace_logins_used,
    )


def _history_record(row: PasswordHistory) -> PasswordHistoryRecord:
    return PasswordHistoryRecord(
        guid=row.guid,
        principal_id=row.principal_guid,
        password_hash=row.password_hash,
        created_at=row.created_at,
    )


def _token_record(row: VerificationToken) -> TokenRecord:
    return TokenRecord(
        token_hash=row.token_hash,
        identifier=row.identifier,
        token_type=row.token_type,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


class SqlAttemptStore(SqlStore, AttemptStore):
    async def add_attempt(self, record: AttemptRecord) -> None:
        async def _work(database_session: AsyncSession) -> None:
            database_session.add(
                AuthAttempt(
                    guid=record.guid,
                    identifier=record.identifier,
                    action=record.action,
                    success=record.success,
                    principal_guid=record.principal_id,
                    ip_address=record.ip_address,
                    user_agent=record.user_agent,
                    created_at=record.created_at,
                )
            )

        await self._run("add_attempt", _work)

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
        stmt = select(AuthAttempt).where(AuthAttempt.created_at >= since)
        if identifier is not None:
            stmt = stmt.where(AuthAttempt.identifier == identifier)
        if action is not None:
            stmt = stmt.where(AuthAttempt.action == action)
        stmt = stmt.order_by(AuthAttempt.created_at.asc())

        async def _work(database_session: AsyncSession) -> List[AttemptRecord]:
            rows = (await database_session.scalars(stmt)).all()
            return [_attempt_record(row) for row in rows]

        return await self._run("query_attempts", _work)

    async def delete_attempts_before(self, cutoff: datetime) -> int:
        async def _work(database_session: AsyncSession) -> int:
            result = await database_session.execute(
                delete(AuthAttempt).where(AuthAttempt.created_at < cutoff)
            )
            return result.rowcount or 0

        return await self._run("delete_attempts_before", _work)


class SqlSessionStore(SqlStore, SessionStore):
    async def insert_session(self, session: SessionRecord) -> None:
        async def _work(database_session: AsyncSession) -> None:
            database_session.add(
                UserSession(
                    guid=session.guid,
                    principal_guid=session.principal_id,
                    token_hash=session.token_hash,
                    created_at=session.created_at,
                    expires_at=session.expires_at,
                    last_activity=session.last_activity,
                    is_active=session.is_active,
                    deactivated_reason=session.deactivated_reason,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                )
            )

        await self._run("insert_session", _work)

    async def get_session_by_token_hash(self, token_hash: str) -> Optional[SessionRecord]:
        async def _work(database_session: AsyncSession) -> Optional[SessionRecord]:
            row = await database_session.scalar(
                select(UserSession).where(UserSession.token_hash == token_hash)
            )
            return _session_record(row) if row is not None else None

        return await self._run("get_session_by_token_hash", _work)

    async def list_active_sessions(self, principal_id: str) -> List[SessionRecord]:
        stmt = (
            select(UserSession)
            .where(
                UserSession.principal_guid == principal_id,
                UserSession.is_active.is_(True),
            )
            .order_by(UserSession.last_activity.desc())
        )

        async def _work(database_session: AsyncSession) -> List[SessionRecord]:
            rows = (await database_session.scalars(stmt)).all()
            return [_session_record(row) for row in rows]

        return await self._run("list_active_sessions", _work)

    async def touch_session(
        self, session_id: str, last_activity: datetime, expires_at: datetime
    ) -> None:
        async def _work(database_session: AsyncSession) -> None:
            await database_session.execute(
                update(UserSession)
                .where(UserSession.guid == session_id)
                .values(last_activity=last_activity, expires_at=expires_at)
            )

        await self._run("touch_session", _work)

    async def deactivate_session(self, session_id: str, reason: str) -> bool:
        async def _work(database_session: AsyncSession) -> bool:
            result = await database_session.execute(
                update(UserSession)
                .where(UserSession.guid == session_id, UserSession.is_active.is_(True))
                .values(is_active=False, deactivated_reason=reason)
            )
            return (result.rowcount or 0) > 0

        return await self._run("deactivate_session", _work)

    async def list_stale_sessions(
        self,
        now: datetime,
        inactive_since: datetime,
        principal_id: Optional[str] = None,
        limit: int = 500,
    ) -> List[SessionRecord]:
        stmt = select(UserSession).where(
            UserSession.is_active.is_(True),
            or_(
                UserSession.expires_at < now,
                UserSession.last_activity < inactive_since,
            ),
        )
        if principal_id is not None:
            stmt = stmt.where(UserSession.principal_guid == principal_id)
        stmt = stmt.order_by(UserSession.last_activity.asc()).limit(limit)

        async def _work(database_session: AsyncSession) -> List[SessionRecord]:
            rows = (await database_session.scalars(stmt)).all()
            return [_session_record(row) for row in rows]

        return await self._run("list_stale_sessions", _work)

    async def add_activity(self, event: SessionActivityRecord) -> None:
        async def _work(database_session: AsyncSession) -> None:
            database_session.add(
                SessionActivity(
                    guid=event.guid,
                    session_guid=event.session_id,
                    action=event.action,
                    ip_address=event.ip_address,
                    user_agent=event.user_agent,
                    detail=event.detail,
                    created_at=event.created_at,
                )
            )

        await self._run("add_activity", _work)

    async def recent_activity(
        self, session_id: str, limit: int
    ) -> List[SessionActivityRecord]:
        stmt = (
            select(SessionActivity)
            .where(SessionActivity.session_guid == session_id)
            .order_by(SessionActivity.created_at.desc(), SessionActivity.guid.desc())
            .limit(limit)
        )

        async def _work(database_session: AsyncSession) -> List[SessionActivityRecord]:
            rows = (await database_session.scalars(stmt)).all()
            return [
                SessionActivityRecord(
                    guid=row.guid,
                    session_id=row.session_guid,
                    action=row.action,
                    created_at=row.created_at,
                    ip_address=row.ip_address,
                    user_agent=row.user_agent,
                    detail=row.detail or {},
                )
                for row in rows
            ]

        return await self._run("recent_activity", _work)


class SqlTokenStore(SqlStore, TokenStore):
    async def replace_token(self, record: TokenRecord) -> None:
        # The unique (identifier, token_type) index makes concurrent issues converge on one live row.
        stmt = (
            insert(VerificationToken)
            .values(
                [
                    {
                        "token_hash": record.token_hash,
                        "identifier": record.identifier,
                        "token_type": record.token_type,
                        "expires_at": record.expires_at,
                        "created_at": record.created_at,
                    }
                ]
            )
            .on_conflict_do_update(
                index_elements=["identifier", "token_type"],
                set_={
                    "token_hash": record.token_hash,
                    "expires_at": record.expires_at,
                    "created_at": record.created_at,
                },
            )
        )

        async def _work(database_session: AsyncSession) -> None:
            await database_session.execute(stmt)

        await self._run("replace_token", _work)

    async def get_token(self, token_hash: str) -> Optional[TokenRecord]:
        async def _work(database_session: AsyncSession) -> Optional[TokenRecord]:
            row = await database_session.get(VerificationToken, token_hash)
            return _token_record(row) if row is not None else None

        return await self._run("get_token", _work)

    async def consume_token(self, token_hash: str) -> Optional[TokenRecord]:
        stmt = (
            delete(VerificationToken)
            .where(VerificationToken.token_hash == token_hash)
            .returning(
                VerificationToken.token_hash,
                VerificationToken.identifier,
                VerificationToken.token_type,
                VerificationToken.expires_at,
                VerificationToken.created_at,
            )
        )

        async def _work(database_session: AsyncSession) -> Optional[TokenRecord]:
            row = (await database_session.execute(stmt)).first()
            if row is None:
                return None
            return TokenRecord(
                token_hash=row.token_hash,
                identifier=row.identifier,
                token_type=row.token_type,
                expires_at=row.expires_at,
                created_at=row.created_at,
            )

        return await self._run("consume_token", _work)

    async def delete_expired_tokens(self, now: datetime) -> int:
        async def _work(database_session: AsyncSession) -> int:
            result = await database_session.execute(
                delete(VerificationToken).where(VerificationToken.expires_at < now)
            )
            return result.rowcount or 0

        return await self._run("delete_expired_tokens", _work)

    async def list_tokens(self, identifier: str) -> List[TokenRecord]:
        async def _work(database_session: AsyncSession) -> List[TokenRecord]:
            rows = (
                await database_session.scalars(
                    select(VerificationToken).where(
                        VerificationToken.identifier == identifier
                    )
                )
            ).all()
            return [_token_record(row) for row in rows]

        return await self._run("list_tokens", _work)


class SqlCredentialStore(SqlStore, CredentialStore, PasswordHistoryStore):
    async def get_principal(self, principal_id: str) -> Optional[PrincipalRecord]:
        async def _work(database_session: AsyncSession) -> Optional[PrincipalRecord]:
            row = await database_session.get(Principal, principal_id)
            return _principal_record(row) if row is not None else None

        return await self._run("get_principal", _work)

    async def get_principal_by_email(self, email: str) -> Optional[PrincipalRecord]:
        normalized = email.strip().lower()

        async def _work(database_session: AsyncSession) -> Optional[PrincipalRecord]:
            row = await database_session.scalar(
                select(Principal).where(Principal.email == normalized)
            )
            return _principal_record(row) if row is not None else None

        return await self._run("get_principal_by_email", _work)

    async def create_principal(
        self,
        principal: PrincipalRecord,
        seed_history: Optional[PasswordHistoryRecord] = None,
    ) -> None:
        normalized = principal.email.strip().lower()

        async def _work(database_session: AsyncSession) -> None:
            database_session.add(
                Principal(
                    guid=principal.guid,
                    email=normalized,
                    name=principal.name,
                    email_verified_at=principal.email_verified_at,
                    password_hash=principal.password_hash,
                    password_set_at=principal.password_set_at,
                    grace_logins_used=principal.grace_logins_used,
                    created_at=principal.created_at,
                    updated_at=principal.updated_at,
                )
            )
            try:
                await database_session.flush()
            except IntegrityError as e:
                raise DuplicateEmailError(normalized) from e
            if seed_history is not None:
                database_session.add(
                    PasswordHistory(
                        guid=seed_history.guid,
                        principal_guid=principal.guid,
                        password_hash=seed_history.password_hash,
                        created_at=seed_history.created_at,
                    )
                )

        await self._run("create_principal", _work)

    async def update_credential(
        self,
        principal_id: str,
        password_hash: str,
        password_set_at: datetime,
        previous: Optional[PasswordHistoryRecord] = None,
        history_limit: Optional[int] = None,
    ) -> int:
        async def _work(database_session: AsyncSession) -> int:
            await database_session.execute(
                update(Principal)
                .where(Principal.guid == principal_id)
                .values(
                    password_hash=password_hash,
                    password_set_at=password_set_at,
                    grace_logins_used=0,
                    updated_at=password_set_at,
                )
            )
            if previous is not None:
                newest = await database_session.scalar(_history_stmt(principal_id).limit(1))
                if newest is None or newest.password_hash != previous.password_hash:
                    _add_history(database_session, previous)
                    await database_session.flush()
            if history_limit is None:
                return 0
            return await _prune_history(database_session, principal_id, history_limit)

        return await self._run("update_credential", _work)

    async def mark_verified(self, principal_id: str, verified_at: datetime) -> None:
        async def _work(database_session: AsyncSession) -> None:
            await database_session.execute(
                update(Principal)
                .where(Principal.guid == principal_id)
                .values(email_verified_at=verified_at, updated_at=verified_at)
            )

        await self._run("mark_verified", _work)

    async def record_grace_login(self, principal_id: str) -> int:
        stmt = (
            update(Principal)
            .where(Principal.guid == principal_id)
            .values(grace_logins_used=Principal.grace_logins_used + 1)
            .returning(Principal.grace_logins_used)
        )

        async def _work(database_session: AsyncSession) -> int:
            used = (await database_session.execute(stmt)).scalar_one_or_none()
            return used or 0

        return await self._run("record_grace_login", _work)

    async def list_password_history(
        self, principal_id: str, limit: int
    ) -> List[PasswordHistoryRecord]:
        stmt = _history_stmt(principal_id).limit(limit)

        async def _work(database_session: AsyncSession) -> List[PasswordHistoryRecord]:
            rows = (await database_session.scalars(stmt)).all()
            return [_history_record(row) for row in rows]

        return await self._run("list_password_history", _work)

    async def add_password_history(self, entry: PasswordHistoryRecord) -> None:
        async def _work(database_session: AsyncSession) -> None:
            _add_history(database_session, entry)

        await self._run("add_password_history", _work)

    async def prune_password_history(self, principal_id: str, keep: int) -> int:
        async def _work(database_session: AsyncSession) -> int:
            return await _prune_history(database_session, principal_id, keep)

        return await self._run("prune_password_history", _work)


def _history_stmt(principal_id: str):
    """A principal's password history, newest first."""
    return (
        select(PasswordHistory)
        .where(PasswordHistory.principal_guid == principal_id)
        .order_by(PasswordHistory.created_at.desc(), PasswordHistory.guid.desc())
    )


def _add_history(database_session: AsyncSession, entry: PasswordHistoryRecord) -> None:
    database_session.add(
        PasswordHistory(
            guid=entry.guid,
            principal_guid=entry.principal_id,
            password_hash=entry.password_hash,
            created_at=entry.created_at,
        )
    )


async def _prune_history(database_session: AsyncSession, principal_id: str, keep: int) -> int:
    kept = (
        await database_session.scalars(
            _history_stmt(principal_id).with_only_columns(PasswordHistory.guid).limit(keep)
        )
    ).all()
    stmt = delete(PasswordHistory).where(PasswordHistory.principal_guid == principal_id)
    if kept:
        stmt = stmt.where(PasswordHistory.guid.not_in(kept))
    result = await database_session.execute(stmt)
    return result.rowcount or 0
