"""
Auth Orchestrator

Composes the rate limiter, session manager, token service and password policy engine into the user-facing flows:

- sign in / sign up / sign out / authenticate
- change password
- email verification (request + verify)
- password reset (request + reset)

Every flow clears the rate limiter first, performs its action, records the outcome back into the rate limiter and
the audit log, and on success asks the session manager for a session. Denied branches, including an
unknown principal, record a failed attempt too.

Operations never raise. `AuthError` and `StoreError` are converted into a failed `AuthResult`; anything else is sent
to Sentry and reported as `SERVER_ERROR`.
"""
import logging
import re
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime
from time import time
from typing import Awaitable, Callable, List, NoReturn, Optional
from urllib.parse import urlencode

import sentry_sdk
from ulid import ULID

from social.graze.authcore.app.metrics import MetricsClient
from social.graze.authcore.core.audit import AuditLogger, SecurityEventType, mask_email
from social.graze.authcore.core.clock import Clock
from social.graze.authcore.core.errors import AuthError, AuthErrorKind, ERROR_MESSAGES
from social.graze.authcore.core.hashing import PasswordHasher
from social.graze.authcore.core.mailer import EmailDeliveryError, Mailer, OutboundEmail
from social.graze.authcore.core.password_policy import (
    ExpirationStatus,
    PasswordContext,
    PasswordPolicyEngine,
)
from social.graze.authcore.core.rate_limiter import RateLimiter, RateLimitResult
from social.graze.authcore.core.session_manager import SessionGrant, SessionManager
from social.graze.authcore.core.tokens import (
    TokenService,
    TokenType,
    TokenVerification,
    peek_token_type,
)
from social.graze.authcore.store.base import CredentialStore, DuplicateEmailError, StoreError
from social.graze.authcore.store.records import (
    ClientMetadata,
    PasswordHistoryRecord,
    PrincipalRecord,
)

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_EMAIL_LENGTH = 320
MAX_NAME_LENGTH = 512

ACTION_LOGIN = "login"
ACTION_SIGNUP = "signup"
ACTION_PASSWORD_RESET = "passwordReset"
ACTION_PASSWORD_CHANGE = "passwordChange"
ACTION_EMAIL_VERIFICATION = "emailVerification"

REASON_PASSWORD_CHANGE = "password_change"
REASON_PASSWORD_RESET = "password_reset"

REQUEST_ACCEPTED = "If an account exists for that address, we've sent an email with further instructions."


@dataclass(frozen=True)
class AuthConfig:
    public_url: str = "http://localhost:5100"
    verify_email_path: str = "/verify-email"
    reset_password_path: str = "/reset-password"
    email_verification_ttl_minutes: int = 1440
    password_reset_ttl_minutes: int = 60


@dataclass
class AuthResult:
    success: bool
    message: str = ""
    error: Optional[AuthErrorKind] = None
    principal: Optional[PrincipalRecord] = None
    session: Optional[SessionGrant] = None
    expiration: Optional[ExpirationStatus] = None
    violations: List[str] = field(default_factory=list)
    lockout_ends_at: Optional[datetime] = None
    retry_after_seconds: Optional[int] = None

    @property
    def retryable(self) -> bool:
        return self.error is not None and ERROR_MESSAGES[self.error].retryable

    @staticmethod
    def ok(
        message: str,
        principal: Optional[PrincipalRecord] = None,
        session: Optional[SessionGrant] = None,
        expiration: Optional[ExpirationStatus] = None,
    ) -> "AuthResult":
        return AuthResult(
            success=True,
            message=message,
            principal=_public(principal) if principal is not None else None,
            session=session,
            expiration=expiration,
        )

    @staticmethod
    def failed(error: AuthError) -> "AuthResult":
        return AuthResult(
            success=False,
            message=error.user_message,
            error=error.kind,
            violations=list(error.violations),
            lockout_ends_at=error.lockout_ends_at,
            retry_after_seconds=error.retry_after_seconds,
        )


def _public(principal: PrincipalRecord) -> PrincipalRecord:
    """Copy of a principal without its credential."""
    return replace(principal, password_hash=None)


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


class AuthOrchestrator:
    def __init__(
        self,
        credentials: CredentialStore,
        rate_limiter: RateLimiter,
        sessions: SessionManager,
        tokens: TokenService,
        policy: PasswordPolicyEngine,
        hasher: PasswordHasher,
        mailer: Mailer,
        audit: AuditLogger,
        config: AuthConfig,
        clock: Clock,
        metrics_client: MetricsClient,
    ):
        self.credentials = credentials
        self.rate_limiter = rate_limiter
        self.sessions = sessions
        self.tokens = tokens
        self.policy = policy
        self.hasher = hasher
        self.mailer = mailer
        self.audit = audit
        self.config = config
        self.clock = clock
        self.metrics_client = metrics_client
        self._dummy_hash: Optional[str] = None

    async def sign_in(
        self, email: str, password: str, client: Optional[ClientMetadata] = None
    ) -> AuthResult:
        return await self._run(
            "sign_in", lambda: self._sign_in(normalize_email(email), password, client or ClientMetadata())
        )

    async def sign_up(
        self,
        email: str,
        password: str,
        name: Optional[str] = None,
        client: Optional[ClientMetadata] = None,
    ) -> AuthResult:
        return await self._run(
            "sign_up",
            lambda: self._sign_up(normalize_email(email), password, name, client or ClientMetadata()),
        )

    async def sign_out(
        self, token: Optional[str], client: Optional[ClientMetadata] = None
    ) -> AuthResult:
        return await self._run("sign_out", lambda: self._sign_out(token, client or ClientMetadata()))

    async def authenticate(
        self, token: Optional[str], client: Optional[ClientMetadata] = None
    ) -> AuthResult:
        return await self._run(
            "authenticate", lambda: self._authenticate(token, client or ClientMetadata())
        )

    async def change_password(
        self,
        principal_id: str,
        current_password: str,
        new_password: str,
        client: Optional[ClientMetadata] = None,
    ) -> AuthResult:
        return await self._run(
            "change_password",
            lambda: self._change_password(
                principal_id, current_password, new_password, client or ClientMetadata()
            ),
        )

    async def request_email_verification(
        self, email: str, client: Optional[ClientMetadata] = None
    ) -> AuthResult:
        return await self._run(
            "request_email_verification",
            lambda: self._request_email_verification(normalize_email(email), client or ClientMetadata()),
        )

    async def verify_email(
        self, token: str, client: Optional[ClientMetadata] = None
    ) -> AuthResult:
        return await self._run("verify_email", lambda: self._verify_email(token, client or ClientMetadata()))

    async def request_password_reset(
        self, email: str, client: Optional[ClientMetadata] = None
    ) -> AuthResult:
        return await self._run(
            "request_password_reset",
            lambda: self._request_password_reset(normalize_email(email), client or ClientMetadata()),
        )

    async def reset_password(
        self, token: str, new_password: str, client: Optional[ClientMetadata] = None
    ) -> AuthResult:
        return await self._run(
            "reset_password",
            lambda: self._reset_password(token, new_password, client or ClientMetadata()),
        )

    async def _run(
        self, operation: str, flow: Callable[[], Awaitable[AuthResult]]
    ) -> AuthResult:
        start_time = time()
        try:
            result = await flow()
        except AuthError as e:
            result = AuthResult.failed(e)
        except StoreError as e:
            logger.warning("%s failed on store: %s", operation, e)
            await self.audit.security_event(
                SecurityEventType.STORE_UNAVAILABLE,
                "high",
                operation=e.operation,
                flow=operation,
            )
            result = AuthResult.failed(AuthError.server_error(str(e)))
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("unexpected error during %s", operation)
            result = AuthResult.failed(AuthError.server_error())
        finally:
            self.metrics_client.timer(
                "authcore.auth.time", time() - start_time, tag_dict={"operation": operation}
            )

        self.metrics_client.increment(
            "authcore.auth.result",
            1,
            tag_dict={
                "operation": operation,
                "outcome": result.error.value if result.error else "success",
            },
        )
        return result

    async def _sign_in(
        self, email: str, password: str, client: ClientMetadata
    ) -> AuthResult:
        limit = await self.rate_limiter.check(email, ACTION_LOGIN)
        if not limit.allowed:
            await self._deny_rate_limited(email, ACTION_LOGIN, limit, client)

        principal = await self.credentials.get_principal_by_email(email)
        if principal is None or not principal.password_hash:
            # Burn the same hash time as a real verification.
            await self.hasher.verify(password, await self._timing_hash())
            await self._deny(
                AuthError.invalid_credentials(), email, ACTION_LOGIN, client, reason="unknown_account"
            )

        if not await self.hasher.verify(password, principal.password_hash):
            await self._deny(
                AuthError.invalid_credentials(),
                email,
                ACTION_LOGIN,
                client,
                principal_id=principal.guid,
                reason="bad_password",
            )

        await self.rate_limiter.record(email, ACTION_LOGIN, True, client, principal.guid)

        expiration = self.policy.check_expiration(
            principal.guid, principal.password_set_at, principal.grace_logins_used
        )
        if expiration.must_change_password:
            self.audit.auth_event(
                ACTION_LOGIN,
                False,
                email=email,
                principal_id=principal.guid,
                client=client,
                error="password_expired",
            )
            raise AuthError.password_expired()
        if expiration.expired:
            used = await self.credentials.record_grace_login(principal.guid)
            expiration = self.policy.check_expiration(
                principal.guid, principal.password_set_at, used
            )

        session = await self.sessions.create_session(principal.guid, client)
        self.audit.auth_event(
            ACTION_LOGIN,
            True,
            email=email,
            principal_id=principal.guid,
            client=client,
            password_expired=expiration.expired,
        )
        return AuthResult.ok("Signed in", principal, session, expiration)

    async def _sign_up(
        self, email: str, password: str, name: Optional[str], client: ClientMetadata
    ) -> AuthResult:
        limit = await self.rate_limiter.check(email, ACTION_SIGNUP)
        if not limit.allowed:
            await self._deny_rate_limited(email, ACTION_SIGNUP, limit, client)

        if len(email) > MAX_EMAIL_LENGTH or not EMAIL_PATTERN.match(email):
            await self._deny(
                AuthError.validation_error("invalid email address"),
                email,
                ACTION_SIGNUP,
                client,
                reason="invalid_email",
            )
        name = name.strip() if name else None
        if name and len(name) > MAX_NAME_LENGTH:
            await self._deny(
                AuthError.validation_error("name too long"),
                email,
                ACTION_SIGNUP,
                client,
                reason="invalid_name",
            )

        if await self.credentials.get_principal_by_email(email) is not None:
            await self._deny(
                AuthError.email_already_exists(), email, ACTION_SIGNUP, client, reason="email_exists"
            )

        validation = self.policy.validate(password, PasswordContext(email=email, name=name))
        if not validation.valid:
            await self._deny(
                AuthError.weak_password(validation.violations),
                email,
                ACTION_SIGNUP,
                client,
                reason="weak_password",
            )

        password_hash = await self.hasher.hash(password)
        now = self.clock.now()
        principal = PrincipalRecord(
            guid=str(ULID()),
            email=email,
            created_at=now,
            updated_at=now,
            name=name,
            password_hash=password_hash,
            password_set_at=now,
        )
        seed = PasswordHistoryRecord(
            guid=str(ULID()),
            principal_id=principal.guid,
            password_hash=password_hash,
            created_at=now,
        )
        try:
            await self.credentials.create_principal(principal, seed)
        except DuplicateEmailError:
            # Lost a race with a concurrent sign-up for the same address.
            await self._deny(
                AuthError.email_already_exists(), email, ACTION_SIGNUP, client, reason="email_exists"
            )

        await self.rate_limiter.record(email, ACTION_SIGNUP, True, client, principal.guid)
        session = await self.sessions.create_session(principal.guid, client)
        self.audit.auth_event(
            ACTION_SIGNUP, True, email=email, principal_id=principal.guid, client=client
        )
        return AuthResult.ok("Account created", principal, session)

    async def _sign_out(self, token: Optional[str], client: ClientMetadata) -> AuthResult:
        if token:
            ended = await self.sessions.destroy_session(token, client)
            self.audit.auth_event("logout", True, client=client, session_ended=ended)
        return AuthResult.ok("Signed out")

    async def _authenticate(self, token: Optional[str], client: ClientMetadata) -> AuthResult:
        validation = await self.sessions.validate_session(token, client)
        if not validation.valid:
            if validation.reason == "timeout":
                raise AuthError.session_expired()
            raise AuthError.unauthorized()

        principal = await self.credentials.get_principal(validation.principal_id)
        if principal is None:
            raise AuthError.unauthorized()
        return AuthResult.ok("Authenticated", principal)

    async def _change_password(
        self,
        principal_id: str,
        current_password: str,
        new_password: str,
        client: ClientMetadata,
    ) -> AuthResult:
        limit = await self.rate_limiter.check(principal_id, ACTION_PASSWORD_CHANGE)
        if not limit.allowed:
            await self._deny_rate_limited(principal_id, ACTION_PASSWORD_CHANGE, limit, client)

        principal = await self.credentials.get_principal(principal_id)
        if principal is None or not principal.password_hash:
            await self._deny(
                AuthError.unauthorized(),
                principal_id,
                ACTION_PASSWORD_CHANGE,
                client,
                reason="unknown_principal",
            )

        if not await self.hasher.verify(current_password, principal.password_hash):
            await self._deny(
                AuthError.invalid_credentials(),
                principal_id,
                ACTION_PASSWORD_CHANGE,
                client,
                principal_id=principal.guid,
                email=principal.email,
                reason="bad_password",
            )

        try:
            await self._check_new_password(
                principal, new_password, client, REASON_PASSWORD_CHANGE
            )
        except AuthError as e:
            await self._deny(
                e,
                principal_id,
                ACTION_PASSWORD_CHANGE,
                client,
                principal_id=principal.guid,
                email=principal.email,
                reason=e.kind.value.lower(),
            )

        session = await self._store_new_password(
            principal, new_password, client, REASON_PASSWORD_CHANGE
        )
        await self.rate_limiter.record(
            principal_id, ACTION_PASSWORD_CHANGE, True, client, principal.guid
        )
        return AuthResult.ok("Password changed", principal, session)

    async def _request_email_verification(
        self, email: str, client: ClientMetadata
    ) -> AuthResult:
        limit = await self.rate_limiter.check(email, ACTION_EMAIL_VERIFICATION)
        if not limit.allowed:
            await self._deny_rate_limited(email, ACTION_EMAIL_VERIFICATION, limit, client)
        await self.rate_limiter.record(email, ACTION_EMAIL_VERIFICATION, True, client)

        principal = await self.credentials.get_principal_by_email(email)
        if principal is None or principal.email_verified_at is not None:
            logger.info(
                "email verification not sent to %s: %s",
                mask_email(email),
                "unknown account" if principal is None else "already verified",
            )
            return AuthResult.ok(REQUEST_ACCEPTED)

        issued = await self.tokens.create_token(
            email, TokenType.EMAIL_VERIFICATION, self.config.email_verification_ttl_minutes
        )
        try:
            await self.mailer.send(
                OutboundEmail(
                    kind=TokenType.EMAIL_VERIFICATION.value,
                    recipient=email,
                    token=issued.token,
                    link=self._link(self.config.verify_email_path, issued.token),
                    expires_at=issued.expires_at,
                    name=principal.name,
                )
            )
        except EmailDeliveryError as e:
            self.audit.auth_event(
                ACTION_EMAIL_VERIFICATION,
                False,
                email=email,
                principal_id=principal.guid,
                client=client,
                error="email_send_failed",
            )
            raise AuthError.email_send_failed(str(e))

        self.audit.auth_event(
            ACTION_EMAIL_VERIFICATION,
            True,
            email=email,
            principal_id=principal.guid,
            client=client,
            step="request",
        )
        return AuthResult.ok(REQUEST_ACCEPTED)

    async def _verify_email(self, token: str, client: ClientMetadata) -> AuthResult:
        verification = await self.tokens.verify_token(token, TokenType.EMAIL_VERIFICATION)
        if not verification.valid:
            self.audit.auth_event(
                ACTION_EMAIL_VERIFICATION,
                False,
                client=client,
                error="expired_token" if verification.expired else "invalid_token",
            )
            raise AuthError.expired_token() if verification.expired else AuthError.invalid_token()

        principal = await self.credentials.get_principal_by_email(verification.identifier)
        if principal is None:
            raise AuthError.invalid_token()

        now = self.clock.now()
        await self.credentials.mark_verified(principal.guid, now)
        self.audit.auth_event(
            ACTION_EMAIL_VERIFICATION,
            True,
            email=principal.email,
            principal_id=principal.guid,
            client=client,
            step="verify",
        )
        return AuthResult.ok("Email verified", replace(principal, email_verified_at=now))

    async def _request_password_reset(
        self, email: str, client: ClientMetadata
    ) -> AuthResult:
        limit = await self.rate_limiter.check(email, ACTION_PASSWORD_RESET)
        if not limit.allowed:
            await self._deny_rate_limited(email, ACTION_PASSWORD_RESET, limit, client)
        await self.rate_limiter.record(email, ACTION_PASSWORD_RESET, True, client)

        principal = await self.credentials.get_principal_by_email(email)
        if principal is None:
            await self.audit.security_event(
                SecurityEventType.UNKNOWN_ACCOUNT,
                "low",
                email=email,
                client=client,
                flow=ACTION_PASSWORD_RESET,
            )
            return AuthResult.ok(REQUEST_ACCEPTED)

        issued = await self.tokens.create_token(
            email, TokenType.PASSWORD_RESET, self.config.password_reset_ttl_minutes
        )
        try:
            await self.mailer.send(
                OutboundEmail(
                    kind=TokenType.PASSWORD_RESET.value,
                    recipient=email,
                    token=issued.token,
                    link=self._link(self.config.reset_password_path, issued.token),
                    expires_at=issued.expires_at,
                    name=principal.name,
                )
            )
        except EmailDeliveryError as e:
            # The response must not differ from the unknown account case.
            logger.warning("password reset email for %s not delivered: %s", mask_email(email), e)
            self.audit.auth_event(
                ACTION_PASSWORD_RESET,
                False,
                email=email,
                principal_id=principal.guid,
                client=client,
                error="email_send_failed",
            )
            return AuthResult.ok(REQUEST_ACCEPTED)

        self.audit.auth_event(
            ACTION_PASSWORD_RESET,
            True,
            email=email,
            principal_id=principal.guid,
            client=client,
            step="request",
        )
        return AuthResult.ok(REQUEST_ACCEPTED)

    async def _reset_password(
        self, token: str, new_password: str, client: ClientMetadata
    ) -> AuthResult:
        if peek_token_type(token) != TokenType.PASSWORD_RESET:
            raise AuthError.invalid_token()

        # Every rejection happens before the token is spent, so the link stays usable for another attempt.
        validation = self.policy.validate(new_password)
        if not validation.valid:
            raise AuthError.weak_password(validation.violations)

        check = await self.tokens.check_token(token, TokenType.PASSWORD_RESET)
        if not check.valid:
            if check.expired:
                await self.tokens.verify_token(token, TokenType.PASSWORD_RESET)
            self._reset_token_rejected(check, client)

        principal = await self.credentials.get_principal_by_email(check.identifier)
        if principal is None:
            raise AuthError.invalid_token()

        await self._check_new_password(principal, new_password, client, REASON_PASSWORD_RESET)

        verification = await self.tokens.verify_token(token, TokenType.PASSWORD_RESET)
        if not verification.valid:
            self._reset_token_rejected(verification, client)

        session = await self._store_new_password(
            principal, new_password, client, REASON_PASSWORD_RESET
        )
        return AuthResult.ok("Password reset", principal, session)

    def _reset_token_rejected(self, verification: TokenVerification, client: ClientMetadata) -> NoReturn:
        self.audit.auth_event(
            ACTION_PASSWORD_RESET,
            False,
            client=client,
            error="expired_token" if verification.expired else "invalid_token",
        )
        raise AuthError.expired_token() if verification.expired else AuthError.invalid_token()

    async def _check_new_password(
        self,
        principal: PrincipalRecord,
        new_password: str,
        client: ClientMetadata,
        reason: str,
    ) -> None:
        """Raise unless `new_password` passes the policy for this principal and is not a recent password."""
        validation = self.policy.validate(
            new_password, PasswordContext(email=principal.email, name=principal.name)
        )
        if not validation.valid:
            raise AuthError.weak_password(validation.violations)

        if await self.policy.is_reused(principal.guid, new_password, principal.password_hash):
            await self.audit.security_event(
                SecurityEventType.PASSWORD_REUSE,
                "medium",
                email=principal.email,
                principal_id=principal.guid,
                client=client,
                flow=reason,
            )
            raise AuthError.password_reuse()

    async def _store_new_password(
        self,
        principal: PrincipalRecord,
        new_password: str,
        client: ClientMetadata,
        reason: str,
    ) -> SessionGrant:
        """Store a checked password with its history entry, then replace every session with a fresh one."""
        password_hash = await self.hasher.hash(new_password)
        previous = (
            self.policy.history_entry(principal.guid, principal.password_hash)
            if principal.password_hash
            else None
        )
        await self.credentials.update_credential(
            principal.guid,
            password_hash,
            self.clock.now(),
            previous=previous,
            history_limit=self.policy.policy.history_limit,
        )

        await self.sessions.invalidate_all_sessions(principal.guid, reason, client)
        session = await self.sessions.create_session(principal.guid, client)
        self.audit.auth_event(
            reason, True, email=principal.email, principal_id=principal.guid, client=client
        )
        return session

    async def _deny_rate_limited(
        self, identifier: str, action: str, limit: RateLimitResult, client: ClientMetadata
    ) -> NoReturn:
        await self.rate_limiter.record(identifier, action, False, client)
        await self.audit.security_event(
            SecurityEventType.BRUTE_FORCE if limit.locked else SecurityEventType.MULTIPLE_FAILED_ATTEMPTS,
            "high" if limit.locked else "medium",
            email=identifier if "@" in identifier else None,
            client=client,
            action=action,
            lockout_ends_at=limit.lockout_ends_at.isoformat() if limit.lockout_ends_at else None,
        )
        if limit.locked:
            raise AuthError.account_locked(limit.lockout_ends_at, limit.retry_after_seconds)
        raise AuthError.rate_limited(limit.retry_after_seconds)

    async def _deny(
        self,
        denial: AuthError,
        identifier: str,
        action: str,
        client: ClientMetadata,
        principal_id: Optional[str] = None,
        email: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> NoReturn:
        """Record a failed attempt and an audit event, then raise `denial`."""
        await self.rate_limiter.record(identifier, action, False, client, principal_id)
        self.audit.auth_event(
            action,
            False,
            email=email or (identifier if "@" in identifier else None),
            principal_id=principal_id,
            client=client,
            error=reason,
        )
        raise denial

    async def _timing_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = await self.hasher.hash(secrets.token_hex(16))
        return self._dummy_hash

    def _link(self, path: str, token: str) -> str:
        return f"{self.config.public_url.rstrip('/')}{path}?{urlencode({'token': token})}"
