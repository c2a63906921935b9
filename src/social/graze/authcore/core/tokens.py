"""
Token Service

Single-use, typed, expiring tokens for email verification and password reset links.

Token values look like `<type>:<64 hex chars>`. The type prefix is parsed without touching the store, so a token
of the wrong kind is rejected before anything is consumed. Only a SHA-256 digest of the value is stored.

At most one live token exists per (identifier, type): creating a token replaces any earlier one in the same store
transaction, so an older emailed link stops working as soon as a new one is requested. Verification is a single
atomic read-and-delete; an expired token is deleted and reported as expired, a live one is deleted and reported
valid. `check_token` runs the same checks without consuming, for flows that must validate other input before
spending the token. Store failures during verification fail closed.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from social.graze.authcore.core.audit import AuditLogger, SecurityEventType
from social.graze.authcore.core.clock import Clock
from social.graze.authcore.core.hashing import digest_token
from social.graze.authcore.store.base import StoreError, TokenStore
from social.graze.authcore.store.records import TokenRecord

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


class TokenType(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_type: TokenType
    identifier: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenVerification:
    valid: bool
    token_type: Optional[TokenType] = None
    identifier: Optional[str] = None
    expired: bool = False


def peek_token_type(token: str) -> Optional[TokenType]:
    """Parse the type prefix of a token value. Returns None for malformed tokens."""
    prefix, separator, secret = token.partition(":")
    if not separator or len(secret) != TOKEN_BYTES * 2:
        return None
    try:
        int(secret, 16)
        return TokenType(prefix)
    except ValueError:
        return None


class TokenService:
    def __init__(self, store: TokenStore, clock: Clock, audit: AuditLogger):
        self.store = store
        self.clock = clock
        self.audit = audit

    async def create_token(
        self, identifier: str, token_type: TokenType, ttl_minutes: int
    ) -> IssuedToken:
        if ttl_minutes <= 0:
            raise ValueError("ttl_minutes must be positive")
        now = self.clock.now()
        token = f"{token_type.value}:{secrets.token_hex(TOKEN_BYTES)}"
        expires_at = now + timedelta(minutes=ttl_minutes)
        await self.store.replace_token(
            TokenRecord(
                token_hash=digest_token(token),
                identifier=identifier,
                token_type=token_type.value,
                expires_at=expires_at,
                created_at=now,
            )
        )
        logger.debug("issued %s token expiring at %s", token_type.value, expires_at)
        return IssuedToken(
            token=token,
            token_type=token_type,
            identifier=identifier,
            expires_at=expires_at,
        )

    async def check_token(
        self, token: str, expected_type: Optional[TokenType] = None
    ) -> TokenVerification:
        """
        Look a token up without consuming it, so a flow can reject a request and leave the link usable.
        A valid check does not guarantee a later `verify_token` succeeds; only consumption is atomic.
        """
        return await self._lookup(token, expected_type, consume=False)

    async def verify_token(
        self, token: str, expected_type: Optional[TokenType] = None
    ) -> TokenVerification:
        """Consume a token. A token is valid at most once."""
        return await self._lookup(token, expected_type, consume=True)

    async def _lookup(
        self, token: str, expected_type: Optional[TokenType], consume: bool
    ) -> TokenVerification:
        token_type = peek_token_type(token)
        if token_type is None:
            return TokenVerification(valid=False)
        if expected_type is not None and token_type != expected_type:
            return TokenVerification(valid=False, token_type=token_type)

        token_hash = digest_token(token)
        try:
            if consume:
                record = await self.store.consume_token(token_hash)
            else:
                record = await self.store.get_token(token_hash)
        except StoreError as e:
            logger.warning("token verification failed closed: %s", e)
            await self.audit.security_event(
                SecurityEventType.STORE_UNAVAILABLE,
                "high",
                operation=e.operation,
                policy="fail_closed",
            )
            return TokenVerification(valid=False, token_type=token_type)

        if record is None:
            return TokenVerification(valid=False, token_type=token_type)

        if record.expires_at <= self.clock.now():
            return TokenVerification(
                valid=False,
                token_type=token_type,
                identifier=record.identifier,
                expired=True,
            )

        return TokenVerification(
            valid=True, token_type=token_type, identifier=record.identifier
        )

    async def sweep_expired(self) -> int:
        """Delete tokens past expiry that were never consumed."""
        return await self.store.delete_expired_tokens(self.clock.now())
