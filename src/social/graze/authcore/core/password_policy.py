"""
Password Policy Engine

Three concerns share this module:

- Validation: length bounds, character-class diversity, rejection of common passwords and of passwords containing
  the user's email local part or name. Every violated rule is reported, not just the first one, together with a
  0-100 strength score.
- Reuse prevention: a candidate is checked against the current hash and the K most recent history entries with the
  hash's own verify function. After a successful change the previous hash is added to history and anything beyond
  the K most recent entries is pruned.
- Expiration: a pure function of the clock and the time the password was set. It never blocks a sign-in by itself;
  the orchestrator decides what to do with the advisory, including the grace login allowance.
"""
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from ulid import ULID

from social.graze.authcore.core.clock import Clock
from social.graze.authcore.core.hashing import PasswordHasher
from social.graze.authcore.store.base import PasswordHistoryStore
from social.graze.authcore.store.records import PasswordHistoryRecord

logger = logging.getLogger(__name__)

COMMON_PASSWORDS = frozenset(
    [
        "password",
        "password1",
        "password123",
        "123456",
        "123456789",
        "1234567890",
        "qwerty",
        "abc123",
        "admin",
        "admin123",
        "administrator",
        "letmein",
        "welcome",
        "monkey",
        "dragon",
        "master",
        "hello",
        "login",
        "pass",
        "root",
        "test",
        "guest",
        "user",
        "demo",
        "sample",
        "p@ssw0rd",
        "passw0rd",
        "qwerty123",
        "iloveyou",
        "welcome1",
    ]
)

SEQUENCES = ("abcdefghijklmnopqrstuvwxyz", "0123456789", "qwertyuiop")
USER_INFO_MIN_FRAGMENT = 3


class ViolationCode(str, Enum):
    TOO_SHORT = "too_short"
    TOO_LONG = "too_long"
    MISSING_UPPERCASE = "missing_uppercase"
    MISSING_LOWERCASE = "missing_lowercase"
    MISSING_DIGIT = "missing_digit"
    MISSING_SYMBOL = "missing_symbol"
    COMMON_PASSWORD = "common_password"
    CONTAINS_USER_INFO = "contains_user_info"


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 8
    max_length: int = 128
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_digit: bool = True
    require_symbol: bool = True
    reject_common: bool = True
    history_limit: int = 5


@dataclass(frozen=True)
class ExpirationPolicy:
    enabled: bool = False
    max_age_days: int = 90
    warning_days: int = 7
    grace_logins: int = 3


@dataclass(frozen=True)
class PasswordContext:
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class PasswordValidation:
    valid: bool
    violations: List[str]
    codes: List[ViolationCode]
    score: int

    @property
    def strength(self) -> str:
        return strength_label(self.score)


@dataclass(frozen=True)
class ExpirationStatus:
    expired: bool
    near_expiration: bool
    days_remaining: Optional[int]
    must_change_password: bool
    grace_logins_remaining: int


def strength_label(score: int) -> str:
    if score >= 80:
        return "Very Strong"
    if score >= 60:
        return "Strong"
    if score >= 40:
        return "Good"
    if score >= 20:
        return "Weak"
    return "Very Weak"


def _has_repeats(password: str) -> bool:
    return any(password[i] == password[i + 1] == password[i + 2] for i in range(len(password) - 2))


def _has_sequence(password: str) -> bool:
    lowered = password.lower()
    for sequence in SEQUENCES:
        reverse = sequence[::-1]
        for i in range(len(lowered) - 2):
            chunk = lowered[i : i + 3]
            if chunk in sequence or chunk in reverse:
                return True
    return False


def _user_fragments(context: PasswordContext) -> List[str]:
    fragments = []
    if context.email:
        fragments.append(context.email.split("@", 1)[0].lower())
    if context.name:
        fragments.extend(part.lower() for part in context.name.split())
    return [f for f in fragments if len(f) >= USER_INFO_MIN_FRAGMENT]


class PasswordPolicyEngine:
    def __init__(
        self,
        history_store: PasswordHistoryStore,
        hasher: PasswordHasher,
        clock: Clock,
        policy: Optional[PasswordPolicy] = None,
        expiration: Optional[ExpirationPolicy] = None,
    ):
        self.history_store = history_store
        self.hasher = hasher
        self.clock = clock
        self.policy = policy or PasswordPolicy()
        self.expiration = expiration or ExpirationPolicy()

    def validate(
        self, password: str, context: Optional[PasswordContext] = None
    ) -> PasswordValidation:
        context = context or PasswordContext()
        policy = self.policy
        violations: List[str] = []
        codes: List[ViolationCode] = []
        score = 0

        def violate(code: ViolationCode, message: str) -> None:
            codes.append(code)
            violations.append(message)

        if len(password) < policy.min_length:
            violate(
                ViolationCode.TOO_SHORT,
                f"Password must be at least {policy.min_length} characters long",
            )
        else:
            score += min(25, (len(password) - policy.min_length) * 2)

        if len(password) > policy.max_length:
            violate(
                ViolationCode.TOO_LONG,
                f"Password must be at most {policy.max_length} characters long",
            )

        has_upper = re.search(r"[A-Z]", password) is not None
        has_lower = re.search(r"[a-z]", password) is not None
        has_digit = re.search(r"[0-9]", password) is not None
        has_symbol = re.search(r"[^A-Za-z0-9\s]", password) is not None

        if policy.require_uppercase and not has_upper:
            violate(
                ViolationCode.MISSING_UPPERCASE,
                "Password must contain at least one uppercase letter",
            )
        if policy.require_lowercase and not has_lower:
            violate(
                ViolationCode.MISSING_LOWERCASE,
                "Password must contain at least one lowercase letter",
            )
        if policy.require_digit and not has_digit:
            violate(ViolationCode.MISSING_DIGIT, "Password must contain at least one number")
        if policy.require_symbol and not has_symbol:
            violate(
                ViolationCode.MISSING_SYMBOL,
                "Password must contain at least one special character",
            )
        score += 20 * has_upper + 20 * has_lower + 20 * has_digit + 15 * has_symbol

        if policy.reject_common and password.strip().lower() in COMMON_PASSWORDS:
            violate(
                ViolationCode.COMMON_PASSWORD,
                "Password is too common, please choose a more unique password",
            )
            score -= 30

        lowered = password.lower()
        if any(fragment in lowered for fragment in _user_fragments(context)):
            violate(
                ViolationCode.CONTAINS_USER_INFO,
                "Password should not contain your email or name",
            )
            score -= 20

        if _has_repeats(password):
            score -= 10
        if _has_sequence(password):
            score -= 10
        if len(password) >= 12:
            score += 10
        if len(password) >= 16:
            score += 10

        return PasswordValidation(
            valid=not violations,
            violations=violations,
            codes=codes,
            score=max(0, min(100, score)),
        )

    async def is_reused(
        self, principal_id: str, candidate: str, current_hash: Optional[str] = None
    ) -> bool:
        """True when `candidate` matches the current password or one of the last K."""
        hashes = [current_hash] if current_hash else []
        history = await self.history_store.list_password_history(
            principal_id, self.policy.history_limit
        )
        hashes.extend(entry.password_hash for entry in history)
        for password_hash in hashes:
            if await self.hasher.verify(candidate, password_hash):
                return True
        return False

    def history_entry(self, principal_id: str, password_hash: str) -> PasswordHistoryRecord:
        return PasswordHistoryRecord(
            guid=str(ULID()),
            principal_id=principal_id,
            password_hash=password_hash,
            created_at=self.clock.now(),
        )

    async def record_change(self, principal_id: str, previous_hash: str) -> int:
        """
        Push the previous hash into history and prune beyond the limit.

        The sign-up seed already holds the first credential, so a previous hash equal to the newest entry is not
        written twice. Returns the number of pruned entries.
        """
        newest = await self.history_store.list_password_history(principal_id, 1)
        if not newest or newest[0].password_hash != previous_hash:
            await self.history_store.add_password_history(
                self.history_entry(principal_id, previous_hash)
            )
        return await self.history_store.prune_password_history(
            principal_id, self.policy.history_limit
        )

    def check_expiration(
        self,
        principal_id: str,
        password_set_at: Optional[datetime],
        grace_logins_used: int = 0,
    ) -> ExpirationStatus:
        expiration = self.expiration
        if not expiration.enabled or password_set_at is None:
            return ExpirationStatus(
                expired=False,
                near_expiration=False,
                days_remaining=None,
                must_change_password=False,
                grace_logins_remaining=expiration.grace_logins,
            )

        now = self.clock.now()
        expires_at = password_set_at + timedelta(days=expiration.max_age_days)
        seconds_left = (expires_at - now).total_seconds()
        days_remaining = max(0, math.ceil(seconds_left / 86400))
        expired = seconds_left <= 0
        grace_remaining = (
            max(0, expiration.grace_logins - grace_logins_used)
            if expired
            else expiration.grace_logins
        )
        status = ExpirationStatus(
            expired=expired,
            near_expiration=not expired and 0 < days_remaining <= expiration.warning_days,
            days_remaining=days_remaining,
            must_change_password=expired and grace_remaining == 0,
            grace_logins_remaining=grace_remaining,
        )
        if expired:
            logger.info(
                "password for %s expired, %d grace logins left",
                principal_id,
                grace_remaining,
            )
        return status
