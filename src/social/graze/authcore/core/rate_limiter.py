"""
Rate Limiter

Decides whether an authentication-adjacent attempt may proceed, based on the log of past attempts for the same
(identifier, action). Callers run `check` before the guarded action and `record` after it, on every branch.

Algorithms, selected per action:

- fixed-window: counts attempts in `[now - window, now]`. Consecutive failures within `[now - lockout, now]`
  reaching `max_attempts` lock the identifier until `last_failure + lockout`.
- sliding-window: each attempt contributes a weight that decays linearly to zero over the window; the summed weight
  approximates a continuous rate. The consecutive-failure lockout grows with severity, up to 3x `lockout`.
- token-bucket: a bucket of `burst_limit` (or `max_attempts`) tokens refilled continuously at `refill_rate` (or
  `max_attempts`) tokens per minute; each recorded attempt consumes one token.

Adaptive scaling multiplies `max_attempts` and divides `lockout_minutes` by a per-(identifier, action) factor that
grows x1.1 on success (capped at 2.0) and shrinks x0.9 on failure (floored at 0.5).

Bucket and factor state are kept in bounded LRU caches owned by the limiter. They are never authoritative: missing
entries are rebuilt from the attempt log the first time they are needed.

Failure policy is fail open. If the attempt log cannot be read, `check` allows the attempt, marks the result as
degraded and writes a `store_unavailable` security event.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from ulid import ULID

from social.graze.authcore.app.metrics import MetricsClient
from social.graze.authcore.core.audit import AuditLogger, SecurityEventType
from social.graze.authcore.core.cache import BoundedCache
from social.graze.authcore.core.clock import Clock
from social.graze.authcore.store.base import AttemptStore, StoreError
from social.graze.authcore.store.records import AttemptRecord, ClientMetadata

logger = logging.getLogger(__name__)

UNLIMITED_REMAINING = 999
"""Reported as `remaining` for action types that have no rule."""

ADAPTIVE_FACTOR_MIN = 0.5
ADAPTIVE_FACTOR_MAX = 2.0
ADAPTIVE_REPLAY_HOURS = 24
SLIDING_LOCKOUT_ESCALATION_CAP = 3


class RateLimitAlgorithm(str, Enum):
    FIXED_WINDOW = "fixed-window"
    SLIDING_WINDOW = "sliding-window"
    TOKEN_BUCKET = "token-bucket"


class RateLimitRule(BaseModel):
    """Limits for one action type. Accepts both snake_case and camelCase keys."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    max_attempts: int = Field(
        gt=0, validation_alias=AliasChoices("max_attempts", "maxAttempts")
    )
    window_minutes: int = Field(
        gt=0, validation_alias=AliasChoices("window_minutes", "windowMinutes")
    )
    lockout_minutes: int = Field(
        gt=0, validation_alias=AliasChoices("lockout_minutes", "lockoutMinutes")
    )
    algorithm: RateLimitAlgorithm = RateLimitAlgorithm.FIXED_WINDOW
    burst_limit: Optional[int] = Field(
        None, gt=0, validation_alias=AliasChoices("burst_limit", "burstLimit")
    )
    refill_rate: Optional[float] = Field(
        None, gt=0, validation_alias=AliasChoices("refill_rate", "refillRate")
    )
    adaptive_scaling: bool = Field(
        False, validation_alias=AliasChoices("adaptive_scaling", "adaptiveScaling")
    )

    @property
    def capacity(self) -> int:
        return self.burst_limit or self.max_attempts

    @property
    def tokens_per_minute(self) -> float:
        return self.refill_rate or float(self.max_attempts)


DEFAULT_RATE_LIMITS: Dict[str, RateLimitRule] = {
    "login": RateLimitRule(
        max_attempts=5,
        window_minutes=15,
        lockout_minutes=15,
        algorithm=RateLimitAlgorithm.SLIDING_WINDOW,
        adaptive_scaling=True,
    ),
    "signup": RateLimitRule(max_attempts=3, window_minutes=60, lockout_minutes=60),
    "passwordReset": RateLimitRule(
        max_attempts=3, window_minutes=60, lockout_minutes=60
    ),
    "passwordChange": RateLimitRule(
        max_attempts=5, window_minutes=15, lockout_minutes=15
    ),
    "emailVerification": RateLimitRule(
        max_attempts=3, window_minutes=60, lockout_minutes=60
    ),
    "api": RateLimitRule(
        max_attempts=100,
        window_minutes=60,
        lockout_minutes=5,
        algorithm=RateLimitAlgorithm.TOKEN_BUCKET,
        burst_limit=20,
        refill_rate=100,
        adaptive_scaling=True,
    ),
    "upload": RateLimitRule(
        max_attempts=10,
        window_minutes=60,
        lockout_minutes=10,
        algorithm=RateLimitAlgorithm.SLIDING_WINDOW,
        adaptive_scaling=True,
    ),
}


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime
    locked: bool = False
    lockout_ends_at: Optional[datetime] = None
    retry_after_seconds: Optional[int] = None
    algorithm: str = "none"
    degraded: bool = False


@dataclass
class RateLimitStats:
    total_attempts: int
    successful_attempts: int
    failed_attempts: int
    unique_ips: int


@dataclass
class TokenBucket:
    tokens: float
    last_refill: datetime


@dataclass
class AdaptiveFactor:
    value: float
    updated_at: datetime


def _consecutive_failures(
    attempts: List[AttemptRecord], not_before: datetime
) -> List[AttemptRecord]:
    """Failures counted backwards from the newest attempt until a success. Newest first."""
    failures = []
    for attempt in reversed(attempts):
        if attempt.created_at < not_before or attempt.success:
            break
        failures.append(attempt)
    return failures


def _seconds_until(moment: datetime, now: datetime) -> int:
    return max(1, math.ceil((moment - now).total_seconds()))


def _sliding_retry_after(lifetimes: List[float], window_seconds: float, target: float) -> float:
    """
    Smallest delay t such that the decayed weight sum drops to `target`.

    `lifetimes` are the seconds each attempt has left before its weight reaches zero. The weight sum
    S(t) = sum(max(0, r - t)) / window is continuous and piecewise linear, so walk the segments from the longest
    lifetime down and solve the segment where S crosses `target`.
    """
    ordered = sorted((r for r in lifetimes if r > 0), reverse=True)
    prefix = 0.0
    for k, lifetime in enumerate(ordered, start=1):
        prefix += lifetime
        next_lifetime = ordered[k] if k < len(ordered) else 0.0
        t = (prefix - target * window_seconds) / k
        if next_lifetime <= t <= lifetime:
            return t
    return 0.0


class RateLimiter:
    def __init__(
        self,
        store: AttemptStore,
        rules: Mapping[str, RateLimitRule],
        clock: Clock,
        audit: AuditLogger,
        metrics_client: MetricsClient,
        cache_size: int = 10000,
    ):
        self.store = store
        self.rules = dict(rules)
        self.clock = clock
        self.audit = audit
        self.metrics_client = metrics_client
        self.buckets: BoundedCache[Tuple[str, str], TokenBucket] = BoundedCache(cache_size)
        self.factors: BoundedCache[Tuple[str, str], AdaptiveFactor] = BoundedCache(
            cache_size
        )

    async def check(self, identifier: str, action: str) -> RateLimitResult:
        now = self.clock.now()
        rule = self.rules.get(action)
        if rule is None:
            return RateLimitResult(
                allowed=True, remaining=UNLIMITED_REMAINING, reset_at=now
            )

        try:
            effective = await self.effective_rule(identifier, action, rule, now)
            if effective.algorithm == RateLimitAlgorithm.FIXED_WINDOW:
                result = await self._check_fixed_window(identifier, action, effective, now)
            elif effective.algorithm == RateLimitAlgorithm.SLIDING_WINDOW:
                result = await self._check_sliding_window(identifier, action, effective, now)
            else:
                result = await self._check_token_bucket(identifier, action, effective, now)
        except StoreError as e:
            logger.warning("rate limit check for %s failed open: %s", action, e)
            await self.audit.security_event(
                SecurityEventType.STORE_UNAVAILABLE,
                "high",
                **self._identity(identifier),
                action=action,
                operation=e.operation,
                policy="fail_open",
            )
            self.metrics_client.increment(
                "authcore.ratelimit.fail_open", 1, tag_dict={"action": action}
            )
            return RateLimitResult(
                allowed=True,
                remaining=rule.max_attempts,
                reset_at=now + timedelta(minutes=rule.window_minutes),
                algorithm=rule.algorithm.value,
                degraded=True,
            )

        self.metrics_client.increment(
            "authcore.ratelimit.check",
            1,
            tag_dict={
                "action": action,
                "algorithm": result.algorithm,
                "allowed": str(result.allowed).lower(),
                "locked": str(result.locked).lower(),
            },
        )
        return result

    async def record(
        self,
        identifier: str,
        action: str,
        success: bool,
        client: Optional[ClientMetadata] = None,
        principal_id: Optional[str] = None,
    ) -> bool:
        """
        Append an attempt to the log and update the in-memory state.

        Returns False when the attempt could not be persisted. The failure is logged as a security event; the caller
        carries on either way.
        """
        now = self.clock.now()
        client = client or ClientMetadata()
        attempt = AttemptRecord(
            guid=str(ULID()),
            identifier=identifier,
            action=action,
            success=success,
            created_at=now,
            principal_id=principal_id,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )

        persisted = True
        try:
            await self.store.add_attempt(attempt)
        except StoreError as e:
            persisted = False
            logger.warning("rate limit record for %s not persisted: %s", action, e)
            await self.audit.security_event(
                SecurityEventType.STORE_UNAVAILABLE,
                "high",
                **self._identity(identifier),
                action=action,
                operation=e.operation,
                policy="fail_open",
            )

        rule = self.rules.get(action)
        if rule is not None:
            try:
                if rule.adaptive_scaling:
                    await self._update_factor(identifier, action, success, now, persisted)
                if rule.algorithm == RateLimitAlgorithm.TOKEN_BUCKET:
                    effective = await self.effective_rule(identifier, action, rule, now)
                    await self._consume_token(identifier, action, effective, now, persisted)
            except StoreError as e:
                # Cache rebuild could not read the log; the entry is rebuilt on the next check.
                logger.warning("rate limit state for %s not updated: %s", action, e)

        self.metrics_client.increment(
            "authcore.ratelimit.record",
            1,
            tag_dict={"action": action, "success": str(success).lower()},
        )
        return persisted

    async def effective_rule(
        self, identifier: str, action: str, rule: RateLimitRule, now: datetime
    ) -> RateLimitRule:
        if not rule.adaptive_scaling:
            return rule
        factor = await self._factor(identifier, action, now)
        return rule.model_copy(
            update={
                "max_attempts": max(1, math.floor(rule.max_attempts * factor)),
                "lockout_minutes": max(1, math.floor(rule.lockout_minutes / factor)),
            }
        )

    async def _check_fixed_window(
        self, identifier: str, action: str, rule: RateLimitRule, now: datetime
    ) -> RateLimitResult:
        window = timedelta(minutes=rule.window_minutes)
        lockout = timedelta(minutes=rule.lockout_minutes)
        attempts = await self.store.list_attempts(
            identifier, action, now - max(window, lockout)
        )

        failures = _consecutive_failures(attempts, now - lockout)
        if len(failures) >= rule.max_attempts:
            lockout_ends_at = failures[0].created_at + lockout
            if now < lockout_ends_at:
                return self._locked(rule, lockout_ends_at, now)

        in_window = [a for a in attempts if a.created_at >= now - window]
        remaining = max(0, rule.max_attempts - len(in_window))
        reset_at = in_window[-1].created_at + window if in_window else now + window
        retry_after = None
        if remaining == 0:
            # a slot frees up when the oldest attempt in the window ages out
            retry_after = _seconds_until(in_window[0].created_at + window, now)
        return RateLimitResult(
            allowed=remaining > 0,
            remaining=remaining,
            reset_at=reset_at,
            retry_after_seconds=retry_after,
            algorithm=rule.algorithm.value,
        )

    async def _check_sliding_window(
        self, identifier: str, action: str, rule: RateLimitRule, now: datetime
    ) -> RateLimitResult:
        window = timedelta(minutes=rule.window_minutes)
        lockout = timedelta(minutes=rule.lockout_minutes)
        lookback = max(window, lockout * SLIDING_LOCKOUT_ESCALATION_CAP)
        attempts = await self.store.list_attempts(identifier, action, now - lookback)

        failures = _consecutive_failures(attempts, now - lookback)
        if len(failures) >= rule.max_attempts:
            escalation = min(
                len(failures) / rule.max_attempts, SLIDING_LOCKOUT_ESCALATION_CAP
            )
            lockout_ends_at = failures[0].created_at + lockout * escalation
            if now < lockout_ends_at:
                return self._locked(rule, lockout_ends_at, now)

        window_seconds = window.total_seconds()
        lifetimes = [
            window_seconds - (now - a.created_at).total_seconds() for a in attempts
        ]
        weighted = sum(max(0.0, r) / window_seconds for r in lifetimes)
        remaining = max(0, rule.max_attempts - math.ceil(weighted))

        recent = [a for a in attempts if a.created_at > now - window]
        reset_at = recent[-1].created_at + window if recent else now + window
        retry_after = None
        if remaining == 0:
            delay = _sliding_retry_after(lifetimes, window_seconds, rule.max_attempts - 1)
            retry_after = max(1, math.ceil(delay))
        return RateLimitResult(
            allowed=remaining > 0,
            remaining=remaining,
            reset_at=reset_at,
            retry_after_seconds=retry_after,
            algorithm=rule.algorithm.value,
        )

    async def _check_token_bucket(
        self, identifier: str, action: str, rule: RateLimitRule, now: datetime
    ) -> RateLimitResult:
        bucket = await self._bucket(identifier, action, rule, now)
        rate = rule.tokens_per_minute
        allowed = bucket.tokens >= 1
        retry_after = None
        if not allowed:
            retry_after = max(1, math.ceil((1 - bucket.tokens) * 60 / rate))
        full_in = timedelta(seconds=(rule.capacity - bucket.tokens) * 60 / rate)
        return RateLimitResult(
            allowed=allowed,
            remaining=math.floor(bucket.tokens),
            reset_at=now + full_in,
            retry_after_seconds=retry_after,
            algorithm=rule.algorithm.value,
        )

    @staticmethod
    def _locked(
        rule: RateLimitRule, lockout_ends_at: datetime, now: datetime
    ) -> RateLimitResult:
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_at=lockout_ends_at,
            locked=True,
            lockout_ends_at=lockout_ends_at,
            retry_after_seconds=_seconds_until(lockout_ends_at, now),
            algorithm=rule.algorithm.value,
        )

    @staticmethod
    def _refill(bucket: TokenBucket, rule: RateLimitRule, now: datetime) -> None:
        elapsed_minutes = (now - bucket.last_refill).total_seconds() / 60
        if elapsed_minutes > 0:
            bucket.tokens = min(
                float(rule.capacity),
                bucket.tokens + elapsed_minutes * rule.tokens_per_minute,
            )
            bucket.last_refill = now

    async def _bucket(
        self, identifier: str, action: str, rule: RateLimitRule, now: datetime
    ) -> TokenBucket:
        key = (identifier, action)
        bucket = self.buckets.get(key)
        if bucket is None:
            bucket = await self._replay_bucket(identifier, action, rule, now)
            self.buckets.set(key, bucket)
        else:
            self._refill(bucket, rule, now)
        return bucket

    async def _replay_bucket(
        self, identifier: str, action: str, rule: RateLimitRule, now: datetime
    ) -> TokenBucket:
        # A bucket left alone for one full refill period is full again, so older attempts cannot matter.
        period = timedelta(minutes=rule.capacity / rule.tokens_per_minute)
        start = now - period
        bucket = TokenBucket(tokens=float(rule.capacity), last_refill=start)
        for attempt in await self.store.list_attempts(identifier, action, start):
            self._refill(bucket, rule, attempt.created_at)
            if bucket.tokens >= 1:
                bucket.tokens -= 1
        self._refill(bucket, rule, now)
        return bucket

    async def _consume_token(
        self,
        identifier: str,
        action: str,
        rule: RateLimitRule,
        now: datetime,
        persisted: bool,
    ) -> None:
        key = (identifier, action)
        bucket = self.buckets.get(key)
        if bucket is not None:
            self._refill(bucket, rule, now)
            if bucket.tokens >= 1:
                bucket.tokens -= 1
        elif persisted:
            # the replay already includes the attempt just written
            self.buckets.set(key, await self._replay_bucket(identifier, action, rule, now))

    async def _factor(self, identifier: str, action: str, now: datetime) -> float:
        key = (identifier, action)
        cached = self.factors.get(key)
        if cached is not None:
            return cached.value
        factor = await self._replay_factor(identifier, action, now)
        self.factors.set(key, factor)
        return factor.value

    async def _replay_factor(
        self, identifier: str, action: str, now: datetime
    ) -> AdaptiveFactor:
        attempts = await self.store.list_attempts(
            identifier, action, now - timedelta(hours=ADAPTIVE_REPLAY_HOURS)
        )
        factor = AdaptiveFactor(value=1.0, updated_at=now)
        for attempt in attempts:
            factor.value = self._scaled(factor.value, attempt.success)
        return factor

    async def _update_factor(
        self,
        identifier: str,
        action: str,
        success: bool,
        now: datetime,
        persisted: bool,
    ) -> None:
        key = (identifier, action)
        cached = self.factors.get(key)
        if cached is not None:
            cached.value = self._scaled(cached.value, success)
            cached.updated_at = now
        elif persisted:
            self.factors.set(key, await self._replay_factor(identifier, action, now))

    @staticmethod
    def _scaled(value: float, success: bool) -> float:
        if success:
            return min(ADAPTIVE_FACTOR_MAX, value * 1.1)
        return max(ADAPTIVE_FACTOR_MIN, value * 0.9)

    async def stats(
        self,
        identifier: Optional[str] = None,
        action: Optional[str] = None,
        hours: int = 24,
    ) -> RateLimitStats:
        since = self.clock.now() - timedelta(hours=hours)
        attempts = await self.store.query_attempts(
            since, identifier=identifier, action=action
        )
        successful = sum(1 for a in attempts if a.success)
        return RateLimitStats(
            total_attempts=len(attempts),
            successful_attempts=successful,
            failed_attempts=len(attempts) - successful,
            unique_ips=len({a.ip_address for a in attempts if a.ip_address}),
        )

    async def recent_failures(
        self,
        identifier: Optional[str] = None,
        action: Optional[str] = None,
        hours: int = 24,
        limit: int = 100,
    ) -> List[AttemptRecord]:
        """Failed attempts within the last `hours`, newest first."""
        since = self.clock.now() - timedelta(hours=hours)
        attempts = await self.store.query_attempts(
            since, identifier=identifier, action=action
        )
        failures = [a for a in attempts if not a.success]
        failures.sort(key=lambda a: a.created_at, reverse=True)
        return failures[:limit]

    async def prune(self, retention_days: int = 90) -> int:
        """Delete attempt log entries older than the retention period."""
        cutoff = self.clock.now() - timedelta(days=retention_days)
        return await self.store.delete_attempts_before(cutoff)

    def trim_state(self, max_idle: timedelta = timedelta(hours=24)) -> int:
        """Drop buckets and factors that have not been touched within `max_idle`."""
        cutoff = self.clock.now() - max_idle
        removed = self.buckets.evict_where(lambda _, b: b.last_refill < cutoff)
        removed += self.factors.evict_where(lambda _, f: f.updated_at < cutoff)
        return removed

    @staticmethod
    def _identity(identifier: str) -> Dict[str, Any]:
        # identifiers are emails, client IPs or principal ids; keep them masked in the audit log
        if "@" in identifier:
            return {"email": identifier}
        return {"client": ClientMetadata(ip_address=identifier)}
