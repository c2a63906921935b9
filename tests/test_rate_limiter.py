"""
Tests for the rate limiter: the three algorithms, adaptive scaling, failure policy and housekeeping.
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from social.graze.authcore.core.rate_limiter import (
    DEFAULT_RATE_LIMITS,
    UNLIMITED_REMAINING,
    RateLimitAlgorithm,
    RateLimiter,
    RateLimitRule,
)
from social.graze.authcore.store.records import ClientMetadata
from tests.test_helpers import FailingAttemptStore

EMAIL = "alice@example.com"


def limiter_with(attempt_store, clock, audit, metrics, **rules):
    return RateLimiter(attempt_store, rules, clock, audit, metrics)


async def record_many(limiter, identifier, action, success, count):
    for _ in range(count):
        await limiter.record(identifier, action, success)


class TestRateLimitRule:
    def test_camel_case_keys(self):
        rule = RateLimitRule.model_validate(
            {
                "maxAttempts": 3,
                "windowMinutes": 1,
                "lockoutMinutes": 2,
                "algorithm": "token-bucket",
                "burstLimit": 7,
                "refillRate": 30,
                "adaptiveScaling": True,
            }
        )
        assert rule.max_attempts == 3
        assert rule.algorithm == RateLimitAlgorithm.TOKEN_BUCKET
        assert rule.capacity == 7
        assert rule.tokens_per_minute == 30
        assert rule.adaptive_scaling is True

    def test_bucket_defaults_to_max_attempts(self):
        rule = RateLimitRule(max_attempts=4, window_minutes=1, lockout_minutes=1)
        assert rule.capacity == 4
        assert rule.tokens_per_minute == 4.0

    def test_rejects_non_positive_limits(self):
        with pytest.raises(ValidationError):
            RateLimitRule(max_attempts=0, window_minutes=1, lockout_minutes=1)


class TestFixedWindow:
    @pytest.fixture
    def limiter(self, attempt_store, clock, audit, metrics):
        return limiter_with(
            attempt_store,
            clock,
            audit,
            metrics,
            login=RateLimitRule(max_attempts=5, window_minutes=15, lockout_minutes=15),
        )

    async def test_fresh_identifier_is_allowed(self, limiter):
        result = await limiter.check(EMAIL, "login")
        assert result.allowed is True
        assert result.remaining == 5
        assert result.locked is False
        assert result.algorithm == "fixed-window"

    async def test_attempts_consume_the_window(self, limiter):
        await record_many(limiter, EMAIL, "login", True, 2)
        result = await limiter.check(EMAIL, "login")
        assert result.allowed is True
        assert result.remaining == 3

    async def test_consecutive_failures_lock(self, limiter, clock):
        await record_many(limiter, EMAIL, "login", False, 5)

        result = await limiter.check(EMAIL, "login")
        assert result.allowed is False
        assert result.locked is True
        assert result.lockout_ends_at == clock.now() + timedelta(minutes=15)
        assert result.retry_after_seconds == 15 * 60

    async def test_lock_ends_after_lockout(self, limiter, clock):
        await record_many(limiter, EMAIL, "login", False, 5)
        clock.advance(minutes=15, seconds=1)

        result = await limiter.check(EMAIL, "login")
        assert result.allowed is True
        assert result.locked is False
        assert result.remaining == 5

    async def test_success_breaks_the_failure_streak(self, attempt_store, clock, audit, metrics):
        limiter = limiter_with(
            attempt_store,
            clock,
            audit,
            metrics,
            login=RateLimitRule(max_attempts=3, window_minutes=10, lockout_minutes=30),
        )
        await record_many(limiter, EMAIL, "login", False, 2)
        await limiter.record(EMAIL, "login", True)
        await limiter.record(EMAIL, "login", False)

        result = await limiter.check(EMAIL, "login")
        # Over the window budget, but not locked out.
        assert result.allowed is False
        assert result.locked is False
        assert result.retry_after_seconds == 10 * 60

    async def test_identifiers_are_independent(self, limiter):
        await record_many(limiter, EMAIL, "login", False, 5)
        result = await limiter.check("bob@example.com", "login")
        assert result.allowed is True
        assert result.remaining == 5


class TestSlidingWindow:
    @pytest.fixture
    def limiter(self, attempt_store, clock, audit, metrics):
        return limiter_with(
            attempt_store,
            clock,
            audit,
            metrics,
            upload=RateLimitRule(
                max_attempts=5,
                window_minutes=10,
                lockout_minutes=10,
                algorithm=RateLimitAlgorithm.SLIDING_WINDOW,
            ),
        )

    async def test_weights_decay_linearly(self, limiter, clock):
        await record_many(limiter, EMAIL, "upload", True, 2)

        result = await limiter.check(EMAIL, "upload")
        assert result.remaining == 3

        clock.advance(minutes=5)
        result = await limiter.check(EMAIL, "upload")
        assert result.remaining == 4
        assert result.algorithm == "sliding-window"

    async def test_old_attempts_stop_counting(self, limiter, clock):
        await record_many(limiter, EMAIL, "upload", True, 5)
        assert (await limiter.check(EMAIL, "upload")).allowed is False

        clock.advance(minutes=10)
        result = await limiter.check(EMAIL, "upload")
        assert result.allowed is True
        assert result.remaining == 5

    async def test_full_window_reports_retry_after(self, limiter):
        await record_many(limiter, EMAIL, "upload", True, 5)

        result = await limiter.check(EMAIL, "upload")
        assert result.allowed is False
        assert result.locked is False
        # One full attempt's weight has to drain: 5 * (600 - t) / 600 <= 4.
        assert result.retry_after_seconds == 120

    async def test_lockout_escalates_with_failures(self, attempt_store, clock, audit, metrics):
        limiter = limiter_with(
            attempt_store,
            clock,
            audit,
            metrics,
            login=RateLimitRule(
                max_attempts=2,
                window_minutes=10,
                lockout_minutes=10,
                algorithm=RateLimitAlgorithm.SLIDING_WINDOW,
            ),
        )
        await record_many(limiter, EMAIL, "login", False, 2)
        result = await limiter.check(EMAIL, "login")
        assert result.locked is True
        assert result.lockout_ends_at == clock.now() + timedelta(minutes=10)

        await record_many(limiter, EMAIL, "login", False, 2)
        result = await limiter.check(EMAIL, "login")
        assert result.lockout_ends_at == clock.now() + timedelta(minutes=20)

    async def test_lockout_escalation_is_capped(self, attempt_store, clock, audit, metrics):
        limiter = limiter_with(
            attempt_store,
            clock,
            audit,
            metrics,
            login=RateLimitRule(
                max_attempts=2,
                window_minutes=10,
                lockout_minutes=10,
                algorithm=RateLimitAlgorithm.SLIDING_WINDOW,
            ),
        )
        await record_many(limiter, EMAIL, "login", False, 12)
        result = await limiter.check(EMAIL, "login")
        assert result.lockout_ends_at == clock.now() + timedelta(minutes=30)
        assert result.retry_after_seconds == 30 * 60


class TestTokenBucket:
    async def test_burst_then_refill(self, rate_limiter, clock):
        await record_many(rate_limiter, "10.0.0.1", "api", True, 20)

        result = await rate_limiter.check("10.0.0.1", "api")
        assert result.allowed is False
        assert result.remaining == 0
        assert result.retry_after_seconds == 1
        assert result.algorithm == "token-bucket"

        clock.advance(seconds=12)
        result = await rate_limiter.check("10.0.0.1", "api")
        assert result.allowed is True
        assert result.remaining == 20

    async def test_partial_refill(self, rate_limiter, clock):
        await record_many(rate_limiter, "10.0.0.1", "api", True, 20)
        clock.advance(seconds=6)
        result = await rate_limiter.check("10.0.0.1", "api")
        assert result.allowed is True
        assert 9 <= result.remaining <= 10

    async def test_bucket_is_rebuilt_from_the_log(
        self, rate_limiter, attempt_store, clock, audit, metrics
    ):
        await record_many(rate_limiter, "10.0.0.1", "api", True, 20)

        restarted = RateLimiter(attempt_store, DEFAULT_RATE_LIMITS, clock, audit, metrics)
        result = await restarted.check("10.0.0.1", "api")
        assert result.allowed is False


class TestAdaptiveScaling:
    async def test_failures_tighten_the_rule(self, rate_limiter, clock):
        await record_many(rate_limiter, EMAIL, "login", False, 3)

        rule = await rate_limiter.effective_rule(
            EMAIL, "login", DEFAULT_RATE_LIMITS["login"], clock.now()
        )
        assert rule.max_attempts == 3
        assert rule.lockout_minutes == 20

    async def test_successes_relax_the_rule(self, rate_limiter, clock):
        await record_many(rate_limiter, EMAIL, "login", True, 3)

        rule = await rate_limiter.effective_rule(
            EMAIL, "login", DEFAULT_RATE_LIMITS["login"], clock.now()
        )
        assert rule.max_attempts == 6
        assert rule.lockout_minutes == 11

    async def test_factor_is_capped(self, rate_limiter, clock):
        await record_many(rate_limiter, EMAIL, "login", True, 12)

        rule = await rate_limiter.effective_rule(
            EMAIL, "login", DEFAULT_RATE_LIMITS["login"], clock.now()
        )
        assert rule.max_attempts == 10
        assert rule.lockout_minutes == 7

    async def test_factor_is_rebuilt_from_the_log(
        self, rate_limiter, attempt_store, clock, audit, metrics
    ):
        await record_many(rate_limiter, EMAIL, "login", False, 3)

        restarted = RateLimiter(attempt_store, DEFAULT_RATE_LIMITS, clock, audit, metrics)
        rule = await restarted.effective_rule(
            EMAIL, "login", DEFAULT_RATE_LIMITS["login"], clock.now()
        )
        assert rule.max_attempts == 3

    async def test_non_adaptive_rule_is_unchanged(self, rate_limiter, clock):
        await record_many(rate_limiter, EMAIL, "signup", False, 2)
        rule = DEFAULT_RATE_LIMITS["signup"]
        assert await rate_limiter.effective_rule(EMAIL, "signup", rule, clock.now()) is rule


class TestFailurePolicy:
    @pytest.fixture
    def failing_limiter(self, clock, audit, metrics):
        return RateLimiter(FailingAttemptStore(), DEFAULT_RATE_LIMITS, clock, audit, metrics)

    async def test_check_fails_open(self, failing_limiter, metrics, health_gauge):
        result = await failing_limiter.check(EMAIL, "login")

        assert result.allowed is True
        assert result.degraded is True
        assert metrics.count("authcore.ratelimit.fail_open", action="login") == 1
        assert metrics.count(
            "authcore.audit.security_event", type="store_unavailable"
        ) == 1
        assert await health_gauge.value() == 1

    async def test_record_reports_unpersisted_attempt(self, failing_limiter):
        persisted = await failing_limiter.record(EMAIL, "login", False)
        assert persisted is False

    async def test_unknown_action_is_unlimited(self, rate_limiter):
        result = await rate_limiter.check(EMAIL, "not-an-action")
        assert result.allowed is True
        assert result.remaining == UNLIMITED_REMAINING


class TestHousekeeping:
    async def test_stats(self, rate_limiter):
        await rate_limiter.record(EMAIL, "login", True, ClientMetadata("10.0.0.1", "ua"))
        await rate_limiter.record(EMAIL, "login", False, ClientMetadata("10.0.0.2", "ua"))
        await rate_limiter.record(EMAIL, "signup", False, ClientMetadata("10.0.0.2", "ua"))

        stats = await rate_limiter.stats(identifier=EMAIL, action="login")
        assert stats.total_attempts == 2
        assert stats.successful_attempts == 1
        assert stats.failed_attempts == 1
        assert stats.unique_ips == 2

        everything = await rate_limiter.stats()
        assert everything.total_attempts == 3

    async def test_recent_failures(self, rate_limiter, clock):
        await rate_limiter.record(EMAIL, "login", False, ClientMetadata("10.0.0.1", "ua"))
        clock.advance(minutes=1)
        await rate_limiter.record(EMAIL, "login", True)
        clock.advance(minutes=1)
        await rate_limiter.record(EMAIL, "login", False, ClientMetadata("10.0.0.2", "ua"))
        await rate_limiter.record("bob@example.com", "login", False)

        failures = await rate_limiter.recent_failures(identifier=EMAIL)
        assert [f.ip_address for f in failures] == ["10.0.0.2", "10.0.0.1"]
        assert len(await rate_limiter.recent_failures(limit=1)) == 1

    async def test_prune_removes_old_attempts(self, rate_limiter, attempt_store, clock):
        await rate_limiter.record(EMAIL, "signup", True)
        clock.advance(days=91)
        await rate_limiter.record(EMAIL, "signup", True)

        assert await rate_limiter.prune(retention_days=90) == 1
        remaining = await attempt_store.query_attempts(clock.now() - timedelta(days=365))
        assert len(remaining) == 1

    async def test_trim_state_drops_idle_entries(self, rate_limiter, clock):
        await rate_limiter.record("10.0.0.1", "api", True)
        assert len(rate_limiter.buckets) == 1
        assert len(rate_limiter.factors) == 1

        clock.advance(hours=25)
        assert rate_limiter.trim_state(timedelta(hours=24)) == 2
        assert len(rate_limiter.buckets) == 0
        assert len(rate_limiter.factors) == 0
