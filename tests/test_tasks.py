"""
Tests for the background sweeps: claims, task processing and the sweep list built from settings.
"""

import pytest

from social.graze.authcore.app.config import Settings
from social.graze.authcore.app.services import build_auth_services
from social.graze.authcore.app.tasks import (
    Sweep,
    SweepLock,
    TaskProcessor,
    build_sweeps,
    run_sweep,
)
from social.graze.authcore.core.tokens import TokenType
from social.graze.authcore.store.factory import build_stores
from tests.test_helpers import MockStatsdClient


class TestSweepLock:
    @pytest.mark.asyncio
    async def test_one_claim_per_interval(self, fake_redis_client):
        first = SweepLock(fake_redis_client, "worker-1")
        second = SweepLock(fake_redis_client, "worker-2")

        assert await first.claim("expired_tokens", 900) is True
        assert await second.claim("expired_tokens", 900) is False
        assert await first.claim("expired_tokens", 900) is False
        assert await fake_redis_client.get("authcore:sweep:expired_tokens") == b"worker-1"

        ttl = await fake_redis_client.ttl("authcore:sweep:expired_tokens")
        assert 0 < ttl <= 900

    @pytest.mark.asyncio
    async def test_sweeps_are_claimed_independently(self, fake_redis_client):
        lock = SweepLock(fake_redis_client, "worker-1")
        assert await lock.claim("expired_tokens", 900) is True
        assert await lock.claim("stale_sessions", 300) is True


class TestTaskProcessor:
    @pytest.mark.asyncio
    async def test_successful_task(self, health_gauge):
        metrics = MockStatsdClient()
        processor = TaskProcessor(metrics, "worker-1", "sweep.test", health_gauge)
        calls = []

        async def work(value, scale=1):
            calls.append(value * scale)

        assert await processor.process_task(work, 2, scale=3) is True
        assert calls == [6]
        assert metrics.count("authcore.task.sweep.test.count", worker_id="worker-1") == 1
        assert "authcore.task.sweep.test.time" in metrics.timers
        assert await health_gauge.value() == 0

    @pytest.mark.asyncio
    async def test_failing_task(self, health_gauge):
        metrics = MockStatsdClient()
        processor = TaskProcessor(metrics, "worker-1", "sweep.test", health_gauge)

        async def work():
            raise RuntimeError("store went away")

        assert await processor.process_task(work) is False
        assert metrics.count(
            "authcore.task.sweep.test.exception", exception="RuntimeError"
        ) == 1
        assert metrics.count("authcore.task.sweep.test.count") == 1
        assert await health_gauge.value() == 1


class TestRunSweep:
    @pytest.fixture
    def counting_sweep(self):
        runs = []

        async def run():
            runs.append(1)
            return 3

        return runs, run

    @pytest.mark.asyncio
    async def test_shared_sweep_runs_once_per_interval(self, fake_redis_client, counting_sweep):
        runs, run = counting_sweep
        metrics = MockStatsdClient()
        sweep = Sweep("expired_tokens", 900, run)
        processor = TaskProcessor(metrics, "worker-1", "sweep.expired_tokens")

        assert await run_sweep(sweep, SweepLock(fake_redis_client, "worker-1"), processor, metrics)
        assert await run_sweep(sweep, SweepLock(fake_redis_client, "worker-2"), processor, metrics)

        assert len(runs) == 1
        assert metrics.count("authcore.sweep.expired_tokens.removed") == 3

    @pytest.mark.asyncio
    async def test_local_sweep_always_runs(self, fake_redis_client, counting_sweep):
        runs, run = counting_sweep
        metrics = MockStatsdClient()
        sweep = Sweep("rate_limit_state", 300, run, shared=False)
        processor = TaskProcessor(metrics, "worker-1", "sweep.rate_limit_state")
        lock = SweepLock(fake_redis_client, "worker-1")

        await run_sweep(sweep, lock, processor, metrics)
        await run_sweep(sweep, lock, processor, metrics)

        assert len(runs) == 2
        assert await fake_redis_client.exists("authcore:sweep:rate_limit_state") == 0

    @pytest.mark.asyncio
    async def test_failed_sweep(self, fake_redis_client):
        metrics = MockStatsdClient()

        async def run():
            raise ValueError("bad row")

        processor = TaskProcessor(metrics, "worker-1", "sweep.attempt_prune")
        ok = await run_sweep(
            Sweep("attempt_prune", 3600, run),
            SweepLock(fake_redis_client, "worker-1"),
            processor,
            metrics,
        )
        assert ok is False
        assert metrics.count("authcore.task.sweep.attempt_prune.exception") == 1


class TestBuildSweeps:
    @pytest.mark.asyncio
    async def test_sweeps_from_settings(self, clock, fake_redis_client):
        settings = Settings(worker_id="worker-1", bcrypt_rounds=4, token_sweep_interval_seconds=60)
        metrics = MockStatsdClient()
        services = build_auth_services(
            settings, build_stores("memory"), metrics, clock=clock
        )
        sweeps = {sweep.name: sweep for sweep in build_sweeps(settings, services)}

        assert set(sweeps) == {
            "expired_tokens",
            "stale_sessions",
            "attempt_prune",
            "rate_limit_state",
        }
        assert sweeps["expired_tokens"].interval_seconds == 60
        assert sweeps["rate_limit_state"].shared is False

        await services.tokens.create_token("a@example.com", TokenType.PASSWORD_RESET, 5)
        clock.advance(minutes=10)

        processor = TaskProcessor(metrics, "worker-1", "sweep.expired_tokens")
        lock = SweepLock(fake_redis_client, "worker-1")
        assert await run_sweep(sweeps["expired_tokens"], lock, processor, metrics)
        assert metrics.count("authcore.sweep.expired_tokens.removed") == 1

        for name in ("stale_sessions", "attempt_prune", "rate_limit_state"):
            assert await sweeps[name].run() == 0
