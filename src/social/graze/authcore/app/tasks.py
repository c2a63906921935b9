"""
Background tasks.

- tick_health_task drains the health gauge every 30 seconds.
- sweep_task runs one `Sweep` on its interval: expired verification tokens, stale sessions, attempt log retention,
  and the rate limiter's in-memory caches.

Sweeps over shared stores are claimed per interval with a Redis `SET NX EX` key (`SweepLock`) so that one worker in
the fleet does the work. The cache trim is per process and always runs locally. Every run goes through
`TaskProcessor`, which times it, counts it and reports failures to Sentry without stopping the loop.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from time import time
from typing import Any, Awaitable, Callable, List, NoReturn, Optional

from aiohttp import web
from redis import asyncio as redis
import sentry_sdk

from social.graze.authcore.app.config import (
    SWEEP_LOCK_PREFIX,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    RedisClientAppKey,
    Settings,
    SettingsAppKey,
)
from social.graze.authcore.app.metrics import MetricsClient
from social.graze.authcore.app.services import AuthServices, AuthServicesAppKey
from social.graze.authcore.model.health import HealthGauge

logger = logging.getLogger(__name__)

HEALTH_TICK_SECONDS = 30


class SweepLock:
    """
    Claims a sweep for one interval.

    The key expires after the interval, so a worker that claims a sweep and then dies only delays the next run.
    """

    def __init__(
        self, redis_client: redis.Redis, worker_id: str, prefix: str = SWEEP_LOCK_PREFIX
    ):
        self.redis_client = redis_client
        self.worker_id = worker_id
        self.prefix = prefix

    async def claim(self, name: str, interval_seconds: int) -> bool:
        claimed = await self.redis_client.set(
            f"{self.prefix}:{name}",
            self.worker_id,
            nx=True,
            ex=max(1, int(interval_seconds)),
        )
        return bool(claimed)


class TaskProcessor:
    """
    Generic task processor with timing, metrics, and error handling.
    """

    def __init__(
        self,
        metrics_client: MetricsClient,
        worker_id: str,
        task_type: str,
        health_gauge: Optional[HealthGauge] = None,
    ):
        self.metrics_client = metrics_client
        self.worker_id = worker_id
        self.task_type = task_type
        self.health_gauge = health_gauge

    async def process_task(
        self,
        task_func: Callable[..., Awaitable[Any]],
        *args,
        **kwargs,
    ) -> bool:
        """
        Run a single task with timing and metrics.
        Returns True on success, False on failure.
        """
        start_time = time()

        try:
            await task_func(*args, **kwargs)
            return True
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Error processing task %s", self.task_type)

            self.metrics_client.increment(
                f"authcore.task.{self.task_type}.exception",
                1,
                tag_dict={
                    "exception": type(e).__name__,
                    "worker_id": self.worker_id,
                },
            )
            if self.health_gauge is not None:
                await self.health_gauge.womp()
            return False
        finally:
            self.metrics_client.timer(
                f"authcore.task.{self.task_type}.time",
                time() - start_time,
                tag_dict={"worker_id": self.worker_id},
            )
            self.metrics_client.increment(
                f"authcore.task.{self.task_type}.count",
                1,
                tag_dict={"worker_id": self.worker_id},
            )


@dataclass(frozen=True)
class Sweep:
    name: str
    interval_seconds: int
    run: Callable[[], Awaitable[int]]
    shared: bool = True
    """Shared sweeps touch the stores and are claimed through `SweepLock`; local ones run on every worker."""


def build_sweeps(settings: Settings, services: AuthServices) -> List[Sweep]:
    async def prune_attempts() -> int:
        return await services.rate_limiter.prune(settings.attempt_retention_days)

    async def trim_rate_limit_state() -> int:
        return services.rate_limiter.trim_state(timedelta(hours=24))

    return [
        Sweep(
            "expired_tokens",
            settings.token_sweep_interval_seconds,
            services.tokens.sweep_expired,
        ),
        Sweep(
            "stale_sessions",
            settings.session_sweep_interval_seconds,
            services.sessions.sweep_stale_sessions,
        ),
        Sweep(
            "attempt_prune",
            settings.attempt_prune_interval_seconds,
            prune_attempts,
        ),
        Sweep(
            "rate_limit_state",
            settings.session_sweep_interval_seconds,
            trim_rate_limit_state,
            shared=False,
        ),
    ]


async def run_sweep(
    sweep: Sweep,
    sweep_lock: SweepLock,
    processor: TaskProcessor,
    metrics_client: MetricsClient,
) -> bool:
    """
    Run one sweep if this worker claims the interval. Returns False when the sweep failed.
    """

    async def sweep_once() -> None:
        if sweep.shared and not await sweep_lock.claim(sweep.name, sweep.interval_seconds):
            logger.debug("sweep %s claimed by another worker", sweep.name)
            return

        removed = await sweep.run()
        if removed:
            logger.info("sweep %s removed %d", sweep.name, removed)
        metrics_client.increment(
            f"authcore.sweep.{sweep.name}.removed",
            removed,
            tag_dict={"worker_id": sweep_lock.worker_id},
        )

    return await processor.process_task(sweep_once)


async def tick_health_task(app: web.Application) -> NoReturn:
    """
    Tick the health gauge every 30 seconds, reducing the health score by 1 each time.
    """

    logger.info("Starting health gauge task")

    health_gauge = app[HealthGaugeAppKey]
    while True:
        await health_gauge.tick()
        await asyncio.sleep(HEALTH_TICK_SECONDS)


async def sweep_task(app: web.Application, sweep: Sweep) -> NoReturn:
    """
    Background loop for one sweep. Failures are reported by `TaskProcessor` and the loop carries on.
    """
    logger.info("Starting %s sweep every %d seconds", sweep.name, sweep.interval_seconds)

    settings = app[SettingsAppKey]
    metrics_client = app[MetricsClientAppKey]
    sweep_lock = SweepLock(app[RedisClientAppKey], settings.worker_id)
    processor = TaskProcessor(
        metrics_client,
        settings.worker_id,
        f"sweep.{sweep.name}",
        health_gauge=app[HealthGaugeAppKey],
    )

    while True:
        await asyncio.sleep(sweep.interval_seconds)
        await run_sweep(sweep, sweep_lock, processor, metrics_client)


def start_sweep_tasks(app: web.Application) -> List["asyncio.Task[None]"]:
    return [
        asyncio.create_task(sweep_task(app, sweep))
        for sweep in build_sweeps(app[SettingsAppKey], app[AuthServicesAppKey])
    ]
