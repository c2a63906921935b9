import asyncio


class HealthGauge:
    """
    Makeshift health signal for readiness probes.

    Failures outside of regular flow control (a store that stops answering, a sweep that raises) push the gauge up
    with `womp`. The background health task calls `tick` periodically, letting the value drain back down. A burst of
    failures faster than the drain rate crosses the threshold and `is_healthy` turns false, failing the readiness
    check until the failures stop.

    Store outages are the main input here: the rate limiter keeps serving (fail open) and session validation keeps
    denying (fail closed), so readiness is the place an operator sees that the backing store is gone.
    """

    def __init__(self, value: int = 0, health_threshold: int = 100) -> None:
        self._value = value
        self._health_threshold = health_threshold
        self._lock = asyncio.Lock()

    @property
    def health_threshold(self) -> int:
        return self._health_threshold

    async def womp(self, d=1) -> int:
        async with self._lock:
            self._value += int(d)
            return self._value

    async def tick(self) -> None:
        async with self._lock:
            if self._value > 0:
                self._value -= 1

    async def value(self) -> int:
        async with self._lock:
            return self._value

    async def is_healthy(self) -> bool:
        async with self._lock:
            return self._value <= self._health_threshold
