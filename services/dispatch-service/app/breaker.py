import time
from contextlib import asynccontextmanager

from .redis_client import redis_client as default_redis

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"


class CircuitBreakerOpen(Exception):
    pass


class CircuitBreaker:
    """
    Redis-backed circuit breaker around an outbound dependency, so every
    replica of the service sees the same state.

    CLOSED counts failures inside `failure_window_seconds`; reaching the
    threshold opens it. OPEN rejects calls until `reset_timeout_seconds`
    have passed, then lets a single probe through as HALF_OPEN. The probe's
    outcome closes or reopens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout_seconds: int = 30,
        failure_window_seconds: int = 60,
        trip_on: tuple = (Exception,),
        redis=None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.failure_window_seconds = failure_window_seconds
        self.trip_on = trip_on
        self.redis = redis or default_redis

    def _key(self, suffix: str) -> str:
        return f"breaker:{self.name}:{suffix}"

    async def state(self) -> str:
        return await self.redis.get(self._key("state")) or CLOSED

    async def allow_request(self) -> None:
        if await self.state() != OPEN:
            return

        opened_at = await self.redis.get(self._key("opened_at"))
        if opened_at is None:
            await self.close()
        elif time.time() - float(opened_at) >= self.reset_timeout_seconds:
            await self.redis.set(self._key("state"), HALF_OPEN)
        else:
            raise CircuitBreakerOpen(f"{self.name} is unavailable, retry later")

    async def record_success(self) -> None:
        await self.close()

    async def record_failure(self) -> None:
        if await self.state() == HALF_OPEN:
            await self.open()
            return

        failures = await self.redis.incr(self._key("failures"))
        if failures == 1:
            await self.redis.expire(self._key("failures"), self.failure_window_seconds)
        if failures >= self.failure_threshold:
            await self.open()

    @asynccontextmanager
    async def guard(self):
        """Gate a call on the breaker and record its outcome."""
        await self.allow_request()
        try:
            yield
        except self.trip_on:
            await self.record_failure()
            raise
        await self.record_success()

    async def open(self) -> None:
        ttl = self.reset_timeout_seconds + 30
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key("state"), OPEN, ex=ttl)
            pipe.set(self._key("opened_at"), str(time.time()), ex=ttl)
            await pipe.execute()

    async def close(self) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key("state"), CLOSED, ex=3600)
            pipe.delete(self._key("failures"), self._key("opened_at"))
            await pipe.execute()

    async def status(self) -> dict:
        failures = await self.redis.get(self._key("failures"))
        opened_at = await self.redis.get(self._key("opened_at"))
        return {
            "name": self.name,
            "state": await self.state(),
            "failures": int(failures or 0),
            "opened_at": float(opened_at) if opened_at else None,
            "failure_threshold": self.failure_threshold,
            "reset_timeout_seconds": self.reset_timeout_seconds,
        }
