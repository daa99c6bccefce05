from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from panelsync.core.config import get_settings
from panelsync.core.errors import TransportError, TransportTimeoutError
from panelsync.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

BREAKER_CLOSED = "closed"
BREAKER_OPEN = "open"
BREAKER_HALF_OPEN = "half_open"

_STATE_GAUGE = {BREAKER_CLOSED: 0.0, BREAKER_HALF_OPEN: 0.5, BREAKER_OPEN: 1.0}

_redis_client: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None


async def get_resilience_redis() -> Redis | None:
    """Redis client for shared breaker state, or None when REDIS_URL is unset.

    Clients are bound to the event loop that created them, so a new loop (one
    per `asyncio.run` in scripts) gets a fresh client.
    """
    global _redis_client, _redis_loop
    settings = get_settings()
    if not settings.redis_url:
        return None
    loop = asyncio.get_running_loop()
    if _redis_client is None or _redis_loop is not loop:
        try:
            _redis_client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        except ValueError as exc:
            logger.warning("resilience_redis_unavailable url_invalid error=%s", exc)
            return None
        _redis_loop = loop
    return _redis_client


def is_transient(exc: Exception) -> bool:
    # Panel answers (4xx/5xx bodies) are final; only transport failures repeat.
    return isinstance(exc, (TransportTimeoutError, TransportError))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff_ms: int

    def delay_s(self, attempt: int) -> float:
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=max(settings.ext_retry_max_attempts, 1),
        backoff_ms=settings.ext_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] = is_transient,
) -> Any:
    """Run a read-only panel call, repeating transient transport failures.

    Never wrap account creation or deletion in this: a timed-out write may
    still have been applied by the panel.
    """
    policy = policy or default_retry_policy()
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except (TransportTimeoutError, TransportError) as exc:
            if attempt == attempts or not retryable(exc):
                raise
            increment_counter("panel_retries_total")
            logger.info("panel_read_retry attempt=%s error=%s", attempt, exc)
            await asyncio.sleep(policy.delay_s(attempt))


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int

    @classmethod
    def from_settings(cls) -> CircuitBreakerConfig:
        settings = get_settings()
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )


@dataclass
class BreakerState:
    state: str = BREAKER_CLOSED
    failures: int = 0
    # When the breaker last entered open or half_open.
    since: float | None = None
    trials: int = 0

    def to_mapping(self) -> dict[str, str]:
        return {
            "state": self.state,
            "failures": str(self.failures),
            "since": "" if self.since is None else str(self.since),
            "trials": str(self.trials),
        }

    @classmethod
    def from_mapping(cls, raw: dict[str, str]) -> BreakerState:
        return cls(
            state=raw.get("state") or BREAKER_CLOSED,
            failures=int(raw.get("failures") or 0),
            since=float(raw["since"]) if raw.get("since") else None,
            trials=int(raw.get("trials") or 0),
        )


class CircuitBreaker:
    """Per-panel breaker that short-circuits calls after repeated transport failures.

    State lives in a Redis hash when a client is supplied so every API worker
    sees the same view of a flapping panel; otherwise it is kept on the
    instance. When Redis cannot be reached the instance copy is used until it
    comes back. Only transport failures and 5xx answers count as failures.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig.from_settings()
        self._time = time_source or time.monotonic
        self._local = BreakerState()

    @property
    def name(self) -> str:
        return self._name

    @property
    def _key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self._name}"

    async def load(self) -> BreakerState:
        if self._redis is None:
            return self._local
        try:
            raw = await self._redis.hgetall(self._key)
        except RedisError as exc:
            logger.warning("panel_breaker_redis_unavailable name=%s op=load error=%s", self._name, exc)
            return self._local
        return BreakerState.from_mapping(raw) if raw else BreakerState()

    async def _store(self, state: BreakerState) -> None:
        self._local = state
        if self._redis is None:
            return
        try:
            await self._redis.hset(self._key, mapping=state.to_mapping())
            # Stale hashes for removed panels expire on their own.
            await self._redis.expire(self._key, max(self._config.open_seconds * 4, 60))
        except RedisError as exc:
            logger.warning("panel_breaker_redis_unavailable name=%s op=store error=%s", self._name, exc)

    def _enter(self, current: BreakerState, target: str) -> BreakerState:
        if current.state != target:
            logger.warning(
                "panel_breaker_transition name=%s from=%s to=%s", self._name, current.state, target
            )
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
            set_gauge(f"circuit_breaker_state.{self._name}", _STATE_GAUGE[target])
        since = self._time() if target != BREAKER_CLOSED else None
        return BreakerState(state=target, since=since)

    def _unavailable(self) -> TransportError:
        return TransportError(f"{self._name} is temporarily unavailable")

    def _elapsed(self, state: BreakerState) -> bool:
        return state.since is None or self._time() - state.since >= self._config.open_seconds

    async def before_call(self) -> None:
        state = await self.load()
        if state.state == BREAKER_OPEN:
            if not self._elapsed(state):
                raise self._unavailable()
            state = self._enter(state, BREAKER_HALF_OPEN)
        if state.state == BREAKER_HALF_OPEN:
            if state.trials >= self._config.half_open_trials:
                if not self._elapsed(state):
                    raise self._unavailable()
                # The last trial never reported back; let a fresh one through.
                logger.warning("panel_breaker_trial_expired name=%s", self._name)
                state = BreakerState(state=BREAKER_HALF_OPEN, since=self._time())
            state.trials += 1
            await self._store(state)

    async def record_success(self) -> None:
        state = await self.load()
        if state.state == BREAKER_CLOSED and state.failures == 0:
            return
        await self._store(self._enter(state, BREAKER_CLOSED))

    async def record_failure(self) -> None:
        state = await self.load()
        if state.state == BREAKER_HALF_OPEN:
            await self._store(self._enter(state, BREAKER_OPEN))
            return
        failures = state.failures + 1
        if failures >= self._config.failure_threshold:
            await self._store(self._enter(state, BREAKER_OPEN))
            return
        await self._store(BreakerState(state=state.state, failures=failures))
