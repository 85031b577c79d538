"""
Admission control for external calls.

One RateLimiter and one CircuitBreaker are shared by every job in the
process (the upstream quota is per API key, not per job). Both take an
injectable clock so tests can drive them without waiting.

Usage:
    limiter = RateLimiter(config.rate_limit)
    breaker = CircuitBreaker(config.circuit_breaker)
    gate = ExternalCallGate(limiter, breaker)

    result = await gate.call(lambda: client.generate(...), description="page 4")
"""

import asyncio
import time
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from .config import CircuitBreakerConfig, RateLimitConfig
from .utils import CircuitOpenError, RateLimitedError, get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

HOUR_SECONDS = 3600.0


class RateLimiter:
    """
    Token bucket limiter with an hourly ceiling and a minimum interval.

    The per-minute bucket holds `requests_per_minute` tokens and refills
    continuously; the hourly ceiling is a sliding window of timestamps.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

        self._tokens = float(self.config.requests_per_minute)
        self._last_refill = clock()
        self._last_request: Optional[float] = None
        self._hourly: deque = deque()

        self.total_requests = 0
        self.throttle_count = 0
        self.total_wait = 0.0

    def _refill(self, now: float):
        rate = self.config.requests_per_minute / 60.0
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(float(self.config.requests_per_minute), self._tokens + elapsed * rate)
            self._last_refill = now

    def time_until_available(self) -> float:
        """Seconds until the next request would be admitted (0 if now)."""
        now = self._clock()
        self._refill(now)

        while self._hourly and now - self._hourly[0] >= HOUR_SECONDS:
            self._hourly.popleft()

        waits = [0.0]
        if self._tokens < 1.0:
            rate = self.config.requests_per_minute / 60.0
            waits.append((1.0 - self._tokens) / rate)
        if len(self._hourly) >= self.config.requests_per_hour:
            waits.append(self._hourly[0] + HOUR_SECONDS - now)
        if self._last_request is not None:
            waits.append(self._last_request + self.config.min_interval_seconds - now)

        return max(waits)

    def _consume(self):
        now = self._clock()
        self._tokens -= 1.0
        self._last_request = now
        self._hourly.append(now)
        self.total_requests += 1

    async def acquire(self) -> float:
        """
        Wait for an admission slot.

        Returns:
            Seconds spent waiting

        Raises:
            RateLimitedError: If admission would take longer than max_wait_seconds
        """
        async with self._lock:
            waited = 0.0
            while True:
                wait = self.time_until_available()
                if wait <= 0:
                    self._consume()
                    self.total_wait += waited
                    return waited

                if waited + wait > self.config.max_wait_seconds:
                    raise RateLimitedError(
                        f"Rate limit wait of {waited + wait:.1f}s exceeds "
                        f"{self.config.max_wait_seconds:.0f}s",
                        retry_after=wait,
                    )

                self.throttle_count += 1
                logger.debug(f"Rate limit: waiting {wait:.2f}s")
                await self._sleep(wait)
                waited += wait

    def get_stats(self) -> Dict:
        return {
            "available_tokens": round(self._tokens, 2),
            "requests_last_hour": len(self._hourly),
            "total_requests": self.total_requests,
            "throttle_count": self.throttle_count,
            "total_wait_seconds": round(self.total_wait, 2),
        }


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for quota failures.

    Opens after `failure_threshold` consecutive quota failures, rejects
    calls for `cooldown_seconds`, then admits up to
    `half_open_max_attempts` trial calls. `success_threshold` successful
    trials close it again; a failed trial reopens it.
    """

    def __init__(self, config: Optional[CircuitBreakerConfig] = None, clock: Clock = time.monotonic):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self.failures = 0
        self.half_open_successes = 0
        self.half_open_attempts = 0
        self.opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._clock() - self.opened_at >= self.config.cooldown_seconds
        ):
            logger.info("Circuit breaker cooldown elapsed, entering half-open state")
            self._state = CircuitState.HALF_OPEN
            self.half_open_successes = 0
            self.half_open_attempts = 0
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def allow_request(self) -> bool:
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.OPEN:
            return False
        if self.half_open_attempts >= self.config.half_open_max_attempts:
            return False
        self.half_open_attempts += 1
        return True

    def retry_after(self) -> float:
        """Seconds left in the cooldown window."""
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.opened_at + self.config.cooldown_seconds - self._clock())

    def record_success(self):
        if self._state == CircuitState.HALF_OPEN:
            self.half_open_successes += 1
            if self.half_open_successes >= self.config.success_threshold:
                logger.info("Circuit breaker closed after successful trial calls")
                self._reset()
        else:
            self.failures = 0

    def record_failure(self):
        """Record a quota failure. Other errors must not be recorded here."""
        if self._state == CircuitState.HALF_OPEN:
            logger.warning("Quota failure during half-open trial, reopening circuit")
            self._open()
            return

        self.failures += 1
        if self.failures >= self.config.failure_threshold and self._state == CircuitState.CLOSED:
            logger.warning(
                f"Circuit breaker opened after {self.failures} consecutive quota failures "
                f"(cooldown {self.config.cooldown_seconds:.0f}s)"
            )
            self._open()

    def _open(self):
        self._state = CircuitState.OPEN
        self.opened_at = self._clock()
        self.half_open_successes = 0
        self.half_open_attempts = 0

    def _reset(self):
        self._state = CircuitState.CLOSED
        self.failures = 0
        self.half_open_successes = 0
        self.half_open_attempts = 0
        self.opened_at = None

    def get_stats(self) -> Dict:
        return {
            "state": self.state.value,
            "failures": self.failures,
            "retry_after": round(self.retry_after(), 2),
        }


class ExternalCallGate:
    """
    Admission path for every external network call.

    Checks the circuit breaker, waits for the rate limiter, runs the
    call, and retries quota failures with exponential backoff (honoring
    a server-provided retry delay when there is one).
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        circuit_breaker: CircuitBreaker,
        max_retries: int = 2,
        base_delay: float = 2.0,
        max_delay: float = 60.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    @property
    def available(self) -> bool:
        return not self.circuit_breaker.is_open

    def backoff_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        if retry_after is not None and retry_after > 0:
            return min(self.max_delay, retry_after)
        return min(self.max_delay, self.base_delay * (2 ** attempt))

    async def call(self, operation: Callable[[], Awaitable[T]], description: str = "external call") -> T:
        """
        Run an external call under admission control.

        Args:
            operation: Zero-argument coroutine factory, invoked once per attempt
            description: Label used in log messages

        Returns:
            Whatever the operation returns

        Raises:
            CircuitOpenError: If the circuit breaker rejects the call
            RateLimitedError: If quota failures persist after all retries
        """
        for attempt in range(self.max_retries + 1):
            if not self.circuit_breaker.allow_request():
                raise CircuitOpenError(
                    f"Circuit open, rejecting {description}",
                    retry_after=self.circuit_breaker.retry_after(),
                )

            await self.rate_limiter.acquire()

            try:
                result = await operation()
            except RateLimitedError as e:
                self.circuit_breaker.record_failure()
                if attempt >= self.max_retries:
                    logger.warning(f"Quota exceeded for {description}, retries exhausted")
                    raise
                delay = self.backoff_delay(attempt, e.retry_after)
                logger.warning(
                    f"Quota exceeded for {description}, retrying in {delay:.1f}s "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                await self._sleep(delay)
                continue

            self.circuit_breaker.record_success()
            return result

        raise RateLimitedError(f"Retries exhausted for {description}")
