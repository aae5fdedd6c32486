"""
Bounded retry with per-attempt timeout for generation calls.

Only errors classified TRANSIENT at the backend boundary are retried;
anything else propagates after the first attempt. Between retryable
failures the executor sleeps

    min(max_delay, base_delay * 2 ** attempt) + uniform(0, jitter)

and performs at most `retries + 1` attempts before re-raising the last error.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception,
    stop_after_attempt, wait_exponential, wait_random,
)

from config.settings import RetryConfig
from core.errors import UpstreamError, UpstreamTimeout

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryOptions:
    retries: int = 3
    base_delay_ms: int = 300
    max_delay_ms: int = 3000
    jitter_ms: int = 150

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryOptions:
        return cls(
            retries=config.retries,
            base_delay_ms=config.base_delay_ms,
            max_delay_ms=config.max_delay_ms,
        )

    def worst_case_seconds(self, timeout: float) -> float:
        """Every attempt hits `timeout` and every backoff sleep is maximal."""
        attempts = self.retries + 1
        return attempts * timeout + self.retries * (self.max_delay_ms + self.jitter_ms) / 1000


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, UpstreamError) and exc.retryable


class RetryExecutor:
    """
    Runs an async operation under a retry budget.

    Usage:
        executor = RetryExecutor(RetryOptions(retries=4, base_delay_ms=350, max_delay_ms=3500))
        text = await executor.run(lambda: backend.generate(prompt), timeout=35.0)
    """

    def __init__(
        self,
        options: RetryOptions = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        name: str = "",
    ):
        self.options = options or RetryOptions()
        self.name = name
        self._sleep = sleep

    def _wait(self):
        return (
            wait_exponential(
                multiplier=self.options.base_delay_ms / 1000,
                max=self.options.max_delay_ms / 1000,
            )
            + wait_random(0, self.options.jitter_ms / 1000)
        )

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning("generation_retry",
                       executor=self.name,
                       attempt=retry_state.attempt_number,
                       max_attempts=self.options.retries + 1,
                       sleep_s=round(retry_state.next_action.sleep, 3) if retry_state.next_action else 0,
                       error=repr(exc))

    async def _attempt(self, operation: Callable[[], Awaitable[T]], timeout: Optional[float]) -> T:
        if timeout is None:
            return await operation()
        try:
            # wait_for cancels the in-flight call when the deadline passes
            return await asyncio.wait_for(operation(), timeout)
        except asyncio.TimeoutError:
            raise UpstreamTimeout(timeout, provider=self.name)

    async def run(self, operation: Callable[[], Awaitable[T]], timeout: Optional[float] = None) -> T:
        """Run `operation`, retrying transient failures; re-raise the final error."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.options.retries + 1),
            wait=self._wait(),
            retry=retry_if_exception(is_retryable),
            sleep=self._sleep,
            before_sleep=self._before_sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = await self._attempt(operation, timeout)
        return result
