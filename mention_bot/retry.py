"""
Retry Engine - bounded exponential backoff with rate-limit-aware waiting.

Wraps a single unit of work (generate a reply, post a reply) and retries it
according to the error taxonomy in mention_bot.errors:

    ┌──────────────────────┬──────────────────────────────────────────────┐
    │ RateLimited          │ sleep until reset_at, NOT counted as failure │
    │ ApiError/NetworkError│ sleep min(base * mult^(n-1), max), retry     │
    │ anything else        │ propagate immediately, unchanged             │
    └──────────────────────┴──────────────────────────────────────────────┘

After max_retries counted failures the engine raises RetryExhausted with
every error seen, chained from the last one. max_rate_limit_waits bounds the
number of rate-limit sleeps a single call may take.

Built on tenacity.AsyncRetrying with custom stop/wait callables; the sleep
function is injectable so tests can record the schedule instead of waiting.

Usage:
    engine = RetryEngine(RetryConfig(max_retries=3, base_delay_ms=1000))
    reply = await engine.with_retry(
        lambda: poster.post_reply(mention.id, text),
        item_id=f"post:{mention.id}",
    )
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception

from mention_bot.errors import MentionBotError, RateLimited, RetryExhausted
from mention_bot.models import RetryRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    backoff_multiplier: float = 2.0
    max_rate_limit_waits: int = 5

    def backoff_ms(self, failures: int) -> float:
        """Delay after the n-th counted failure (n starts at 1)."""
        return min(
            self.base_delay_ms * self.backoff_multiplier ** (failures - 1),
            self.max_delay_ms,
        )


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, MentionBotError) and exc.retryable


@dataclass
class _CallState:
    """Counters for one with_retry() call. Discarded when the call ends."""

    config: RetryConfig
    failures: int = 0
    rate_limit_waits: int = 0
    errors: list[BaseException] = field(default_factory=list)

    def record_attempt(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception()
        self.errors.append(exc)
        if isinstance(exc, RateLimited):
            self.rate_limit_waits += 1
        else:
            self.failures += 1

    def should_stop(self, retry_state: RetryCallState) -> bool:
        return (
            self.failures >= self.config.max_retries
            or self.rate_limit_waits > self.config.max_rate_limit_waits
        )

    def next_wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception()
        if isinstance(exc, RateLimited):
            # whole milliseconds, rounded up so we never wake before the reset
            return math.ceil(exc.seconds_until_reset() * 1000) / 1000
        return self.config.backoff_ms(self.failures) / 1000


class RetryEngine:
    """
    Executes operations with retries. Holds no state between calls apart
    from the registry of records for calls currently in flight.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._in_flight: list[RetryRecord] = []

    @property
    def in_flight(self) -> list[RetryRecord]:
        return list(self._in_flight)

    @property
    def retry_queue_depth(self) -> int:
        """Number of operations currently between attempts or mid-attempt."""
        return len(self._in_flight)

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        config: Optional[RetryConfig] = None,
        item_id: str = "operation",
        on_wait: Optional[Callable[[float, BaseException], Any]] = None,
    ) -> T:
        """
        Run operation, retrying per the error taxonomy.

        Args:
            operation: Zero-argument coroutine function to execute.
            config: Overrides the engine's default RetryConfig for this call.
            item_id: Label used in logs and in the in-flight RetryRecord.
            on_wait: Called with (seconds, error) before each sleep.

        Returns:
            Whatever operation returns on its first successful attempt.

        Raises:
            RetryExhausted: Retries (or rate-limit waits) used up.
            Exception: Any non-retryable error, unchanged.
        """
        config = config or self.config
        call = _CallState(config)
        record = RetryRecord(item_id=item_id)
        self._in_flight.append(record)

        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception()
            delay = retry_state.next_action.sleep
            record.attempt_count = retry_state.attempt_number
            record.last_error = str(exc)
            record.next_attempt_at = datetime.now(timezone.utc) + timedelta(seconds=delay)

            if isinstance(exc, RateLimited):
                logger.warning(
                    f"[{item_id}] rate limited on {exc.resource}, waiting {delay:.3f}s "
                    f"(rate-limit wait {call.rate_limit_waits}/{config.max_rate_limit_waits})"
                )
            else:
                logger.warning(
                    f"[{item_id}] attempt {retry_state.attempt_number} failed: {exc}. "
                    f"Retrying in {delay:.3f}s (failure {call.failures}/{config.max_retries})"
                )
            if on_wait is not None:
                on_wait(delay, exc)

        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=call.should_stop,
            wait=call.next_wait,
            after=call.record_attempt,
            before_sleep=before_sleep,
            sleep=self._sleep,
            reraise=False,
        )

        async def attempt() -> T:
            return await operation()

        try:
            return await retrying(attempt)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            logger.error(
                f"[{item_id}] giving up after {e.last_attempt.attempt_number} attempt(s) "
                f"({call.failures} failures, {call.rate_limit_waits} rate-limit waits): {last_error}"
            )
            raise RetryExhausted(
                item_id,
                attempts=e.last_attempt.attempt_number,
                errors=call.errors,
            ) from last_error
        finally:
            self._in_flight.remove(record)
