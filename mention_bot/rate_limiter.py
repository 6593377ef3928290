"""
Budget Tracker - token-bucket accounting per named resource.

Every call the pipeline makes against an external API is charged to a named
resource before it is issued. Each resource is an independent token bucket
that refills continuously, so bursts are allowed up to capacity and the
long-run rate never exceeds capacity per window.

Features:
    - Lazy refill (computed on access, no background timer)
    - Per-resource asyncio.Lock so concurrent callers never double-spend
    - Non-blocking try_acquire and blocking acquire_blocking
    - All-or-none acquisition across several resources (LLM request + tokens)
    - Server feedback via observe() so local accounting never runs ahead of
      what the remote API reports

Resources:
    ┌─────────────────┬────────────────────────────────────────────┐
    │ remote-read     │ mention timeline / user lookup calls       │
    │ remote-write    │ reply posts                                │
    │ llm-request     │ one unit per chat completion               │
    │ llm-tokens      │ estimated prompt + response tokens         │
    │ replies-hourly  │ bot-level reply cap, set from BotConfig    │
    │ replies-daily   │ bot-level reply cap, set from BotConfig    │
    └─────────────────┴────────────────────────────────────────────┘

Usage:
    budgets = BudgetTracker()
    result = await budgets.try_acquire("remote-read")
    if not result.allowed:
        print(f"Wait {result.wait_ms}ms")

    await budgets.acquire_many_blocking([("llm-request", 1), ("llm-tokens", 350)])

Usage of the tracker is expected from a single event loop.
"""

import asyncio
import logging
import math
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Iterable, Optional

logger = logging.getLogger(__name__)

REMOTE_READ = "remote-read"
REMOTE_WRITE = "remote-write"
LLM_REQUEST = "llm-request"
LLM_TOKENS = "llm-tokens"
REPLIES_HOURLY = "replies-hourly"
REPLIES_DAILY = "replies-daily"


@dataclass
class BudgetConfig:
    capacity: float
    window_seconds: float

    @property
    def refill_rate_per_ms(self) -> float:
        return self.capacity / (self.window_seconds * 1000)


# X API v2 and typical LLM provider limits
DEFAULT_BUDGETS: dict[str, BudgetConfig] = {
    REMOTE_READ: BudgetConfig(capacity=450, window_seconds=15 * 60),
    REMOTE_WRITE: BudgetConfig(capacity=300, window_seconds=15 * 60),
    LLM_REQUEST: BudgetConfig(capacity=100, window_seconds=60),
    LLM_TOKENS: BudgetConfig(capacity=10_000, window_seconds=60),
}


@dataclass
class Budget:
    """Live bucket state for one resource. current_tokens stays in [0, capacity]."""

    resource_key: str
    capacity_tokens: float
    current_tokens: float
    refill_rate_per_ms: float
    last_refill: float  # clock milliseconds
    window_reset_at: Optional[datetime] = None


@dataclass
class AcquireResult:
    allowed: bool
    wait_ms: int
    remaining: float


@dataclass
class BudgetStatus:
    remaining: float
    capacity: float
    reset_at: datetime

    def to_dict(self) -> dict:
        return {
            "remaining": int(self.remaining),
            "capacity": int(self.capacity),
            "reset_at": self.reset_at.isoformat(),
        }


class BudgetTracker:
    """
    Token-bucket rate limiter keyed by resource name.

    Buckets are created full on first use of a configured resource and live
    for the process lifetime (or until reset()).
    """

    def __init__(
        self,
        budgets: Optional[dict[str, BudgetConfig]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the tracker.

        Args:
            budgets: Resource configs keyed by name (default: DEFAULT_BUDGETS).
            clock: Monotonic clock in seconds, injectable for tests.
            sleep: Coroutine used by the blocking acquire methods.
        """
        self._configs: dict[str, BudgetConfig] = {}
        self._buckets: dict[str, Budget] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._clock = clock
        self._sleep = sleep

        for key, config in (budgets if budgets is not None else DEFAULT_BUDGETS).items():
            self.configure(key, config.capacity, config.window_seconds)

        logger.info(
            "Budget tracker initialized: "
            + ", ".join(f"{k}={int(c.capacity)}/{int(c.window_seconds)}s" for k, c in self._configs.items())
        )

    # =========================================================================
    # Configuration
    # =========================================================================

    def configure(self, key: str, capacity: float, window_seconds: float) -> None:
        """
        Register a resource or change its limits.

        A live bucket keeps its tokens (clamped to the new capacity), so
        lowering a cap mid-window never grants extra calls.
        """
        if capacity <= 0 or window_seconds <= 0:
            raise ValueError(f"Budget {key} needs positive capacity and window")

        config = BudgetConfig(capacity=capacity, window_seconds=window_seconds)
        previous = self._configs.get(key)
        self._configs[key] = config
        self._locks.setdefault(key, asyncio.Lock())

        bucket = self._buckets.get(key)
        if bucket is None or previous == config:
            return

        self._refill(bucket, self._now_ms())
        bucket.capacity_tokens = config.capacity
        bucket.refill_rate_per_ms = config.refill_rate_per_ms
        bucket.current_tokens = min(bucket.current_tokens, config.capacity)
        logger.info(f"Budget {key} reconfigured: {int(capacity)}/{int(window_seconds)}s")

    def is_configured(self, key: str) -> bool:
        return key in self._configs

    # =========================================================================
    # Acquisition
    # =========================================================================

    async def try_acquire(self, key: str, tokens: float = 1) -> AcquireResult:
        """
        Debit tokens if available, otherwise report how long to wait.

        Returns:
            AcquireResult with allowed, wait_ms (0 when allowed) and the
            tokens remaining after the attempt.
        """
        async with self._lock_for(key):
            bucket = self._bucket(key)
            tokens = self._clamp_request(bucket, tokens)
            self._refill(bucket, self._now_ms())
            return self._debit(bucket, tokens)

    async def acquire_blocking(self, key: str, tokens: float = 1) -> AcquireResult:
        """Suspend the caller until tokens can be debited from key."""
        while True:
            result = await self.try_acquire(key, tokens)
            if result.allowed:
                return result
            logger.debug(f"Budget {key} short by {tokens}, waiting {result.wait_ms}ms")
            await self._sleep(result.wait_ms / 1000)

    async def try_acquire_many(self, requests: Iterable[tuple[str, float]]) -> AcquireResult:
        """
        Debit several resources all-or-none.

        Locks are taken in sorted key order. If any resource is short,
        nothing is debited and wait_ms is the longest wait among them.
        remaining is the smallest balance left across the resources.
        """
        wanted: dict[str, float] = {}
        for key, tokens in requests:
            wanted[key] = wanted.get(key, 0) + tokens
        keys = sorted(wanted)

        async with AsyncExitStack() as stack:
            for key in keys:
                await stack.enter_async_context(self._lock_for(key))

            now = self._now_ms()
            waits = []
            for key in keys:
                bucket = self._bucket(key)
                wanted[key] = self._clamp_request(bucket, wanted[key])
                self._refill(bucket, now)
                if bucket.current_tokens < wanted[key]:
                    waits.append(self._wait_ms(bucket, wanted[key]))

            if waits:
                remaining = min(self._buckets[key].current_tokens for key in keys)
                return AcquireResult(allowed=False, wait_ms=max(waits), remaining=remaining)

            for key in keys:
                self._buckets[key].current_tokens -= wanted[key]
            remaining = min(self._buckets[key].current_tokens for key in keys)
            return AcquireResult(allowed=True, wait_ms=0, remaining=remaining)

    async def acquire_many_blocking(self, requests: Iterable[tuple[str, float]]) -> None:
        """Like try_acquire_many, but waits for the slowest resource and retries."""
        requests = list(requests)
        while True:
            result = await self.try_acquire_many(requests)
            if result.allowed:
                return
            logger.debug(f"Budgets {[key for key, _ in requests]} short, waiting {result.wait_ms}ms")
            await self._sleep(result.wait_ms / 1000)

    # =========================================================================
    # Server feedback
    # =========================================================================

    def observe(self, key: str, remaining: float, reset_at: Optional[datetime] = None) -> None:
        """
        Reconcile a bucket with quota reported by the server.

        Local tokens are only ever lowered to the server's number; a larger
        server value is left to normal refill.
        """
        if key not in self._configs:
            logger.debug(f"Ignoring quota feedback for unconfigured budget {key}")
            return

        bucket = self._bucket(key)
        self._refill(bucket, self._now_ms())
        bucket.current_tokens = max(0.0, min(bucket.current_tokens, float(remaining)))
        if reset_at is not None:
            bucket.window_reset_at = reset_at

    # =========================================================================
    # Status
    # =========================================================================

    def status(self, key: str) -> BudgetStatus:
        """
        Read-only view of a bucket.

        Does not mutate the bucket, so repeated calls never double-count
        refill. reset_at is the server window reset when one is known and
        still ahead, otherwise the moment the bucket would be full again.
        """
        config = self._config(key)
        bucket = self._buckets.get(key)
        now_wall = datetime.now(timezone.utc)

        if bucket is None:
            return BudgetStatus(remaining=config.capacity, capacity=config.capacity, reset_at=now_wall)

        remaining = self._refilled_tokens(bucket, self._now_ms())
        if bucket.window_reset_at is not None and bucket.window_reset_at > now_wall:
            reset_at = bucket.window_reset_at
        else:
            ms_to_full = (bucket.capacity_tokens - remaining) / bucket.refill_rate_per_ms
            reset_at = now_wall + timedelta(milliseconds=ms_to_full)

        return BudgetStatus(remaining=remaining, capacity=bucket.capacity_tokens, reset_at=reset_at)

    def get_all_statuses(self) -> dict[str, BudgetStatus]:
        return {key: self.status(key) for key in self._configs}

    def reset(self, key: str) -> None:
        """Drop the bucket; it is recreated full on next use."""
        self._config(key)
        self._buckets.pop(key, None)
        logger.info(f"Budget {key} reset")

    # =========================================================================
    # Internals
    # =========================================================================

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _config(self, key: str) -> BudgetConfig:
        try:
            return self._configs[key]
        except KeyError:
            raise ValueError(f"Unknown budget resource: {key}") from None

    def _lock_for(self, key: str) -> asyncio.Lock:
        self._config(key)
        return self._locks[key]

    def _bucket(self, key: str) -> Budget:
        bucket = self._buckets.get(key)
        if bucket is None:
            config = self._config(key)
            bucket = Budget(
                resource_key=key,
                capacity_tokens=config.capacity,
                current_tokens=config.capacity,
                refill_rate_per_ms=config.refill_rate_per_ms,
                last_refill=self._now_ms(),
            )
            self._buckets[key] = bucket
        return bucket

    @staticmethod
    def _refilled_tokens(bucket: Budget, now_ms: float) -> float:
        elapsed = max(0.0, now_ms - bucket.last_refill)
        return min(bucket.capacity_tokens, bucket.current_tokens + elapsed * bucket.refill_rate_per_ms)

    def _refill(self, bucket: Budget, now_ms: float) -> None:
        bucket.current_tokens = self._refilled_tokens(bucket, now_ms)
        bucket.last_refill = max(bucket.last_refill, now_ms)

    @staticmethod
    def _wait_ms(bucket: Budget, tokens: float) -> int:
        deficit = tokens - bucket.current_tokens
        return max(1, math.ceil(deficit / bucket.refill_rate_per_ms))

    def _debit(self, bucket: Budget, tokens: float) -> AcquireResult:
        if bucket.current_tokens >= tokens:
            bucket.current_tokens -= tokens
            return AcquireResult(allowed=True, wait_ms=0, remaining=bucket.current_tokens)
        return AcquireResult(
            allowed=False,
            wait_ms=self._wait_ms(bucket, tokens),
            remaining=bucket.current_tokens,
        )

    @staticmethod
    def _clamp_request(bucket: Budget, tokens: float) -> float:
        if tokens > bucket.capacity_tokens:
            logger.warning(
                f"Request for {tokens} tokens exceeds {bucket.resource_key} "
                f"capacity {bucket.capacity_tokens}, clamping"
            )
            return bucket.capacity_tokens
        return tokens
