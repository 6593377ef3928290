"""
Mention Scheduler - fixed-interval polling and per-mention dispatch.

Owns the poll timer, fetches mentions newer than the persisted marker and
drives each one through reply generation and posting via the retry engine.

State Machine:
    ┌─────────────────────────────────────────────────────────────┐
    │   IDLE ──tick──> POLLING ──batch──> PROCESSING ──> IDLE     │
    │                     │                   │  ▲                │
    │                     │ fetch error       │  │ retry sleep    │
    │                     ▼                   ▼  │                │
    │                    IDLE          BACKOFF_WAITING            │
    │                                                             │
    │   config.enabled == False  ──>  DISABLED (until re-enabled) │
    │   stop()                   ──>  STOPPED                     │
    └─────────────────────────────────────────────────────────────┘

Per mention (oldest-first):
    1. Skip: already handled this process, authored by the bot itself,
       missing the required #tag, or refused by the allow/deny list
    2. Reserve a reply slot (hourly + daily caps, all-or-none)
    3. Generate the reply   (RetryEngine wrapping AIClient.generate)
    4. Post the reply       (RetryEngine wrapping ReplyPoster.post_reply)
    5. Advance lastSeenMentionId to this mention

The marker moves only after a mention's outcome (reply, skip or permanent
failure) is known, so a crash mid-batch re-fetches the unfinished mentions
instead of dropping them. When the reply cap is reached, credentials are
rejected or a call stays rate limited past its wait allowance, the batch
stops at the current mention and the rest is picked up by a later poll.

Usage:
    scheduler = MentionScheduler(
        source=source, generator=ai, poster=poster,
        state=state, budgets=budgets, retry=retry_engine,
        config_provider=settings.bot_config,
    )
    await scheduler.start()
    ...
    await scheduler.stop()
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from config.prompts import SYSTEM_PROMPT
from config.settings import BotConfig
from mention_bot.ai_client import AIClient
from mention_bot.allow_list import AllowList
from mention_bot.errors import (
    ApiError,
    AuthenticationFailed,
    MentionBotError,
    RateLimited,
    RetryExhausted,
)
from mention_bot.mention_source import MentionSource
from mention_bot.models import FailureRecord, Mention, ProcessingOutcome
from mention_bot.rate_limiter import REPLIES_DAILY, REPLIES_HOURLY, BudgetTracker
from mention_bot.reply_poster import ReplyPoster
from mention_bot.retry import RetryEngine
from mention_bot.state_store import StateStore

logger = logging.getLogger(__name__)

HOUR_SECONDS = 60 * 60
DAY_SECONDS = 24 * HOUR_SECONDS
MAX_FAILURE_RECORDS = 100
STOP_GRACE_SECONDS = 30


class SchedulerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    PROCESSING = "processing"
    BACKOFF_WAITING = "backoff_waiting"
    DISABLED = "disabled"
    STOPPED = "stopped"


class MentionScheduler:
    """
    Single-loop dispatcher. Exactly one poll cycle runs at a time and
    mentions within a batch are handled sequentially.
    """

    def __init__(
        self,
        source: MentionSource,
        generator: AIClient,
        poster: ReplyPoster,
        state: StateStore,
        budgets: BudgetTracker,
        retry: RetryEngine,
        config_provider: Callable[[], BotConfig],
        allow_list: Optional[AllowList] = None,
        system_prompt: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the scheduler. Every collaborator is injected.

        Args:
            source: Fetches mentions newer than the marker.
            generator: Produces reply text.
            poster: Publishes replies.
            state: Durable marker and quota store.
            budgets: Token buckets, including the reply caps.
            retry: Retry engine wrapping generation and posting.
            config_provider: Returns the current BotConfig; called every poll.
            allow_list: Handles consulted when the allow list is enabled.
            system_prompt: System prompt for generation (default: config.prompts).
            sleep: Coroutine used for the post-reply delay.
        """
        self.source = source
        self.generator = generator
        self.poster = poster
        self.state = state
        self.budgets = budgets
        self.retry = retry
        self.config_provider = config_provider
        self.allow_list = allow_list or AllowList()
        self.system_prompt = system_prompt or SYSTEM_PROMPT
        self._sleep = sleep

        self._state = SchedulerState.IDLE
        self._running = False
        self._stop_requested = False
        self._poll_in_progress = False
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._config: Optional[BotConfig] = None

        self._seen: set[str] = set()
        self._failures: dict[str, FailureRecord] = {}
        self.processed_count = 0
        self.failed_count = 0
        self.skipped_count = 0
        self.error_count = 0

    # =========================================================================
    # Controls
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def current_state(self) -> SchedulerState:
        return self._state

    async def start(self) -> None:
        """Start the poll loop. A second call while running only logs a warning."""
        if self._running:
            logger.warning("Scheduler already running, start() ignored")
            return

        self._running = True
        self._stop_requested = False
        self._stop_event = asyncio.Event()
        self._state = SchedulerState.IDLE
        self._task = asyncio.create_task(self._run_loop(), name="mention_scheduler")
        logger.info("Mention scheduler started")

    async def stop(self, timeout: float = STOP_GRACE_SECONDS) -> None:
        """
        Stop the poll loop.

        The timer stops at once and no new batch starts. An in-flight batch
        finishes its current mention; if it is still busy after timeout
        seconds (e.g. sleeping out a rate limit) the task is cancelled.
        """
        if not self._running:
            logger.warning("Scheduler not running, stop() ignored")
            return

        self._running = False
        self._stop_requested = True
        self._state = SchedulerState.STOPPED
        if self._stop_event is not None:
            self._stop_event.set()

        if self._task is not None and not self._task.done():
            done, _ = await asyncio.wait({self._task}, timeout=timeout)
            if not done:
                logger.warning(f"Poll cycle still busy after {timeout}s, cancelling")
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
        self._task = None
        logger.info("Mention scheduler stopped")

    def clear_cache(self) -> None:
        """
        Forget everything handled this process lifetime.

        Drops the dedupe set, the failure records and the processed/failed/
        skipped counters. The persisted lastSeenMentionId is untouched.
        """
        self._seen.clear()
        self._failures.clear()
        self.processed_count = 0
        self.failed_count = 0
        self.skipped_count = 0
        logger.info("Scheduler cache cleared")

    def get_status(self) -> dict:
        """
        Snapshot for operators and dashboards.

        Reads plain attributes and non-mutating budget views only, so it
        never waits behind an in-flight poll.
        """
        last_poll = self.state.get_last_poll_time()
        return {
            "is_running": self._running,
            "state": self._state.value,
            "last_poll_time": last_poll.isoformat() if last_poll else None,
            "last_mention_id": self.state.get_last_seen_id(),
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
            "error_count": self.error_count,
            "retry_queue_depth": self.retry.retry_queue_depth,
            "budgets": {key: status.to_dict() for key, status in self.budgets.get_all_statuses().items()},
            "source_authenticated": self.source.is_authenticated,
            "generator_authenticated": self.generator.is_authenticated,
        }

    def get_failures(self) -> list[FailureRecord]:
        return list(self._failures.values())

    # =========================================================================
    # Poll loop
    # =========================================================================

    async def _run_loop(self) -> None:
        while self._running:
            await self.poll_once()
            if not self._running:
                break

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval_seconds())
            except asyncio.TimeoutError:
                pass

        self._state = SchedulerState.STOPPED

    def _interval_seconds(self) -> float:
        config = self._config or BotConfig()
        return config.poll_interval_ms / 1000

    def _set_state(self, new_state: SchedulerState) -> None:
        if self._state is SchedulerState.STOPPED:
            return
        self._state = new_state

    async def poll_once(self) -> int:
        """
        Run one poll cycle.

        Overlapping calls are refused. Nothing raised inside the cycle
        escapes; fetch failures are logged and counted in error_count.

        Returns:
            Number of replies posted in this cycle.
        """
        if self._poll_in_progress:
            logger.warning("Previous poll still running, skipping this tick")
            return 0

        self._poll_in_progress = True
        try:
            return await self._poll()
        except Exception as e:
            self.error_count += 1
            logger.error(f"Poll cycle failed: {e}", exc_info=True)
            return 0
        finally:
            self._poll_in_progress = False
            if self._state is not SchedulerState.DISABLED:
                self._set_state(SchedulerState.IDLE)

    async def _poll(self) -> int:
        config = self.config_provider()
        self._config = config

        if not config.enabled:
            if self._state is not SchedulerState.DISABLED:
                logger.info("Bot disabled by configuration, polling paused")
            self._set_state(SchedulerState.DISABLED)
            return 0
        if self._state is SchedulerState.DISABLED:
            logger.info("Bot re-enabled by configuration")

        self.budgets.configure(REPLIES_HOURLY, config.max_replies_per_hour, HOUR_SECONDS)
        self.budgets.configure(REPLIES_DAILY, config.max_replies_per_day, DAY_SECONDS)

        self._set_state(SchedulerState.POLLING)
        since_id = self.state.get_last_seen_id()
        self.state.set_last_poll_time()

        try:
            mentions = await self.source.get_new_mentions(config.mentions_per_poll, since_id=since_id)
        except RateLimited as e:
            self.error_count += 1
            logger.warning(
                f"Mention fetch rate limited on {e.resource} until {e.reset_at.isoformat()}, "
                f"skipping cycle (marker stays at {since_id})"
            )
            return 0
        except MentionBotError as e:
            self.error_count += 1
            logger.error(f"Failed to fetch mentions since {since_id}: {e}")
            return 0

        if not mentions:
            logger.debug("No new mentions")
            return 0

        logger.info(f"Processing {len(mentions)} mention(s), oldest first")
        self._set_state(SchedulerState.PROCESSING)
        posted = 0

        for mention in reversed(mentions):
            if self._stop_requested:
                logger.info(f"Stop requested, leaving mention {mention.id} and newer for the next run")
                break

            try:
                outcome = await self._process_mention(mention, config)
            except Exception as e:
                outcome = self._record_failure(mention, e)
            if outcome is None:
                break

            self.state.set_last_seen_id(mention.id)

            if outcome.success:
                posted += 1
                if config.response_delay_ms > 0:
                    await self._sleep(config.response_delay_ms / 1000)

        logger.info(
            f"Poll complete: {posted} posted, marker at {self.state.get_last_seen_id()} "
            f"(totals: {self.processed_count} processed, {self.failed_count} failed, "
            f"{self.skipped_count} skipped)"
        )
        return posted

    # =========================================================================
    # Per-mention processing
    # =========================================================================

    def _skip_reason(self, mention: Mention, config: BotConfig) -> Optional[str]:
        if mention.id in self._seen:
            return "already handled"

        own_handle = config.account_handle.lstrip("@").lower()
        own_id = self.state.get_account_id()
        if (own_handle and mention.author_handle.lower() == own_handle) or (
            own_id and mention.author_id == own_id
        ):
            return "authored by the bot"

        if config.required_tag and not mention.has_tag(config.required_tag):
            return f"missing #{config.required_tag.lstrip('#')}"

        if config.allow_list_enabled and not self.allow_list.is_allowed(
            mention.author_handle, config.allow_list_mode
        ):
            return f"@{mention.author_handle} refused by {config.allow_list_mode} list"

        return None

    async def _process_mention(self, mention: Mention, config: BotConfig) -> Optional[ProcessingOutcome]:
        """
        Drive one mention to an outcome.

        Returns:
            The outcome, or None when the mention must be left for a later
            poll (reply cap reached, credentials rejected, rate-limit waits
            used up).
        """
        reason = self._skip_reason(mention, config)
        if reason:
            self._seen.add(mention.id)
            self.skipped_count += 1
            logger.debug(f"Skipping mention {mention.id}: {reason}")
            return ProcessingOutcome(mention_id=mention.id, success=False, skipped=True, error=reason)

        cap = await self.budgets.try_acquire_many([(REPLIES_HOURLY, 1), (REPLIES_DAILY, 1)])
        if not cap.allowed:
            logger.warning(
                f"Reply cap reached, deferring mention {mention.id} and newer "
                f"(next slot in {cap.wait_ms / 1000:.0f}s)"
            )
            return None

        logger.info(f"Replying to mention {mention.id} from @{mention.author_handle}")

        try:
            text = await self.retry.with_retry(
                lambda: self._generate(mention, config),
                item_id=f"generate:{mention.id}",
                on_wait=self._on_backoff,
            )
            self._set_state(SchedulerState.PROCESSING)

            reply = await self.retry.with_retry(
                lambda: self.poster.post_reply(mention.id, text),
                item_id=f"post:{mention.id}",
                on_wait=self._on_backoff,
            )
            self._set_state(SchedulerState.PROCESSING)

            logger.info(f"Replied to mention {mention.id} with {reply.id}")
            self._seen.add(mention.id)
            self.processed_count += 1
            return ProcessingOutcome(mention_id=mention.id, success=True, response_text=text)
        except AuthenticationFailed as e:
            self._set_state(SchedulerState.PROCESSING)
            self.error_count += 1
            logger.error(f"Credentials rejected while handling mention {mention.id}, stopping batch: {e}")
            return None
        except RetryExhausted as e:
            self._set_state(SchedulerState.PROCESSING)
            if isinstance(e.last_error, RateLimited):
                self.error_count += 1
                logger.warning(
                    f"Still rate limited after {e.attempts} attempt(s), deferring mention "
                    f"{mention.id} and newer to the next poll: {e.last_error}"
                )
                return None
            return self._record_failure(mention, e)
        except Exception as e:
            self._set_state(SchedulerState.PROCESSING)
            return self._record_failure(mention, e)

    async def _generate(self, mention: Mention, config: BotConfig) -> str:
        result = await self.generator.generate(
            self.system_prompt,
            mention.text,
            context=mention,
            max_length=config.max_response_length,
        )
        if not result.success or not result.text:
            raise result.error or ApiError("Generation returned no text", status_code=200, service="ai")
        return result.text

    def _on_backoff(self, delay: float, error: BaseException) -> None:
        self._set_state(SchedulerState.BACKOFF_WAITING)

    def _record_failure(self, mention: Mention, error: Exception) -> ProcessingOutcome:
        attempts = getattr(error, "attempts", 1)
        if isinstance(error, MentionBotError):
            logger.error(f"Mention {mention.id} failed permanently after {attempts} attempt(s): {error}")
        else:
            logger.exception(f"Unexpected error handling mention {mention.id}")

        self._seen.add(mention.id)
        self.failed_count += 1
        self._failures[mention.id] = FailureRecord(mention=mention, error=str(error), attempts=attempts)
        while len(self._failures) > MAX_FAILURE_RECORDS:
            self._failures.pop(next(iter(self._failures)))

        return ProcessingOutcome(mention_id=mention.id, success=False, error=str(error))
