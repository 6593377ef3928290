"""
Main orchestrator for Mention Bot.

This module builds every component once, wires them together and runs the
mention scheduler until a shutdown signal arrives.

Responsibilities:
    1. Validate configuration (fail fast on missing credentials)
    2. Load durable state from disk
    3. Construct budgets, clients, retry engine and scheduler
    4. Run health checks
    5. Poll mentions and reply until stopped

Flow:
    ┌─────────────────────────────────────────────────────────────┐
    │  1. Every poll interval: fetch mentions since the marker    │
    │  2. Skip own posts, untagged or disallowed mentions         │
    │  3. Generate AI reply (budgeted, retried)                   │
    │  4. Post reply (budgeted, retried)                          │
    │  5. Advance and persist the marker                          │
    └─────────────────────────────────────────────────────────────┘

Entry Point:
    python -m mention_bot.bot
"""

import asyncio
import logging
import signal
from typing import Optional

from config import settings
from mention_bot import __version__
from mention_bot.ai_client import AIClient
from mention_bot.allow_list import AllowList
from mention_bot.mention_source import MentionSource
from mention_bot.rate_limiter import (
    LLM_REQUEST,
    LLM_TOKENS,
    REMOTE_READ,
    REMOTE_WRITE,
    BudgetConfig,
    BudgetTracker,
)
from mention_bot.reply_poster import ReplyPoster
from mention_bot.retry import RetryConfig, RetryEngine
from mention_bot.scheduler import MentionScheduler
from mention_bot.social_client import SocialApiClient
from mention_bot.state_store import StateStore

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for the bot process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # Suppress noisy HTTP logs
    logging.getLogger("httpx").setLevel(logging.WARNING)


class MentionBot:
    """
    Main orchestrator that ties all components together.

    This class handles:
    - Component construction (dependency injection)
    - Health checks
    - Scheduler lifecycle
    - Graceful shutdown
    """

    def __init__(self) -> None:
        """Initialize the bot with empty component references."""
        self.state: Optional[StateStore] = None
        self.budgets: Optional[BudgetTracker] = None
        self.social: Optional[SocialApiClient] = None
        self.ai: Optional[AIClient] = None
        self.scheduler: Optional[MentionScheduler] = None

        self._running = False
        self._stopped = asyncio.Event()

    def _validate_config(self) -> None:
        """
        Validate required configuration at startup.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        required_settings = [
            ("X_BEARER_TOKEN", settings.x_bearer_token),
            ("BOT_USERNAME", settings.bot_username),
            ("AI_API_KEY", settings.ai_api_key),
        ]

        missing = [name for name, value in required_settings if not value]
        if missing:
            raise ValueError(f"Missing required configuration: {', '.join(missing)}")

        # Raises pydantic.ValidationError on out-of-range values
        settings.bot_config()

        logger.info("Configuration validation passed")

    async def initialize(self) -> bool:
        """
        Initialize all bot components.

        Returns:
            True if all components initialized successfully, False otherwise.
        """
        logger.info("Initializing components...")

        try:
            # 0. Validate configuration first (fail fast)
            self._validate_config()

            # 1. Durable state
            self.state = StateStore(
                settings.state_file,
                ceilings={
                    REMOTE_READ: settings.x_read_limit,
                    REMOTE_WRITE: settings.x_write_limit,
                    LLM_REQUEST: settings.llm_requests_per_minute,
                    LLM_TOKENS: settings.llm_tokens_per_minute,
                },
            )
            self.state.load()

            # 2. Budgets
            self.budgets = BudgetTracker(
                {
                    REMOTE_READ: BudgetConfig(settings.x_read_limit, settings.x_window_seconds),
                    REMOTE_WRITE: BudgetConfig(settings.x_write_limit, settings.x_window_seconds),
                    LLM_REQUEST: BudgetConfig(settings.llm_requests_per_minute, 60),
                    LLM_TOKENS: BudgetConfig(settings.llm_tokens_per_minute, 60),
                }
            )

            # 3. API clients
            self.social = SocialApiClient(
                base_url=settings.x_api_base_url,
                bearer_token=settings.x_bearer_token,
                state=self.state,
                budgets=self.budgets,
            )
            self.ai = AIClient(
                base_url=settings.ai_base_url,
                api_key=settings.ai_api_key,
                model=settings.ai_model,
                budgets=self.budgets,
                max_tokens=settings.ai_max_tokens,
                temperature=settings.ai_temperature,
            )

            # 4. Retry engine and scheduler
            retry = RetryEngine(
                RetryConfig(
                    max_retries=settings.retry_max_retries,
                    base_delay_ms=settings.retry_base_delay_ms,
                    max_delay_ms=settings.retry_max_delay_ms,
                    backoff_multiplier=settings.retry_backoff_multiplier,
                    max_rate_limit_waits=settings.retry_max_rate_limit_waits,
                )
            )
            self.scheduler = MentionScheduler(
                source=MentionSource(self.social, self.state, self.budgets, settings.bot_username),
                generator=self.ai,
                poster=ReplyPoster(self.social, self.state, self.budgets),
                state=self.state,
                budgets=self.budgets,
                retry=retry,
                config_provider=settings.bot_config,
                allow_list=AllowList(settings.allow_list_entries()),
            )

            logger.info("All components initialized successfully")
            return True

        except Exception as e:
            logger.error(f"Failed to initialize components: {e}")
            return False

    async def health_check(self) -> bool:
        """
        Verify all components are healthy.

        Returns:
            True if all components pass health checks.
        """
        logger.info("Running health checks...")

        checks = {
            "AI": await self.ai.health_check() if self.ai else False,
            "X API": self.social.is_authenticated if self.social else False,
            "State": self.state is not None,
        }

        for name, ok in checks.items():
            status = "OK" if ok else "FAIL"
            logger.info(f"  {name}: {status}")

        return all(checks.values())

    async def start(self) -> None:
        """Start the scheduler and block until stop() is called."""
        logger.info("Starting bot...")
        self._running = True
        self._stopped.clear()

        await self.scheduler.start()
        logger.info(f"Polling mentions of @{settings.bot_username} every {settings.poll_interval_seconds}s")

        await self._stopped.wait()

    async def stop(self, reason: str = "Manual shutdown") -> None:
        """Gracefully stop the scheduler."""
        if not self._running:
            return

        logger.info(f"Stopping bot (Reason: {reason})...")
        self._running = False

        if self.scheduler and self.scheduler.is_running:
            await self.scheduler.stop()
            logger.info(f"Final status: {self.scheduler.get_status()}")

        self._stopped.set()
        logger.info("Bot stopped")


async def main() -> None:
    """
    Main entry point for the bot.

    Initializes all components and runs until SIGINT/SIGTERM.
    """
    configure_logging(settings.log_level)

    logger.info("=" * 60)
    logger.info(f"Starting Mention Bot v{__version__}")
    logger.info(f"Account: @{settings.bot_username}  Tag: #{settings.bot_hashtag}")
    logger.info("=" * 60)

    bot = MentionBot()

    # Initialize components
    if not await bot.initialize():
        logger.error("Failed to initialize bot - exiting")
        return

    # Run health checks
    if not await bot.health_check():
        logger.warning("Some health checks failed - continuing anyway")

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Shutdown signal received")
        asyncio.create_task(bot.stop("Signal received (SIGINT/SIGTERM)"))

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    # Start the bot
    try:
        await bot.start()
    except asyncio.CancelledError:
        logger.info("Bot cancelled")
    finally:
        await bot.stop()

    logger.info("Bot shutdown complete")


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
