"""
Centralized configuration for Mention Bot.

This module uses Pydantic Settings to load and validate environment variables.
All bot configuration is centralized here to avoid scattered config files.

Usage:
    from config import settings
    print(settings.ai_model)

    # Runtime behaviour the scheduler re-reads every poll
    bot_config = settings.bot_config()

Environment Variables:
    See .env.example for all available configuration options.
"""

import logging
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class BotConfig(BaseModel):
    """
    Runtime behaviour of the scheduler.

    Read-only from the pipeline's point of view. The scheduler asks its
    config provider for a fresh BotConfig at the start of every poll, so
    changes take effect on the next cycle.
    """

    enabled: bool = True
    account_handle: str = ""
    required_tag: str = "hey"
    max_response_length: int = Field(default=280, ge=1, le=280)
    poll_interval_ms: int = Field(default=60_000, ge=1_000)
    allow_list_enabled: bool = False
    allow_list_mode: Literal["allow", "deny"] = "allow"
    max_replies_per_hour: int = Field(default=50, ge=1, le=100)
    max_replies_per_day: int = Field(default=500, ge=1, le=1000)
    response_delay_ms: int = Field(default=1000, ge=0)
    mentions_per_poll: int = Field(default=20, ge=5, le=100)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # =========================================================================
    # X/Twitter API v2
    # =========================================================================
    # App bearer token from https://developer.x.com
    x_api_base_url: str = "https://api.twitter.com/2"
    x_bearer_token: str = ""
    bot_username: str = ""

    # =========================================================================
    # AI Provider (OpenAI-compatible)
    # =========================================================================
    ai_api_key: str = ""
    ai_base_url: str = "https://openrouter.ai/api/v1"
    ai_model: str = "deepseek/deepseek-chat"
    ai_max_tokens: int = 300
    ai_temperature: float = 0.8
    # Model options (change ai_model above):
    # "deepseek/deepseek-chat"      - DeepSeek V3 (very cheap)
    # "openai/gpt-4o-mini"          - OpenAI GPT-4o Mini (cheap & fast)
    # "google/gemini-2.0-flash-001" - Gemini 2.0 Flash

    # =========================================================================
    # Bot Behaviour
    # =========================================================================
    bot_enabled: bool = True
    bot_hashtag: str = "hey"
    max_response_length: int = 280
    poll_interval_seconds: int = 60
    response_delay_ms: int = 1000
    mentions_per_poll: int = 20

    # =========================================================================
    # Reply Caps
    # =========================================================================
    max_replies_per_hour: int = 50
    max_replies_per_day: int = 500

    # =========================================================================
    # Allow / Deny List
    # =========================================================================
    allow_list_enabled: bool = False
    allow_list_mode: Literal["allow", "deny"] = "allow"
    allow_list_handles: str = ""  # comma-separated, e.g. "alice,@bob"

    # =========================================================================
    # API Budgets (requests per window)
    # =========================================================================
    x_read_limit: int = 450  # per 15 minutes
    x_write_limit: int = 300  # per 15 minutes
    x_window_seconds: int = 900
    llm_requests_per_minute: int = 100
    llm_tokens_per_minute: int = 10_000

    # =========================================================================
    # Retry Engine
    # =========================================================================
    retry_max_retries: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 30_000
    retry_backoff_multiplier: float = 2.0
    retry_max_rate_limit_waits: int = 5

    # =========================================================================
    # Persistence & Logging
    # =========================================================================
    state_file: str = "data/bot-state.json"
    log_level: str = "INFO"

    def allow_list_entries(self) -> list[str]:
        return [handle.strip() for handle in self.allow_list_handles.split(",") if handle.strip()]

    def bot_config(self) -> BotConfig:
        """Build the runtime BotConfig from the current environment values."""
        return BotConfig(
            enabled=self.bot_enabled,
            account_handle=self.bot_username,
            required_tag=self.bot_hashtag,
            max_response_length=self.max_response_length,
            poll_interval_ms=self.poll_interval_seconds * 1000,
            allow_list_enabled=self.allow_list_enabled,
            allow_list_mode=self.allow_list_mode,
            max_replies_per_hour=self.max_replies_per_hour,
            max_replies_per_day=self.max_replies_per_day,
            response_delay_ms=self.response_delay_ms,
            mentions_per_poll=self.mentions_per_poll,
        )


# Singleton instance for global settings
settings = Settings()
