"""
Mention Bot - replies to X/Twitter mentions using an LLM.

This bot polls the mention timeline of its own account, filters mentions by
hashtag and allow list, generates a reply with an OpenAI-compatible model and
posts it back, all under per-resource rate budgets.

Architecture:
    Polling pipeline with durable progress:
    1. Scheduler: fixed-interval polling, oldest-first dispatch
    2. Budget Tracker + Retry Engine: rate-aware, bounded retries
    3. State Store: JSON marker so restarts never re-fetch handled mentions

Modules:
    bot: Main orchestrator that coordinates all components
    scheduler: Poll loop and per-mention state machine
    retry: Retry engine (tenacity based)
    rate_limiter: Token-bucket budgets per resource
    state_store: Durable JSON state
    social_client: X API v2 transport
    mention_source: Mention timeline reader
    reply_poster: Reply publisher
    ai_client: OpenAI-compatible AI client for reply generation
    allow_list: Allow/deny list of handles
    errors: Error taxonomy
    models: Shared data types

Entry Point:
    python -m mention_bot.bot
"""

__version__ = "0.1.0"
