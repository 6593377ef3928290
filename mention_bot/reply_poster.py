"""
Reply Poster - publishes a reply through the X API v2.

    POST /tweets  {"text": ..., "reply": {"in_reply_to_tweet_id": ...}}

No deduplication happens here: the scheduler calls post_reply at most once
per generated response, and only the retry engine repeats a call.
"""

import logging
from datetime import datetime, timezone

from mention_bot.errors import RateLimited, ValidationError
from mention_bot.models import PostedReply
from mention_bot.rate_limiter import REMOTE_WRITE, BudgetTracker
from mention_bot.social_client import SocialApiClient
from mention_bot.state_store import StateStore

logger = logging.getLogger(__name__)


class ReplyPoster:
    def __init__(self, client: SocialApiClient, state: StateStore, budgets: BudgetTracker) -> None:
        self.client = client
        self.state = state
        self.budgets = budgets

    async def post_reply(self, parent_id: str, text: str) -> PostedReply:
        """
        Post text as a reply to parent_id.

        Waits for the local remote-write budget; refuses outright when the
        server has reported the write quota exhausted.

        Returns:
            PostedReply with the new post's id.

        Raises:
            RateLimited: Server quota exhausted or HTTP 429.
            AuthenticationFailed, QuotaExceeded, ApiError, NetworkError: From the API.
        """
        if not self.state.can_proceed(REMOTE_WRITE):
            reset_at = self.state.get_reset_at(REMOTE_WRITE) or datetime.now(timezone.utc)
            raise RateLimited(REMOTE_WRITE, reset_at, service=self.client.SERVICE)

        await self.budgets.acquire_blocking(REMOTE_WRITE)

        data = await self.client.request(
            "POST",
            "/tweets",
            resource=REMOTE_WRITE,
            json={"text": text, "reply": {"in_reply_to_tweet_id": parent_id}},
        )

        reply_id = (data.get("data") or {}).get("id")
        if not reply_id:
            # not retried: the post may well exist
            raise ValidationError(f"Reply to {parent_id} returned no id: {data}", service=self.client.SERVICE)

        logger.info(f"Posted reply {reply_id} to {parent_id} ({len(text)} chars)")
        return PostedReply(id=str(reply_id), text=text)
