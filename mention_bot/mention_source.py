"""
Mention Source - reads new mentions of the bot account from the X API v2.

Endpoints:
    GET /users/by/username/{handle}   resolve the bot's own account id (cached)
    GET /users/{id}/mentions          mention timeline, newest-first

Every call is gated twice before it leaves the process:
    1. StateStore.can_proceed("remote-read")   server-reported quota
    2. BudgetTracker.try_acquire("remote-read") local token bucket
Failing either raises RateLimited with the reset time, so the scheduler can
skip the cycle. A 429 is never retried here.

Usage:
    source = MentionSource(client, state, budgets, account_handle="mybot")
    mentions = await source.get_new_mentions(max_count=20, since_id=state.get_last_seen_id())
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from mention_bot.errors import RateLimited, ValidationError
from mention_bot.models import Mention
from mention_bot.rate_limiter import REMOTE_READ, BudgetTracker
from mention_bot.social_client import SocialApiClient
from mention_bot.state_store import StateStore

logger = logging.getLogger(__name__)

# X API v2 bounds for max_results on the mentions timeline
MIN_RESULTS = 5
MAX_RESULTS = 100


class MentionSource:
    """Fetches mentions of one account, newest-first."""

    def __init__(
        self,
        client: SocialApiClient,
        state: StateStore,
        budgets: BudgetTracker,
        account_handle: str,
    ) -> None:
        self.client = client
        self.state = state
        self.budgets = budgets
        self.account_handle = account_handle.lstrip("@")

    @property
    def is_authenticated(self) -> bool:
        return self.client.is_authenticated

    async def _check_budget(self) -> None:
        """Raise RateLimited if either the server quota or the local bucket is spent."""
        if not self.state.can_proceed(REMOTE_READ):
            reset_at = self.state.get_reset_at(REMOTE_READ) or datetime.now(timezone.utc)
            raise RateLimited(REMOTE_READ, reset_at, service=self.client.SERVICE,
                              message=f"Server quota for {REMOTE_READ} exhausted until {reset_at.isoformat()}")

        result = await self.budgets.try_acquire(REMOTE_READ)
        if not result.allowed:
            reset_at = datetime.now(timezone.utc) + timedelta(milliseconds=result.wait_ms)
            raise RateLimited(REMOTE_READ, reset_at, service=self.client.SERVICE,
                              message=f"Local {REMOTE_READ} budget empty, next token in {result.wait_ms}ms")

    async def resolve_account_id(self) -> str:
        """
        Return the bot's own account id, looking it up at most once.

        The id is cached in the StateStore, so it also survives restarts.

        Raises:
            RateLimited, AuthenticationFailed, ApiError, NetworkError: From the lookup.
            ValidationError: The lookup response had no user id.
        """
        cached = self.state.get_account_id()
        if cached:
            return cached

        await self._check_budget()
        data = await self.client.request(
            "GET",
            f"/users/by/username/{self.account_handle}",
            resource=REMOTE_READ,
        )

        account_id = (data.get("data") or {}).get("id")
        if not account_id:
            raise ValidationError(f"User lookup for @{self.account_handle} returned no id", service=self.client.SERVICE)

        self.state.set_account_id(str(account_id))
        logger.info(f"Resolved @{self.account_handle} to account id {account_id}")
        return str(account_id)

    def clear_account_cache(self) -> None:
        self.state.clear_account_id()

    async def get_new_mentions(self, max_count: int, since_id: Optional[str] = None) -> list[Mention]:
        """
        Fetch mentions newer than since_id.

        Args:
            max_count: Desired batch size, clamped to the API's 5..100.
            since_id: Only return mentions newer than this id.

        Returns:
            Mentions newest-first, as ordered by the API. Empty when the
            client is unauthenticated (the 401 was already raised once).

        Raises:
            RateLimited: Budget exhausted or HTTP 429.
            AuthenticationFailed: HTTP 401 (only on the call that receives it).
        """
        if not self.client.is_authenticated:
            logger.warning("Mention fetch skipped: X API client is unauthenticated")
            return []

        account_id = await self.resolve_account_id()
        await self._check_budget()

        params = {
            "max_results": max(MIN_RESULTS, min(MAX_RESULTS, max_count)),
            "tweet.fields": "created_at,author_id",
            "expansions": "author_id",
            "user.fields": "username",
        }
        if since_id:
            params["since_id"] = since_id

        data = await self.client.request(
            "GET",
            f"/users/{account_id}/mentions",
            resource=REMOTE_READ,
            params=params,
        )

        mentions = self._parse_mentions(data)
        logger.info(f"Fetched {len(mentions)} new mention(s) since {since_id or 'start'}")
        return mentions

    def _parse_mentions(self, data: dict) -> list[Mention]:
        users = {
            user.get("id"): user.get("username", "")
            for user in (data.get("includes") or {}).get("users", [])
            if isinstance(user, dict)
        }

        mentions = []
        for item in data.get("data") or []:
            try:
                mentions.append(self._parse_mention(item, users))
            except ValidationError as e:
                logger.warning(f"Skipping malformed mention: {e}")
        return mentions

    def _parse_mention(self, item: dict, users: dict[str, str]) -> Mention:
        if not isinstance(item, dict) or not item.get("id") or item.get("text") is None:
            raise ValidationError(f"mention is missing id or text: {item!r}", service=self.client.SERVICE)
        if not isinstance(item["id"], (str, int)) or not isinstance(item["text"], str):
            raise ValidationError(f"mention has a non-string id or text: {item!r}", service=self.client.SERVICE)

        raw_created_at = item.get("created_at")
        if raw_created_at is not None and not isinstance(raw_created_at, str):
            raise ValidationError(
                f"mention {item['id']} has a non-string created_at: {raw_created_at!r}",
                service=self.client.SERVICE,
            )

        author_id = str(item.get("author_id", ""))
        created_at = None
        if raw_created_at:
            try:
                created_at = datetime.fromisoformat(raw_created_at.replace("Z", "+00:00"))
            except ValueError:
                logger.debug(f"Unparseable created_at on mention {item['id']}: {raw_created_at}")

        try:
            return Mention(
                id=str(item["id"]),
                text=item["text"],
                author_handle=users.get(author_id, ""),
                author_id=author_id,
                created_at=created_at,
            )
        except (TypeError, AttributeError, ValueError) as e:
            raise ValidationError(f"mention {item['id']} could not be built: {e}", service=self.client.SERVICE) from e
