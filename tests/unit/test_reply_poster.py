"""
Tests for ReplyPoster.

This test suite verifies:
- Reply payload shape
- Write budget consumption and server quota gating
- Error translation (no retries at this layer)
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from mention_bot.errors import ApiError, RateLimited, ValidationError
from mention_bot.reply_poster import ReplyPoster
from mention_bot.social_client import SocialApiClient

TWEETS = "/2/tweets"


@pytest.fixture
def poster(state_store, budgets, mock_transport):
    client = SocialApiClient("https://api.x.test/2", "test-bearer", state_store, budgets, transport=mock_transport)
    return ReplyPoster(client, state_store, budgets)


class TestReplyPoster:
    """Test suite for ReplyPoster.post_reply."""

    @pytest.mark.asyncio
    async def test_post_reply_success(self, poster, http_handler, budgets):
        http_handler.add("POST", TWEETS, status=201, json_body={"data": {"id": "5001", "text": "Thanks!"}})

        reply = await poster.post_reply("101", "Thanks!")

        assert reply.id == "5001"
        assert reply.text == "Thanks!"
        body = json.loads(http_handler.requests[0].content)
        assert body == {"text": "Thanks!", "reply": {"in_reply_to_tweet_id": "101"}}
        assert budgets.status("remote-write").remaining == pytest.approx(299)

    @pytest.mark.asyncio
    async def test_exhausted_write_quota_refuses(self, poster, http_handler, state_store):
        state_store.update_remaining("remote-write", 0)
        state_store.update_reset_at("remote-write", datetime.now(timezone.utc) + timedelta(minutes=15))

        with pytest.raises(RateLimited) as exc_info:
            await poster.post_reply("101", "Thanks!")

        assert exc_info.value.resource == "remote-write"
        assert http_handler.requests == []

    @pytest.mark.asyncio
    async def test_empty_local_budget_waits(self, poster, http_handler, budgets, sleep_recorder):
        http_handler.add("POST", TWEETS, status=201, json_body={"data": {"id": "5001"}})
        budgets.configure("remote-write", capacity=1, window_seconds=60)
        await budgets.try_acquire("remote-write")

        await poster.post_reply("101", "Thanks!")

        assert sleep_recorder.total == pytest.approx(60, abs=0.01)
        assert len(http_handler.requests) == 1

    @pytest.mark.asyncio
    async def test_429_is_rate_limited(self, poster, http_handler):
        http_handler.add("POST", TWEETS, status=429, json_body={"title": "Too Many Requests"},
                         headers={"retry-after": "10"})

        with pytest.raises(RateLimited):
            await poster.post_reply("101", "Thanks!")

        assert len(http_handler.requests) == 1

    @pytest.mark.asyncio
    async def test_forbidden_reply_is_api_error(self, poster, http_handler):
        http_handler.add("POST", TWEETS, status=403,
                         json_body={"detail": "You are not allowed to reply to this post."})

        with pytest.raises(ApiError) as exc_info:
            await poster.post_reply("101", "Thanks!")

        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_missing_id_is_not_retryable(self, poster, http_handler):
        http_handler.add("POST", TWEETS, status=201, json_body={"data": {}})

        with pytest.raises(ValidationError) as exc_info:
            await poster.post_reply("101", "Thanks!")

        assert exc_info.value.retryable is False
