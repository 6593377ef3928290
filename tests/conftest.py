"""
Pytest fixtures and configuration.

This module provides shared fixtures for all tests:
- BotConfig factory with test-friendly defaults (no reply delay)
- Fake clock and sleep recorder so no test ever really waits
- Real StateStore / BudgetTracker / RetryEngine wired to the fakes
- Mock collaborators (mention source, AI client, reply poster)
- Mention factory
- httpx.MockTransport helpers for the X API and the AI API

Usage:
    def test_something(state_store, budgets, make_mention):
        # fixtures are automatically injected
        pass
"""

import json
from datetime import datetime, timedelta
from typing import Callable, Optional
from unittest.mock import AsyncMock

import httpx
import pytest
from freezegun import freeze_time

from config.settings import BotConfig
from mention_bot.models import GenerationResult, Mention, PostedReply
from mention_bot.rate_limiter import BudgetTracker
from mention_bot.retry import RetryConfig, RetryEngine
from mention_bot.state_store import StateStore


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "real: mark test as a real functionality test (not mock-based)"
    )
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test requiring multiple components"
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow (>1s execution time)"
    )


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture
def make_config() -> Callable[..., BotConfig]:
    """Factory for BotConfig with test-friendly defaults (no reply delay)."""
    def _make(**overrides) -> BotConfig:
        values = {
            "enabled": True,
            "account_handle": "testbot",
            "required_tag": "hey",
            "max_response_length": 280,
            "poll_interval_ms": 60_000,
            "response_delay_ms": 0,
        }
        values.update(overrides)
        return BotConfig(**values)
    return _make


# =============================================================================
# Time Fixtures
# =============================================================================

class FakeClock:
    """Monotonic clock in seconds that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Async sleep replacement that records durations and advances a FakeClock."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.calls: list[float] = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep_recorder(fake_clock) -> SleepRecorder:
    return SleepRecorder(fake_clock)


@pytest.fixture
def time_controller():
    """
    Provide time control for tests.

    Returns a controller that can freeze and advance time.
    """
    class TimeController:
        def __init__(self):
            self.frozen_datetime = None
            self.freezer = None

        def freeze(self, dt: datetime):
            """Freeze time at specific datetime."""
            if self.freezer:
                self.freezer.stop()
            self.frozen_datetime = dt
            self.freezer = freeze_time(dt)
            self.freezer.start()
            return dt

        def advance(self, **kwargs):
            """Advance frozen time by specified delta."""
            if not self.frozen_datetime:
                raise RuntimeError("Time not frozen")
            self.frozen_datetime += timedelta(**kwargs)
            self.freezer.stop()
            self.freezer = freeze_time(self.frozen_datetime)
            self.freezer.start()
            return self.frozen_datetime

        def stop(self):
            """Unfreeze time."""
            if self.freezer:
                self.freezer.stop()
                self.freezer = None
                self.frozen_datetime = None

    controller = TimeController()
    yield controller
    controller.stop()


# =============================================================================
# Component Fixtures (real logic, fake time)
# =============================================================================

@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "bot-state.json"


@pytest.fixture
def state_store(state_path) -> StateStore:
    store = StateStore(state_path)
    store.load()
    return store


@pytest.fixture
def budgets(fake_clock, sleep_recorder) -> BudgetTracker:
    return BudgetTracker(clock=fake_clock, sleep=sleep_recorder)


@pytest.fixture
def retry_engine(sleep_recorder) -> RetryEngine:
    return RetryEngine(
        RetryConfig(max_retries=3, base_delay_ms=1000, max_delay_ms=30_000, backoff_multiplier=2.0),
        sleep=sleep_recorder,
    )


# =============================================================================
# Mock Collaborators
# =============================================================================

@pytest.fixture
def mock_source():
    """Mention source returning no mentions until told otherwise."""
    source = AsyncMock()
    source.get_new_mentions.return_value = []
    source.is_authenticated = True
    return source


@pytest.fixture
def mock_generator():
    """AI client that always succeeds."""
    generator = AsyncMock()
    generator.generate.return_value = GenerationResult(success=True, text="Thanks for the mention!")
    generator.health_check.return_value = True
    generator.is_authenticated = True
    return generator


@pytest.fixture
def mock_poster():
    """Reply poster that echoes a reply id derived from the parent id."""
    poster = AsyncMock()
    poster.post_reply.side_effect = lambda parent_id, text: PostedReply(id=f"reply-{parent_id}", text=text)
    return poster


# =============================================================================
# Data Fixtures
# =============================================================================

@pytest.fixture
def make_mention() -> Callable[..., Mention]:
    """Factory for mentions; tagged #hey from @alice unless overridden."""
    def _make(mention_id: str, text: str = "hello #hey", author: str = "alice", author_id: str = "") -> Mention:
        return Mention(
            id=mention_id,
            text=text,
            author_handle=author,
            author_id=author_id or f"id-{author}",
        )
    return _make


# =============================================================================
# HTTP Fixtures (httpx.MockTransport)
# =============================================================================

def mentions_payload(mentions: list[dict], users: Optional[dict[str, str]] = None) -> dict:
    """Build an X API v2 mentions response. users maps author_id -> username."""
    payload = {"data": mentions, "meta": {"result_count": len(mentions)}}
    if users:
        payload["includes"] = {"users": [{"id": uid, "username": name} for uid, name in users.items()]}
    return payload


def chat_completion(content: str) -> dict:
    """Build an OpenAI-compatible chat completion response."""
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class RecordingHandler:
    """
    MockTransport handler that serves queued responses per (method, path)
    and records every request it sees.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], list] = {}

    def add(self, method: str, path: str, status: int = 200, json_body=None, headers=None, exc=None):
        self._routes.setdefault((method, path), []).append((status, json_body, headers or {}, exc))
        return self

    def replace(self, method: str, path: str, **kwargs):
        """Drop anything queued for (method, path) and queue a single response."""
        self._routes.pop((method, path), None)
        return self.add(method, path, **kwargs)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"title": "Not Found", "detail": request.url.path})

        # The last queued response repeats once the queue is drained
        status, body, headers, exc = queue.pop(0) if len(queue) > 1 else queue[0]
        if exc is not None:
            raise exc
        return httpx.Response(status, content=json.dumps(body or {}).encode(), headers={
            "content-type": "application/json", **headers,
        })

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]


@pytest.fixture
def http_handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def mock_transport(http_handler) -> httpx.MockTransport:
    return httpx.MockTransport(http_handler)
