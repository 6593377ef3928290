"""
Real Functionality Tests - Bot Orchestration.

Tests actual bot orchestration logic with real components:
- Configuration validation (fail fast on missing credentials)
- Initialization sequence and component wiring
- Resume of persisted state on startup
- Health check aggregation
- Start / stop lifecycle
- The state inspection script

Mocks: AI health endpoint, settings (real Settings object, patched in)
Real: Component construction, state loading, scheduler lifecycle
"""

import asyncio
import importlib.util
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from config.settings import Settings
from mention_bot.bot import MentionBot
from mention_bot.scheduler import SchedulerState
from mention_bot.state_store import StateStore

SCRIPTS_DIR = Path(__file__).resolve().parents[2] / "scripts"


@pytest.fixture
def bot_settings(tmp_path):
    """Complete settings with the state file in a temp dir and polling disabled."""
    return Settings(
        _env_file=None,
        x_bearer_token="test-bearer",
        bot_username="testbot",
        ai_api_key="test-key",
        bot_enabled=False,
        x_read_limit=100,
        state_file=str(tmp_path / "bot-state.json"),
    )


@pytest.fixture
def patched_settings(bot_settings):
    with patch("mention_bot.bot.settings", bot_settings):
        yield bot_settings


@pytest.mark.real
@pytest.mark.asyncio
class TestBotOrchestrationReal:
    """Real functionality tests for MentionBot."""

    async def test_missing_credentials_fail_initialization(self, bot_settings, caplog):
        bot_settings.x_bearer_token = ""
        bot_settings.ai_api_key = ""

        with patch("mention_bot.bot.settings", bot_settings):
            bot = MentionBot()
            assert await bot.initialize() is False

        assert "X_BEARER_TOKEN" in caplog.text
        assert "AI_API_KEY" in caplog.text
        assert bot.scheduler is None

    async def test_out_of_range_config_fails_initialization(self, bot_settings):
        bot_settings.max_response_length = 1000

        with patch("mention_bot.bot.settings", bot_settings):
            assert await MentionBot().initialize() is False

    async def test_initialize_wires_components(self, patched_settings):
        bot = MentionBot()

        assert await bot.initialize() is True

        assert bot.scheduler is not None
        assert bot.scheduler.source.client is bot.social
        assert bot.scheduler.poster.client is bot.social
        assert bot.scheduler.generator is bot.ai
        assert bot.budgets.status("remote-read").capacity == 100
        assert bot.state.ceilings["remote-read"] == 100

    async def test_initialize_resumes_persisted_state(self, patched_settings):
        previous = StateStore(patched_settings.state_file)
        previous.load()
        previous.set_last_seen_id("103")

        bot = MentionBot()
        await bot.initialize()

        assert bot.state.get_last_seen_id() == "103"

    async def test_health_check(self, patched_settings):
        bot = MentionBot()
        await bot.initialize()

        bot.ai.health_check = AsyncMock(return_value=True)
        assert await bot.health_check() is True

        bot.ai.health_check = AsyncMock(return_value=False)
        assert await bot.health_check() is False

    async def test_health_check_before_initialize(self):
        assert await MentionBot().health_check() is False

    async def test_start_and_stop(self, patched_settings):
        bot = MentionBot()
        await bot.initialize()

        task = asyncio.create_task(bot.start())
        for _ in range(50):
            if bot.scheduler.current_state is SchedulerState.DISABLED:
                break
            await asyncio.sleep(0)

        assert bot.scheduler.is_running is True
        assert bot.scheduler.current_state is SchedulerState.DISABLED

        await bot.stop("test")
        await asyncio.wait_for(task, timeout=5)

        assert bot.scheduler.is_running is False

    async def test_stop_without_start_is_noop(self, patched_settings):
        bot = MentionBot()
        await bot.initialize()

        await bot.stop()

        assert bot.scheduler.is_running is False


def _load_check_state():
    spec = importlib.util.spec_from_file_location("check_state", SCRIPTS_DIR / "check_state.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.check_state


@pytest.mark.real
class TestCheckStateScript:
    def test_missing_file(self, tmp_path, capsys):
        check_state = _load_check_state()

        assert check_state(str(tmp_path / "nope.json")) is False
        assert "MISSING" in capsys.readouterr().out

    def test_valid_file(self, state_store, state_path, capsys):
        state_store.set_last_seen_id("103")
        check_state = _load_check_state()

        assert check_state(str(state_path)) is True
        out = capsys.readouterr().out
        assert "103" in out
        assert "remote-read" in out

    def test_corrupt_file_left_in_place(self, state_path, capsys):
        state_path.write_text("{broken", encoding="utf-8")
        check_state = _load_check_state()

        assert check_state(str(state_path)) is False
        assert "UNREADABLE" in capsys.readouterr().out
        assert state_path.read_text() == "{broken"
