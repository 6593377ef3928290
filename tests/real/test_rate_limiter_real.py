"""
Real Functionality Tests - Budget Tracker.

Tests actual token bucket behavior with real bucket arithmetic:
- Concurrent acquirers never overspend a bucket
- Refill is monotonic and capped at capacity
- status() never changes the bucket
- Server feedback and live reconfiguration
- Blocking acquisition across several resources

Mocks: Time (FakeClock / SleepRecorder from conftest)
Real: All bucket logic, locking, wait time calculations
"""

import asyncio

import pytest

from mention_bot.rate_limiter import BudgetConfig, BudgetTracker


@pytest.mark.real
@pytest.mark.asyncio
class TestBudgetTrackerReal:
    """Real functionality tests for the budget tracker."""

    async def test_concurrent_acquirers_never_overspend(self, fake_clock, sleep_recorder):
        """
        Test that parallel try_acquire calls grant exactly capacity tokens.

        Fifty tasks race for a 10-token bucket while the clock stands still;
        exactly ten may win.
        """
        tracker = BudgetTracker({"api": BudgetConfig(10, 60)}, clock=fake_clock, sleep=sleep_recorder)

        results = await asyncio.gather(*(tracker.try_acquire("api") for _ in range(50)))

        granted = [r for r in results if r.allowed]
        assert len(granted) == 10
        assert all(r.wait_ms > 0 for r in results if not r.allowed)
        assert tracker.status("api").remaining == pytest.approx(0, abs=1e-9)

    async def test_refill_is_monotonic_and_capped(self, fake_clock, sleep_recorder):
        """
        Test that remaining only grows while no tokens are taken,
        and never beyond capacity.
        """
        tracker = BudgetTracker({"api": BudgetConfig(10, 10)}, clock=fake_clock, sleep=sleep_recorder)
        await tracker.try_acquire("api", 10)

        previous = tracker.status("api").remaining
        for _ in range(30):
            fake_clock.advance(0.5)
            current = tracker.status("api").remaining
            assert current >= previous
            assert current <= 10
            previous = current

        assert previous == 10

    async def test_status_does_not_mutate(self, fake_clock, sleep_recorder):
        """Test that repeated status() reads are identical and leave the bucket alone."""
        tracker = BudgetTracker({"api": BudgetConfig(10, 10)}, clock=fake_clock, sleep=sleep_recorder)
        await tracker.try_acquire("api", 6)
        fake_clock.advance(2)

        first = tracker.status("api")
        second = tracker.status("api")

        assert first.remaining == second.remaining
        assert first.remaining == pytest.approx(6)
        # A later acquire sees the same refill status() reported
        result = await tracker.try_acquire("api", 6)
        assert result.allowed is True

    async def test_blocking_acquirers_are_served_in_turn(self, fake_clock, sleep_recorder):
        """
        Test that several blocking acquirers on an empty bucket all succeed
        and that the total wait matches the refill rate.
        """
        tracker = BudgetTracker({"api": BudgetConfig(1, 1)}, clock=fake_clock, sleep=sleep_recorder)
        await tracker.try_acquire("api")

        for _ in range(3):
            result = await tracker.acquire_blocking("api")
            assert result.allowed is True

        assert sleep_recorder.total == pytest.approx(3.0, abs=0.01)

    async def test_reconfigure_while_partially_spent(self, fake_clock, sleep_recorder):
        """Test that raising capacity keeps spent tokens spent."""
        tracker = BudgetTracker({"api": BudgetConfig(10, 10)}, clock=fake_clock, sleep=sleep_recorder)
        await tracker.try_acquire("api", 7)

        tracker.configure("api", capacity=20, window_seconds=20)

        status = tracker.status("api")
        assert status.capacity == 20
        assert status.remaining == pytest.approx(3)

    async def test_observed_zero_blocks_until_refill(self, fake_clock, sleep_recorder):
        """Test that a server-reported zero empties the bucket for local acquirers too."""
        tracker = BudgetTracker({"api": BudgetConfig(10, 10)}, clock=fake_clock, sleep=sleep_recorder)

        tracker.observe("api", remaining=0)

        result = await tracker.try_acquire("api")
        assert result.allowed is False
        assert result.wait_ms == pytest.approx(1000, abs=1)

    async def test_multi_acquire_is_atomic_under_contention(self, fake_clock, sleep_recorder):
        """
        Test that concurrent all-or-none acquisitions never leave one
        resource debited without the other.
        """
        tracker = BudgetTracker(
            {"req": BudgetConfig(5, 60), "tok": BudgetConfig(100, 60)},
            clock=fake_clock,
            sleep=sleep_recorder,
        )

        results = await asyncio.gather(
            *(tracker.try_acquire_many([("req", 1), ("tok", 30)]) for _ in range(10))
        )

        granted = sum(1 for r in results if r.allowed)
        assert granted == 3
        assert tracker.status("req").remaining == pytest.approx(2)
        assert tracker.status("tok").remaining == pytest.approx(10)
