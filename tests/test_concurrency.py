"""
Tests for bounded analytics fan-out and per-user stage locks.
"""

import asyncio

import pytest

from lifecycle.exceptions import AnalyticsQueryError, StageLockTimeoutError
from lifecycle.services.concurrency import run_bounded
from lifecycle.services.locks import UserLockRegistry


class TestRunBounded:
    """Tests for run_bounded."""

    @pytest.mark.asyncio
    async def test_collects_results_by_name(self):
        async def value(n):
            return n * 2

        outcome = await run_bounded({"a": lambda: value(1), "b": lambda: value(2)}, limit=2)

        assert outcome.results == {"a": 2, "b": 4}
        assert outcome.complete is True

    @pytest.mark.asyncio
    async def test_limit_caps_sections_in_flight(self):
        in_flight = 0
        peak = 0

        async def section():
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return True

        sections = {f"s{n}": section for n in range(6)}
        outcome = await run_bounded(sections, limit=2)

        assert len(outcome.results) == 6
        assert peak == 2

    @pytest.mark.asyncio
    async def test_first_error_cancels_the_rest(self):
        cancelled = asyncio.Event()

        async def failing():
            raise ValueError("bad data")

        async def slow():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with pytest.raises(AnalyticsQueryError) as exc_info:
            await run_bounded({"slow": slow, "failing": failing}, limit=2)

        assert exc_info.value.section == "failing"
        assert isinstance(exc_info.value.cause, ValueError)
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_analytics_errors_pass_through(self):
        original = AnalyticsQueryError("overview", RuntimeError("db down"))

        async def failing():
            raise original

        with pytest.raises(AnalyticsQueryError) as exc_info:
            await run_bounded({"dashboard": failing}, limit=1)

        assert exc_info.value is original

    @pytest.mark.asyncio
    async def test_timeout_reports_missing_sections(self):
        async def fast():
            return "done"

        async def slow():
            await asyncio.sleep(10)

        outcome = await run_bounded({"fast": fast, "slow": slow}, limit=2, timeout=0.2)

        assert outcome.results == {"fast": "done"}
        assert outcome.missing == ["slow"]
        assert outcome.complete is False

    @pytest.mark.asyncio
    async def test_no_sections(self):
        outcome = await run_bounded({}, limit=4)
        assert outcome.results == {}
        assert outcome.complete is True


class TestUserLocks:
    """Tests for UserLockRegistry."""

    @pytest.mark.asyncio
    async def test_same_user_is_serialized(self):
        registry = UserLockRegistry(timeout_seconds=1)
        order = []

        async def worker(name):
            async with registry.hold("user-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_lock_timeout(self):
        registry = UserLockRegistry(timeout_seconds=0.1)

        async with registry.hold("user-1"):
            with pytest.raises(StageLockTimeoutError):
                async with registry.hold("user-1"):
                    pass

    @pytest.mark.asyncio
    async def test_different_users_do_not_block(self):
        registry = UserLockRegistry(timeout_seconds=0.1)

        async with registry.hold("user-1"):
            async with registry.hold("user-2"):
                pass
