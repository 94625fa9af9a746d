"""Tests for the sliding-window RateLimiter."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from presence_admission.adapters.memory_store import InMemoryCounterStore
from presence_admission.core.rate_limiter import RateLimiter
from presence_admission.errors import StoreUnavailableError


class FakeClock:
    """Epoch-millisecond clock advanced by hand."""

    def __init__(self, now_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)


class TestRateLimiter:
    """Tests for RateLimiter.check_and_consume()."""

    @pytest.mark.asyncio()
    async def test_twelve_attempts_pass_thirteenth_blocked(self, counter_store: InMemoryCounterStore) -> None:
        """With the default limit the 13th attempt inside 60 seconds is blocked."""
        clock = FakeClock()
        limiter = RateLimiter(counter_store, clock=clock)

        for attempt in range(12):
            result = await limiter.check_and_consume("user-1")
            assert result.passed is True, f"attempt {attempt + 1} should pass"
            clock.advance(1)

        blocked = await limiter.check_and_consume("user-1")

        assert blocked.blocked is True
        assert blocked.passed is False
        assert blocked.remaining == 0
        assert blocked.limit == 12

    @pytest.mark.asyncio()
    async def test_remaining_counts_down(self, counter_store: InMemoryCounterStore) -> None:
        """remaining reflects the attempts left after this one."""
        limiter = RateLimiter(counter_store, max_requests=3, clock=FakeClock())

        remaining = [(await limiter.check_and_consume("user-1")).remaining for _ in range(3)]

        assert remaining == [2, 1, 0]

    @pytest.mark.asyncio()
    async def test_reset_at_is_oldest_attempt_plus_window(self, counter_store: InMemoryCounterStore) -> None:
        """A blocked result resets when the oldest attempt leaves the window."""
        clock = FakeClock()
        limiter = RateLimiter(counter_store, max_requests=2, window_seconds=60, clock=clock)
        first_ms = clock.now_ms

        await limiter.check_and_consume("user-1")
        clock.advance(10)
        await limiter.check_and_consume("user-1")
        clock.advance(10)
        blocked = await limiter.check_and_consume("user-1")

        assert blocked.blocked is True
        assert int(blocked.reset_at.timestamp() * 1000) == first_ms + 60_000

    @pytest.mark.asyncio()
    async def test_quota_recovers_after_window(self, counter_store: InMemoryCounterStore) -> None:
        """Waiting past the window resets the quota."""
        clock = FakeClock()
        limiter = RateLimiter(counter_store, max_requests=2, window_seconds=60, clock=clock)

        await limiter.check_and_consume("user-1")
        await limiter.check_and_consume("user-1")
        assert (await limiter.check_and_consume("user-1")).blocked is True

        clock.advance(61)

        assert (await limiter.check_and_consume("user-1")).passed is True

    @pytest.mark.asyncio()
    async def test_blocked_attempts_do_not_extend_window(self, counter_store: InMemoryCounterStore) -> None:
        """Rejected attempts are not recorded."""
        clock = FakeClock()
        limiter = RateLimiter(counter_store, max_requests=1, window_seconds=60, clock=clock)

        await limiter.check_and_consume("user-1")
        for _ in range(5):
            clock.advance(10)
            await limiter.check_and_consume("user-1")
        clock.advance(11)

        assert (await limiter.check_and_consume("user-1")).passed is True

    @pytest.mark.asyncio()
    async def test_identities_are_independent(self, counter_store: InMemoryCounterStore) -> None:
        """One user's quota never affects another's."""
        limiter = RateLimiter(counter_store, max_requests=1, clock=FakeClock())

        await limiter.check_and_consume("user-1")

        assert (await limiter.check_and_consume("user-1")).blocked is True
        assert (await limiter.check_and_consume("user-2")).passed is True

    @pytest.mark.asyncio()
    async def test_concurrent_attempts_never_exceed_limit(self, counter_store: InMemoryCounterStore) -> None:
        """Concurrent submissions cannot both take the last slot."""
        limiter = RateLimiter(counter_store, max_requests=5, clock=FakeClock())

        results = await asyncio.gather(*(limiter.check_and_consume("user-1") for _ in range(20)))

        assert sum(1 for result in results if result.passed) == 5

    @pytest.mark.asyncio()
    async def test_store_failure_fails_open(self) -> None:
        """An unreachable counter store admits the attempt with full quota."""
        store = AsyncMock()
        store.sliding_window_admit.side_effect = StoreUnavailableError(message="redis down")
        limiter = RateLimiter(store, max_requests=12, clock=FakeClock())

        result = await limiter.check_and_consume("user-1")

        assert result.passed is True
        assert result.blocked is False
        assert result.remaining == 12

    @pytest.mark.asyncio()
    async def test_reset_clears_quota(self, counter_store: InMemoryCounterStore) -> None:
        """reset() forgets every recorded attempt."""
        limiter = RateLimiter(counter_store, max_requests=1, clock=FakeClock())
        await limiter.check_and_consume("user-1")

        await limiter.reset("user-1")

        assert (await limiter.check_and_consume("user-1")).passed is True

    @pytest.mark.asyncio()
    async def test_get_info_does_not_consume(self, counter_store: InMemoryCounterStore) -> None:
        """get_info() reports usage without recording an attempt."""
        limiter = RateLimiter(counter_store, max_requests=3, clock=FakeClock())
        await limiter.check_and_consume("user-1")

        first = await limiter.get_info("user-1")
        second = await limiter.get_info("user-1")

        assert first == {"current": 1, "limit": 3, "remaining": 2}
        assert second == first

    @pytest.mark.asyncio()
    async def test_get_info_store_failure_reports_zero(self) -> None:
        """get_info() degrades to an empty window when the store fails."""
        store = AsyncMock()
        store.count_window.side_effect = StoreUnavailableError(message="redis down")
        limiter = RateLimiter(store, max_requests=3, clock=FakeClock())

        assert await limiter.get_info("user-1") == {"current": 0, "limit": 3, "remaining": 3}
