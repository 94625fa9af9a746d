"""Sliding-window admission rate limiter.

Each identity owns a set of attempt timestamps in the shared counter store.
The prune/check/record sequence is delegated to ICounterStore.sliding_window_admit,
which executes it as a single atomic operation.

If the counter store is unreachable the limiter fails OPEN: the attempt is
admitted and a warning is logged. Device trust (core/device_trust.py) makes the
opposite choice and fails closed.
"""

import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from presence_admission.core.interfaces import ICounterStore
from presence_admission.core.schemas import RateLimitResult
from presence_admission.observability import get_logger

logger = get_logger(__name__)

_DEFAULT_MAX_REQUESTS = 12
_DEFAULT_WINDOW_SECONDS = 60
_DEFAULT_KEY_PREFIX = "rate_limit:"


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def _from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=UTC)


class RateLimiter:
    """Per-identity sliding-window rate limiter.

    Args:
        store: Shared counter store.
        max_requests: Attempts allowed per window.
        window_seconds: Window length.
        key_prefix: Prefix for identity keys.
        clock: Returns the current time in epoch milliseconds (injectable for tests).
    """

    def __init__(
        self,
        store: ICounterStore,
        max_requests: int = _DEFAULT_MAX_REQUESTS,
        window_seconds: int = _DEFAULT_WINDOW_SECONDS,
        key_prefix: str = _DEFAULT_KEY_PREFIX,
        clock: Callable[[], int] = _epoch_ms,
    ) -> None:
        self._store = store
        self._max_requests = max(1, max_requests)
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._clock = clock

    @property
    def limit(self) -> int:
        return self._max_requests

    def _key(self, identity: str) -> str:
        return f"{self._key_prefix}{identity}"

    async def check_and_consume(self, identity: str) -> RateLimitResult:
        """Admit one attempt for identity if quota remains.

        Args:
            identity: The rate-limited identity (the user id).

        Returns:
            RateLimitResult. blocked is True only when the quota is exhausted,
            never because of a store outage.
        """
        now_ms = self._clock()
        try:
            admitted, count, oldest_ms = await self._store.sliding_window_admit(
                key=self._key(identity),
                now_ms=now_ms,
                window_ms=self._window_ms,
                limit=self._max_requests,
            )
        except Exception as exc:
            logger.warning(
                "Rate limiter store unavailable, failing open",
                identity=identity,
                error=str(exc),
            )
            return RateLimitResult(
                passed=True,
                limit=self._max_requests,
                remaining=self._max_requests,
                reset_at=_from_ms(now_ms + self._window_ms),
                blocked=False,
            )

        if not admitted:
            reset_ms = (oldest_ms if oldest_ms is not None else now_ms) + self._window_ms
            logger.info(
                "Rate limit exceeded",
                identity=identity,
                attempts=count,
                limit=self._max_requests,
            )
            return RateLimitResult(
                passed=False,
                limit=self._max_requests,
                remaining=0,
                reset_at=_from_ms(reset_ms),
                blocked=True,
            )

        return RateLimitResult(
            passed=True,
            limit=self._max_requests,
            remaining=max(0, self._max_requests - count - 1),
            reset_at=_from_ms(now_ms + self._window_ms),
            blocked=False,
        )

    async def reset(self, identity: str) -> None:
        """Forget every recorded attempt for identity (best-effort)."""
        try:
            await self._store.delete(self._key(identity))
        except Exception as exc:
            logger.warning("Rate limiter reset failed", identity=identity, error=str(exc))

    async def get_info(self, identity: str) -> dict[str, Any]:
        """Return the current usage of identity without consuming quota."""
        try:
            current = await self._store.count_window(
                key=self._key(identity),
                now_ms=self._clock(),
                window_ms=self._window_ms,
            )
        except Exception as exc:
            logger.warning("Rate limiter info lookup failed", identity=identity, error=str(exc))
            current = 0
        return {
            "current": current,
            "limit": self._max_requests,
            "remaining": max(0, self._max_requests - current),
        }
