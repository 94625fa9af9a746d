"""Redis-backed counter and cache stores.

RedisCounterStore keeps one sorted set per identity (score and member both
derived from the attempt time) and runs prune/count/record as a single Lua
script, so two concurrent submissions can never both take the last slot.

RedisCacheStore is a thin get/setex/delete wrapper used by the policy cache.

Both translate redis-py errors: connection and timeout errors become
TransientStoreError, everything else StoreUnavailableError.
"""

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from presence_admission.errors import StoreUnavailableError, TransientStoreError
from presence_admission.observability import get_logger

logger = get_logger(__name__)

_DEFAULT_KEY_PREFIX = "attendance:"

# KEYS[1] = counter key
# ARGV = now_ms, window_ms, limit, member
# Returns {admitted (0/1), count_before, oldest_score or -1}
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local oldest_score = -1
if oldest[2] then
  oldest_score = tonumber(oldest[2])
end

if count >= limit then
  return {0, count, oldest_score}
end

redis.call('ZADD', key, now, ARGV[4])
redis.call('PEXPIRE', key, window * 2)
return {1, count, oldest_score}
"""


@asynccontextmanager
async def _translated_errors(operation: str, key: str) -> AsyncIterator[None]:
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        logger.warning("Redis unreachable", operation=operation, key=key, error=str(exc))
        raise TransientStoreError(message=f"Redis unreachable during {operation}") from exc
    except RedisError as exc:
        logger.error("Redis command failed", operation=operation, key=key, error=str(exc))
        raise StoreUnavailableError(message=f"Redis error during {operation}") from exc


class RedisCounterStore:
    """Sliding-window counters on Redis sorted sets.

    Args:
        client: redis.asyncio client.
        key_prefix: Namespace prepended to every key.
    """

    def __init__(self, client: Redis, key_prefix: str = _DEFAULT_KEY_PREFIX) -> None:
        self._client = client
        self._key_prefix = key_prefix
        self._script = client.register_script(SLIDING_WINDOW_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def sliding_window_admit(
        self,
        key: str,
        now_ms: int,
        window_ms: int,
        limit: int,
    ) -> tuple[bool, int, int | None]:
        member = f"{now_ms}-{uuid.uuid4().hex[:12]}"
        async with _translated_errors("sliding_window_admit", key):
            admitted, count, oldest = await self._script(
                keys=[self._key(key)],
                args=[now_ms, window_ms, limit, member],
            )
        oldest_ms = int(oldest) if int(oldest) >= 0 else None
        return bool(int(admitted)), int(count), oldest_ms

    async def count_window(self, key: str, now_ms: int, window_ms: int) -> int:
        full_key = self._key(key)
        async with _translated_errors("count_window", key):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(full_key, "-inf", now_ms - window_ms)
                pipe.zcard(full_key)
                _, count = await pipe.execute()
        return int(count)

    async def delete(self, key: str) -> None:
        async with _translated_errors("delete", key):
            await self._client.delete(self._key(key))


class RedisCacheStore:
    """String cache with TTL on Redis.

    Args:
        client: redis.asyncio client.
        key_prefix: Namespace prepended to every key.
    """

    def __init__(self, client: Redis, key_prefix: str = _DEFAULT_KEY_PREFIX) -> None:
        self._client = client
        self._key_prefix = key_prefix

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def get(self, key: str) -> str | None:
        async with _translated_errors("get", key):
            value = await self._client.get(self._key(key))
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        async with _translated_errors("set", key):
            if ttl_seconds:
                await self._client.setex(self._key(key), ttl_seconds, value)
            else:
                await self._client.set(self._key(key), value)

    async def delete(self, key: str) -> None:
        async with _translated_errors("delete", key):
            await self._client.delete(self._key(key))
