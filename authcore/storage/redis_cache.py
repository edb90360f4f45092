from __future__ import annotations

import hashlib
import time
from contextlib import contextmanager
from typing import Iterator, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authcore.logging import get_logger
from authcore.service.tokens import token_digest
from authcore.storage.errors import StorageUnavailable

logger = get_logger(__name__)


@contextmanager
def _redis_guard(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        logger.error("redis_operation_failed", operation=operation, error=str(exc))
        raise StorageUnavailable("redis", f"{operation} failed") from exc


class RedisCache:
    """Redis wrapper for refresh-credential records, rate limits and OAuth state.

    Refresh records are keyed by the sha256 digest of the credential so the
    raw bearer value never becomes a Redis key. Each record expires with the
    credential it describes.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Lua token bucket: atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _refresh_key(refresh_token: str) -> str:
        return f"auth:refresh:{token_digest(refresh_token)}"

    @staticmethod
    def _oauth_key(state: str) -> str:
        return f"auth:oauth:{state}"

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so user input cannot inject key delimiters."""
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def put_refresh(self, refresh_token: str, account_id: str, ttl_seconds: int) -> None:
        with _redis_guard("put_refresh"):
            await self.client.set(
                self._refresh_key(refresh_token), account_id, ex=max(1, int(ttl_seconds))
            )

    async def get_refresh(self, refresh_token: str) -> Optional[str]:
        with _redis_guard("get_refresh"):
            return await self.client.get(self._refresh_key(refresh_token))

    async def delete_refresh(self, refresh_token: str) -> bool:
        """Remove the record; deleting an absent record is not an error."""
        with _redis_guard("delete_refresh"):
            return bool(await self.client.delete(self._refresh_key(refresh_token)))

    async def _run_token_bucket(self, keys: list, args: list):
        return await self._token_bucket(keys=keys, args=args)

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        """Consume one token from ``key``'s bucket; False when the bucket is empty.

        A non-positive ``limit`` disables the check.
        """
        if limit <= 0:
            return True
        refill_rate = float(limit) / float(max(1, window_seconds))
        with _redis_guard("check_rate_limit"):
            allowed, _tokens, _reset_after = await self._run_token_bucket(
                [self._normalize_rate_key(key)], [time.time(), refill_rate, limit, 1]
            )
        return bool(int(allowed))

    async def set_oauth_state(self, state: str, provider: str, ttl_seconds: int) -> None:
        with _redis_guard("set_oauth_state"):
            await self.client.set(self._oauth_key(state), provider, ex=max(1, int(ttl_seconds)))

    async def pop_oauth_state(self, state: str) -> Optional[str]:
        """Atomically get and delete OAuth state so it cannot be replayed."""
        with _redis_guard("pop_oauth_state"):
            return await self.client.getdel(self._oauth_key(state))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class _SyncClientAdapter:
    """Adapter that wraps a sync Redis client with async method signatures."""

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def getdel(self, key: str) -> Optional[str]:
        return self._sync.getdel(key)

    async def delete(self, key: str) -> int:
        return self._sync.delete(key)


class SyncRedisCache(RedisCache):
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but keeps the async surface of RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)
        self._token_bucket = self._sync_client.register_script(RedisCache._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def _run_token_bucket(self, keys: list, args: list):
        return self._token_bucket(keys=keys, args=args)

    async def close(self) -> None:
        self._sync_client.close()
