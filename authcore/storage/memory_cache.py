from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from authcore.service.tokens import token_digest

SWEEP_INTERVAL_SECONDS = 60


class MemoryCache:
    """Process-local stand-in for RedisCache.

    Used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV when Redis is not
    reachable. Entries carry an absolute expiry and are dropped lazily on read.
    Writes also sweep expired entries and refilled rate limit buckets once a
    minute, so keys that are never read again do not accumulate.
    Nothing survives a restart and nothing is shared between workers.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[str, float]] = {}
        # key -> (tokens, last refill, capacity, refill rate per second)
        self._buckets: Dict[str, Tuple[float, float, float, float]] = {}
        self._last_sweep = clock()

    def verify_connection(self) -> None:
        return None

    def _sweep_expired(self, now: float) -> None:
        """Drop dead entries and full buckets. Caller holds ``_lock``."""
        if now - self._last_sweep < SWEEP_INTERVAL_SECONDS:
            return
        self._last_sweep = now
        for key in [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]:
            del self._entries[key]
        for key, (tokens, last_ts, capacity, rate) in list(self._buckets.items()):
            if tokens + max(0.0, now - last_ts) * rate >= capacity:
                del self._buckets[key]

    def _set(self, key: str, value: str, ttl_seconds: int) -> None:
        now = self._clock()
        with self._lock:
            self._sweep_expired(now)
            self._entries[key] = (value, now + max(1, int(ttl_seconds)))

    def _get(self, key: str, *, delete: bool = False) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                self._entries.pop(key, None)
                return None
            if delete:
                self._entries.pop(key, None)
            return value

    async def put_refresh(self, refresh_token: str, account_id: str, ttl_seconds: int) -> None:
        self._set(f"auth:refresh:{token_digest(refresh_token)}", account_id, ttl_seconds)

    async def get_refresh(self, refresh_token: str) -> Optional[str]:
        return self._get(f"auth:refresh:{token_digest(refresh_token)}")

    async def delete_refresh(self, refresh_token: str) -> bool:
        with self._lock:
            return self._entries.pop(f"auth:refresh:{token_digest(refresh_token)}", None) is not None

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        """Token bucket matching the Redis script: refill continuously, consume one."""
        if limit <= 0:
            return True
        refill_rate = float(limit) / float(max(1, window_seconds))
        now = self._clock()
        capacity = float(limit)
        with self._lock:
            self._sweep_expired(now)
            tokens, last_ts, _, _ = self._buckets.get(key, (capacity, now, capacity, refill_rate))
            tokens = min(capacity, tokens + max(0.0, now - last_ts) * refill_rate)
            allowed = tokens >= 1
            if allowed:
                tokens -= 1
            self._buckets[key] = (tokens, now, capacity, refill_rate)
        return allowed

    async def set_oauth_state(self, state: str, provider: str, ttl_seconds: int) -> None:
        self._set(f"auth:oauth:{state}", provider, ttl_seconds)

    async def pop_oauth_state(self, state: str) -> Optional[str]:
        return self._get(f"auth:oauth:{state}", delete=True)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._buckets.clear()

    async def close(self) -> None:
        self.clear()
