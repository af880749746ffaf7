from __future__ import annotations

import hashlib
from typing import Any, Dict, Optional

from redis import Redis
from redis.exceptions import RedisError

from civicguard.logging import get_logger
from civicguard.storage.errors import BackendUnavailable
from civicguard.storage.models import RateLimitInfo


class RedisRateLimitStore:
    """Redis-backed fixed-window counters shared across hosts."""

    name = "redis"
    KEY_PREFIX = "rate:"

    # Lua fixed window: roll over a stale window, count the hit, refresh TTL
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max_hits = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'hits', 'start', 'window')
local hits = tonumber(data[1])
local start = tonumber(data[2])
local win = tonumber(data[3])

if hits == nil or start == nil or win == nil or now >= start + win then
  hits = 1
  start = now
  win = window
else
  hits = hits + 1
end

redis.call('HSET', key, 'hits', hits, 'start', start, 'window', win, 'max', max_hits)
redis.call('PEXPIRE', key, math.max(start + win - now, 1))
return {hits, start, win}
"""

    # Stale check and delete in one step so a window opened mid-sweep survives
    _CLEANUP_SCRIPT = """
local data = redis.call('HMGET', KEYS[1], 'start', 'window')
local start = tonumber(data[1])
local win = tonumber(data[2])
if start == nil or win == nil then
  return 0
end
if start + win < tonumber(ARGV[1]) then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 0.5,
        client: Optional[Any] = None,
    ):
        self.redis_url = redis_url
        self.logger = get_logger(__name__)
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)
        self._cleanup_stale = self.client.register_script(self._CLEANUP_SCRIPT)

    @classmethod
    def _normalize_rate_key(cls, key: str) -> str:
        """Hash the logical key so user-supplied delimiters cannot collide."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"{cls.KEY_PREFIX}{digest}"

    def increment(self, key: str, window_ms: int, max_hits: int, now_ms: int) -> RateLimitInfo:
        safe_key = self._normalize_rate_key(key)
        try:
            hits, start, window = self._fixed_window(
                keys=[safe_key], args=[int(now_ms), int(window_ms), int(max_hits)]
            )
        except RedisError as exc:
            raise BackendUnavailable(self.name, str(exc)) from exc
        return RateLimitInfo.from_counter(int(hits), int(start), int(window), max_hits, now_ms)

    def reset(self, key: str) -> None:
        try:
            self.client.delete(self._normalize_rate_key(key))
        except RedisError as exc:
            raise BackendUnavailable(self.name, str(exc)) from exc

    def cleanup(self, older_than_ms: int) -> int:
        """Delete counters whose window ended before the cutoff.

        PEXPIRE already retires most keys; this catches ones written without a
        TTL or with a clock skewed into the future.
        """
        removed = 0
        try:
            for redis_key in self.client.scan_iter(match=f"{self.KEY_PREFIX}*", count=500):
                removed += int(
                    self._cleanup_stale(keys=[redis_key], args=[int(older_than_ms)]) or 0
                )
        except RedisError as exc:
            raise BackendUnavailable(self.name, str(exc)) from exc
        return removed

    def stats(self, now_ms: int) -> Dict[str, int]:
        total = active = blocked = 0
        try:
            for redis_key in self.client.scan_iter(match=f"{self.KEY_PREFIX}*", count=500):
                hits, start, window, max_hits = self.client.hmget(
                    redis_key, "hits", "start", "window", "max"
                )
                if start is None or window is None:
                    continue
                total += 1
                if int(float(start)) + int(float(window)) <= now_ms:
                    continue
                active += 1
                if hits is not None and max_hits is not None:
                    blocked += int(float(hits)) > int(float(max_hits))
        except RedisError as exc:
            raise BackendUnavailable(self.name, str(exc)) from exc
        return {"total_keys": total, "active_windows": active, "blocked_keys": blocked}

    def health_check(self) -> bool:
        try:
            return bool(self.client.ping())
        except RedisError as exc:
            self.logger.warning("redis_health_check_failed", error=str(exc))
            return False

    def close(self) -> None:
        try:
            self.client.close()
        except RedisError as exc:
            self.logger.warning("redis_close_failed", error=str(exc))
