from __future__ import annotations

import hashlib
from typing import Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

KEY_PREFIX = "schoolauth:rate:"

# Refill and consume in one step, timed by the Redis clock so every worker
# sees the same bucket. Returns {allowed, remaining, reset_after_seconds}.
_TOKEN_BUCKET_LUA = """
local capacity = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local cost = tonumber(ARGV[3])
local clock = redis.call('TIME')
local now_ms = clock[1] * 1000 + math.floor(clock[2] / 1000)
local per_ms = capacity / window_ms

local state = redis.call('HMGET', KEYS[1], 'tokens', 'at')
local tokens = tonumber(state[1]) or capacity
local at = tonumber(state[2]) or now_ms
tokens = math.min(capacity, tokens + math.max(0, now_ms - at) * per_ms)

local allowed = 0
local reset_after = 0
if tokens >= cost then
  tokens = tokens - cost
  allowed = 1
else
  reset_after = math.ceil((cost - tokens) / per_ms / 1000)
end
redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'at', now_ms)
redis.call('PEXPIRE', KEYS[1], window_ms)
return {allowed, math.floor(tokens), reset_after}
"""


class RedisRateLimiter:
    """Token buckets shared by every worker through Redis."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume = self.client.register_script(_TOKEN_BUCKET_LUA)

    def verify_connection(self) -> None:
        """Fail fast at startup when Redis is unreachable."""
        # Sync client so the async one is not bound to a throwaway loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def bucket_key(key: str) -> str:
        """Hash the limiter key so client-supplied parts never shape Redis keys."""
        return KEY_PREFIX + hashlib.sha256(key.encode()).hexdigest()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        allowed, remaining, reset_after = await self._consume(
            keys=[self.bucket_key(key)],
            args=[limit, window_seconds * 1000, max(1, cost)],
        )
        result = (bool(int(allowed)), max(0, int(remaining)), int(reset_after))
        return result if return_remaining else result[0]

    async def close(self) -> None:
        await self.client.aclose()
