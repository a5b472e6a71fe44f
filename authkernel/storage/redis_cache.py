from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from typing import List, Optional

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for token revocation, permission sets and throttles."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR and start the window on the first hit only, atomically.
    _WINDOW_COUNTER_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return current
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        key_prefix: str = "",
    ):
        self.redis_url = redis_url
        self.key_prefix = f"{key_prefix}:" if key_prefix else ""
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window_counter = self.client.register_script(self._WINDOW_COUNTER_SCRIPT)

    @staticmethod
    def ttl_until(expires_at: datetime, now: Optional[datetime] = None) -> int:
        """Seconds until ``expires_at``, rounded up, never below 1."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        current = now or datetime.now(timezone.utc)
        return max(1, math.ceil((expires_at - current).total_seconds()))

    def _key(self, suffix: str) -> str:
        return f"{self.key_prefix}{suffix}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a temporary loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    # token blacklist
    async def blacklist_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(self._key(f"auth:token:blacklist:{jti}"), "1", ex=ttl_seconds)

    async def is_token_blacklisted(self, jti: str) -> bool:
        return bool(await self.client.exists(self._key(f"auth:token:blacklist:{jti}")))

    async def remove_blacklisted_token(self, jti: str) -> None:
        await self.client.delete(self._key(f"auth:token:blacklist:{jti}"))

    # permission cache
    async def get_permissions(self, user_id: str) -> Optional[List[str]]:
        cached = await self.client.get(self._key(f"auth:rbac:permissions:{user_id}"))
        if cached is None:
            return None
        return json.loads(cached)

    async def set_permissions(
        self, user_id: str, permissions: List[str], ttl_seconds: int
    ) -> None:
        await self.client.set(
            self._key(f"auth:rbac:permissions:{user_id}"),
            json.dumps(permissions),
            ex=max(1, ttl_seconds),
        )

    async def delete_permissions(self, user_id: str) -> None:
        await self.client.delete(self._key(f"auth:rbac:permissions:{user_id}"))

    # brute-force windows
    async def increment_login_failures(self, identifier: str, window_seconds: int) -> int:
        result = await self._window_counter(
            keys=[self._key(f"auth:brute-force:{identifier}")],
            args=[max(1, window_seconds)],
        )
        return int(result)

    async def get_login_failures(self, identifier: str) -> int:
        value = await self.client.get(self._key(f"auth:brute-force:{identifier}"))
        return int(value) if value else 0

    async def reset_login_failures(self, identifier: str) -> None:
        await self.client.delete(self._key(f"auth:brute-force:{identifier}"))
