from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Protocol

from redis.exceptions import RedisError

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.errors import ServerError
from authkernel.storage.models import utcnow
from authkernel.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_REDIS_RETRIES = 3
_REDIS_RETRY_DELAY = 0.25


class TokenBlacklist(Protocol):
    """Revoked-but-unexpired token identifiers."""

    async def add(self, jti: str, expires_at: datetime) -> None: ...

    async def has(self, jti: str) -> bool: ...

    async def remove(self, jti: str) -> None: ...

    async def cleanup(self) -> int: ...

    async def shutdown(self) -> None: ...


class MemoryTokenBlacklist:
    """Process-local blacklist; entries drop out once their token would expire."""

    def __init__(self, *, now: Optional[Callable[[], datetime]] = None) -> None:
        self._entries: Dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._now = now or utcnow

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def add(self, jti: str, expires_at: datetime) -> None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= self._now():
            return
        with self._lock:
            self._entries[jti] = expires_at

    async def has(self, jti: str) -> bool:
        with self._lock:
            expires_at = self._entries.get(jti)
            if expires_at is None:
                return False
            if expires_at <= self._now():
                self._entries.pop(jti, None)
                return False
            return True

    async def remove(self, jti: str) -> None:
        with self._lock:
            self._entries.pop(jti, None)

    async def cleanup(self) -> int:
        now = self._now()
        with self._lock:
            stale = [jti for jti, expires_at in self._entries.items() if expires_at <= now]
            for jti in stale:
                self._entries.pop(jti, None)
        if stale:
            logger.debug("token_blacklist_pruned", removed=len(stale))
        return len(stale)

    async def shutdown(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisTokenBlacklist:
    """Blacklist shared across processes; Redis key TTLs do the pruning."""

    def __init__(
        self,
        cache: RedisCache,
        *,
        owns_cache: bool = False,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.cache = cache
        self._owns_cache = owns_cache
        self._now = now or utcnow

    async def add(self, jti: str, expires_at: datetime) -> None:
        now = self._now()
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= now:
            return
        ttl = RedisCache.ttl_until(expires_at, now)
        last_error: Optional[Exception] = None
        for attempt in range(1, _REDIS_RETRIES + 1):
            try:
                await self.cache.blacklist_token(jti, ttl)
                return
            except RedisError as exc:
                last_error = exc
                logger.warning(
                    "token_blacklist_add_retry", jti=jti, attempt=attempt, error=str(exc)
                )
                if attempt < _REDIS_RETRIES:
                    await asyncio.sleep(_REDIS_RETRY_DELAY)
        logger.error("token_blacklist_add_failed", jti=jti, error=str(last_error))
        raise ServerError("token revocation unavailable", detail={"jti": jti})

    async def has(self, jti: str) -> bool:
        try:
            return await self.cache.is_token_blacklisted(jti)
        except RedisError as exc:
            # fail closed
            logger.error("token_blacklist_check_failed", jti=jti, error=str(exc))
            return True

    async def remove(self, jti: str) -> None:
        try:
            await self.cache.remove_blacklisted_token(jti)
        except RedisError as exc:
            logger.warning("token_blacklist_remove_failed", jti=jti, error=str(exc))

    async def cleanup(self) -> int:
        return 0

    async def shutdown(self) -> None:
        if self._owns_cache:
            await self.cache.close()


def create_token_blacklist(
    settings: Settings,
    cache: Optional[RedisCache] = None,
    *,
    now: Optional[Callable[[], datetime]] = None,
) -> TokenBlacklist:
    if cache is not None:
        logger.info("token_blacklist_backend", backend="redis")
        return RedisTokenBlacklist(cache, now=now)
    if not settings.test_mode and not settings.use_memory_store:
        logger.warning(
            "token_blacklist_memory_fallback",
            detail="revocations are not shared between processes",
        )
    return MemoryTokenBlacklist(now=now)
