from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional, Tuple

from redis.exceptions import RedisError

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.storage.models import utcnow
from authkernel.storage.redis_cache import RedisCache

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class BruteForceResult:
    attempts: int
    captcha_required: bool


def normalize_identifier(identifier: str) -> str:
    return identifier.strip().lower()


class BruteForceProtectionService:
    """Short-window failure counter with progressive delay.

    Independent of the durable ``failed_login_count`` on the user row: this
    throttles guessing per identifier (email or IP) and asks for a challenge
    before account lockout would kick in.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        sleep: Optional[Sleep] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.enabled = settings.brute_force_enabled
        self.window_seconds = settings.brute_force_window_seconds
        self.base_delay_ms = settings.brute_force_base_delay_ms
        self.step_delay_ms = settings.brute_force_step_delay_ms
        self.max_delay_ms = settings.brute_force_max_delay_ms
        self.captcha_threshold = settings.brute_force_captcha_threshold
        self.cache = cache
        self._sleep = sleep or asyncio.sleep
        self._now = now or utcnow
        # identifier -> (attempts, window_start)
        self._windows: Dict[str, Tuple[int, datetime]] = {}
        self._lock = threading.Lock()

    def delay_for(self, attempts: int) -> int:
        """Delay in milliseconds owed before the next credential check."""
        if attempts <= 0:
            return 0
        return min(self.max_delay_ms, self.base_delay_ms + self.step_delay_ms * (attempts - 1))

    async def apply_delay(self, identifier: str) -> int:
        if not self.enabled:
            return 0
        attempts = await self.get_attempts(identifier)
        delay_ms = self.delay_for(attempts)
        if delay_ms > 0:
            logger.debug("brute_force_delay", attempts=attempts, delay_ms=delay_ms)
            await self._sleep(delay_ms / 1000)
        return delay_ms

    async def record_failure(self, identifier: str) -> BruteForceResult:
        if not self.enabled:
            return BruteForceResult(attempts=0, captcha_required=False)
        key = normalize_identifier(identifier)
        attempts: Optional[int] = None
        if self.cache is not None:
            try:
                attempts = await self.cache.increment_login_failures(key, self.window_seconds)
            except RedisError as exc:
                logger.warning("brute_force_redis_fallback", op="record", error=str(exc))
        if attempts is None:
            attempts = self._increment_local(key)
        return BruteForceResult(
            attempts=attempts, captcha_required=attempts >= self.captcha_threshold
        )

    async def get_attempts(self, identifier: str) -> int:
        if not self.enabled:
            return 0
        key = normalize_identifier(identifier)
        if self.cache is not None:
            try:
                return await self.cache.get_login_failures(key)
            except RedisError as exc:
                logger.warning("brute_force_redis_fallback", op="read", error=str(exc))
        return self._read_local(key)

    async def reset(self, identifier: str) -> None:
        key = normalize_identifier(identifier)
        with self._lock:
            self._windows.pop(key, None)
        if self.cache is not None:
            try:
                await self.cache.reset_login_failures(key)
            except RedisError as exc:
                logger.warning("brute_force_redis_fallback", op="reset", error=str(exc))

    def _increment_local(self, key: str) -> int:
        now = self._now()
        with self._lock:
            attempts, started = self._windows.get(key, (0, now))
            if now - started >= timedelta(seconds=self.window_seconds):
                attempts, started = 0, now
            attempts += 1
            self._windows[key] = (attempts, started)
            self._prune_locked(now)
            return attempts

    def _read_local(self, key: str) -> int:
        now = self._now()
        with self._lock:
            entry = self._windows.get(key)
            if entry is None:
                return 0
            attempts, started = entry
            if now - started >= timedelta(seconds=self.window_seconds):
                self._windows.pop(key, None)
                return 0
            return attempts

    def _prune_locked(self, now: datetime) -> None:
        window = timedelta(seconds=self.window_seconds)
        stale = [k for k, (_, started) in self._windows.items() if now - started >= window]
        for k in stale:
            self._windows.pop(k, None)
