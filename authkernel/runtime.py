from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from authkernel.config import Settings, get_settings
from authkernel.logging import get_logger
from authkernel.service.auth import AuthService
from authkernel.service.blacklist import create_token_blacklist
from authkernel.service.brute_force import BruteForceProtectionService
from authkernel.service.dispatch import BackgroundDispatcher
from authkernel.service.email import EmailSender, EmailService
from authkernel.service.passwords import PasswordService
from authkernel.service.rbac import MemoryPermissionCache, RbacService, RedisPermissionCache
from authkernel.service.security_events import SecurityEventService
from authkernel.service.sessions import SessionService
from authkernel.service.tokens import TokenService
from authkernel.storage.base import Datastore
from authkernel.storage.memory import MemoryStore
from authkernel.storage.postgres import PostgresStore
from authkernel.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def build_store(settings: Settings) -> Datastore:
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        store = MemoryStore() if settings.use_memory_store else PostgresStore(settings.database_url)
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=store_type)
    return store


def build_cache(settings: Settings) -> Optional[RedisCache]:
    """Connect to Redis when configured.

    Production deployments need Redis so revocations and throttles are shared
    between processes; test and memory-store setups fall back to in-process
    state.
    """
    redis_error: Optional[Exception] = None
    if settings.redis_url:
        try:
            cache = RedisCache(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            redis_error = exc
    if not settings.test_mode and not settings.use_memory_store:
        raise RuntimeError(
            "Redis is required for the token blacklist and login throttling; "
            "start Redis or set TEST_MODE=true / USE_MEMORY_STORE=true for local fallback."
        ) from redis_error
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
    )
    return None


class Runtime:
    """Owns one wired set of identity services and their shutdown order."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[Datastore] = None,
        cache: Optional[RedisCache] = None,
        email: Optional[EmailSender] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else build_store(self.settings)
        self.cache = cache if cache is not None else build_cache(self.settings)

        self.blacklist = create_token_blacklist(self.settings, self.cache, now=now)
        self.security_events = SecurityEventService(self.store, now=now)
        if self.cache is not None:
            permission_cache = RedisPermissionCache(
                self.cache, self.settings.permission_cache_ttl_seconds
            )
        else:
            permission_cache = MemoryPermissionCache(
                self.settings.permission_cache_ttl_seconds, now=now
            )
        self.rbac = RbacService(
            self.store, permission_cache, security_events=self.security_events
        )
        self.sessions = SessionService(
            self.store,
            fingerprint_secret=self.settings.effective_fingerprint_secret,
            blacklist=self.blacklist,
            now=now,
        )
        self.passwords = PasswordService(self.settings)
        self.brute_force = BruteForceProtectionService(self.settings, cache=self.cache, now=now)
        self.tokens = TokenService(
            self.settings, self.store, self.sessions, self.rbac, self.blacklist, now=now
        )
        self.email = email or EmailService.from_settings(self.settings)
        self.dispatcher = BackgroundDispatcher()
        self.auth = AuthService(
            self.settings,
            self.store,
            passwords=self.passwords,
            tokens=self.tokens,
            sessions=self.sessions,
            rbac=self.rbac,
            brute_force=self.brute_force,
            security_events=self.security_events,
            email=self.email,
            dispatcher=self.dispatcher,
            now=now,
        )
        self._closed = False
        logger.info("runtime_init_completed")

    async def start(self) -> None:
        await self.tokens.start()

    async def close(self) -> None:
        """Drain background work, stop maintenance, release connections."""
        if self._closed:
            return
        self._closed = True
        await self.auth.shutdown()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()
        logger.info("runtime_closed")
