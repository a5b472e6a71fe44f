from __future__ import annotations

import re
import threading
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

from redis.exceptions import RedisError

from authkernel.logging import get_logger
from authkernel.service.errors import ForbiddenError, NotFoundError
from authkernel.service.security_events import SecurityEventService
from authkernel.storage.base import Datastore
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import Permission, Role, utcnow
from authkernel.storage.redis_cache import RedisCache

logger = get_logger(__name__)

PermissionKeys = Union[str, Sequence[str]]
RoleNames = Union[str, Iterable[str]]


@lru_cache(maxsize=1024)
def _compile_grant(granted: str) -> re.Pattern:
    return re.compile("^" + re.escape(granted).replace(r"\*", ".*") + "$")


def permission_matches(granted: str, required: str) -> bool:
    """True when ``granted`` covers ``required``; ``*`` in a grant matches anything."""
    if granted == required or granted == "*":
        return True
    if "*" not in granted:
        return False
    return _compile_grant(granted).match(required) is not None


def _as_list(names: Union[str, Iterable[str]]) -> List[str]:
    # a bare string is one name, not a sequence of characters
    return [names] if isinstance(names, str) else list(names)


class PermissionCache(Protocol):
    async def get(self, user_id: str) -> Optional[List[str]]: ...

    async def set(self, user_id: str, permissions: List[str]) -> None: ...

    async def delete(self, user_id: str) -> None: ...

    async def prune(self) -> int: ...

    async def shutdown(self) -> None: ...


class MemoryPermissionCache:
    def __init__(
        self, ttl_seconds: int, *, now: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self._entries: Dict[str, Tuple[List[str], datetime]] = {}
        self._lock = threading.Lock()
        self._now = now or utcnow

    async def get(self, user_id: str) -> Optional[List[str]]:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            permissions, expires_at = entry
            if expires_at <= self._now():
                self._entries.pop(user_id, None)
                return None
            return list(permissions)

    async def set(self, user_id: str, permissions: List[str]) -> None:
        with self._lock:
            self._entries[user_id] = (list(permissions), self._now() + self.ttl)

    async def delete(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(user_id, None)

    async def prune(self) -> int:
        now = self._now()
        with self._lock:
            stale = [uid for uid, (_, exp) in self._entries.items() if exp <= now]
            for uid in stale:
                self._entries.pop(uid, None)
        return len(stale)

    async def shutdown(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisPermissionCache:
    """Permission sets in Redis; a cache miss on error falls through to the store."""

    def __init__(self, cache: RedisCache, ttl_seconds: int) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def get(self, user_id: str) -> Optional[List[str]]:
        try:
            return await self.cache.get_permissions(user_id)
        except RedisError as exc:
            logger.warning("permission_cache_read_failed", user_id=user_id, error=str(exc))
            return None

    async def set(self, user_id: str, permissions: List[str]) -> None:
        try:
            await self.cache.set_permissions(user_id, permissions, self.ttl_seconds)
        except RedisError as exc:
            logger.warning("permission_cache_write_failed", user_id=user_id, error=str(exc))

    async def delete(self, user_id: str) -> None:
        try:
            await self.cache.delete_permissions(user_id)
        except RedisError as exc:
            logger.error("permission_cache_invalidate_failed", user_id=user_id, error=str(exc))

    async def prune(self) -> int:
        return 0

    async def shutdown(self) -> None:
        return None


class RbacService:
    """Role and permission resolution in front of a short-lived cache."""

    def __init__(
        self,
        store: Datastore,
        cache: PermissionCache,
        *,
        security_events: Optional[SecurityEventService] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.security_events = security_events

    async def get_user_roles(self, user_id: str) -> List[Role]:
        return sorted(self.store.list_user_roles(user_id), key=lambda r: r.name.lower())

    async def get_user_permissions(self, user_id: str) -> List[str]:
        cached = await self.cache.get(user_id)
        if cached is not None:
            return cached
        roles = self.store.list_user_roles(user_id)
        direct = self.store.list_user_permission_keys(user_id)
        inherited = self.store.list_role_permission_keys([r.id for r in roles])
        permissions = sorted(set(direct) | set(inherited))
        await self.cache.set(user_id, permissions)
        return permissions

    async def has_role(self, user_id: str, roles: RoleNames) -> bool:
        required = {r.lower() for r in _as_list(roles)}
        if not required:
            return True
        held = {r.name.lower() for r in self.store.list_user_roles(user_id)}
        return bool(held & required)

    async def has_permission(self, user_id: str, permission: PermissionKeys) -> bool:
        required = _as_list(permission)
        if not required:
            return True
        granted = await self.get_user_permissions(user_id)
        return any(
            permission_matches(grant, needed) for needed in required for grant in granted
        )

    async def require_role(self, user_id: str, roles: RoleNames) -> None:
        roles = _as_list(roles)
        if not await self.has_role(user_id, roles):
            await self._audit_denial("role_denied", user_id, {"required_roles": roles})
            raise ForbiddenError("insufficient role", detail={"required_roles": roles})

    async def require_permission(self, user_id: str, permission: PermissionKeys) -> None:
        if not await self.has_permission(user_id, permission):
            required = _as_list(permission)
            await self._audit_denial(
                "permission_denied", user_id, {"required_permissions": required}
            )
            raise ForbiddenError(
                "insufficient permissions", detail={"required_permissions": required}
            )

    async def _audit_denial(self, event_type: str, user_id: str, payload: dict) -> None:
        if self.security_events is not None:
            await self.security_events.log(event_type, user_id=user_id, payload=payload)

    async def assign_role(self, user_id: str, role_id: str) -> bool:
        if self.store.get_role(role_id) is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        try:
            changed = self.store.assign_role(user_id, role_id)
        except ConstraintViolation as exc:
            raise NotFoundError(exc.message, detail=exc.detail)
        await self.invalidate_user_permissions(user_id)
        if changed:
            logger.info("role_assigned", user_id=user_id, role_id=role_id)
        return changed

    async def revoke_role(self, user_id: str, role_id: str) -> bool:
        changed = self.store.unassign_role(user_id, role_id)
        await self.invalidate_user_permissions(user_id)
        if changed:
            logger.info("role_revoked", user_id=user_id, role_id=role_id)
        return changed

    async def grant_permission(self, user_id: str, key: str) -> bool:
        permission = await self.ensure_permission(key)
        try:
            changed = self.store.grant_user_permission(user_id, permission.id)
        except ConstraintViolation as exc:
            raise NotFoundError(exc.message, detail=exc.detail)
        await self.invalidate_user_permissions(user_id)
        return changed

    async def revoke_permission(self, user_id: str, key: str) -> bool:
        permission = self.store.get_permission_by_key(key)
        if permission is None:
            return False
        changed = self.store.revoke_user_permission(user_id, permission.id)
        await self.invalidate_user_permissions(user_id)
        return changed

    async def invalidate_user_permissions(self, user_id: str) -> None:
        await self.cache.delete(user_id)

    # seeding helpers
    async def ensure_role(self, name: str, description: Optional[str] = None) -> Role:
        role = self.store.get_role_by_name(name)
        if role is not None:
            return role
        try:
            return self.store.create_role(name, description)
        except ConstraintViolation:
            return self.store.get_role_by_name(name)

    async def ensure_permission(self, key: str, description: Optional[str] = None) -> Permission:
        permission = self.store.get_permission_by_key(key)
        if permission is not None:
            return permission
        try:
            return self.store.create_permission(key, description)
        except ConstraintViolation:
            return self.store.get_permission_by_key(key)

    async def grant_role_permission(self, role_name: str, key: str) -> bool:
        """Grant ``key`` to a role.

        Cached permission sets of the role's members are left to expire via
        the cache TTL.
        """
        role = await self.ensure_role(role_name)
        permission = await self.ensure_permission(key)
        return self.store.grant_role_permission(role.id, permission.id)

    async def prune_cache(self) -> int:
        return await self.cache.prune()

    async def shutdown(self) -> None:
        await self.cache.shutdown()
