from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from authkernel.logging import get_logger
from authkernel.service.blacklist import TokenBlacklist
from authkernel.storage.base import Datastore
from authkernel.storage.models import UserSession, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeviceContext:
    """Where a request came from: IP, user agent and optional client fingerprint."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    fingerprint: Optional[str] = None

    def summary(self) -> str:
        agent = self.user_agent or "unknown device"
        if self.ip_address:
            return f"{agent} ({self.ip_address})"
        return agent


class SessionService:
    """Session records: creation, conditional rotation and revocation."""

    def __init__(
        self,
        store: Datastore,
        *,
        fingerprint_secret: str,
        blacklist: Optional[TokenBlacklist] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.blacklist = blacklist
        self._fingerprint_key = fingerprint_secret.encode("utf-8")
        self._now = now or utcnow

    def fingerprint_for(self, device: DeviceContext) -> str:
        if device.fingerprint:
            material = f"client:{device.fingerprint}"
        else:
            material = f"agent:{device.user_agent or ''}|ip:{device.ip_address or ''}"
        return hmac.new(self._fingerprint_key, material.encode("utf-8"), hashlib.sha256).hexdigest()

    async def has_seen_fingerprint(self, user_id: str, fingerprint: str) -> bool:
        return self.store.has_session_fingerprint(user_id, fingerprint)

    async def create(
        self,
        user_id: str,
        device: DeviceContext,
        refresh_token_hash: str,
        ttl_seconds: int,
        *,
        session_id: Optional[str] = None,
        fingerprint: Optional[str] = None,
        access_jti: Optional[str] = None,
        access_expires_at: Optional[datetime] = None,
    ) -> UserSession:
        session = UserSession.new(
            user_id,
            refresh_token_hash,
            ttl_seconds,
            session_id=session_id,
            fingerprint=fingerprint or self.fingerprint_for(device),
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            device={"summary": device.summary()},
            access_jti=access_jti,
            access_expires_at=access_expires_at,
            now=self._now(),
        )
        created = self.store.create_session(session)
        logger.info("session_created", session_id=created.id, user_id=user_id)
        return created

    async def get(self, session_id: str) -> Optional[UserSession]:
        return self.store.get_session(session_id)

    async def find_active_by_hash(self, token_hash: str) -> Optional[UserSession]:
        return self.store.find_active_session_by_hash(token_hash, self._now())

    async def find_by_hash(self, token_hash: str) -> Optional[UserSession]:
        return self.store.get_session_by_refresh_hash(token_hash)

    async def list_active_for_user(self, user_id: str) -> List[UserSession]:
        return self.store.list_user_sessions(user_id, active_at=self._now())

    async def rotate(
        self,
        session_id: str,
        new_hash: str,
        new_expiry: datetime,
        *,
        expected_hash: str,
        access_jti: Optional[str] = None,
        access_expires_at: Optional[datetime] = None,
    ) -> bool:
        """Swap the refresh hash only if ``expected_hash`` is still current.

        Returns False when another caller rotated or revoked the row first.
        """
        affected = self.store.rotate_session_token(
            session_id,
            expected_hash,
            new_hash,
            new_expiry,
            access_jti=access_jti,
            access_expires_at=access_expires_at,
            now=self._now(),
        )
        if affected == 0:
            logger.warning("session_rotation_conflict", session_id=session_id)
            return False
        return True

    async def revoke(self, session_id: str, reason: str = "revoked") -> bool:
        session = self.store.get_session(session_id)
        if session is None:
            return False
        affected = self.store.revoke_session(session_id, reason, self._now())
        if affected:
            logger.info("session_revoked", session_id=session_id, reason=reason)
            await self.blacklist_access_tokens([session])
        return affected > 0

    async def revoke_all_for_user(
        self,
        user_id: str,
        reason: str = "revoked",
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        revoked = self.store.revoke_user_sessions(
            user_id, reason, self._now(), except_session_id=except_session_id
        )
        if revoked:
            logger.info(
                "user_sessions_revoked", user_id=user_id, count=len(revoked), reason=reason
            )
            await self.blacklist_access_tokens(revoked)
        return len(revoked)

    async def blacklist_access_tokens(self, sessions: Iterable[UserSession]) -> None:
        if self.blacklist is None:
            return
        for session in sessions:
            if session.access_jti and session.access_expires_at:
                await self.blacklist.add(session.access_jti, session.access_expires_at)

    async def cleanup_expired(self) -> int:
        expired = self.store.expire_sessions(self._now())
        if expired:
            logger.info("expired_sessions_revoked", count=expired)
        return expired
