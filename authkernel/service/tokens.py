from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.blacklist import TokenBlacklist
from authkernel.service.errors import (
    RefreshTokenRevokedError,
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
)
from authkernel.service.passwords import generate_token, hash_token
from authkernel.service.rbac import RbacService
from authkernel.service.sessions import DeviceContext, SessionService
from authkernel.storage.base import Datastore
from authkernel.storage.models import User, UserSession, UserStatus, new_id, utcnow

logger = get_logger(__name__)

REPLAY_REASON = "refresh_token_replay_detected"


@dataclass(frozen=True)
class AccessTokenClaims:
    user_id: str
    email: str
    session_id: str
    jti: str
    issued_at: datetime
    expires_at: datetime
    role_ids: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AccessTokenClaims":
        return cls(
            user_id=payload["sub"],
            email=payload.get("email", ""),
            session_id=payload["sid"],
            jti=payload["jti"],
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            role_ids=list(payload.get("role_ids") or []),
            roles=list(payload.get("roles") or []),
            permissions=list(payload.get("permissions") or []),
        )


@dataclass(frozen=True)
class IssuedAccessToken:
    token: str
    jti: str
    expires_at: datetime
    claims: AccessTokenClaims


@dataclass(frozen=True)
class IssuedRefreshToken:
    token: str
    token_hash: str
    expires_at: datetime


@dataclass(frozen=True)
class IssuedSession:
    session: UserSession
    access: IssuedAccessToken
    refresh: IssuedRefreshToken
    new_device: bool


@dataclass(frozen=True)
class RotationResult:
    session: UserSession
    user: User
    access: IssuedAccessToken
    refresh: IssuedRefreshToken


class TokenService:
    """Signed access tokens, opaque refresh tokens and their rotation.

    Access tokens are HS256 JWTs carrying a snapshot of the user's roles and
    permissions. Revocation is enforced through the session row and the
    blacklist rather than by re-reading RBAC state on every request.
    """

    def __init__(
        self,
        settings: Settings,
        store: Datastore,
        sessions: SessionService,
        rbac: RbacService,
        blacklist: TokenBlacklist,
        *,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.sessions = sessions
        self.rbac = rbac
        self.blacklist = blacklist
        self._now = now or utcnow
        self._secret = settings.jwt_secret.encode("utf-8")
        self._clock_skew_leeway = timedelta(seconds=settings.token_clock_skew_seconds)
        self.maintenance_interval = settings.maintenance_interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._shut_down = False

    # issuance --------------------------------------------------------------

    async def generate_access_token(self, user: User, session_id: str) -> IssuedAccessToken:
        now = self._now()
        expires_at = now + timedelta(seconds=self.settings.access_token_ttl_seconds)
        roles = await self.rbac.get_user_roles(user.id)
        permissions = await self.rbac.get_user_permissions(user.id)
        jti = new_id()
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "email": user.email,
            "role_ids": [r.id for r in roles],
            "roles": [r.name for r in roles],
            "permissions": permissions,
            "sid": session_id,
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "token_type": "access",
        }
        token = self._encode_jwt(payload)
        return IssuedAccessToken(
            token=token,
            jti=jti,
            expires_at=expires_at,
            claims=AccessTokenClaims.from_payload(payload),
        )

    def generate_refresh_token(self) -> IssuedRefreshToken:
        raw = generate_token(48)
        return IssuedRefreshToken(
            token=raw,
            token_hash=hash_token(raw),
            expires_at=self._now() + timedelta(seconds=self.settings.refresh_token_ttl_seconds),
        )

    async def issue_session(self, user: User, device: DeviceContext) -> IssuedSession:
        session_id = new_id()
        refresh = self.generate_refresh_token()
        access = await self.generate_access_token(user, session_id)
        fingerprint = self.sessions.fingerprint_for(device)
        new_device = not await self.sessions.has_seen_fingerprint(user.id, fingerprint)
        session = await self.sessions.create(
            user.id,
            device,
            refresh.token_hash,
            self.settings.refresh_token_ttl_seconds,
            session_id=session_id,
            fingerprint=fingerprint,
            access_jti=access.jti,
            access_expires_at=access.expires_at,
        )
        return IssuedSession(session=session, access=access, refresh=refresh, new_device=new_device)

    # verification ----------------------------------------------------------

    async def verify_access_token(self, token: str) -> AccessTokenClaims:
        payload = self._decode_jwt(token)
        try:
            claims = AccessTokenClaims.from_payload(payload)
        except (KeyError, TypeError, ValueError, OverflowError):
            raise TokenInvalidError(
                "invalid access token", detail={"reason": "malformed_access_token"}
            )
        if await self.blacklist.has(claims.jti):
            raise TokenRevokedError(
                "access token revoked", detail={"reason": "access_token_revoked"}
            )
        session = await self.sessions.get(claims.session_id)
        if session is None or session.user_id != claims.user_id:
            raise TokenInvalidError("invalid access token", detail={"reason": "session_not_found"})
        if session.revoked_at is not None:
            raise TokenRevokedError("session revoked", detail={"reason": "session_revoked"})
        if session.expires_at <= self._now():
            raise TokenExpiredError("session expired", detail={"reason": "session_expired"})
        return claims

    # rotation --------------------------------------------------------------

    async def rotate_refresh_token(self, raw_token: str, device: DeviceContext) -> RotationResult:
        token_hash = hash_token(raw_token)
        session = await self.sessions.find_by_hash(token_hash)
        if session is None:
            rotated = self.store.get_rotated_refresh_token(token_hash)
            if rotated is None:
                raise TokenInvalidError(
                    "invalid refresh token", detail={"reason": "invalid_refresh_token"}
                )
            raise await self._revoke_for_replay(rotated.session_id, rotated.user_id, device)
        if session.revoked_at is not None:
            raise RefreshTokenRevokedError(
                "refresh token revoked",
                detail={
                    "reason": "session_revoked",
                    "session_id": session.id,
                    "user_id": session.user_id,
                },
            )
        if session.expires_at <= self._now():
            raise TokenExpiredError(
                "refresh token expired", detail={"reason": "refresh_token_expired"}
            )
        user = self.store.get_user(session.user_id)
        if user is None:
            raise TokenInvalidError("invalid refresh token", detail={"reason": "user_not_found"})
        if user.status == UserStatus.SUSPENDED:
            await self.sessions.revoke(session.id, "account_inactive")
            raise RefreshTokenRevokedError(
                "refresh token revoked",
                detail={"reason": "account_inactive", "session_id": session.id, "user_id": user.id},
            )

        refresh = self.generate_refresh_token()
        access = await self.generate_access_token(user, session.id)
        rotated_ok = await self.sessions.rotate(
            session.id,
            refresh.token_hash,
            refresh.expires_at,
            expected_hash=token_hash,
            access_jti=access.jti,
            access_expires_at=access.expires_at,
        )
        if not rotated_ok:
            # another caller already spent this token
            raise await self._revoke_for_replay(session.id, session.user_id, device)
        current = await self.sessions.get(session.id)
        logger.info("refresh_token_rotated", session_id=session.id, user_id=user.id)
        return RotationResult(session=current, user=user, access=access, refresh=refresh)

    async def _revoke_for_replay(
        self, session_id: str, user_id: str, device: DeviceContext
    ) -> RefreshTokenRevokedError:
        # a spent token may be in an attacker's hands; end every session of the user
        revoked = await self.sessions.revoke_all_for_user(user_id, REPLAY_REASON)
        logger.error(
            "refresh_token_replay_detected",
            session_id=session_id,
            user_id=user_id,
            revoked_sessions=revoked,
            ip_address=device.ip_address,
        )
        return RefreshTokenRevokedError(
            "refresh token reuse detected",
            detail={
                "reason": REPLAY_REASON,
                "replay": True,
                "session_id": session_id,
                "user_id": user_id,
                "revoked_count": revoked,
            },
        )

    # JWT encoding ----------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        invalid = TokenInvalidError("invalid access token", detail={"reason": "invalid_access_token"})
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenInvalidError(
                "invalid access token", detail={"reason": "malformed_access_token"}
            )
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise invalid
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise invalid
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise invalid
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise invalid
        if not isinstance(payload, dict):
            raise invalid
        if payload.get("iss") != self.settings.jwt_issuer:
            raise invalid
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud or payload.get("token_type") != "access":
            raise invalid
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise invalid
        if exp_ts <= self._now().timestamp() - self._clock_skew_leeway.total_seconds():
            raise TokenExpiredError(
                "access token expired", detail={"reason": "access_token_expired"}
            )
        return payload

    # maintenance -----------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic maintenance task."""
        if self._running:
            logger.warning("token_maintenance_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("token_maintenance_started", interval=self.maintenance_interval)

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.maintenance_interval)
            try:
                await self.run_maintenance()
            except Exception as exc:
                logger.error(
                    "token_maintenance_failed", error_type=type(exc).__name__, error=str(exc)
                )

    async def run_maintenance(self) -> dict[str, int]:
        now = self._now()
        expired = await self.sessions.cleanup_expired()
        purged = self.store.purge_rotated_refresh_tokens(now)
        blacklisted = await self.blacklist.cleanup()
        cached = await self.rbac.prune_cache()
        summary = {
            "expired_sessions": expired,
            "rotated_tokens_purged": purged,
            "blacklist_pruned": blacklisted,
            "permission_cache_pruned": cached,
        }
        logger.debug("token_maintenance_pass", **summary)
        return summary

    async def shutdown(self) -> None:
        """Stop maintenance and release the blacklist and permission cache."""
        if self._shut_down:
            return
        self._shut_down = True
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.blacklist.shutdown()
        await self.rbac.shutdown()
        logger.info("token_service_stopped")
