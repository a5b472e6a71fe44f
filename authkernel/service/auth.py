from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.brute_force import BruteForceProtectionService, BruteForceResult
from authkernel.service.dispatch import BackgroundDispatcher
from authkernel.service.email import EmailSender
from authkernel.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    RefreshTokenRevokedError,
    TokenExpiredError,
    ValidationError,
)
from authkernel.service.passwords import (
    PasswordService,
    generate_token,
    hash_token,
    validate_password_strength,
)
from authkernel.service.rbac import RbacService
from authkernel.service.security_events import SecurityEventService
from authkernel.service.sessions import DeviceContext, SessionService
from authkernel.service.tokens import IssuedAccessToken, IssuedRefreshToken, TokenService
from authkernel.storage.base import Datastore
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    EmailVerificationToken,
    PasswordResetToken,
    User,
    UserStatus,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass(frozen=True)
class RegistrationProfile:
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class UserProfile:
    id: str
    email: str
    first_name: Optional[str]
    last_name: Optional[str]
    phone: Optional[str]
    email_verified: bool
    status: str
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    token_type: str = "Bearer"

    @classmethod
    def from_issued(cls, access: IssuedAccessToken, refresh: IssuedRefreshToken) -> "TokenPair":
        return cls(
            access_token=access.token,
            refresh_token=refresh.token,
            access_token_expires_at=access.expires_at,
            refresh_token_expires_at=refresh.expires_at,
        )


@dataclass(frozen=True)
class RegisterResult:
    user: UserProfile
    verification_expires_at: datetime


@dataclass(frozen=True)
class VerifyEmailResult:
    user: UserProfile


@dataclass(frozen=True)
class LoginResult:
    user: UserProfile
    tokens: TokenPair
    session_id: str


@dataclass(frozen=True)
class RefreshResult:
    tokens: TokenPair
    session_id: str
    user_id: str


@dataclass(frozen=True)
class LogoutResult:
    session_id: str
    revoked: bool


@dataclass(frozen=True)
class LogoutAllResult:
    revoked_count: int


@dataclass(frozen=True)
class AcknowledgedResult:
    """Uniform answer for flows that must not reveal whether an account exists."""

    success: bool = True


@dataclass(frozen=True)
class PasswordUpdateResult:
    revoked_count: int


class AuthService:
    """Identity orchestration: registration, login, refresh, logout, passwords.

    Audit events and outbound email are handed to the dispatcher and never
    awaited on the request path; the primary operation's outcome does not
    depend on them.
    """

    def __init__(
        self,
        settings: Settings,
        store: Datastore,
        *,
        passwords: PasswordService,
        tokens: TokenService,
        sessions: SessionService,
        rbac: RbacService,
        brute_force: BruteForceProtectionService,
        security_events: SecurityEventService,
        email: EmailSender,
        dispatcher: Optional[BackgroundDispatcher] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.passwords = passwords
        self.tokens = tokens
        self.sessions = sessions
        self.rbac = rbac
        self.brute_force = brute_force
        self.security_events = security_events
        self.email = email
        self.dispatcher = dispatcher or BackgroundDispatcher()
        self._now = now or utcnow
        self.logger = logger

    # side channels ---------------------------------------------------------

    def _audit(
        self,
        event_type: str,
        *,
        user_id: Optional[str] = None,
        device: Optional[DeviceContext] = None,
        **payload: Any,
    ) -> None:
        device = device or DeviceContext()
        self.dispatcher.submit(
            f"security_event:{event_type}",
            self.security_events.log(
                event_type,
                user_id=user_id,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
                payload=payload,
            ),
        )

    def _notify(self, name: str, fn: Callable[..., bool], *args: Any) -> None:
        self.dispatcher.submit_call(f"email:{name}", fn, *args)

    async def _profile(self, user: User) -> UserProfile:
        roles = await self.rbac.get_user_roles(user.id)
        permissions = await self.rbac.get_user_permissions(user.id)
        return UserProfile(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            phone=user.phone,
            email_verified=user.email_verified,
            status=UserStatus(user.status).value,
            roles=[r.name for r in roles],
            permissions=permissions,
        )

    def _require_strong_password(self, password: str) -> None:
        issues = validate_password_strength(password or "")
        if issues:
            raise ValidationError(
                "password does not meet policy",
                detail={"field": "password", "issues": issues},
            )

    # registration ----------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        profile: Optional[RegistrationProfile] = None,
        device: Optional[DeviceContext] = None,
    ) -> RegisterResult:
        profile = profile or RegistrationProfile()
        device = device or DeviceContext()
        email = normalize_email(email)
        if not _EMAIL_PATTERN.match(email):
            raise ValidationError("invalid email address", detail={"field": "email"})
        self._require_strong_password(password)
        if self.store.get_user_by_email(email) is not None:
            raise ConflictError("email already registered", detail={"field": "email"})

        password_hash = await self.passwords.hash_password(password)
        now = self._now()
        raw_token = generate_token()
        expires_at = now + timedelta(seconds=self.settings.email_verification_ttl_seconds)
        try:
            with self.store.transaction():
                user = self.store.create_user(
                    email,
                    password_hash,
                    first_name=profile.first_name,
                    last_name=profile.last_name,
                    phone=profile.phone,
                )
                if self.settings.default_role:
                    role = self.store.get_role_by_name(self.settings.default_role)
                    if role is not None:
                        self.store.assign_role(user.id, role.id)
                    else:
                        self.logger.warning(
                            "default_role_missing", role=self.settings.default_role
                        )
                self.store.create_email_verification_token(
                    EmailVerificationToken(
                        id=new_id(),
                        user_id=user.id,
                        token_hash=hash_token(raw_token),
                        expires_at=expires_at,
                        created_at=now,
                    )
                )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail)

        self.logger.info("user_registered", user_id=user.id)
        self._audit("user_registered", user_id=user.id, device=device)
        self._notify(
            "verification",
            self.email.send_verification_email,
            user.email,
            user.first_name,
            raw_token,
            expires_at,
        )
        return RegisterResult(user=await self._profile(user), verification_expires_at=expires_at)

    async def verify_email(
        self, raw_token: str, device: Optional[DeviceContext] = None
    ) -> VerifyEmailResult:
        record = self.store.get_email_verification_token_by_hash(hash_token(raw_token or ""))
        if record is None or record.consumed_at is not None:
            raise NotFoundError(
                "verification token not found", detail={"reason": "verification_token_not_found"}
            )
        now = self._now()
        if record.expires_at <= now:
            raise TokenExpiredError(
                "verification token expired", detail={"reason": "verification_token_expired"}
            )
        with self.store.transaction():
            if self.store.consume_email_verification_token(record.id, now) == 0:
                raise NotFoundError(
                    "verification token not found",
                    detail={"reason": "verification_token_consumed"},
                )
            self.store.mark_email_verified(record.user_id, now)

        user = self.store.get_user(record.user_id)
        self._audit("email_verified", user_id=user.id, device=device)
        self._notify("welcome", self.email.send_welcome_email, user.email, user.first_name)
        return VerifyEmailResult(user=await self._profile(user))

    async def resend_verification(
        self, email: str, device: Optional[DeviceContext] = None
    ) -> AcknowledgedResult:
        user = self.store.get_user_by_email(normalize_email(email))
        if user is None or user.email_verified:
            return AcknowledgedResult()
        now = self._now()
        raw_token = generate_token()
        expires_at = now + timedelta(seconds=self.settings.email_verification_ttl_seconds)
        with self.store.transaction():
            self.store.consume_user_email_verification_tokens(user.id, now)
            self.store.create_email_verification_token(
                EmailVerificationToken(
                    id=new_id(),
                    user_id=user.id,
                    token_hash=hash_token(raw_token),
                    expires_at=expires_at,
                    created_at=now,
                )
            )
        self._audit("email_verification_resent", user_id=user.id, device=device)
        self._notify(
            "verification",
            self.email.send_verification_email,
            user.email,
            user.first_name,
            raw_token,
            expires_at,
        )
        return AcknowledgedResult()

    # login -----------------------------------------------------------------

    async def login(
        self, email: str, password: str, device: Optional[DeviceContext] = None
    ) -> LoginResult:
        device = device or DeviceContext()
        identifier = normalize_email(email)
        await self.brute_force.apply_delay(identifier)

        now = self._now()
        user = self.store.get_user_by_email(identifier) if identifier else None
        if user is not None and user.is_locked(now):
            raise self._blocked_by_lockout(user, device, now)
        if user is not None and user.lockout_until is not None:
            self.store.clear_lockout(user.id, now)
            self.logger.info("account_lockout_expired", user_id=user.id)
            user = self.store.get_user(user.id)

        if user is None:
            await self.passwords.verify_dummy(password or "")
            throttle = await self._record_throttle_failure(identifier, None, device)
            self._audit("login_failed", device=device, reason="user_not_found")
            raise InvalidCredentialsError(
                "invalid credentials",
                detail={"reason": "user_not_found", "captcha_required": throttle.captcha_required},
            )
        if user.status == UserStatus.SUSPENDED:
            self._audit("login_failed", user_id=user.id, device=device, reason="account_inactive")
            raise AccountInactiveError(
                "account inactive", detail={"reason": "account_inactive"}
            )
        if not await self.passwords.verify_password(user.password_hash, password or ""):
            await self._handle_failed_login(user, identifier, device, now)

        # the lock may have been set while the password was being checked
        if not self.store.record_login_success(user.id, now):
            raise self._blocked_by_lockout(self.store.get_user(user.id) or user, device, now)
        if self.passwords.needs_rehash(user.password_hash):
            self.store.update_password(
                user.id, await self.passwords.hash_password(password), now
            )
        await self.brute_force.reset(identifier)
        issued = await self.tokens.issue_session(user, device)

        self.logger.info("login_succeeded", user_id=user.id, session_id=issued.session.id)
        self._audit(
            "login_succeeded",
            user_id=user.id,
            device=device,
            session_id=issued.session.id,
            new_device=issued.new_device,
        )
        if issued.new_device:
            self._audit("new_device_login", user_id=user.id, device=device, session_id=issued.session.id)
            self._notify(
                "new_device",
                self.email.send_new_device_login_alert,
                user.email,
                user.first_name,
                device.summary(),
                device.ip_address,
                now,
            )
        current = self.store.get_user(user.id) or user
        return LoginResult(
            user=await self._profile(current),
            tokens=TokenPair.from_issued(issued.access, issued.refresh),
            session_id=issued.session.id,
        )

    async def _record_throttle_failure(
        self, identifier: str, user_id: Optional[str], device: DeviceContext
    ) -> BruteForceResult:
        result = await self.brute_force.record_failure(identifier)
        if result.captcha_required:
            self._audit(
                "login_captcha_threshold",
                user_id=user_id,
                device=device,
                attempts=result.attempts,
            )
        return result

    def _blocked_by_lockout(
        self, user: User, device: DeviceContext, now: datetime
    ) -> AccountLockedError:
        detail: Dict[str, Any] = {"reason": "account_locked"}
        if user.lockout_until is not None:
            detail["lockout_until"] = user.lockout_until.isoformat()
            detail["retry_after_seconds"] = max(
                1, int((user.lockout_until - now).total_seconds())
            )
        self._audit(
            "login_blocked_locked",
            user_id=user.id,
            device=device,
            lockout_until=detail.get("lockout_until"),
        )
        return AccountLockedError("account locked", detail=detail)

    async def _handle_failed_login(
        self, user: User, identifier: str, device: DeviceContext, now: datetime
    ) -> None:
        failed = self.store.increment_failed_login(user.id, now)
        if failed is None:
            # locked by a concurrent attempt; not counted
            raise self._blocked_by_lockout(self.store.get_user(user.id) or user, device, now)
        lockout_until = None
        if failed >= self.settings.max_login_attempts:
            lockout_until = now + timedelta(seconds=self.settings.lockout_duration_seconds)
            if not self.store.lock_user(user.id, lockout_until, now):
                lockout_until = None

        throttle = await self._record_throttle_failure(identifier, user.id, device)
        self._audit(
            "login_failed",
            user_id=user.id,
            device=device,
            reason="invalid_password",
            failed_attempts=failed,
        )
        detail = {
            "reason": "invalid_password",
            "failed_attempts": failed,
            "captcha_required": throttle.captcha_required,
        }
        if lockout_until is not None:
            self.logger.warning(
                "account_locked", user_id=user.id, lockout_until=lockout_until.isoformat()
            )
            self._audit(
                "account_locked",
                user_id=user.id,
                device=device,
                failed_attempts=failed,
                lockout_until=lockout_until.isoformat(),
            )
            self._notify(
                "lockout",
                self.email.send_account_lockout_notification,
                user.email,
                user.first_name,
                lockout_until,
            )
            detail["locked"] = True
        raise InvalidCredentialsError("invalid credentials", detail=detail)

    # tokens ----------------------------------------------------------------

    async def refresh(
        self, raw_refresh_token: str, device: Optional[DeviceContext] = None
    ) -> RefreshResult:
        device = device or DeviceContext()
        try:
            rotation = await self.tokens.rotate_refresh_token(raw_refresh_token or "", device)
        except RefreshTokenRevokedError as exc:
            if exc.detail.get("replay"):
                self._report_replay(exc.detail, device)
            raise
        self._audit(
            "token_refreshed",
            user_id=rotation.user.id,
            device=device,
            session_id=rotation.session.id,
        )
        return RefreshResult(
            tokens=TokenPair.from_issued(rotation.access, rotation.refresh),
            session_id=rotation.session.id,
            user_id=rotation.user.id,
        )

    def _report_replay(self, detail: dict, device: DeviceContext) -> None:
        user_id = detail.get("user_id")
        session_id = detail.get("session_id")
        self._audit(
            "refresh_token_replay_detected",
            user_id=user_id,
            device=device,
            session_id=session_id,
            revoked_count=detail.get("revoked_count"),
        )
        user = self.store.get_user(user_id) if user_id else None
        if user is not None:
            self._notify(
                "security_alert",
                self.email.send_security_alert,
                user.email,
                user.first_name,
                "refresh_token_replay",
                {"session_id": session_id, "ip_address": device.ip_address or "unknown"},
            )

    async def logout(
        self, session_id: str, user_id: str, device: Optional[DeviceContext] = None
    ) -> LogoutResult:
        session = await self.sessions.get(session_id)
        if session is None or session.user_id != user_id:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        revoked = await self.sessions.revoke(session_id, "logout")
        self._audit("logout", user_id=user_id, device=device, session_id=session_id)
        return LogoutResult(session_id=session_id, revoked=revoked)

    async def logout_all(
        self, user_id: str, device: Optional[DeviceContext] = None
    ) -> LogoutAllResult:
        count = await self.sessions.revoke_all_for_user(user_id, "logout_all")
        self._audit("logout_all", user_id=user_id, device=device, revoked_count=count)
        return LogoutAllResult(revoked_count=count)

    # passwords -------------------------------------------------------------

    async def request_password_reset(
        self, email: str, device: Optional[DeviceContext] = None
    ) -> AcknowledgedResult:
        device = device or DeviceContext()
        user = self.store.get_user_by_email(normalize_email(email))
        if user is None or user.status == UserStatus.SUSPENDED:
            self.logger.info("password_reset_requested_unknown")
            return AcknowledgedResult()
        now = self._now()
        raw_token = generate_token()
        expires_at = now + timedelta(seconds=self.settings.password_reset_ttl_seconds)
        with self.store.transaction():
            self.store.consume_user_password_reset_tokens(user.id, now)
            self.store.create_password_reset_token(
                PasswordResetToken(
                    id=new_id(),
                    user_id=user.id,
                    token_hash=hash_token(raw_token),
                    expires_at=expires_at,
                    requested_ip=device.ip_address,
                    user_agent=device.user_agent,
                    created_at=now,
                )
            )
        self._audit("password_reset_requested", user_id=user.id, device=device)
        self._notify(
            "password_reset",
            self.email.send_password_reset_email,
            user.email,
            user.first_name,
            raw_token,
            expires_at,
        )
        return AcknowledgedResult()

    async def reset_password(
        self, raw_token: str, new_password: str, device: Optional[DeviceContext] = None
    ) -> PasswordUpdateResult:
        self._require_strong_password(new_password)
        record = self.store.get_password_reset_token_by_hash(hash_token(raw_token or ""))
        if record is None or record.consumed_at is not None:
            raise NotFoundError("reset token not found", detail={"reason": "reset_token_not_found"})
        if record.expires_at <= self._now():
            raise TokenExpiredError("reset token expired", detail={"reason": "reset_token_expired"})
        user = self.store.get_user(record.user_id)
        if user is None:
            raise NotFoundError("reset token not found", detail={"reason": "user_not_found"})

        password_hash = await self.passwords.hash_password(new_password)
        now = self._now()
        with self.store.transaction():
            if self.store.consume_password_reset_token(record.id, now) == 0:
                raise NotFoundError(
                    "reset token not found", detail={"reason": "reset_token_consumed"}
                )
            self.store.update_password(user.id, password_hash, now)
            self.store.clear_lockout(user.id, now)
            revoked = self.store.revoke_user_sessions(user.id, "password_reset", now)
        await self.sessions.blacklist_access_tokens(revoked)
        await self.brute_force.reset(user.email)

        self.logger.info("password_reset_completed", user_id=user.id, revoked=len(revoked))
        self._audit(
            "password_reset_completed",
            user_id=user.id,
            device=device,
            revoked_sessions=len(revoked),
        )
        self._notify(
            "password_changed",
            self.email.send_password_changed_notification,
            user.email,
            user.first_name,
        )
        return PasswordUpdateResult(revoked_count=len(revoked))

    async def change_password(
        self,
        user_id: str,
        current_session_id: Optional[str],
        current_password: str,
        new_password: str,
        device: Optional[DeviceContext] = None,
    ) -> PasswordUpdateResult:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        if not await self.passwords.verify_password(user.password_hash, current_password or ""):
            self._audit(
                "password_change_failed", user_id=user_id, device=device, reason="current_password_incorrect"
            )
            raise InvalidCredentialsError(
                "current password incorrect", detail={"reason": "current_password_incorrect"}
            )
        self._require_strong_password(new_password)
        if new_password == current_password:
            raise ValidationError(
                "new password must differ from the current one", detail={"field": "new_password"}
            )

        password_hash = await self.passwords.hash_password(new_password)
        now = self._now()
        with self.store.transaction():
            self.store.update_password(user.id, password_hash, now)
            revoked = self.store.revoke_user_sessions(
                user.id, "password_changed", now, except_session_id=current_session_id
            )
        await self.sessions.blacklist_access_tokens(revoked)

        self._audit(
            "password_changed",
            user_id=user.id,
            device=device,
            revoked_sessions=len(revoked),
        )
        self._notify(
            "password_changed",
            self.email.send_password_changed_notification,
            user.email,
            user.first_name,
        )
        return PasswordUpdateResult(revoked_count=len(revoked))

    # account administration ------------------------------------------------

    async def get_profile(self, user_id: str) -> UserProfile:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return await self._profile(user)

    async def unlock_account(self, user_id: str, actor_id: str) -> UserProfile:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.store.clear_lockout(user.id, self._now())
        await self.brute_force.reset(user.email)
        self._audit("account_unlock_manual", user_id=user.id, actor_id=actor_id)
        return await self._profile(self.store.get_user(user.id))

    async def shutdown(self) -> None:
        await self.dispatcher.drain()
        await self.tokens.shutdown()
