from __future__ import annotations

from datetime import datetime
from typing import ContextManager, List, Optional, Protocol

from authkernel.storage.models import (
    EmailVerificationToken,
    PasswordResetToken,
    Permission,
    Role,
    RotatedRefreshToken,
    SecurityEvent,
    User,
    UserSession,
    UserStatus,
)


class Datastore(Protocol):
    """Persistence contract shared by the memory and Postgres stores.

    Conditional writes report how many rows they touched instead of raising,
    so a caller that loses a race sees ``0``/``False`` and decides what that
    means (rotation replay, double consumption, already locked).
    """

    def transaction(self) -> ContextManager[None]: ...

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_password(self, user_id: str, password_hash: str, now: datetime) -> bool: ...

    def mark_email_verified(self, user_id: str, now: datetime) -> bool: ...

    def increment_failed_login(self, user_id: str, now: datetime) -> Optional[int]: ...

    def lock_user(self, user_id: str, until: datetime, now: datetime) -> bool: ...

    def clear_lockout(self, user_id: str, now: datetime) -> bool: ...

    def record_login_success(self, user_id: str, now: datetime) -> bool: ...

    def set_user_status(self, user_id: str, status: UserStatus, now: datetime) -> bool: ...

    # sessions
    def create_session(self, session: UserSession) -> UserSession: ...

    def get_session(self, session_id: str) -> Optional[UserSession]: ...

    def get_session_by_refresh_hash(self, token_hash: str) -> Optional[UserSession]: ...

    def find_active_session_by_hash(
        self, token_hash: str, now: datetime
    ) -> Optional[UserSession]: ...

    def list_user_sessions(
        self, user_id: str, *, active_at: Optional[datetime] = None
    ) -> List[UserSession]: ...

    def has_session_fingerprint(self, user_id: str, fingerprint: str) -> bool: ...

    def rotate_session_token(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        expires_at: datetime,
        *,
        access_jti: Optional[str],
        access_expires_at: Optional[datetime],
        now: datetime,
    ) -> int: ...

    def revoke_session(self, session_id: str, reason: str, now: datetime) -> int: ...

    def revoke_user_sessions(
        self,
        user_id: str,
        reason: str,
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> List[UserSession]: ...

    def expire_sessions(self, now: datetime) -> int: ...

    def get_rotated_refresh_token(self, token_hash: str) -> Optional[RotatedRefreshToken]: ...

    def purge_rotated_refresh_tokens(self, now: datetime) -> int: ...

    # single-use tokens
    def create_email_verification_token(
        self, token: EmailVerificationToken
    ) -> EmailVerificationToken: ...

    def get_email_verification_token_by_hash(
        self, token_hash: str
    ) -> Optional[EmailVerificationToken]: ...

    def consume_email_verification_token(self, token_id: str, now: datetime) -> int: ...

    def consume_user_email_verification_tokens(self, user_id: str, now: datetime) -> int: ...

    def create_password_reset_token(self, token: PasswordResetToken) -> PasswordResetToken: ...

    def get_password_reset_token_by_hash(
        self, token_hash: str
    ) -> Optional[PasswordResetToken]: ...

    def consume_password_reset_token(self, token_id: str, now: datetime) -> int: ...

    def consume_user_password_reset_tokens(self, user_id: str, now: datetime) -> int: ...

    # rbac
    def create_role(self, name: str, description: Optional[str] = None) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def list_user_roles(self, user_id: str) -> List[Role]: ...

    def assign_role(self, user_id: str, role_id: str) -> bool: ...

    def unassign_role(self, user_id: str, role_id: str) -> bool: ...

    def create_permission(self, key: str, description: Optional[str] = None) -> Permission: ...

    def get_permission_by_key(self, key: str) -> Optional[Permission]: ...

    def grant_user_permission(self, user_id: str, permission_id: str) -> bool: ...

    def revoke_user_permission(self, user_id: str, permission_id: str) -> bool: ...

    def grant_role_permission(self, role_id: str, permission_id: str) -> bool: ...

    def list_user_permission_keys(self, user_id: str) -> List[str]: ...

    def list_role_permission_keys(self, role_ids: List[str]) -> List[str]: ...

    # audit
    def append_security_event(self, event: SecurityEvent) -> SecurityEvent: ...

    def list_security_events(
        self,
        *,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]: ...
