from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Set

from authkernel.logging import get_logger
from authkernel.storage.errors import ConstraintViolation
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
    new_id,
)

logger = get_logger(__name__)

_STATE_ATTRS = (
    "users",
    "users_by_email",
    "sessions",
    "sessions_by_hash",
    "rotated_tokens",
    "email_tokens",
    "email_tokens_by_hash",
    "reset_tokens",
    "reset_tokens_by_hash",
    "roles",
    "roles_by_name",
    "permissions",
    "permissions_by_key",
    "user_roles",
    "user_permissions",
    "role_permissions",
    "security_events",
)


class MemoryStore:
    """In-process datastore used for tests and single-node development.

    Every read returns a copy so callers never mutate shared state outside the
    lock. ``transaction()`` holds the lock for the whole block and restores a
    snapshot if the block raises.
    """

    def __init__(self) -> None:
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.users: Dict[str, User] = {}
        self.users_by_email: Dict[str, str] = {}
        self.sessions: Dict[str, UserSession] = {}
        self.sessions_by_hash: Dict[str, str] = {}
        self.rotated_tokens: Dict[str, RotatedRefreshToken] = {}
        self.email_tokens: Dict[str, EmailVerificationToken] = {}
        self.email_tokens_by_hash: Dict[str, str] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.reset_tokens_by_hash: Dict[str, str] = {}
        self.roles: Dict[str, Role] = {}
        self.roles_by_name: Dict[str, str] = {}
        self.permissions: Dict[str, Permission] = {}
        self.permissions_by_key: Dict[str, str] = {}
        self.user_roles: Dict[str, Set[str]] = {}
        self.user_permissions: Dict[str, Set[str]] = {}
        self.role_permissions: Dict[str, Set[str]] = {}
        self.security_events: List[SecurityEvent] = []

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._data_lock:
            snapshot = self._snapshot() if self._tx_depth == 0 else None
            self._tx_depth += 1
            try:
                yield
            except BaseException:
                if snapshot is not None:
                    self._restore(snapshot)
                    logger.debug("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth -= 1

    def _snapshot(self) -> Dict[str, Any]:
        return {name: copy.deepcopy(getattr(self, name)) for name in _STATE_ATTRS}

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    # users -----------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if email in self.users_by_email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=email,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
            )
            self.users[user.id] = user
            self.users_by_email[email] = user.id
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self.users_by_email.get(email)
            return self.get_user(user_id) if user_id else None

    def update_password(self, user_id: str, password_hash: str, now: datetime) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            user.updated_at = now
            return True

    def mark_email_verified(self, user_id: str, now: datetime) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.email_verified:
                return False
            user.email_verified = True
            user.email_verified_at = now
            user.updated_at = now
            return True

    def increment_failed_login(self, user_id: str, now: datetime) -> Optional[int]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.is_locked(now):
                return None
            user.failed_login_count += 1
            user.updated_at = now
            return user.failed_login_count

    def lock_user(self, user_id: str, until: datetime, now: datetime) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.is_locked(now):
                return False
            user.lockout_until = until
            user.status = UserStatus.LOCKED
            user.updated_at = now
            return True

    def clear_lockout(self, user_id: str, now: datetime) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.failed_login_count = 0
            user.lockout_until = None
            if user.status == UserStatus.LOCKED:
                user.status = UserStatus.ACTIVE
            user.updated_at = now
            return True

    def record_login_success(self, user_id: str, now: datetime) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.is_locked(now):
                return False
            user.failed_login_count = 0
            user.lockout_until = None
            if user.status == UserStatus.LOCKED:
                user.status = UserStatus.ACTIVE
            user.last_login_at = now
            user.updated_at = now
            return True

    def set_user_status(self, user_id: str, status: UserStatus, now: datetime) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.status = status
            user.updated_at = now
            return True

    # sessions --------------------------------------------------------------

    def create_session(self, session: UserSession) -> UserSession:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for session", {"user_id": session.user_id}
                )
            if session.refresh_token_hash in self.sessions_by_hash:
                raise ConstraintViolation(
                    "refresh token hash already bound", {"field": "refresh_token_hash"}
                )
            stored = replace(session, device=dict(session.device))
            self.sessions[stored.id] = stored
            self.sessions_by_hash[stored.refresh_token_hash] = stored.id
            return replace(stored)

    def get_session(self, session_id: str) -> Optional[UserSession]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return replace(session) if session else None

    def get_session_by_refresh_hash(self, token_hash: str) -> Optional[UserSession]:
        with self._data_lock:
            session_id = self.sessions_by_hash.get(token_hash)
            return self.get_session(session_id) if session_id else None

    def find_active_session_by_hash(
        self, token_hash: str, now: datetime
    ) -> Optional[UserSession]:
        session = self.get_session_by_refresh_hash(token_hash)
        if session and session.is_active(now):
            return session
        return None

    def list_user_sessions(
        self, user_id: str, *, active_at: Optional[datetime] = None
    ) -> List[UserSession]:
        with self._data_lock:
            sessions = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and (active_at is None or s.is_active(active_at))
            ]
        return sorted(sessions, key=lambda s: s.created_at)

    def has_session_fingerprint(self, user_id: str, fingerprint: str) -> bool:
        with self._data_lock:
            return any(
                s.user_id == user_id and s.fingerprint == fingerprint
                for s in self.sessions.values()
            )

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
    ) -> int:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if (
                not session
                or session.refresh_token_hash != expected_hash
                or session.revoked_at is not None
            ):
                return 0
            self.rotated_tokens[expected_hash] = RotatedRefreshToken(
                token_hash=expected_hash,
                session_id=session.id,
                user_id=session.user_id,
                rotated_at=now,
                expires_at=session.expires_at,
            )
            self.sessions_by_hash.pop(expected_hash, None)
            self.sessions_by_hash[new_hash] = session.id
            session.refresh_token_hash = new_hash
            session.expires_at = expires_at
            session.access_jti = access_jti
            session.access_expires_at = access_expires_at
            session.last_rotated_at = now
            session.updated_at = now
            return 1

    def revoke_session(self, session_id: str, reason: str, now: datetime) -> int:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or session.revoked_at is not None:
                return 0
            session.revoked_at = now
            session.revoked_reason = reason
            session.updated_at = now
            return 1

    def revoke_user_sessions(
        self,
        user_id: str,
        reason: str,
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> List[UserSession]:
        revoked: List[UserSession] = []
        with self._data_lock:
            for session in self.sessions.values():
                if session.user_id != user_id or session.revoked_at is not None:
                    continue
                if except_session_id and session.id == except_session_id:
                    continue
                session.revoked_at = now
                session.revoked_reason = reason
                session.updated_at = now
                revoked.append(replace(session))
        return revoked

    def expire_sessions(self, now: datetime) -> int:
        count = 0
        with self._data_lock:
            for session in self.sessions.values():
                if session.revoked_at is None and session.expires_at <= now:
                    session.revoked_at = now
                    session.revoked_reason = "expired"
                    session.updated_at = now
                    count += 1
        return count

    def get_rotated_refresh_token(self, token_hash: str) -> Optional[RotatedRefreshToken]:
        with self._data_lock:
            record = self.rotated_tokens.get(token_hash)
            return replace(record) if record else None

    def purge_rotated_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [h for h, r in self.rotated_tokens.items() if r.expires_at <= now]
            for token_hash in stale:
                self.rotated_tokens.pop(token_hash, None)
            return len(stale)

    # single-use tokens -----------------------------------------------------

    def create_email_verification_token(
        self, token: EmailVerificationToken
    ) -> EmailVerificationToken:
        with self._data_lock:
            if token.token_hash in self.email_tokens_by_hash:
                raise ConstraintViolation("token hash exists", {"field": "token_hash"})
            self.email_tokens[token.id] = replace(token)
            self.email_tokens_by_hash[token.token_hash] = token.id
            return replace(token)

    def get_email_verification_token_by_hash(
        self, token_hash: str
    ) -> Optional[EmailVerificationToken]:
        with self._data_lock:
            token_id = self.email_tokens_by_hash.get(token_hash)
            token = self.email_tokens.get(token_id) if token_id else None
            return replace(token) if token else None

    def consume_email_verification_token(self, token_id: str, now: datetime) -> int:
        with self._data_lock:
            token = self.email_tokens.get(token_id)
            if not token or token.consumed_at is not None:
                return 0
            token.consumed_at = now
            return 1

    def consume_user_email_verification_tokens(self, user_id: str, now: datetime) -> int:
        count = 0
        with self._data_lock:
            for token in self.email_tokens.values():
                if token.user_id == user_id and token.consumed_at is None:
                    token.consumed_at = now
                    count += 1
        return count

    def create_password_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._data_lock:
            if token.token_hash in self.reset_tokens_by_hash:
                raise ConstraintViolation("token hash exists", {"field": "token_hash"})
            self.reset_tokens[token.id] = replace(token)
            self.reset_tokens_by_hash[token.token_hash] = token.id
            return replace(token)

    def get_password_reset_token_by_hash(
        self, token_hash: str
    ) -> Optional[PasswordResetToken]:
        with self._data_lock:
            token_id = self.reset_tokens_by_hash.get(token_hash)
            token = self.reset_tokens.get(token_id) if token_id else None
            return replace(token) if token else None

    def consume_password_reset_token(self, token_id: str, now: datetime) -> int:
        with self._data_lock:
            token = self.reset_tokens.get(token_id)
            if not token or token.consumed_at is not None:
                return 0
            token.consumed_at = now
            return 1

    def consume_user_password_reset_tokens(self, user_id: str, now: datetime) -> int:
        count = 0
        with self._data_lock:
            for token in self.reset_tokens.values():
                if token.user_id == user_id and token.consumed_at is None:
                    token.consumed_at = now
                    count += 1
        return count

    # rbac ------------------------------------------------------------------

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        with self._data_lock:
            if name.lower() in self.roles_by_name:
                raise ConstraintViolation("role already exists", {"field": "name"})
            role = Role(id=new_id(), name=name, description=description)
            self.roles[role.id] = role
            self.roles_by_name[name.lower()] = role.id
            return replace(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role_id = self.roles_by_name.get(name.lower())
            return self.get_role(role_id) if role_id else None

    def list_user_roles(self, user_id: str) -> List[Role]:
        with self._data_lock:
            return [
                replace(self.roles[role_id])
                for role_id in self.user_roles.get(user_id, set())
                if role_id in self.roles
            ]

    def assign_role(self, user_id: str, role_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users or role_id not in self.roles:
                raise ConstraintViolation(
                    "unknown user or role", {"user_id": user_id, "role_id": role_id}
                )
            assigned = self.user_roles.setdefault(user_id, set())
            if role_id in assigned:
                return False
            assigned.add(role_id)
            return True

    def unassign_role(self, user_id: str, role_id: str) -> bool:
        with self._data_lock:
            assigned = self.user_roles.get(user_id, set())
            if role_id not in assigned:
                return False
            assigned.discard(role_id)
            return True

    def create_permission(self, key: str, description: Optional[str] = None) -> Permission:
        with self._data_lock:
            if key in self.permissions_by_key:
                raise ConstraintViolation("permission already exists", {"field": "key"})
            permission = Permission(id=new_id(), key=key, description=description)
            self.permissions[permission.id] = permission
            self.permissions_by_key[key] = permission.id
            return replace(permission)

    def get_permission_by_key(self, key: str) -> Optional[Permission]:
        with self._data_lock:
            permission_id = self.permissions_by_key.get(key)
            permission = self.permissions.get(permission_id) if permission_id else None
            return replace(permission) if permission else None

    def grant_user_permission(self, user_id: str, permission_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users or permission_id not in self.permissions:
                raise ConstraintViolation(
                    "unknown user or permission",
                    {"user_id": user_id, "permission_id": permission_id},
                )
            granted = self.user_permissions.setdefault(user_id, set())
            if permission_id in granted:
                return False
            granted.add(permission_id)
            return True

    def revoke_user_permission(self, user_id: str, permission_id: str) -> bool:
        with self._data_lock:
            granted = self.user_permissions.get(user_id, set())
            if permission_id not in granted:
                return False
            granted.discard(permission_id)
            return True

    def grant_role_permission(self, role_id: str, permission_id: str) -> bool:
        with self._data_lock:
            if role_id not in self.roles or permission_id not in self.permissions:
                raise ConstraintViolation(
                    "unknown role or permission",
                    {"role_id": role_id, "permission_id": permission_id},
                )
            granted = self.role_permissions.setdefault(role_id, set())
            if permission_id in granted:
                return False
            granted.add(permission_id)
            return True

    def list_user_permission_keys(self, user_id: str) -> List[str]:
        with self._data_lock:
            return sorted(
                self.permissions[pid].key
                for pid in self.user_permissions.get(user_id, set())
                if pid in self.permissions
            )

    def list_role_permission_keys(self, role_ids: List[str]) -> List[str]:
        with self._data_lock:
            keys = {
                self.permissions[pid].key
                for role_id in role_ids
                for pid in self.role_permissions.get(role_id, set())
                if pid in self.permissions
            }
        return sorted(keys)

    # audit -----------------------------------------------------------------

    def append_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._data_lock:
            stored = replace(event, payload=dict(event.payload))
            self.security_events.append(stored)
            return replace(stored)

    def list_security_events(
        self,
        *,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]:
        with self._data_lock:
            events = [
                replace(e)
                for e in self.security_events
                if (user_id is None or e.user_id == user_id)
                and (event_type is None or e.type == event_type)
            ]
        if limit is not None:
            events = events[-limit:]
        return events
