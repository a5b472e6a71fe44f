from __future__ import annotations

import json
from contextlib import contextmanager, nullcontext
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authkernel.logging import get_logger
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    EmailVerificationToken,
    PasswordResetToken,
    Permission,
    Role,
    RotatedRefreshToken,
    SecurityEvent,
    SecuritySeverity,
    User,
    UserSession,
    UserStatus,
    new_id,
    utcnow,
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS auth_user (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    first_name TEXT,
    last_name TEXT,
    phone TEXT,
    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    email_verified_at TIMESTAMPTZ,
    failed_login_count INTEGER NOT NULL DEFAULT 0,
    lockout_until TIMESTAMPTZ,
    last_login_at TIMESTAMPTZ,
    status TEXT NOT NULL DEFAULT 'active',
    two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    two_factor_secret TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS auth_role (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS auth_role_name_idx ON auth_role (lower(name));
CREATE TABLE IF NOT EXISTS auth_permission (
    id TEXT PRIMARY KEY,
    key TEXT NOT NULL UNIQUE,
    description TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS auth_user_role (
    user_id TEXT NOT NULL REFERENCES auth_user(id),
    role_id TEXT NOT NULL REFERENCES auth_role(id),
    PRIMARY KEY (user_id, role_id)
);
CREATE TABLE IF NOT EXISTS auth_user_permission (
    user_id TEXT NOT NULL REFERENCES auth_user(id),
    permission_id TEXT NOT NULL REFERENCES auth_permission(id),
    PRIMARY KEY (user_id, permission_id)
);
CREATE TABLE IF NOT EXISTS auth_role_permission (
    role_id TEXT NOT NULL REFERENCES auth_role(id),
    permission_id TEXT NOT NULL REFERENCES auth_permission(id),
    PRIMARY KEY (role_id, permission_id)
);
CREATE TABLE IF NOT EXISTS auth_session (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES auth_user(id),
    refresh_token_hash TEXT NOT NULL UNIQUE,
    expires_at TIMESTAMPTZ NOT NULL,
    fingerprint TEXT,
    ip_address TEXT,
    user_agent TEXT,
    device JSONB,
    access_jti TEXT,
    access_expires_at TIMESTAMPTZ,
    revoked_at TIMESTAMPTZ,
    revoked_reason TEXT,
    last_rotated_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id);
CREATE TABLE IF NOT EXISTS auth_rotated_refresh_token (
    token_hash TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES auth_session(id),
    user_id TEXT NOT NULL,
    rotated_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL
);
CREATE TABLE IF NOT EXISTS auth_email_verification_token (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES auth_user(id),
    token_hash TEXT NOT NULL UNIQUE,
    expires_at TIMESTAMPTZ NOT NULL,
    consumed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS auth_password_reset_token (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES auth_user(id),
    token_hash TEXT NOT NULL UNIQUE,
    expires_at TIMESTAMPTZ NOT NULL,
    consumed_at TIMESTAMPTZ,
    requested_ip TEXT,
    user_agent TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS auth_security_event (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    severity TEXT NOT NULL,
    user_id TEXT,
    ip_address TEXT,
    user_agent TEXT,
    payload JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS auth_security_event_user_idx ON auth_security_event (user_id);
"""

_SESSION_COLUMNS = (
    "id, user_id, refresh_token_hash, expires_at, fingerprint, ip_address, user_agent, "
    "device, access_jti, access_expires_at, revoked_at, revoked_reason, last_rotated_at, "
    "created_at, updated_at"
)


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        password_hash=row["password_hash"],
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        phone=row.get("phone"),
        email_verified=bool(row.get("email_verified")),
        email_verified_at=row.get("email_verified_at"),
        failed_login_count=row.get("failed_login_count") or 0,
        lockout_until=row.get("lockout_until"),
        last_login_at=row.get("last_login_at"),
        status=UserStatus(row.get("status") or UserStatus.ACTIVE.value),
        two_factor_enabled=bool(row.get("two_factor_enabled")),
        two_factor_secret=row.get("two_factor_secret"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _session_from_row(row: Dict[str, Any]) -> UserSession:
    device = row.get("device")
    if isinstance(device, str):
        device = json.loads(device)
    return UserSession(
        id=row["id"],
        user_id=row["user_id"],
        refresh_token_hash=row["refresh_token_hash"],
        expires_at=row["expires_at"],
        fingerprint=row.get("fingerprint"),
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        device=device or {},
        access_jti=row.get("access_jti"),
        access_expires_at=row.get("access_expires_at"),
        revoked_at=row.get("revoked_at"),
        revoked_reason=row.get("revoked_reason"),
        last_rotated_at=row.get("last_rotated_at"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _event_from_row(row: Dict[str, Any]) -> SecurityEvent:
    payload = row.get("payload")
    if isinstance(payload, str):
        payload = json.loads(payload)
    return SecurityEvent(
        id=row["id"],
        type=row["type"],
        severity=SecuritySeverity(row.get("severity") or SecuritySeverity.INFO.value),
        user_id=row.get("user_id"),
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        payload=payload or {},
        created_at=row["created_at"],
    )


class PostgresStore:
    """Thin Postgres-backed persistence layer.

    ``transaction()`` binds one pooled connection to the current context so
    every call inside the block shares it; the pool commits on a clean exit
    and rolls back when the block raises.
    """

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._tx_conn: ContextVar[Any] = ContextVar(f"authkernel_tx_{id(self)}", default=None)
        if ensure_schema:
            self._ensure_schema()

    def _connect(self):
        conn = self._tx_conn.get()
        if conn is not None:
            return nullcontext(conn)
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(SCHEMA_SQL)
        self.logger.info("postgres_schema_ready")

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._tx_conn.get() is not None:
            yield
            return
        with self.pool.connection() as conn:
            token = self._tx_conn.set(conn)
            try:
                yield
            finally:
                self._tx_conn.reset(token)

    def close(self) -> None:
        self.pool.close()

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
        user_id = new_id()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO auth_user (id, email, password_hash, first_name, last_name, phone) "
                    "VALUES (%s, %s, %s, %s, %s, %s) RETURNING *",
                    (user_id, email, password_hash, first_name, last_name, phone),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_user WHERE id = %s", (user_id,)).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_user WHERE email = %s", (email,)).fetchone()
        return _user_from_row(row) if row else None

    def update_password(self, user_id: str, password_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_user SET password_hash = %s, updated_at = %s WHERE id = %s",
                (password_hash, now, user_id),
            )
            return cur.rowcount > 0

    def mark_email_verified(self, user_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_user SET email_verified = TRUE, email_verified_at = %s, updated_at = %s "
                "WHERE id = %s AND email_verified = FALSE",
                (now, now, user_id),
            )
            return cur.rowcount > 0

    def increment_failed_login(self, user_id: str, now: datetime) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_user SET failed_login_count = failed_login_count + 1, updated_at = %s "
                "WHERE id = %s AND (lockout_until IS NULL OR lockout_until <= %s) "
                "RETURNING failed_login_count",
                (now, user_id, now),
            ).fetchone()
        return row["failed_login_count"] if row else None

    def lock_user(self, user_id: str, until: datetime, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_user SET lockout_until = %s, status = %s, updated_at = %s "
                "WHERE id = %s AND (lockout_until IS NULL OR lockout_until <= %s)",
                (until, UserStatus.LOCKED.value, now, user_id, now),
            )
            return cur.rowcount > 0

    def clear_lockout(self, user_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_user SET failed_login_count = 0, lockout_until = NULL, "
                "status = CASE WHEN status = %s THEN %s ELSE status END, updated_at = %s "
                "WHERE id = %s",
                (UserStatus.LOCKED.value, UserStatus.ACTIVE.value, now, user_id),
            )
            return cur.rowcount > 0

    def record_login_success(self, user_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_user SET failed_login_count = 0, lockout_until = NULL, "
                "status = CASE WHEN status = %s THEN %s ELSE status END, "
                "last_login_at = %s, updated_at = %s "
                "WHERE id = %s AND (lockout_until IS NULL OR lockout_until <= %s)",
                (UserStatus.LOCKED.value, UserStatus.ACTIVE.value, now, now, user_id, now),
            )
            return cur.rowcount > 0

    def set_user_status(self, user_id: str, status: UserStatus, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_user SET status = %s, updated_at = %s WHERE id = %s",
                (UserStatus(status).value, now, user_id),
            )
            return cur.rowcount > 0

    # sessions --------------------------------------------------------------

    def create_session(self, session: UserSession) -> UserSession:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"INSERT INTO auth_session ({_SESSION_COLUMNS}) VALUES "
                    "(%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s) "
                    f"RETURNING {_SESSION_COLUMNS}",
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token_hash,
                        session.expires_at,
                        session.fingerprint,
                        session.ip_address,
                        session.user_agent,
                        json.dumps(session.device) if session.device else None,
                        session.access_jti,
                        session.access_expires_at,
                        session.revoked_at,
                        session.revoked_reason,
                        session.last_rotated_at,
                        session.created_at,
                        session.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token hash already bound", {"field": "refresh_token_hash"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for session", {"user_id": session.user_id}
            )
        return _session_from_row(row)

    def get_session(self, session_id: str) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return _session_from_row(row) if row else None

    def get_session_by_refresh_hash(self, token_hash: str) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE refresh_token_hash = %s",
                (token_hash,),
            ).fetchone()
        return _session_from_row(row) if row else None

    def find_active_session_by_hash(
        self, token_hash: str, now: datetime
    ) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session "
                "WHERE refresh_token_hash = %s AND revoked_at IS NULL AND expires_at > %s",
                (token_hash, now),
            ).fetchone()
        return _session_from_row(row) if row else None

    def list_user_sessions(
        self, user_id: str, *, active_at: Optional[datetime] = None
    ) -> List[UserSession]:
        query = f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE user_id = %s"
        params: List[Any] = [user_id]
        if active_at is not None:
            query += " AND revoked_at IS NULL AND expires_at > %s"
            params.append(active_at)
        query += " ORDER BY created_at"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_session_from_row(row) for row in rows]

    def has_session_fingerprint(self, user_id: str, fingerprint: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM auth_session WHERE user_id = %s AND fingerprint = %s LIMIT 1",
                (user_id, fingerprint),
            ).fetchone()
        return row is not None

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
        with self.transaction():
            with self._connect() as conn:
                # the rotated record keeps the expiry the old token was issued with
                row = conn.execute(
                    "UPDATE auth_session AS s SET refresh_token_hash = %s, expires_at = %s, "
                    "access_jti = %s, access_expires_at = %s, last_rotated_at = %s, updated_at = %s "
                    "FROM (SELECT id, expires_at FROM auth_session "
                    "WHERE id = %s AND refresh_token_hash = %s AND revoked_at IS NULL FOR UPDATE) AS prev "
                    "WHERE s.id = prev.id "
                    "RETURNING s.user_id, prev.expires_at AS previous_expires_at",
                    (
                        new_hash,
                        expires_at,
                        access_jti,
                        access_expires_at,
                        now,
                        now,
                        session_id,
                        expected_hash,
                    ),
                ).fetchone()
                if not row:
                    return 0
                conn.execute(
                    "INSERT INTO auth_rotated_refresh_token "
                    "(token_hash, session_id, user_id, rotated_at, expires_at) "
                    "VALUES (%s, %s, %s, %s, %s) ON CONFLICT (token_hash) DO NOTHING",
                    (expected_hash, session_id, row["user_id"], now, row["previous_expires_at"]),
                )
        return 1

    def revoke_session(self, session_id: str, reason: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET revoked_at = %s, revoked_reason = %s, updated_at = %s "
                "WHERE id = %s AND revoked_at IS NULL",
                (now, reason, now, session_id),
            )
            return cur.rowcount

    def revoke_user_sessions(
        self,
        user_id: str,
        reason: str,
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> List[UserSession]:
        with self._connect() as conn:
            rows = conn.execute(
                "UPDATE auth_session SET revoked_at = %s, revoked_reason = %s, updated_at = %s "
                "WHERE user_id = %s AND revoked_at IS NULL "
                "AND (%s::text IS NULL OR id <> %s) "
                f"RETURNING {_SESSION_COLUMNS}",
                (now, reason, now, user_id, except_session_id, except_session_id),
            ).fetchall()
        return [_session_from_row(row) for row in rows]

    def expire_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET revoked_at = %s, revoked_reason = 'expired', updated_at = %s "
                "WHERE revoked_at IS NULL AND expires_at <= %s",
                (now, now, now),
            )
            return cur.rowcount

    def get_rotated_refresh_token(self, token_hash: str) -> Optional[RotatedRefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_rotated_refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        if not row:
            return None
        return RotatedRefreshToken(
            token_hash=row["token_hash"],
            session_id=row["session_id"],
            user_id=row["user_id"],
            rotated_at=row["rotated_at"],
            expires_at=row["expires_at"],
        )

    def purge_rotated_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_rotated_refresh_token WHERE expires_at <= %s", (now,)
            )
            return cur.rowcount

    # single-use tokens -----------------------------------------------------

    def create_email_verification_token(
        self, token: EmailVerificationToken
    ) -> EmailVerificationToken:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO auth_email_verification_token "
                "(id, user_id, token_hash, expires_at, consumed_at, created_at) "
                "VALUES (%s, %s, %s, %s, %s, %s)",
                (
                    token.id,
                    token.user_id,
                    token.token_hash,
                    token.expires_at,
                    token.consumed_at,
                    token.created_at,
                ),
            )
        return token

    def get_email_verification_token_by_hash(
        self, token_hash: str
    ) -> Optional[EmailVerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_email_verification_token WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return EmailVerificationToken(**row) if row else None

    def consume_email_verification_token(self, token_id: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_email_verification_token SET consumed_at = %s "
                "WHERE id = %s AND consumed_at IS NULL",
                (now, token_id),
            )
            return cur.rowcount

    def consume_user_email_verification_tokens(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_email_verification_token SET consumed_at = %s "
                "WHERE user_id = %s AND consumed_at IS NULL",
                (now, user_id),
            )
            return cur.rowcount

    def create_password_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO auth_password_reset_token "
                "(id, user_id, token_hash, expires_at, consumed_at, requested_ip, user_agent, created_at) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s)",
                (
                    token.id,
                    token.user_id,
                    token.token_hash,
                    token.expires_at,
                    token.consumed_at,
                    token.requested_ip,
                    token.user_agent,
                    token.created_at,
                ),
            )
        return token

    def get_password_reset_token_by_hash(
        self, token_hash: str
    ) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_password_reset_token WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return PasswordResetToken(**row) if row else None

    def consume_password_reset_token(self, token_id: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_password_reset_token SET consumed_at = %s "
                "WHERE id = %s AND consumed_at IS NULL",
                (now, token_id),
            )
            return cur.rowcount

    def consume_user_password_reset_tokens(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_password_reset_token SET consumed_at = %s "
                "WHERE user_id = %s AND consumed_at IS NULL",
                (now, user_id),
            )
            return cur.rowcount

    # rbac ------------------------------------------------------------------

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO auth_role (id, name, description) VALUES (%s, %s, %s) RETURNING *",
                    (new_id(), name, description),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})
        return Role(**row)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_role WHERE id = %s", (role_id,)).fetchone()
        return Role(**row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_role WHERE lower(name) = lower(%s)", (name,)
            ).fetchone()
        return Role(**row) if row else None

    def list_user_roles(self, user_id: str) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT r.* FROM auth_role r JOIN auth_user_role ur ON ur.role_id = r.id "
                "WHERE ur.user_id = %s",
                (user_id,),
            ).fetchall()
        return [Role(**row) for row in rows]

    def _insert_link(self, table: str, left: str, right: str, values: tuple) -> bool:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    f"INSERT INTO {table} ({left}, {right}) VALUES (%s, %s) "
                    "ON CONFLICT DO NOTHING",
                    values,
                )
                return cur.rowcount > 0
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                f"unknown reference for {table}", {left: values[0], right: values[1]}
            )

    def _delete_link(self, table: str, left: str, right: str, values: tuple) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                f"DELETE FROM {table} WHERE {left} = %s AND {right} = %s", values
            )
            return cur.rowcount > 0

    def assign_role(self, user_id: str, role_id: str) -> bool:
        return self._insert_link("auth_user_role", "user_id", "role_id", (user_id, role_id))

    def unassign_role(self, user_id: str, role_id: str) -> bool:
        return self._delete_link("auth_user_role", "user_id", "role_id", (user_id, role_id))

    def create_permission(self, key: str, description: Optional[str] = None) -> Permission:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO auth_permission (id, key, description) VALUES (%s, %s, %s) RETURNING *",
                    (new_id(), key, description),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission already exists", {"field": "key"})
        return Permission(**row)

    def get_permission_by_key(self, key: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_permission WHERE key = %s", (key,)).fetchone()
        return Permission(**row) if row else None

    def grant_user_permission(self, user_id: str, permission_id: str) -> bool:
        return self._insert_link(
            "auth_user_permission", "user_id", "permission_id", (user_id, permission_id)
        )

    def revoke_user_permission(self, user_id: str, permission_id: str) -> bool:
        return self._delete_link(
            "auth_user_permission", "user_id", "permission_id", (user_id, permission_id)
        )

    def grant_role_permission(self, role_id: str, permission_id: str) -> bool:
        return self._insert_link(
            "auth_role_permission", "role_id", "permission_id", (role_id, permission_id)
        )

    def list_user_permission_keys(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT p.key FROM auth_permission p "
                "JOIN auth_user_permission up ON up.permission_id = p.id "
                "WHERE up.user_id = %s ORDER BY p.key",
                (user_id,),
            ).fetchall()
        return [row["key"] for row in rows]

    def list_role_permission_keys(self, role_ids: List[str]) -> List[str]:
        if not role_ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT p.key FROM auth_permission p "
                "JOIN auth_role_permission rp ON rp.permission_id = p.id "
                "WHERE rp.role_id = ANY(%s) ORDER BY p.key",
                (list(role_ids),),
            ).fetchall()
        return [row["key"] for row in rows]

    # audit -----------------------------------------------------------------

    def append_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO auth_security_event "
                "(id, type, severity, user_id, ip_address, user_agent, payload, created_at) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s)",
                (
                    event.id,
                    event.type,
                    SecuritySeverity(event.severity).value,
                    event.user_id,
                    event.ip_address,
                    event.user_agent,
                    json.dumps(event.payload, default=str) if event.payload else None,
                    event.created_at,
                ),
            )
        return event

    def list_security_events(
        self,
        *,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]:
        query = "SELECT * FROM auth_security_event WHERE TRUE"
        params: List[Any] = []
        if user_id is not None:
            query += " AND user_id = %s"
            params.append(user_id)
        if event_type is not None:
            query += " AND type = %s"
            params.append(event_type)
        query += " ORDER BY created_at"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        events = [_event_from_row(row) for row in rows]
        if limit is not None:
            events = events[-limit:]
        return events
