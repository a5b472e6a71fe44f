from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from authkernel.logging import get_logger
from authkernel.storage.base import Datastore
from authkernel.storage.models import SecurityEvent, SecuritySeverity, new_id, utcnow

logger = get_logger(__name__)

CRITICAL_EVENTS = frozenset(
    {
        "refresh_token_replay_detected",
        "session_fingerprint_mismatch",
        "admin_access_denied",
    }
)
WARNING_EVENTS = frozenset(
    {
        "account_locked",
        "permission_denied",
        "role_denied",
        "account_unlock_manual",
        "login_blocked_locked",
    }
)


def infer_severity(event_type: str) -> SecuritySeverity:
    if event_type in CRITICAL_EVENTS:
        return SecuritySeverity.CRITICAL
    if event_type in WARNING_EVENTS:
        return SecuritySeverity.WARNING
    return SecuritySeverity.INFO


class SecurityEventService:
    """Append-only audit sink. ``log`` never raises into the caller."""

    def __init__(
        self, store: Datastore, *, now: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.store = store
        self._now = now or utcnow

    async def log(
        self,
        event_type: str,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        severity: Optional[SecuritySeverity] = None,
    ) -> Optional[SecurityEvent]:
        event = SecurityEvent(
            id=new_id(),
            type=event_type,
            severity=severity or infer_severity(event_type),
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            payload=dict(payload or {}),
            created_at=self._now(),
        )
        self._mirror(event)
        try:
            return self.store.append_security_event(event)
        except Exception as exc:
            logger.error(
                "security_event_persist_failed",
                event_type=event_type,
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    async def list_for_user(self, user_id: str, *, limit: Optional[int] = None) -> List[SecurityEvent]:
        return self.store.list_security_events(user_id=user_id, limit=limit)

    def _mirror(self, event: SecurityEvent) -> None:
        fields = {
            "event_type": event.type,
            "severity": event.severity.value,
            "user_id": event.user_id,
            "ip_address": event.ip_address,
            **{f"payload_{k}": v for k, v in event.payload.items()},
        }
        if event.severity == SecuritySeverity.CRITICAL:
            logger.error("security_event", **fields)
        elif event.severity == SecuritySeverity.WARNING:
            logger.warning("security_event", **fields)
        else:
            logger.info("security_event", **fields)
