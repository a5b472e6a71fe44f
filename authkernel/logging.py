from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Mapping, Optional

import structlog

# Bound per request by the host application; every log line carries it.
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings of keys whose string values never reach log output in clear.
_SENSITIVE_KEY_PARTS = ("password", "secret", "token", "authorization", "email", "fingerprint")

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_request_context(
    *,
    correlation_id: Optional[str] = None,
    user_id: Optional[str] = None,
    session_id: Optional[str] = None,
) -> str:
    """Bind request-scoped identifiers to every subsequent log call.

    Returns the correlation id in effect, generating one when none is given.
    """
    cid = set_correlation_id(correlation_id)
    bound: Dict[str, str] = {}
    if user_id:
        bound["user_id"] = user_id
    if session_id:
        bound["session_id"] = session_id
    if bound:
        structlog.contextvars.bind_contextvars(**bound)
    return cid


def clear_request_context() -> None:
    correlation_id_var.set(None)
    structlog.contextvars.clear_contextvars()


def redact_value(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(part in lowered for part in _SENSITIVE_KEY_PARTS)


def _redact_mapping(values: Mapping[str, Any]) -> Dict[str, Any]:
    redacted: Dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, Mapping):
            redacted[key] = _redact_mapping(value)
        elif isinstance(value, str) and _is_sensitive(str(key)):
            redacted[key] = redact_value(value)
        else:
            redacted[key] = value
    return redacted


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor masking credentials and device fingerprints.

    Nested mappings such as error details are masked key by key; the event
    name itself is left alone.
    """
    event = event_dict.pop("event", None)
    redacted = _redact_mapping(event_dict)
    if event is not None:
        redacted["event"] = event
    return redacted


def configure_logging(
    log_level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Configure structlog processors.

    Unset arguments fall back to ``LOG_LEVEL``, ``LOG_JSON`` (default on) and
    ``LOG_DEV_MODE`` (default off).
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    if development_mode is None:
        development_mode = os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)
