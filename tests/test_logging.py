"""Tests for log processors."""

import structlog

from authkernel import logging as auth_logging
from authkernel.logging import (
    bind_request_context,
    clear_request_context,
    correlation_id_var,
    get_correlation_id,
    redact_value,
    set_correlation_id,
)


class TestRedaction:
    """Tests for credential masking."""

    def test_redact_value(self):
        assert redact_value("abc") == "***"
        assert redact_value("shopper@example.com") == "sh***om"

    def test_sensitive_keys_are_masked(self):
        event = {
            "event": "login_failed",
            "email": "shopper@example.com",
            "refresh_token": "abcdefghijkl",
            "user_id": "u-123",
            "attempts": 3,
        }

        result = auth_logging._redact_pii(None, "info", dict(event))

        assert result["event"] == "login_failed"
        assert result["email"] == "sh***om"
        assert result["refresh_token"] == "ab***kl"
        assert result["user_id"] == "u-123"
        assert result["attempts"] == 3

    def test_nested_details_are_masked(self):
        event = {
            "event": "login_failed",
            "detail": {"reason": "invalid_password", "email": "shopper@example.com"},
            "device_fingerprint": "0123456789abcdef",
            "ip_address": "203.0.113.10",
        }

        result = auth_logging._redact_pii(None, "warning", dict(event))

        assert result["detail"] == {"reason": "invalid_password", "email": "sh***om"}
        assert result["device_fingerprint"] == "01***ef"
        assert result["ip_address"] == "203.0.113.10"


class TestCorrelationId:
    """Tests for correlation id binding."""

    def test_generated_when_missing(self):
        token = correlation_id_var.set(None)
        try:
            cid = set_correlation_id()
            assert cid
            assert get_correlation_id() == cid
        finally:
            correlation_id_var.reset(token)

    def test_added_to_events(self):
        token = correlation_id_var.set("req-42")
        try:
            result = auth_logging._add_correlation_id(None, "info", {"event": "x"})
        finally:
            correlation_id_var.reset(token)

        assert result["correlation_id"] == "req-42"

    def test_absent_when_unbound(self):
        token = correlation_id_var.set(None)
        try:
            result = auth_logging._add_correlation_id(None, "info", {"event": "x"})
        finally:
            correlation_id_var.reset(token)

        assert "correlation_id" not in result

    def test_bind_request_context(self):
        try:
            cid = bind_request_context(user_id="u1", session_id="s1")

            assert get_correlation_id() == cid
            assert structlog.contextvars.get_contextvars() == {"user_id": "u1", "session_id": "s1"}
        finally:
            clear_request_context()

        assert get_correlation_id() is None
        assert structlog.contextvars.get_contextvars() == {}
