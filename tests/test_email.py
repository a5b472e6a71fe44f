"""Tests for the SMTP email service."""

import smtplib
from datetime import datetime, timezone

import pytest

from authkernel.service import email as email_module
from authkernel.service.email import EmailService

from conftest import make_settings

EXPIRES = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None, context=None):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, sender, recipient, body):
        self.messages.append((sender, recipient, body))


class RefusingSMTP(FakeSMTP):
    def sendmail(self, sender, recipient, body):
        raise smtplib.SMTPRecipientsRefused({recipient: (550, b"no such user")})


@pytest.fixture(autouse=True)
def reset_fake_smtp():
    FakeSMTP.instances = []
    yield


@pytest.fixture
def configured():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer",
        smtp_password="secret",
        from_email="no-reply@example.com",
        base_url="https://shop.example.com/",
    )


class TestEmailService:
    """Tests for EmailService delivery."""

    def test_dev_mode_logs_instead_of_sending(self, monkeypatch):
        monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
        service = EmailService.from_settings(make_settings())

        assert service.is_configured is False
        assert service.send_welcome_email("shopper@example.com", "Ada") is True
        assert FakeSMTP.instances == []

    def test_verification_email_contains_link(self, monkeypatch, configured):
        monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)

        assert configured.send_verification_email("shopper@example.com", "Ada", "tok123", EXPIRES)

        smtp = FakeSMTP.instances[0]
        assert smtp.started_tls is True
        assert smtp.logged_in == ("mailer", "secret")
        sender, recipient, body = smtp.messages[0]
        assert sender == "no-reply@example.com"
        assert recipient == "shopper@example.com"
        assert "https://shop.example.com/verify-email?token=tok123" in body

    def test_every_notification_sends(self, monkeypatch, configured):
        monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)

        results = [
            configured.send_password_reset_email("a@example.com", None, "tok", EXPIRES),
            configured.send_password_changed_notification("a@example.com", None),
            configured.send_new_device_login_alert(
                "a@example.com", None, "agent (1.2.3.4)", "1.2.3.4", EXPIRES
            ),
            configured.send_account_lockout_notification("a@example.com", None, EXPIRES),
            configured.send_security_alert(
                "a@example.com", None, "refresh_token_replay", {"session_id": "s1"}
            ),
        ]

        assert results == [True] * 5
        assert len(FakeSMTP.instances) == 5

    def test_smtp_failure_returns_false(self, monkeypatch, configured):
        monkeypatch.setattr(email_module.smtplib, "SMTP", RefusingSMTP)

        assert configured.send_password_changed_notification("a@example.com", "Ada") is False

    def test_connection_failure_returns_false(self, monkeypatch, configured):
        def refuse(*args, **kwargs):
            raise ConnectionRefusedError("no route")

        monkeypatch.setattr(email_module.smtplib, "SMTP", refuse)

        assert configured.send_welcome_email("a@example.com", "Ada") is False

    def test_user_content_is_escaped(self, monkeypatch, configured):
        monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)

        configured.send_welcome_email("a@example.com", "<script>")

        body = FakeSMTP.instances[0].messages[0][2]
        assert "<script>" not in body.split("text/html", 1)[1]

    def test_redact_email(self, configured):
        assert configured._redact_email("shopper@example.com") == "sh***@example.com"
        assert configured._redact_email("nope") == "redacted"
