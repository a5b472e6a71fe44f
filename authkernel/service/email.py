from __future__ import annotations

import html
import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional, Protocol

from authkernel.config import Settings
from authkernel.logging import get_logger

logger = get_logger(__name__)


class EmailSender(Protocol):
    """Outbound account notifications. Every method reports delivery as a bool."""

    def send_welcome_email(self, to_email: str, first_name: Optional[str]) -> bool: ...

    def send_verification_email(
        self, to_email: str, first_name: Optional[str], token: str, expires_at: datetime
    ) -> bool: ...

    def send_password_reset_email(
        self, to_email: str, first_name: Optional[str], token: str, expires_at: datetime
    ) -> bool: ...

    def send_password_changed_notification(
        self, to_email: str, first_name: Optional[str]
    ) -> bool: ...

    def send_new_device_login_alert(
        self,
        to_email: str,
        first_name: Optional[str],
        device_summary: str,
        ip_address: Optional[str],
        occurred_at: datetime,
    ) -> bool: ...

    def send_account_lockout_notification(
        self, to_email: str, first_name: Optional[str], unlock_at: datetime
    ) -> bool: ...

    def send_security_alert(
        self,
        to_email: str,
        first_name: Optional[str],
        category: str,
        metadata: Dict[str, Any],
    ) -> bool: ...


def _format_time(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC")


class EmailService:
    """SMTP delivery for account notifications.

    Falls back to logging the message when SMTP is not configured (dev mode).
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Storefront",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(
        self,
        heading: str,
        paragraphs: List[str],
        *,
        action_url: Optional[str] = None,
        action_label: Optional[str] = None,
    ) -> tuple[str, str]:
        html_parts = [f"<h1>{html.escape(heading)}</h1>"]
        html_parts += [f"<p>{html.escape(p)}</p>" for p in paragraphs]
        text_parts = [heading, ""] + paragraphs
        if action_url:
            html_parts.append(
                f'<p><a href="{html.escape(action_url)}">{html.escape(action_label or action_url)}</a></p>'
            )
            text_parts += ["", action_url]
        footer = self.from_name
        html_body = (
            "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head><body>"
            + "".join(html_parts)
            + f"<p style=\"font-size:12px;color:#5b6470\">{html.escape(footer)}</p>"
            + "</body></html>"
        )
        text_body = "\n".join(text_parts + ["", "---", footer])
        return html_body, text_body

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=self._redact_email(to_email), error=str(e)
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_welcome_email(self, to_email: str, first_name: Optional[str]) -> bool:
        html_body, text_body = self._render(
            f"Welcome, {first_name or 'there'}",
            ["Your email address is confirmed and your account is ready to use."],
            action_url=self.base_url,
            action_label="Start shopping",
        )
        return self._send_email(to_email, "Welcome to the store", html_body, text_body)

    def send_verification_email(
        self, to_email: str, first_name: Optional[str], token: str, expires_at: datetime
    ) -> bool:
        html_body, text_body = self._render(
            "Verify your email",
            [
                f"Hi {first_name or 'there'}, please confirm your email address.",
                f"This link expires at {_format_time(expires_at)}.",
            ],
            action_url=f"{self.base_url}/verify-email?token={token}",
            action_label="Verify email",
        )
        return self._send_email(to_email, "Verify your email address", html_body, text_body)

    def send_password_reset_email(
        self, to_email: str, first_name: Optional[str], token: str, expires_at: datetime
    ) -> bool:
        html_body, text_body = self._render(
            "Reset your password",
            [
                f"Hi {first_name or 'there'}, we received a request to reset your password.",
                f"This link expires at {_format_time(expires_at)}.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            action_url=f"{self.base_url}/reset-password?token={token}",
            action_label="Reset password",
        )
        return self._send_email(to_email, "Reset your password", html_body, text_body)

    def send_password_changed_notification(
        self, to_email: str, first_name: Optional[str]
    ) -> bool:
        html_body, text_body = self._render(
            "Your password was changed",
            [
                f"Hi {first_name or 'there'}, the password on your account was just changed.",
                "If you didn't make this change, reset your password and contact support.",
            ],
        )
        return self._send_email(to_email, "Your password was changed", html_body, text_body)

    def send_new_device_login_alert(
        self,
        to_email: str,
        first_name: Optional[str],
        device_summary: str,
        ip_address: Optional[str],
        occurred_at: datetime,
    ) -> bool:
        html_body, text_body = self._render(
            "New sign-in to your account",
            [
                f"Hi {first_name or 'there'}, your account was signed in from a new device.",
                f"Device: {device_summary}",
                f"IP address: {ip_address or 'unknown'}",
                f"Time: {_format_time(occurred_at)}",
                "If this wasn't you, change your password right away.",
            ],
        )
        return self._send_email(to_email, "New sign-in detected", html_body, text_body)

    def send_account_lockout_notification(
        self, to_email: str, first_name: Optional[str], unlock_at: datetime
    ) -> bool:
        html_body, text_body = self._render(
            "Your account is temporarily locked",
            [
                f"Hi {first_name or 'there'}, we locked your account after repeated failed sign-ins.",
                f"You can try again after {_format_time(unlock_at)}, or reset your password now.",
            ],
            action_url=f"{self.base_url}/forgot-password",
            action_label="Reset password",
        )
        return self._send_email(to_email, "Account temporarily locked", html_body, text_body)

    def send_security_alert(
        self,
        to_email: str,
        first_name: Optional[str],
        category: str,
        metadata: Dict[str, Any],
    ) -> bool:
        details = [f"{key}: {value}" for key, value in sorted(metadata.items())]
        html_body, text_body = self._render(
            "Security alert",
            [
                f"Hi {first_name or 'there'}, we detected suspicious activity ({category}) "
                "and signed out the affected session.",
                *details,
                "If you don't recognise this activity, change your password.",
            ],
        )
        return self._send_email(to_email, "Security alert on your account", html_body, text_body)
