from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from vaultauth.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
  <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
    <h1>{title}</h1>
    {body}
    <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{brand}</p>
  </div>
</body>
</html>
"""


class NotificationService:
    """Delivers verification links, reset links and MFA codes.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Logging instead of sending when SMTP is not configured (dev mode)
    - SMS codes, which are only ever logged; no SMS gateway is wired in
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
        from_name: str = "VaultAuth",
        base_url: Optional[str] = None,
        verification_ttl_hours: int = 24,
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.verification_ttl_hours = verification_ttl_hours
        self.reset_ttl_minutes = reset_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def redact_destination(destination: str) -> str:
        if "@" in destination:
            local, domain = destination.split("@", 1)
            return f"{local[:2]}***@{domain}"
        if len(destination) > 4:
            return "***" + destination[-4:]
        return "redacted"

    def _render(self, title: str, paragraphs: list[str]) -> tuple[str, str]:
        html_body = _HTML_TEMPLATE.format(
            title=escape(title),
            body="\n    ".join(f"<p>{escape(p)}</p>" for p in paragraphs),
            brand=escape(self.from_name),
        )
        text_body = "\n\n".join([title, *paragraphs, f"---\n{self.from_name}"])
        return html_body, text_body

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True when handed to the server."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self.redact_destination(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()

        try:
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self.redact_destination(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self.redact_destination(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self.redact_destination(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self.redact_destination(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self.redact_destination(to_email), subject=subject)
        return True

    def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.base_url}/auth/verify-email?token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            [
                "Thanks for signing up. Confirm your email address by visiting:",
                verify_url,
                f"This link expires in {self.verification_ttl_hours} hours.",
            ],
        )
        return self._send_email(to_email, f"Verify your {self.from_name} email", html_body, text_body)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/auth/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Choose a new one here:",
                reset_url,
                f"This link expires in {self.reset_ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
        )
        return self._send_email(to_email, f"Reset your {self.from_name} password", html_body, text_body)

    def send_mfa_code(self, destination: str, code: str, *, method: str) -> bool:
        message = f"Your {self.from_name} verification code is {code}. It expires in 5 minutes."
        if method == "sms":
            logger.info(
                "sms_dev_mode",
                to=self.redact_destination(destination),
                body_preview=message,
            )
            return True
        html_body, text_body = self._render("Your verification code", [message])
        return self._send_email(destination, f"{self.from_name} verification code", html_body, text_body)

    def send_mfa_enabled(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Two-factor authentication enabled",
            [
                "Two-factor authentication is now enabled on your account.",
                "If you didn't make this change, reset your password immediately.",
            ],
        )
        return self._send_email(to_email, "Two-factor authentication enabled", html_body, text_body)
