from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from onboarding.config import Settings
from onboarding.logging import get_logger

logger = get_logger(__name__)

_SMTP_TIMEOUT_SECONDS = 30


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Verification code, password reset and welcome emails
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "User Onboarding",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

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
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _open(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=_SMTP_TIMEOUT_SECONDS)
            try:
                server.starttls(context=context)
            except Exception:
                server.close()
                raise
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=_SMTP_TIMEOUT_SECONDS
            )
        if self.smtp_user and self.smtp_password:
            try:
                server.login(self.smtp_user, self.smtp_password)
            except Exception:
                server.close()
                raise
        return server

    def verify_connection(self) -> bool:
        """Connect, authenticate and NOOP against the SMTP server.

        Returns True in dev mode, where nothing is ever sent.
        """
        if not self.is_configured:
            logger.info("email_transport_dev_mode")
            return True
        try:
            with self._open() as server:
                code, _ = server.noop()
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_unhealthy",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        healthy = code == 250
        log_fn = logger.info if healthy else logger.warning
        log_fn("email_transport_checked", host=self.smtp_host, healthy=healthy)
        return healthy

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
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
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

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=self._redact_email(to_email),
            )
            with self._open() as server:
                server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=e.smtp_code if hasattr(e, "smtp_code") else None,
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPSenderRefused as e:
            logger.error(
                "email_sender_refused",
                to=self._redact_email(to_email),
                sender=self.from_email,
                error=str(e),
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
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except TimeoutError as e:
            logger.error(
                "email_timeout",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def _wrap_html(self, heading: str, paragraphs: list[str]) -> str:
        body = "\n".join(f"        <p>{p}</p>" for p in paragraphs)
        return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body>
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px; font-family: sans-serif;">
        <h1>{heading}</h1>
{body}
        <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{html.escape(self.from_name)}</p>
    </div>
</body>
</html>
"""

    def send_verification_email(self, email: str, name: str, code: str) -> bool:
        """Send the six-digit verification code plus a one-click link."""
        verify_url = f"{self.base_url}/api/auth/verify/{code}"
        subject = "Verify your email address"
        html_body = self._wrap_html(
            "Verify your email",
            [
                f"Hi {html.escape(name)}, thank you for registering.",
                f'Your verification code is <strong style="font-size: 24px;">{code}</strong>',
                f'Or <a href="{verify_url}">click here</a> to verify directly.',
                "This code will expire in 1 hour.",
            ],
        )
        text_body = f"""Hi {name},

Thank you for registering. Your verification code is: {code}

Or verify directly by visiting: {verify_url}

This code will expire in 1 hour.
"""
        return self._send_email(email, subject, html_body, text_body)

    def send_password_reset_email(self, email: str, name: str, raw_token: str) -> bool:
        """Send password reset email with reset link."""
        reset_url = f"{self.base_url}/reset-password?token={raw_token}"
        subject = "Reset your password"
        html_body = self._wrap_html(
            "Reset your password",
            [
                f"Hi {html.escape(name)}, we received a request to reset your password.",
                f'<a href="{reset_url}">Choose a new password</a>',
                "This link will expire in 10 minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
        )
        text_body = f"""Hi {name},

We received a request to reset your password. Visit the link below to choose a new password:

{reset_url}

This link will expire in 10 minutes.

If you didn't request this, you can safely ignore this email.
"""
        return self._send_email(email, subject, html_body, text_body)

    def send_welcome_email(self, email: str, name: str) -> bool:
        subject = f"Welcome to {self.from_name}!"
        html_body = self._wrap_html(
            "Welcome!",
            [
                f"Hi {html.escape(name)}, your email address is verified.",
                "You can now sign in to your account.",
            ],
        )
        text_body = f"""Hi {name},

Your email address is verified. You can now sign in to your account.
"""
        return self._send_email(email, subject, html_body, text_body)
