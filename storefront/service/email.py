from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, Optional, Tuple

from storefront.logging import get_logger

logger = get_logger(__name__)

_LAYOUT = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
<div style="max-width: 560px; margin: 0 auto; padding: 24px;">
<h2 style="margin-top: 0;">{title}</h2>
{body}
<p style="color: #7b8794; font-size: 12px; margin-top: 32px;">{footer}</p>
</div>
</body>
</html>
"""

Rendered = Tuple[str, str, str]


class EmailService:
    """Transactional email for account security notifications.

    ``send(template_name, recipient, data)`` renders one of the registered
    templates and delivers it over SMTP. When SMTP is not configured the
    message is logged instead (dev mode). Delivery failures are logged and
    reported as ``False``; they never raise into the request path.
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
        from_name: str = "Thrift Store",
        frontend_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = (frontend_url or "http://localhost:3000").rstrip("/")
        self._templates: Dict[str, Callable[[Dict[str, Any]], Rendered]] = {
            "email_verification": self._render_email_verification,
            "password_reset": self._render_password_reset,
            "password_changed": self._render_password_changed,
            "account_locked": self._render_account_locked,
            "two_factor_enabled": self._render_two_factor_enabled,
            "password_expiry_warning": self._render_password_expiry_warning,
        }

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    @property
    def template_names(self) -> Tuple[str, ...]:
        return tuple(self._templates)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def send(self, template_name: str, recipient: str, data: Optional[Dict[str, Any]] = None) -> bool:
        renderer = self._templates.get(template_name)
        if renderer is None:
            raise ValueError(f"unknown email template: {template_name}")
        subject, html_body, text_body = renderer(data or {})
        return self._send_email(recipient, subject, html_body, text_body)

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
                "email_recipient_refused",
                to=self._redact_email(to_email),
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
        except OSError as e:
            # socket timeouts and refused connections
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def _wrap(self, title: str, paragraphs: list[str], footer: str) -> str:
        body = "\n".join(f"<p>{p}</p>" for p in paragraphs)
        return _LAYOUT.format(title=html.escape(title), body=body, footer=html.escape(footer))

    def _button(self, url: str, label: str) -> str:
        safe_url = html.escape(url, quote=True)
        return (
            f'<a href="{safe_url}" style="display: inline-block; padding: 10px 18px; '
            f'background: #2563eb; color: #fff; border-radius: 6px; text-decoration: none;">'
            f"{html.escape(label)}</a>"
        )

    def _render_email_verification(self, data: Dict[str, Any]) -> Rendered:
        url = f"{self.frontend_url}/verify-email/{data['token']}"
        name = html.escape(data.get("name") or "there")
        subject = f"Verify your {self.from_name} email address"
        html_body = self._wrap(
            "Confirm your email",
            [
                f"Hi {name}, thanks for signing up.",
                "Please confirm your email address to activate your account.",
                self._button(url, "Verify email"),
            ],
            "This link expires in 1 hour. If you did not create an account, ignore this email.",
        )
        text_body = f"Confirm your email address: {url}\n\nThis link expires in 1 hour."
        return subject, html_body, text_body

    def _render_password_reset(self, data: Dict[str, Any]) -> Rendered:
        url = f"{self.frontend_url}/reset-password/{data['token']}"
        subject = f"Reset your {self.from_name} password"
        html_body = self._wrap(
            "Password reset requested",
            [
                "We received a request to reset your password.",
                self._button(url, "Choose a new password"),
            ],
            "This link expires in 1 hour and can be used once. If you did not ask for a reset, ignore this email.",
        )
        text_body = f"Reset your password: {url}\n\nThis link expires in 1 hour."
        return subject, html_body, text_body

    def _render_password_changed(self, data: Dict[str, Any]) -> Rendered:
        when = data.get("changed_at", "just now")
        subject = "Your password was changed"
        html_body = self._wrap(
            "Password changed",
            [
                f"The password on your account was changed ({html.escape(str(when))}).",
                "If this was not you, reset your password immediately and contact support.",
            ],
            "You are receiving this because of a security change on your account.",
        )
        text_body = f"Your password was changed ({when}). If this was not you, reset it now."
        return subject, html_body, text_body

    def _render_account_locked(self, data: Dict[str, Any]) -> Rendered:
        minutes = data.get("lock_minutes", 15)
        subject = "Your account has been temporarily locked"
        html_body = self._wrap(
            "Account locked",
            [
                "We locked your account after several failed sign-in attempts.",
                f"You can try again in {int(minutes)} minutes.",
                "If these attempts were not yours, consider changing your password.",
            ],
            "You are receiving this because of a security event on your account.",
        )
        text_body = (
            f"Your account was locked after failed sign-in attempts. Try again in {minutes} minutes."
        )
        return subject, html_body, text_body

    def _render_two_factor_enabled(self, data: Dict[str, Any]) -> Rendered:
        subject = "Two-factor authentication enabled"
        html_body = self._wrap(
            "Two-factor authentication is on",
            [
                "Two-factor authentication is now active on your account.",
                "Keep your backup codes somewhere safe; each one works once.",
            ],
            "If you did not make this change, contact support immediately.",
        )
        text_body = "Two-factor authentication is now active on your account."
        return subject, html_body, text_body

    def _render_password_expiry_warning(self, data: Dict[str, Any]) -> Rendered:
        days = int(data.get("days_remaining", 0))
        url = f"{self.frontend_url}/account/password"
        subject = f"Your password expires in {days} day{'s' if days != 1 else ''}"
        html_body = self._wrap(
            "Password expiring soon",
            [
                f"Your password will expire in {days} day{'s' if days != 1 else ''}.",
                self._button(url, "Change password"),
            ],
            "Passwords must be changed every 90 days.",
        )
        text_body = f"Your password expires in {days} days. Change it at {url}"
        return subject, html_body, text_body
