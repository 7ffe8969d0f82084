from __future__ import annotations

import html
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formataddr
from typing import Optional

from fleetauth.logging import get_logger

logger = get_logger(__name__)


def redact_email(email: str) -> str:
    """Redact an email address for logging."""
    if not email or "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Transactional mail for the account lifecycle.

    Every ``send_*`` call is fire-and-forget: failures are logged and reported
    as ``False`` but never raised, so delivery problems cannot fail an auth
    operation. Without SMTP settings the message is logged instead of sent.
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
        from_name: str = "Fleet Management",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
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

    def _compose(self, subject: str, greeting_name: str, lines: list[str]) -> tuple[str, str]:
        text_body = "\n\n".join([f"Hello {greeting_name},", *lines, f"---\n{self.from_name}"])
        paragraphs = "".join(f"<p>{html.escape(line)}</p>" for line in lines)
        html_body = (
            "<!DOCTYPE html><html><body>"
            f"<h1>{html.escape(subject)}</h1>"
            f"<p>Hello {html.escape(greeting_name)},</p>{paragraphs}"
            f"<p style=\"font-size:12px;color:#5b6470\">{html.escape(self.from_name)}</p>"
            "</body></html>"
        )
        return html_body, text_body

    def _build(self, to_email: str, subject: str, html_body: str, text_body: Optional[str]) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = formataddr((self.from_name, self.from_email))
        message["To"] = to_email
        message.set_content(text_body or subject)
        message.add_alternative(html_body, subtype="html")
        return message

    def _open(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30)
        return server

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message; returns False instead of raising on any SMTP or network failure."""
        recipient = redact_email(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", to=recipient, subject=subject)
            return True

        message = self._build(to_email, subject, html_body, text_body)
        try:
            with self._open() as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(message)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", to=recipient, host=self.smtp_host, error=str(exc))
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", to=recipient, error=str(exc))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            # refused connections, DNS failures and timeouts land here too
            logger.error(
                "email_delivery_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def send_verification_code(self, to_email: str, full_name: str, code: str) -> bool:
        subject = "Verify your email address"
        html_body, text_body = self._compose(
            subject,
            full_name,
            [
                f"Your verification code is: {code}",
                "Enter this code to activate your account. It expires in 24 hours.",
            ],
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_welcome_email(self, to_email: str, full_name: str) -> bool:
        subject = "Welcome to Fleet Management"
        html_body, text_body = self._compose(
            subject, full_name, [f"Your account is ready. Sign in at {self.base_url}."]
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_reset_email(self, to_email: str, full_name: str, code: str) -> bool:
        subject = "Reset your password"
        html_body, text_body = self._compose(
            subject,
            full_name,
            [
                "We received a request to reset your password.",
                f"Your reset code is: {code}",
                "It expires in 24 hours. If you didn't request this, you can ignore this email.",
            ],
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_changed_email(self, to_email: str, full_name: str) -> bool:
        subject = "Your password was changed"
        html_body, text_body = self._compose(
            subject,
            full_name,
            [
                "Your password was changed and all active sessions were signed out.",
                "If you didn't make this change, contact your administrator immediately.",
            ],
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_account_activated_email(self, to_email: str, full_name: str) -> bool:
        subject = "Your account is active"
        html_body, text_body = self._compose(
            subject,
            full_name,
            [f"Your email is verified and your account is now active. Sign in at {self.base_url}."],
        )
        return self._send_email(to_email, subject, html_body, text_body)
