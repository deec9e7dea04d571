from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formataddr
from typing import Optional

from schoolauth.config import Settings
from schoolauth.logging import get_logger

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30


class EmailService:
    """Outbound mail for the password-reset flow.

    Without an SMTP host nothing leaves the process: the attempt is logged and
    reported as delivered, which is how development and test deployments run.
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
        from_name: str = "School Management System",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

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
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _build(self, to_email: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = formataddr((self.from_name, self.from_email or ""))
        msg["To"] = to_email
        msg.set_content(body)
        return msg

    def _deliver(self, msg: EmailMessage) -> None:
        context = ssl.create_default_context()
        # STARTTLS on the submission port, implicit TLS otherwise
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
            )
        with server:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.send_message(msg)

    def send(self, to_email: str, subject: str, body: str) -> bool:
        """Deliver one plain-text message; False when the relay refused it."""
        if not self.is_configured:
            logger.info("email_not_sent_unconfigured", to_email=to_email, subject=subject)
            return True
        try:
            self._deliver(self._build(to_email, subject, body))
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_delivery_failed",
                to_email=to_email,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to_email=to_email, subject=subject)
        return True

    def send_password_reset(self, to_email: str, reset_url: str, ttl_minutes: int = 10) -> bool:
        subject = f"Your password reset token (valid for {ttl_minutes} min)"
        body = (
            "Forgot your password? Submit a PATCH request with your new password to: "
            f"{reset_url}.\n"
            "If you didn't forget your password, please ignore this email!"
        )
        return self.send(to_email, subject, body)
