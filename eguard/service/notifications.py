from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol, Set

from eguard.logging import get_logger, redact_email

logger = get_logger(__name__)


class NotificationSender(Protocol):
    def send(
        self, recipient: str, subject: str, text_body: str, html_body: Optional[str] = None
    ) -> bool: ...


def two_factor_code_message(code: str, ttl_seconds: int) -> tuple[str, str]:
    minutes = max(ttl_seconds // 60, 1)
    subject = "Your eGuard verification code"
    body = (
        f"Your verification code is {code}.\n\n"
        f"It expires in {minutes} minutes and can be used once.\n"
        "If you did not try to sign in, contact your administrator.\n"
    )
    return subject, body


def temporary_password_message(password: str) -> tuple[str, str]:
    subject = "Your eGuard password was reset"
    body = (
        f"Your temporary password is {password}.\n\n"
        "Sign in is blocked until you replace it with a new password.\n"
        "If you did not request this reset, contact your administrator.\n"
    )
    return subject, body


class EmailService:
    """SMTP sender for verification codes and temporary passwords.

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
        from_name: str = "eGuard",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(
        self, recipient: str, subject: str, text_body: str, html_body: Optional[str] = None
    ) -> bool:
        """Send a message via SMTP. Returns True if sent, False otherwise."""
        if not self.is_configured:
            # Message bodies carry credentials, so only the subject is logged
            logger.info("email_dev_mode", to=redact_email(recipient), subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = recipient
        msg.attach(MIMEText(text_body, "plain"))
        if html_body:
            msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, recipient, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, recipient, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(recipient),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(recipient), error=str(e))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=redact_email(recipient),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(recipient), subject=subject)
        return True


class NotificationDispatcher:
    """Hands messages to a sender without making the caller wait for delivery.

    Inside a running event loop each delivery runs in a worker thread as a
    background task; outside one it runs inline. Failures are logged and
    never propagate to the authentication flow.
    """

    def __init__(self, sender: NotificationSender) -> None:
        self.sender = sender
        self._pending: Set[asyncio.Task] = set()

    def dispatch(self, recipient: str, subject: str, text_body: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._deliver(recipient, subject, text_body)
            return
        task = loop.create_task(asyncio.to_thread(self._deliver, recipient, subject, text_body))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _deliver(self, recipient: str, subject: str, text_body: str) -> bool:
        try:
            delivered = self.sender.send(recipient, subject, text_body)
        except Exception as exc:
            logger.error(
                "notification_delivery_failed",
                to=redact_email(recipient),
                subject=subject,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not delivered:
            logger.warning("notification_not_delivered", to=redact_email(recipient), subject=subject)
        return delivered

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for in-flight deliveries, e.g. on shutdown."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
