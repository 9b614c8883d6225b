from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Protocol

from backend.config import Settings

logger = logging.getLogger(__name__)


class MailerError(RuntimeError):
    """Raised when an outbound email cannot be delivered."""


class Mailer(Protocol):
    def send(self, recipient: str, subject: str, html: str) -> None:
        ...


@dataclass(frozen=True)
class SmtpMailer:
    host: str
    port: int
    sender: str
    username: str | None = None
    password: str | None = None
    timeout: float = 10.0

    def send(self, recipient: str, subject: str, html: str) -> None:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content("This message requires an HTML-capable mail client.")
        message.add_alternative(html, subtype="html")
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as client:
                client.starttls()
                if self.username and self.password:
                    client.login(self.username, self.password)
                client.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise MailerError(f"Could not send email to {recipient}") from exc
        logger.info("Sent %r to %s", subject, recipient)


class LogMailer:
    """Writes outgoing mail to the log. Used when no SMTP host is configured."""

    def send(self, recipient: str, subject: str, html: str) -> None:
        logger.info("Email to %s: %s\n%s", recipient, subject, html)


def build_mailer(settings: Settings) -> Mailer:
    if not settings.smtp_host:
        logger.warning("SMTP_HOST is not set; outgoing email will only be logged")
        return LogMailer()
    return SmtpMailer(
        host=settings.smtp_host,
        port=settings.smtp_port,
        sender=settings.mail_sender,
        username=settings.smtp_user,
        password=settings.smtp_password,
    )


def verification_email(first_name: str, link: str, minutes: int, resend: bool = False) -> tuple[str, str]:
    subject = "Resend: Verify your account" if resend else "Verify your account"
    intro = "It looks like you requested a new verification link." if resend else "Thanks for signing up!"
    html = (
        f"<h2>Hi {first_name},</h2>"
        f"<p>{intro}</p>"
        "<p>Click the link below to verify your account:</p>"
        f'<a href="{link}">Verify Account</a>'
        f"<p>This link will expire in {minutes} minutes.</p>"
    )
    return subject, html


def password_reset_email(first_name: str, link: str, minutes: int) -> tuple[str, str]:
    html = (
        f"<h2>Hi {first_name},</h2>"
        "<p>We received a request to reset your password.</p>"
        f'<a href="{link}">Choose a new password</a>'
        f"<p>This link will expire in {minutes} minutes. "
        "If you did not ask for this, you can ignore this email.</p>"
    )
    return "Reset your password", html
