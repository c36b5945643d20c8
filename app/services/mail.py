from __future__ import annotations

import logging
import os
import smtplib
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage
from functools import lru_cache
from typing import Any

from app.settings import get_settings

logger = logging.getLogger("app.mail")


class MailDeliveryError(Exception):
    pass


@dataclass(frozen=True, slots=True)
class MailMessage:
    to: str
    subject: str
    body: str


class MailSender(ABC):
    mode = "abstract"

    @abstractmethod
    def send(self, message: MailMessage) -> None:
        """Deliver or raise MailDeliveryError."""
        raise NotImplementedError

    def config_status(self) -> dict[str, Any]:
        return {"mode": self.mode}


class SmtpMailSender(MailSender):
    mode = "smtp"

    def __init__(self) -> None:
        self.smtp_host = (os.getenv("SMTP_HOST") or "").strip()
        smtp_port_raw = (os.getenv("SMTP_PORT") or "587").strip()
        self.smtp_port = int(smtp_port_raw) if smtp_port_raw.isdigit() else 587
        self.smtp_user = (os.getenv("SMTP_USER") or "").strip()
        self.smtp_pass = os.getenv("SMTP_PASS") or ""
        self.smtp_from = (os.getenv("SMTP_FROM") or "").strip()
        self.smtp_use_tls = (os.getenv("SMTP_USE_TLS") or "true").strip().lower() not in {"0", "false", "no"}
        self.configured = bool(self.smtp_host and self.smtp_from)

    def send(self, message: MailMessage) -> None:
        recipient = (message.to or "").strip()
        if not recipient:
            raise MailDeliveryError("NO_RECIPIENT")
        if not self.configured:
            raise MailDeliveryError("SMTP_NOT_CONFIGURED")

        email_message = EmailMessage()
        email_message["From"] = self.smtp_from
        email_message["To"] = recipient
        email_message["Subject"] = message.subject
        email_message.set_content(message.body)

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=15) as smtp_client:
                if self.smtp_use_tls:
                    smtp_client.starttls()
                if self.smtp_user:
                    smtp_client.login(self.smtp_user, self.smtp_pass)
                smtp_client.send_message(email_message)
        except (smtplib.SMTPException, OSError) as exc:
            raise MailDeliveryError(exc.__class__.__name__) from exc

    def config_status(self) -> dict[str, Any]:
        missing_fields: list[str] = []
        if not self.smtp_host:
            missing_fields.append("SMTP_HOST")
        if not self.smtp_from:
            missing_fields.append("SMTP_FROM")
        return {
            "mode": self.mode,
            "configured": self.configured,
            "smtp_host_set": bool(self.smtp_host),
            "smtp_from_set": bool(self.smtp_from),
            "smtp_user_set": bool(self.smtp_user),
            "smtp_use_tls": bool(self.smtp_use_tls),
            "missing_fields": missing_fields,
        }


class LogMailSender(MailSender):
    """Development outbox: keeps messages in memory and logs them instead of sending."""

    mode = "log"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.outbox: list[MailMessage] = []

    def send(self, message: MailMessage) -> None:
        recipient = (message.to or "").strip()
        if not recipient:
            raise MailDeliveryError("NO_RECIPIENT")
        with self._lock:
            self.outbox.append(message)
        logger.info(
            "mail_outbox_message",
            extra={
                "to": recipient,
                "subject": message.subject,
            },
        )
        # The body carries the one-time code; it only leaves the outbox at DEBUG.
        logger.debug(
            "mail_outbox_message_body",
            extra={
                "to": recipient,
                "body": message.body,
            },
        )

    def latest_for(self, recipient: str) -> MailMessage | None:
        with self._lock:
            for message in reversed(self.outbox):
                if message.to == recipient:
                    return message
        return None


def build_mail_sender(backend: str) -> MailSender:
    normalized = (backend or "").strip().lower() or "auto"
    if normalized == "smtp":
        return SmtpMailSender()
    if normalized == "log":
        return LogMailSender()
    if normalized == "auto":
        smtp_sender = SmtpMailSender()
        if smtp_sender.configured:
            return smtp_sender
        logger.warning(
            "mail_smtp_not_configured_using_outbox",
            extra=smtp_sender.config_status(),
        )
        return LogMailSender()
    raise ValueError(f"Unknown mail backend: {backend}")


@lru_cache
def get_mail_sender() -> MailSender:
    return build_mail_sender(get_settings().mail_backend)


def build_code_message(*, to: str, first_name: str, code: str, action: str, ttl_minutes: int) -> MailMessage:
    """Fixed OTP template; ``action`` is the human phrase, e.g. "clock in"."""
    app_name = (get_settings().app_name or "Attendance System").strip()
    name = (first_name or "").strip() or "there"
    subject_action = "-".join(part.capitalize() for part in action.split())
    minute_word = "minute" if ttl_minutes == 1 else "minutes"
    return MailMessage(
        to=to,
        subject=f"Your Attendance {subject_action} OTP",
        body=(
            f"Hello {name},\n\n"
            f"Your OTP to {action} is: {code}\n"
            f"It will expire in {ttl_minutes} {minute_word}.\n\n"
            f"- {app_name}"
        ),
    )
