"""SMTP delivery of reminder messages."""
from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import make_msgid
from typing import List, Optional

from .models import SmtpConfig


DEFAULT_TIMEOUT = 30
SSL_PORT = 465

logger = logging.getLogger(__name__)


class MailDeliveryError(RuntimeError):
    """Raised when a single message cannot be handed to the relay."""


@dataclass
class OutboundMessage:
    to: List[str]
    subject: str
    body: str
    cc: List[str] = field(default_factory=list)
    read_receipt: bool = False


class Mailer:
    """Send one message per call over a fresh SMTP connection."""

    def __init__(self, config: SmtpConfig, timeout: int = DEFAULT_TIMEOUT) -> None:
        self._config = config
        self._timeout = timeout

    def _connect(self) -> smtplib.SMTP:
        config = self._config
        if not config.host:
            raise MailDeliveryError("SMTP host is not configured.")
        context = ssl.create_default_context()
        if config.secure and config.port == SSL_PORT:
            server: smtplib.SMTP = smtplib.SMTP_SSL(
                config.host, config.port, timeout=self._timeout, context=context
            )
        else:
            server = smtplib.SMTP(config.host, config.port, timeout=self._timeout)
            if config.secure:
                server.starttls(context=context)
        if config.username:
            server.login(config.username, config.password)
        return server

    def build_message(self, outbound: OutboundMessage) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self._config.from_email
        message["To"] = ", ".join(outbound.to)
        if outbound.cc:
            message["Cc"] = ", ".join(outbound.cc)
        message["Subject"] = outbound.subject
        domain = self._config.from_email.split("@")[-1] if "@" in self._config.from_email else None
        message["Message-ID"] = make_msgid(domain=domain)
        if outbound.read_receipt:
            message["Disposition-Notification-To"] = self._config.from_email
            message["Return-Receipt-To"] = self._config.from_email
        message.set_content(outbound.body)
        return message

    def send(self, outbound: OutboundMessage) -> None:
        if not outbound.to:
            raise MailDeliveryError("Message has no recipients.")
        message = self.build_message(outbound)
        try:
            with self._connect() as server:
                server.send_message(message)
            logger.debug("SMTP_SENT: %s via %s", message["Message-ID"], self._config.host)
        except MailDeliveryError:
            raise
        except (smtplib.SMTPException, OSError) as exc:
            raise MailDeliveryError(f"{', '.join(outbound.to)}: {exc}") from exc

    def verify(self) -> Optional[str]:
        """Open and authenticate a connection, returning an error message or ``None``."""

        try:
            with self._connect() as server:
                server.noop()
        except smtplib.SMTPAuthenticationError as exc:
            logger.warning("SMTP_AUTH_REJECTED: %s", self._config.host)
            return f"SMTP authentication failed: {exc}"
        except (MailDeliveryError, smtplib.SMTPException, OSError) as exc:
            return f"SMTP connection failed: {exc}"
        return None


__all__ = ["Mailer", "MailDeliveryError", "OutboundMessage"]
