"""
Mail transport for order notifications.

MailTransport is the port the notification dispatcher depends on. The SMTP
adapter renders a named template, builds a multipart message and delivers it
from a worker thread so the event loop is never blocked on the socket.
"""
import asyncio
import smtplib
import socket
import ssl
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any, Mapping, Optional

import structlog

from order_reconciliation.config import Settings
from order_reconciliation.integrations.email_templates import get_template

logger = structlog.get_logger(__name__)


class MailDeliveryError(Exception):
    """
    Raised when a message could not be handed to the mail server.

    Args:
        message: Error message
        retryable: Whether a later attempt may succeed
        smtp_code: SMTP reply code, when the server answered
    """

    def __init__(self, message: str, retryable: bool, smtp_code: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.smtp_code = smtp_code


@dataclass(frozen=True)
class MailReceipt:
    message_id: str
    recipient: str
    template: str


class MailTransport(ABC):
    """Abstract interface for mail delivery adapters."""

    @abstractmethod
    async def send(
        self, recipient: str, template: str, data: Mapping[str, Any]
    ) -> MailReceipt:
        """
        Render ``template`` with ``data`` and deliver it to ``recipient``.

        Raises:
            MailDeliveryError: If delivery failed
        """
        ...


def _classify_smtp_error(error: Exception) -> MailDeliveryError:
    if isinstance(error, smtplib.SMTPRecipientsRefused):
        codes = [code for code, _ in error.recipients.values()]
        transient = bool(codes) and all(400 <= code < 500 for code in codes)
        return MailDeliveryError(str(error), retryable=transient, smtp_code=codes[0] if codes else None)
    if isinstance(error, smtplib.SMTPResponseException):
        code = error.smtp_code
        return MailDeliveryError(str(error), retryable=400 <= code < 500, smtp_code=code)
    if isinstance(error, smtplib.SMTPServerDisconnected):
        return MailDeliveryError(str(error), retryable=True)
    if isinstance(error, (socket.timeout, TimeoutError, ConnectionError, OSError)):
        return MailDeliveryError(f"SMTP connection failed: {error}", retryable=True)
    return MailDeliveryError(str(error), retryable=False)


class SmtpMailTransport(MailTransport):
    """
    SMTP adapter.

    Port 465 (or ``smtp_secure``) uses implicit TLS; otherwise the session is
    upgraded with STARTTLS.

    Args:
        settings: Application settings with SMTP credentials
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def _build_message(
        self, recipient: str, template: str, data: Mapping[str, Any]
    ) -> EmailMessage:
        rendered = get_template(template).render(data)
        message = EmailMessage()
        message["Subject"] = rendered["subject"]
        message["From"] = formataddr((self.settings.mail_from_name, self.settings.smtp_user))
        message["To"] = recipient
        message["Message-ID"] = make_msgid(domain=self.settings.smtp_host or None)
        message.set_content(rendered["text"])
        message.add_alternative(rendered["html"], subtype="html")
        return message

    def _deliver(self, message: EmailMessage) -> None:
        settings = self.settings
        if settings.smtp_use_tls:
            client: smtplib.SMTP = smtplib.SMTP_SSL(
                settings.smtp_host,
                settings.smtp_port,
                timeout=settings.smtp_timeout,
                context=ssl.create_default_context(),
            )
        else:
            client = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=settings.smtp_timeout)
        with client:
            if not settings.smtp_use_tls:
                client.starttls(context=ssl.create_default_context())
            client.login(settings.smtp_user, settings.smtp_password)
            client.send_message(message)

    async def send(
        self, recipient: str, template: str, data: Mapping[str, Any]
    ) -> MailReceipt:
        if not self.settings.smtp_configured:
            raise MailDeliveryError("SMTP is not configured", retryable=False)

        message = self._build_message(recipient, template, data)
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            error = _classify_smtp_error(e)
            logger.warning(
                "mail_delivery_failed",
                recipient=recipient,
                template=template,
                retryable=error.retryable,
                smtp_code=error.smtp_code,
                error=str(e),
            )
            raise error from e

        message_id = message["Message-ID"] or str(uuid.uuid4())
        logger.info("mail_sent", recipient=recipient, template=template, message_id=message_id)
        return MailReceipt(message_id=message_id, recipient=recipient, template=template)
