"""
SMTP delivery gateway.

Sends one multipart/alternative message (html2text plain part plus the
HTML body) with an optional PDF attachment.  Delivery failures are
reported in the returned DeliveryResult and never raised: callers decide
what a failure means.  There is no retry, backoff or queue.
"""

from __future__ import annotations

import smtplib
from email.message import EmailMessage
from email.utils import make_msgid

import html2text

from deal_config.schema import MailSettings
from deal_kernel.domain.ports import Attachment, DeliveryResult
from deal_kernel.logging_config import get_logger

logger = get_logger("services.delivery")


def html_to_text(html: str) -> str:
    converter = html2text.HTML2Text()
    converter.body_width = 0
    converter.ignore_images = True
    return converter.handle(html)


class SmtpDeliveryGateway:
    """DeliveryGateway over SMTP with STARTTLS."""

    def __init__(self, settings: MailSettings):
        self._settings = settings

    def build_message(
        self,
        to: str,
        subject: str,
        html: str,
        attachment: Attachment | None = None,
    ) -> EmailMessage:
        settings = self._settings
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = settings.sender
        msg["To"] = to
        if settings.bcc:
            msg["Bcc"] = ", ".join(settings.bcc)
        msg["Message-ID"] = make_msgid(domain=_sender_domain(settings.sender))

        msg.set_content(html_to_text(html))
        msg.add_alternative(html, subtype="html")

        if attachment is not None:
            maintype, _, subtype = attachment.content_type.partition("/")
            msg.add_attachment(
                attachment.content,
                maintype=maintype,
                subtype=subtype or "octet-stream",
                filename=attachment.filename,
            )
        return msg

    def send(
        self,
        to: str,
        subject: str,
        html: str,
        attachment: Attachment | None = None,
    ) -> DeliveryResult:
        settings = self._settings
        msg = self.build_message(to, subject, html, attachment)
        message_id = msg["Message-ID"]

        try:
            with smtplib.SMTP(settings.host, settings.port, timeout=settings.timeout) as server:
                if settings.use_tls:
                    server.starttls()
                if settings.username:
                    server.login(settings.username, settings.password or "")
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning(
                "delivery_failed",
                extra={"recipient": to, "error": f"{type(exc).__name__}: {exc}"},
            )
            return DeliveryResult.failed(str(exc) or type(exc).__name__)

        logger.info(
            "delivery_succeeded",
            extra={"recipient": to, "message_id": message_id},
        )
        return DeliveryResult.ok(message_id)


def _sender_domain(sender: str) -> str | None:
    address = sender.rsplit("<", 1)[-1].rstrip(">").strip()
    _, at, domain = address.partition("@")
    return domain if at and domain else None
