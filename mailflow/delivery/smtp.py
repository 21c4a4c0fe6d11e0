"""SMTP delivery channel."""

import uuid
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid

import aiosmtplib

from mailflow.core.config import Settings, get_settings
from mailflow.core.errors import DeliveryError
from mailflow.core.logging import get_logger
from mailflow.delivery.base import DeliveryChannel
from mailflow.models.message import DeliveryResult, OutboundMessage

logger = get_logger(__name__)


class SMTPChannel(DeliveryChannel):
    """Delivery through an SMTP relay."""

    def __init__(self, settings: Settings | None = None):
        self._settings = settings or get_settings()

    @property
    def channel_type(self) -> str:
        return "smtp"

    def build_message(self, message: OutboundMessage) -> MIMEMultipart:
        """Build the MIME message with plain text and HTML parts."""
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = self._settings.sender_address or self._settings.smtp_user
        msg["To"] = message.to
        msg["Message-ID"] = make_msgid(idstring=uuid.uuid4().hex[:12])

        for key in ("tenant_id", "automation_id", "execution_id", "campaign_id", "variant"):
            value = message.metadata.get(key)
            if value:
                msg[f"X-Mailflow-{key.replace('_', '-').title()}"] = str(value)

        if message.text:
            msg.attach(MIMEText(message.text, "plain", "utf-8"))
        msg.attach(MIMEText(message.html, "html", "utf-8"))
        return msg

    async def send(self, message: OutboundMessage) -> DeliveryResult:
        if not self._settings.smtp_host:
            raise DeliveryError("SMTP not configured")

        msg = self.build_message(message)

        try:
            await aiosmtplib.send(
                msg,
                hostname=self._settings.smtp_host,
                port=self._settings.smtp_port,
                username=self._settings.smtp_user or None,
                password=self._settings.smtp_password or None,
                use_tls=not self._settings.smtp_use_tls,
                start_tls=self._settings.smtp_use_tls,
            )
        except aiosmtplib.SMTPRecipientsRefused as e:
            logger.warning("SMTP recipient refused", to=message.to, error=str(e))
            return DeliveryResult(success=False, error=str(e))
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error("SMTP send failed", to=message.to, error=str(e))
            raise DeliveryError(f"SMTP send failed: {e}") from e

        logger.info("Email sent", to=message.to, message_id=msg["Message-ID"])
        return DeliveryResult(success=True, message_id=msg["Message-ID"])
