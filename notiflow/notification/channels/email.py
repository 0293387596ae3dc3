"""Email notification channel."""

import html
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import aiosmtplib

from notiflow.core.config import Settings, get_settings
from notiflow.core.errors import ChannelDeliveryFailed
from notiflow.core.logging import get_logger
from notiflow.models.common import Channel
from notiflow.models.notification import ChannelOutcome, ChannelPayload, DeliveryStatus
from notiflow.notification.channels.base import NotificationChannel

logger = get_logger(__name__)


class EmailChannel(NotificationChannel):
    """Email notification channel using SMTP."""

    def __init__(self, settings: Settings | None = None):
        self._settings = settings or get_settings()

    @property
    def channel_type(self) -> Channel:
        return Channel.EMAIL

    async def send(self, address: str, payload: ChannelPayload) -> ChannelOutcome:
        """Send an email.

        Args:
            address: Recipient email address
            payload: Rendered content; the title becomes the subject

        Returns:
            ``sent`` on SMTP acceptance, ``failed`` when SMTP is not configured

        Raises:
            ChannelDeliveryFailed: The SMTP server refused or the connection failed
        """
        if not self._settings.smtp_host:
            logger.warning("SMTP not configured")
            return ChannelOutcome(status=DeliveryStatus.FAILED, error="SMTP not configured")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = payload.title[:100]
        msg["From"] = self._settings.smtp_from or self._settings.smtp_user
        msg["To"] = address

        msg.attach(MIMEText(self._to_text(payload), "plain", "utf-8"))
        msg.attach(MIMEText(self._to_html(payload), "html", "utf-8"))

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
        except aiosmtplib.SMTPException as e:
            logger.error("Email send failed", notification_id=payload.notification_id, error=str(e))
            raise ChannelDeliveryFailed(Channel.EMAIL.value, str(e)) from e

        logger.info("Email sent", notification_id=payload.notification_id)
        return ChannelOutcome(status=DeliveryStatus.SENT)

    def _to_text(self, payload: ChannelPayload) -> str:
        lines = [payload.body]
        if payload.url:
            lines.extend(["", payload.url])
        return "\n".join(lines)

    def _to_html(self, payload: ChannelPayload) -> str:
        body = html.escape(payload.body).replace("\n", "<br>")
        link = ""
        if payload.url:
            url = html.escape(payload.url, quote=True)
            link = f'<p><a href="{url}">View</a></p>'
        return f"<html><body><h3>{html.escape(payload.title)}</h3><p>{body}</p>{link}</body></html>"
