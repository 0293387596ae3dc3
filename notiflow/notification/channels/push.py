"""Push notification channel over an HTTP gateway."""

import httpx

from notiflow.core.config import Settings, get_settings
from notiflow.core.errors import ChannelDeliveryFailed
from notiflow.core.logging import get_logger
from notiflow.models.common import Channel
from notiflow.models.notification import ChannelOutcome, ChannelPayload, DeliveryStatus
from notiflow.notification.channels.base import NotificationChannel

logger = get_logger(__name__)


class PushChannel(NotificationChannel):
    """Posts push messages to a gateway that fans out to devices."""

    def __init__(self, client: httpx.AsyncClient | None = None, settings: Settings | None = None):
        self._settings = settings or get_settings()
        self._client = client or httpx.AsyncClient(timeout=self._settings.channel_timeout_seconds)

    @property
    def channel_type(self) -> Channel:
        return Channel.PUSH

    async def send(self, address: str, payload: ChannelPayload) -> ChannelOutcome:
        """Send a push message.

        Args:
            address: Device or subscription endpoint registered for the user
            payload: Rendered content

        Returns:
            ``delivered`` when the gateway accepted it, ``failed`` when no
            gateway is configured

        Raises:
            ChannelDeliveryFailed: Transport error or non-2xx gateway response
        """
        if not self._settings.push_gateway_url:
            logger.warning("Push gateway not configured")
            return ChannelOutcome(status=DeliveryStatus.FAILED, error="Push gateway not configured")

        headers = {}
        if self._settings.push_gateway_token:
            headers["Authorization"] = f"Bearer {self._settings.push_gateway_token}"

        body = {
            "endpoint": address,
            "notification": {
                "title": payload.title,
                "body": payload.body,
                "data": {
                    "notificationId": payload.notification_id,
                    "url": payload.url,
                    **payload.metadata,
                },
            },
        }

        try:
            response = await self._client.post(self._settings.push_gateway_url, json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error("Push send error", notification_id=payload.notification_id, error=str(e))
            raise ChannelDeliveryFailed(Channel.PUSH.value, str(e)) from e

        if response.is_success:
            logger.info("Push message sent", notification_id=payload.notification_id)
            return ChannelOutcome(status=DeliveryStatus.DELIVERED)

        logger.warning(
            "Push send failed",
            notification_id=payload.notification_id,
            status_code=response.status_code,
        )
        raise ChannelDeliveryFailed(Channel.PUSH.value, f"Gateway responded {response.status_code}")

    async def close(self) -> None:
        await self._client.aclose()
