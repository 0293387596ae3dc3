"""Base class for outbound notification channels."""

from abc import ABC, abstractmethod

from notiflow.models.common import Channel
from notiflow.models.notification import ChannelOutcome, ChannelPayload


class NotificationChannel(ABC):
    """Abstract base class for channel senders.

    ``send`` raises ``ChannelDeliveryFailed`` when the provider rejects or
    cannot be reached. Callers record that, and any other exception that
    escapes, as a failed delivery.
    """

    @property
    @abstractmethod
    def channel_type(self) -> Channel:
        """Return channel type identifier."""
        pass

    @abstractmethod
    async def send(self, address: str, payload: ChannelPayload) -> ChannelOutcome:
        """Send notification content to one address.

        Args:
            address: Email address or push endpoint
            payload: Rendered content

        Returns:
            Delivery outcome

        Raises:
            ChannelDeliveryFailed: Provider error
        """
        pass

    async def close(self) -> None:
        """Clean up resources. Override if needed."""
        pass


def channels_by_type(*senders: NotificationChannel) -> dict[Channel, NotificationChannel]:
    """Key senders by the channel they serve."""
    return {sender.channel_type: sender for sender in senders}
