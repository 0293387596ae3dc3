"""Daily and weekly email digests of deferred notifications."""

from datetime import datetime
from zoneinfo import ZoneInfo

from notiflow.core.config import Settings, get_settings
from notiflow.core.errors import ChannelDeliveryFailed
from notiflow.core.logging import get_logger
from notiflow.models.common import Channel, ensure_utc, utcnow
from notiflow.models.notification import (
    ChannelOutcome,
    ChannelPayload,
    DeliveryStatus,
    Notification,
    UserContact,
)
from notiflow.models.preference import DigestFrequency
from notiflow.notification.channels.base import NotificationChannel
from notiflow.notification.delivery import DeliveryTracker
from notiflow.observability.metrics import DIGESTS_SENT
from notiflow.storage.auxiliary import DigestQueue, PeriodLock
from notiflow.storage.notification_store import NotificationStore
from notiflow.storage.user_directory import UserDirectory

logger = get_logger(__name__)


def digest_period(frequency: DigestFrequency, local: datetime) -> str | None:
    """Period key for ``local`` time, or None when the digest does not run that day.

    Daily digests run every day; weekly digests run on Mondays.
    """
    if frequency == DigestFrequency.DAILY:
        return local.date().isoformat()
    if local.isoweekday() == 1:
        year, week, _ = local.isocalendar()
        return f"{year}-W{week:02d}"
    return None


def build_digest_payload(
    frequency: DigestFrequency,
    notifications: list[Notification],
    recipient: UserContact,
) -> ChannelPayload:
    lines = [
        f"Hi {recipient.display_name()},",
        "",
        f"You have {len(notifications)} new notifications:",
        "",
    ]
    for notification in notifications:
        lines.append(f"- {notification.title}: {notification.message}")
    return ChannelPayload(
        notification_id=notifications[0].notification_id,
        title=f"Your {frequency.value} notification digest",
        body="\n".join(lines),
        metadata={"digest": True, "count": len(notifications)},
    )


class DigestProcessor:
    """Sends each user one email with everything deferred since the last digest."""

    def __init__(
        self,
        email_channel: NotificationChannel | None,
        queue: DigestQueue | None = None,
        lock: PeriodLock | None = None,
        notifications: NotificationStore | None = None,
        directory: UserDirectory | None = None,
        tracker: DeliveryTracker | None = None,
        settings: Settings | None = None,
    ):
        self._email = email_channel
        self._queue = queue or DigestQueue()
        self._lock = lock or PeriodLock()
        self._notifications = notifications or NotificationStore()
        self._directory = directory or UserDirectory()
        self._tracker = tracker or DeliveryTracker()
        self._settings = settings or get_settings()

    async def defer(self, frequency: DigestFrequency, notification: Notification) -> None:
        await self._queue.push(frequency, notification.user_id, notification.notification_id)
        logger.debug(
            "Deferred to digest",
            notification_id=notification.notification_id,
            frequency=frequency.value,
        )

    async def process_digests(self, now: datetime | None = None) -> dict[str, int]:
        """Send due digests once per period.

        Nothing is sent before ``settings.digest_hour`` in the reference
        timezone. Each period is claimed with SET NX, so only one worker
        sends it.

        A failure for one user is logged and counted; the remaining users
        of the period are still processed.

        Returns:
            Number of digests sent per frequency, plus ``failed``
        """
        now = ensure_utc(now or utcnow())
        local = now.astimezone(ZoneInfo(self._settings.reference_timezone))
        sent = {frequency.value: 0 for frequency in DigestFrequency}
        sent["failed"] = 0
        if local.hour < self._settings.digest_hour:
            return sent

        for frequency in DigestFrequency:
            period = digest_period(frequency, local)
            if period is None:
                continue
            if not await self._lock.acquire(frequency, period):
                continue
            for user_id in await self._queue.users(frequency):
                try:
                    if await self._send_digest(frequency, user_id):
                        sent[frequency.value] += 1
                except Exception as e:
                    logger.exception(
                        "Digest processing error",
                        user_id=user_id,
                        frequency=frequency.value,
                        error=str(e),
                    )
                    sent["failed"] += 1

        if any(sent.values()):
            logger.info("Digests processed", **sent)
        return sent

    async def _send_digest(self, frequency: DigestFrequency, user_id: str) -> bool:
        notification_ids = await self._queue.drain(frequency, user_id)
        notifications = await self._notifications.get_many(notification_ids)
        if not notifications:
            return False

        contact = await self._directory.get(user_id)
        if self._email is None:
            outcome = ChannelOutcome(status=DeliveryStatus.FAILED, error="Email channel not configured")
        elif contact is None or not contact.email:
            outcome = ChannelOutcome(status=DeliveryStatus.FAILED, error="No email address")
        else:
            payload = build_digest_payload(frequency, notifications, contact)
            try:
                outcome = await self._email.send(contact.email, payload)
            except ChannelDeliveryFailed as e:
                outcome = ChannelOutcome(status=DeliveryStatus.FAILED, error=e.reason)
            except Exception as e:
                outcome = ChannelOutcome(status=DeliveryStatus.FAILED, error=str(e))

        for notification in notifications:
            await self._tracker.track_delivery(
                notification.notification_id,
                user_id,
                Channel.EMAIL,
                outcome.status,
                error=outcome.error,
                metadata={"digest": True, "frequency": frequency.value},
                template_id=notification.template_id,
            )

        DIGESTS_SENT.labels(frequency=frequency.value, status=outcome.status.value).inc()
        logger.info(
            "Digest sent" if outcome.ok else "Digest failed",
            user_id=user_id,
            frequency=frequency.value,
            count=len(notifications),
            error=outcome.error,
        )
        return outcome.ok
