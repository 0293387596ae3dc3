"""Notification orchestrator: turns domain events into delivered notifications."""

import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from redis.asyncio import Redis

from notiflow.core.config import Settings, get_settings
from notiflow.core.errors import (
    ABTestNotActive,
    ChannelDeliveryFailed,
    InvalidTemplateError,
    NotificationNotFound,
    RateLimitExceeded,
)
from notiflow.core.logging import get_logger
from notiflow.models.ab_test import ABTestEventType
from notiflow.models.batch import NotificationBatch
from notiflow.models.common import Channel, NotificationCategory, NotificationPriority, ensure_utc, utcnow
from notiflow.models.event import NotificationEvent
from notiflow.models.notification import (
    ChannelOutcome,
    ChannelPayload,
    DeliveryStatus,
    Notification,
)
from notiflow.models.schedule import RecipientCriteria
from notiflow.notification.ab_testing import VariantSelector
from notiflow.notification.batching import BatchAggregator
from notiflow.notification.channels.base import NotificationChannel
from notiflow.notification.criteria import CriteriaEvaluator
from notiflow.notification.delivery import DeliveryTracker
from notiflow.notification.digest import DigestProcessor
from notiflow.notification.event_templates import EVENT_TEMPLATES, EventTemplate, FormattedEvent
from notiflow.notification.preferences import PreferenceGate
from notiflow.notification.rate_limiter import RateLimiter
from notiflow.notification.scheduler import Scheduler
from notiflow.notification.templates import TemplateRegistry
from notiflow.observability.metrics import (
    CHANNEL_LATENCY,
    EVENTS_PROCESSED,
    EVENTS_RECEIVED,
    NOTIFICATIONS_CREATED,
    SUPPRESSED,
)
from notiflow.observability.tracing import TraceContext
from notiflow.storage.ab_test_store import ABTestStore
from notiflow.storage.auxiliary import DigestQueue, PeriodLock
from notiflow.storage.batch_store import BatchStore
from notiflow.storage.delivery_store import DeliveryStore
from notiflow.storage.notification_store import NotificationStore
from notiflow.storage.preference_store import PreferenceStore
from notiflow.storage.rate_limit_store import RateLimitStore
from notiflow.storage.schedule_store import ScheduleStore
from notiflow.storage.template_store import TemplateStore
from notiflow.storage.user_directory import UserDirectory

logger = get_logger(__name__)

E = TypeVar("E", bound=Enum)

OUTBOUND_CHANNELS = (Channel.EMAIL, Channel.PUSH)


def _enum_or(enum: type[E], value: Any, default: E) -> E:
    try:
        return enum(value)
    except ValueError:
        return default


@dataclass
class _Content:
    """Rendered notification content plus its classification."""

    category: NotificationCategory
    priority: NotificationPriority
    title: str
    message: str
    group_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class _Classification:
    category: NotificationCategory
    priority: NotificationPriority
    group_id: str | None = None
    formatted: FormattedEvent | None = None


class NotificationOrchestrator:
    """Runs events through preferences, rate limits, A/B variants, templates,
    batching and channel senders.

    Components are public so the API and worker can reach them directly.
    """

    def __init__(
        self,
        notifications: NotificationStore | None = None,
        preferences: PreferenceGate | None = None,
        rate_limiter: RateLimiter | None = None,
        variants: VariantSelector | None = None,
        templates: TemplateRegistry | None = None,
        batching: BatchAggregator | None = None,
        tracker: DeliveryTracker | None = None,
        scheduler: Scheduler | None = None,
        digests: DigestProcessor | None = None,
        directory: UserDirectory | None = None,
        criteria: CriteriaEvaluator | None = None,
        channels: Mapping[Channel, NotificationChannel] | None = None,
        event_templates: Mapping[str, EventTemplate] = EVENT_TEMPLATES,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.notifications = notifications or NotificationStore()
        self.event_templates = event_templates
        self.preferences = preferences or PreferenceGate(event_templates=event_templates)
        self.rate_limiter = rate_limiter or RateLimiter(settings=self.settings)
        self.variants = variants or VariantSelector()
        self.templates = templates or TemplateRegistry()
        self.batching = batching or BatchAggregator(notifications=self.notifications)
        self.tracker = tracker or DeliveryTracker()
        self.directory = directory or UserDirectory()
        self.criteria = criteria or CriteriaEvaluator()
        self.scheduler = scheduler or Scheduler(
            templates=self.templates,
            directory=self.directory,
            criteria=self.criteria,
        )
        self.channels: dict[Channel, NotificationChannel] = dict(channels or {})
        self.digests = digests or DigestProcessor(
            self.channels.get(Channel.EMAIL),
            notifications=self.notifications,
            directory=self.directory,
            tracker=self.tracker,
            settings=self.settings,
        )

    # Event delivery

    async def deliver(self, event: NotificationEvent, now: datetime | None = None) -> list[Notification]:
        """Deliver an event to every recipient except its actor.

        Never raises: per-recipient failures are logged and skipped.

        Args:
            event: Domain event
            now: Reference time for gates and rate limits

        Returns:
            Notifications created, one per recipient that passed the gates
        """
        EVENTS_RECEIVED.labels(event_type=event.event_type).inc()
        with TraceContext(event.event_id, event_type=event.event_type):
            try:
                recipients = await self.resolve_recipients(event.recipients)
            except Exception as e:
                logger.exception("Recipient resolution failed", event_type=event.event_type, error=str(e))
                EVENTS_PROCESSED.labels(event_type=event.event_type, status="error").inc()
                return []

            created = []
            for user_id in recipients:
                if user_id == event.actor_id:
                    continue
                try:
                    notification = await self._deliver_to(event, user_id, now)
                except Exception as e:
                    logger.exception(
                        "Delivery failed",
                        event_type=event.event_type,
                        user_id=user_id,
                        error=str(e),
                    )
                    continue
                if notification:
                    created.append(notification)

            EVENTS_PROCESSED.labels(event_type=event.event_type, status="delivered").inc()
            logger.info(
                "Event delivered",
                event_type=event.event_type,
                recipients=len(recipients),
                created=len(created),
            )
            return created

    async def resolve_recipients(self, recipients: list[str] | RecipientCriteria) -> list[str]:
        if isinstance(recipients, RecipientCriteria):
            return self.criteria.select(recipients, await self.directory.list_all())
        return list(dict.fromkeys(recipients))

    async def _deliver_to(
        self,
        event: NotificationEvent,
        user_id: str,
        now: datetime | None,
    ) -> Notification | None:
        now = ensure_utc(now or utcnow())

        if not await self.preferences.should_send(user_id, event.event_type, Channel.APP, now):
            SUPPRESSED.labels(channel=Channel.APP.value).inc()
            logger.debug("Suppressed by preferences", user_id=user_id, event_type=event.event_type)
            return None

        classification = await self._classify(event)
        try:
            await self.rate_limiter.enforce(
                user_id, Channel.APP, event.event_type, classification.category.value, now
            )
        except RateLimitExceeded:
            return None

        content = await self._render(event, classification, user_id, now)

        group_order = None
        if content.group_id:
            group_order = await self.notifications.next_group_order(
                user_id, content.category.value, content.group_id
            )

        notification = Notification(
            type=event.event_type,
            category=content.category,
            priority=content.priority,
            title=content.title,
            message=content.message,
            user_id=user_id,
            group_id=content.group_id,
            group_order=group_order,
            url=event.url,
            metadata={**content.metadata, "event_id": event.event_id},
            created_at=now,
        )
        await self._persist(notification, now)

        if await self.batching.enqueue(notification, now):
            return notification

        await self._dispatch_channels(notification, now)
        return notification

    async def _classify(self, event: NotificationEvent) -> _Classification:
        """Category, priority and group of the notification an event produces.

        Raises:
            TemplateNotFound: Unknown stored template
            InvalidTemplateError: Stored template is inactive, or no stored
                template and no built-in one for the type
        """
        if event.template_id:
            template = await self.templates.get_template(event.template_id)
            if not template.is_active:
                raise InvalidTemplateError(f"Template {template.template_id} is inactive")
            return _Classification(
                category=_enum_or(
                    NotificationCategory, template.metadata.get("category"), NotificationCategory.SYSTEM
                ),
                priority=_enum_or(
                    NotificationPriority, template.metadata.get("priority"), NotificationPriority.NORMAL
                ),
                group_id=template.metadata.get("group_id"),
            )

        event_template = self.event_templates.get(event.event_type)
        if event_template is None:
            raise InvalidTemplateError(f"Unknown notification template: {event.event_type}")
        formatted = event_template.format(event.data)
        return _Classification(
            category=formatted.category,
            priority=formatted.priority,
            group_id=formatted.group_id,
            formatted=formatted,
        )

    async def _render(
        self,
        event: NotificationEvent,
        classification: _Classification,
        user_id: str,
        now: datetime,
    ) -> _Content:
        formatted = classification.formatted
        if formatted is not None:
            return _Content(
                category=formatted.category,
                priority=formatted.priority,
                title=formatted.title,
                message=formatted.message,
                group_id=formatted.group_id,
                metadata={k: v for k, v in formatted.metadata.items() if v is not None},
            )

        template = await self.templates.get_template(event.template_id)
        values = event.template_variables()

        test = await self.variants.find_active_test(template.template_id, now)
        if test is not None:
            try:
                variant = await self.variants.select_variant(test.test_id, user_id)
            except ABTestNotActive:
                variant = None
            if variant is not None:
                rendered = self.templates.render_content(
                    variant.title,
                    variant.body,
                    template.variables,
                    values,
                    metadata={
                        **template.metadata,
                        **variant.metadata,
                        "template_id": template.template_id,
                        "ab_test_id": test.test_id,
                        "ab_variant_id": variant.variant_id,
                    },
                )
                return self._content_from(classification, rendered.title, rendered.body, rendered.metadata)

        rendered = await self.templates.render(template.template_id, values)
        return self._content_from(
            classification,
            rendered.title,
            rendered.body,
            {**rendered.metadata, "template_id": template.template_id, "template_version": template.version},
        )

    @staticmethod
    def _content_from(
        classification: _Classification,
        title: str,
        message: str,
        metadata: dict[str, Any],
    ) -> _Content:
        return _Content(
            category=classification.category,
            priority=classification.priority,
            title=title,
            message=message,
            group_id=classification.group_id,
            metadata=metadata,
        )

    async def _persist(self, notification: Notification, now: datetime, metadata: dict[str, Any] | None = None) -> None:
        """Store a notification and count it as an in-app send."""
        await self.notifications.create(notification)
        NOTIFICATIONS_CREATED.labels(type=notification.type, category=notification.category.value).inc()
        await self.tracker.track_delivery(
            notification.notification_id,
            notification.user_id,
            Channel.APP,
            DeliveryStatus.SENT,
            metadata=metadata,
            template_id=notification.template_id,
        )
        await self.rate_limiter.track_sent(
            notification.user_id,
            Channel.APP,
            notification.type,
            notification.category.value,
            now,
        )
        ab_test = notification.ab_test
        if ab_test:
            await self.variants.track_event(ab_test[0], ab_test[1], notification.user_id, ABTestEventType.SENT)

    # Outbound channels

    async def _dispatch_channels(self, notification: Notification, now: datetime) -> None:
        """Gate, rate limit and send email/push concurrently.

        Each outcome becomes a DeliveryRecord; a failing channel never
        affects the other channel or the in-app record.
        """
        contact = await self.directory.get(notification.user_id)
        sends = []
        for channel in OUTBOUND_CHANNELS:
            if not await self.preferences.should_send(notification.user_id, notification.type, channel, now):
                SUPPRESSED.labels(channel=channel.value).inc()
                continue

            digest_preference = await self.preferences.should_defer_to_digest(
                notification.user_id, notification.type, channel
            )
            if digest_preference is not None:
                await self.digests.defer(digest_preference.digest_frequency, notification)
                continue

            address = contact.address_for(channel) if contact else None
            if not address:
                logger.debug("No address for channel", user_id=notification.user_id, channel=channel.value)
                continue

            try:
                await self.rate_limiter.enforce(
                    notification.user_id, channel, notification.type, notification.category.value, now
                )
            except RateLimitExceeded:
                continue

            sends.append(self._send_channel(channel, address, notification, now))

        if sends:
            await asyncio.gather(*sends)

    def _payload(self, notification: Notification) -> ChannelPayload:
        url = notification.url
        if url and url.startswith("/"):
            url = f"{self.settings.app_url.rstrip('/')}{url}"
        return ChannelPayload(
            notification_id=notification.notification_id,
            title=notification.title,
            body=notification.message,
            url=url,
            metadata={
                "type": notification.type,
                "category": notification.category.value,
                "priority": notification.priority.value,
            },
        )

    async def _send_channel(
        self,
        channel: Channel,
        address: str,
        notification: Notification,
        now: datetime,
    ) -> ChannelOutcome:
        sender = self.channels.get(channel)
        timeout = self.settings.channel_timeout_seconds
        if sender is None:
            outcome = ChannelOutcome(status=DeliveryStatus.FAILED, error=f"No sender configured for {channel.value}")
        else:
            started = time.perf_counter()
            try:
                outcome = await asyncio.wait_for(sender.send(address, self._payload(notification)), timeout)
            except asyncio.TimeoutError:
                outcome = ChannelOutcome(status=DeliveryStatus.FAILED, error=f"Timed out after {timeout}s")
            except ChannelDeliveryFailed as e:
                outcome = ChannelOutcome(status=DeliveryStatus.FAILED, error=e.reason)
            except Exception as e:
                outcome = ChannelOutcome(status=DeliveryStatus.FAILED, error=str(e))
            CHANNEL_LATENCY.labels(channel=channel.value).observe(time.perf_counter() - started)

        await self.tracker.track_delivery(
            notification.notification_id,
            notification.user_id,
            channel,
            outcome.status,
            error=outcome.error,
            template_id=notification.template_id,
        )
        if outcome.ok:
            await self.rate_limiter.track_sent(
                notification.user_id, channel, notification.type, notification.category.value, now
            )
            ab_test = notification.ab_test
            if ab_test and outcome.status == DeliveryStatus.DELIVERED:
                await self.variants.track_event(
                    ab_test[0], ab_test[1], notification.user_id, ABTestEventType.DELIVERED, {"channel": channel.value}
                )
        else:
            logger.warning(
                "Channel delivery failed",
                notification_id=notification.notification_id,
                channel=channel.value,
                error=outcome.error,
            )
        return outcome

    # Batch sender

    async def send_batch_digest(self, batch: NotificationBatch, members: list[Notification]) -> Notification:
        """Create one combined notification for a batch and send it out.

        Raises:
            RateLimitExceeded: If the in-app limit refuses the digest
        """
        now = utcnow()
        await self.rate_limiter.enforce(batch.user_id, Channel.APP, batch.template_type, batch.category, now)

        category = _enum_or(NotificationCategory, batch.category, NotificationCategory.SYSTEM)
        group_order = None
        if batch.group_id:
            group_order = await self.notifications.next_group_order(batch.user_id, category.value, batch.group_id)

        digest = Notification(
            type=batch.template_type,
            category=category,
            priority=batch.priority,
            title=f"{batch.count} new {batch.category} notifications",
            message=f"You have {batch.count} new notifications of type {batch.template_type}",
            user_id=batch.user_id,
            group_id=batch.group_id,
            group_order=group_order,
            metadata={
                "is_batch": True,
                "batch_id": batch.batch_id,
                "count": batch.count,
                "notifications": [
                    {"id": n.notification_id, "title": n.title, "message": n.message} for n in members
                ],
            },
            created_at=now,
        )
        await self._persist(
            digest,
            now,
            metadata={"is_batch": True, "batch_id": batch.batch_id, "count": batch.count},
        )
        await self._dispatch_channels(digest, now)
        return digest

    async def send_individually(self, notification: Notification) -> None:
        """Send a batched member's outbound channels; its in-app record already exists."""
        await self._dispatch_channels(notification, utcnow())

    # Inbox operations

    async def list_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[Notification]:
        return await self.notifications.list_for_user(user_id, unread_only, limit)

    async def unread_count(self, user_id: str) -> int:
        return await self.notifications.unread_count(user_id)

    async def mark_read(self, notification_id: str) -> Notification:
        """Mark read; the read record and A/B event are written only by the call that flips it."""
        notification, changed = await self.notifications.mark_read(notification_id)
        if notification is None:
            raise NotificationNotFound(notification_id)
        if not changed:
            return notification

        await self.tracker.track_delivery(
            notification_id,
            notification.user_id,
            Channel.APP,
            DeliveryStatus.DELIVERED,
            metadata={"read": True},
            template_id=notification.template_id,
        )
        ab_test = notification.ab_test
        if ab_test:
            await self.variants.track_event(ab_test[0], ab_test[1], notification.user_id, ABTestEventType.READ)
        return notification

    async def mark_clicked(self, notification_id: str, channel: Channel = Channel.APP) -> Notification:
        """Record a click; an unread notification is marked read first."""
        notification = await self.mark_read(notification_id)
        await self.tracker.track_delivery(
            notification_id,
            notification.user_id,
            channel,
            DeliveryStatus.CLICKED,
            template_id=notification.template_id,
        )
        ab_test = notification.ab_test
        if ab_test:
            await self.variants.track_event(
                ab_test[0], ab_test[1], notification.user_id, ABTestEventType.CLICKED, {"channel": channel.value}
            )
        return notification

    async def dismiss(self, notification_id: str) -> Notification:
        notification, changed = await self.notifications.mark_dismissed(notification_id)
        if notification is None:
            raise NotificationNotFound(notification_id)
        if not changed:
            return notification
        await self.tracker.track_delivery(
            notification_id,
            notification.user_id,
            Channel.APP,
            DeliveryStatus.DISMISSED,
            template_id=notification.template_id,
        )
        return notification

    # Periodic entry points

    async def process_scheduled_notifications(self, now: datetime | None = None) -> dict[str, int]:
        with TraceContext(sweep="schedules"):
            return await self.scheduler.process_due(self.deliver, now)

    async def schedule_batch_processing(self, now: datetime | None = None) -> dict[str, int]:
        with TraceContext(sweep="batches"):
            return await self.batching.sweep(self, now)

    async def process_digests(self, now: datetime | None = None) -> dict[str, int]:
        with TraceContext(sweep="digests"):
            return await self.digests.process_digests(now)

    async def close(self) -> None:
        for channel in self.channels.values():
            await channel.close()


def create_orchestrator(
    redis: Redis | None = None,
    channels: Mapping[Channel, NotificationChannel] | None = None,
    settings: Settings | None = None,
) -> NotificationOrchestrator:
    """Wire every component to one Redis client.

    Args:
        redis: Client to use; defaults to the shared pool
        channels: Outbound senders keyed by channel
        settings: Settings override

    Returns:
        Ready orchestrator
    """
    settings = settings or get_settings()
    notifications = NotificationStore(redis)
    templates = TemplateRegistry(TemplateStore(redis))
    directory = UserDirectory(redis)
    criteria = CriteriaEvaluator()
    tracker = DeliveryTracker(DeliveryStore(redis))
    channels = dict(channels or {})

    return NotificationOrchestrator(
        notifications=notifications,
        preferences=PreferenceGate(PreferenceStore(redis)),
        rate_limiter=RateLimiter(RateLimitStore(redis), settings=settings),
        variants=VariantSelector(ABTestStore(redis)),
        templates=templates,
        batching=BatchAggregator(BatchStore(redis), notifications),
        tracker=tracker,
        scheduler=Scheduler(ScheduleStore(redis), templates, directory, criteria),
        digests=DigestProcessor(
            channels.get(Channel.EMAIL),
            queue=DigestQueue(redis),
            lock=PeriodLock(redis),
            notifications=notifications,
            directory=directory,
            tracker=tracker,
            settings=settings,
        ),
        directory=directory,
        criteria=criteria,
        channels=channels,
        settings=settings,
    )
