"""Delivery tracking and analytics."""

from collections import Counter
from datetime import datetime
from typing import Any

from notiflow.core.logging import get_logger
from notiflow.models.common import Channel, ensure_utc
from notiflow.models.notification import (
    DeliveryAnalytics,
    DeliveryRecord,
    DeliveryStatus,
    TemplatePerformance,
    TimelineInterval,
    TimelinePoint,
)
from notiflow.observability.metrics import CHANNEL_DELIVERIES
from notiflow.storage.delivery_store import DeliveryStore

logger = get_logger(__name__)


def _period_label(value: datetime, interval: TimelineInterval) -> str:
    value = ensure_utc(value)
    if interval == TimelineInterval.HOUR:
        return value.strftime("%Y-%m-%d %H:00:00")
    if interval == TimelineInterval.WEEK:
        year, week, _ = value.isocalendar()
        return f"{year}-{week:02d}"
    return value.strftime("%Y-%m-%d")


def _percent(part: int, whole: int) -> float:
    return part / whole * 100 if whole else 0.0


class DeliveryTracker:
    """Append-only delivery facts per (notification, channel)."""

    def __init__(self, store: DeliveryStore | None = None):
        self._store = store or DeliveryStore()

    async def track_delivery(
        self,
        notification_id: str,
        user_id: str,
        channel: Channel,
        status: DeliveryStatus,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
        template_id: str | None = None,
    ) -> DeliveryRecord:
        """Record that a channel delivery reached ``status``.

        Records are never updated; a later status is a new record.
        """
        record = DeliveryRecord(
            notification_id=notification_id,
            user_id=user_id,
            channel=channel,
            status=status,
            error=error,
            template_id=template_id,
            metadata=metadata or {},
        )
        await self._store.append(record)
        CHANNEL_DELIVERIES.labels(channel=channel.value, status=status.value).inc()
        logger.debug(
            "Delivery tracked",
            notification_id=notification_id,
            channel=channel.value,
            status=status.value,
        )
        return record

    async def get_records(self, notification_id: str) -> list[DeliveryRecord]:
        return await self._store.for_notification(notification_id)

    async def get_delivery_analytics(
        self,
        user_id: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> DeliveryAnalytics:
        """Counts by channel and status, with failure and click rates.

        Each channel's rate is its failed (or clicked) records as a
        percentage of that channel's records.
        """
        records = await self._store.query(user_id, start_date, end_date)
        by_channel = Counter(r.channel.value for r in records)
        by_status = Counter(r.status.value for r in records)
        failed = Counter(r.channel.value for r in records if r.status == DeliveryStatus.FAILED)
        clicked = Counter(r.channel.value for r in records if r.status == DeliveryStatus.CLICKED)

        return DeliveryAnalytics(
            total=len(records),
            by_channel=dict(by_channel),
            by_status=dict(by_status),
            failure_rates={channel: _percent(failed[channel], total) for channel, total in by_channel.items()},
            click_rates={channel: _percent(clicked[channel], total) for channel, total in by_channel.items()},
        )

    async def get_delivery_timeline(
        self,
        user_id: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        interval: TimelineInterval = TimelineInterval.DAY,
    ) -> list[TimelinePoint]:
        """Record counts bucketed by period, channel and status, oldest first."""
        records = await self._store.query(user_id, start_date, end_date)
        buckets = Counter(
            (_period_label(r.created_at, interval), r.channel, r.status) for r in records
        )
        return [
            TimelinePoint(period=period, channel=channel, status=status, count=count)
            for (period, channel, status), count in sorted(
                buckets.items(), key=lambda item: (item[0][0], item[0][1].value, item[0][2].value)
            )
        ]

    async def get_template_performance(
        self,
        template_id: str,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> TemplatePerformance:
        """Sent, delivered, read and clicked notifications of one template.

        A notification counts as delivered once any channel reports
        ``delivered`` (a push accepted by the gateway or an in-app read).

        Args:
            template_id: Stored template
            start_date: Inclusive lower bound on record time
            end_date: Inclusive upper bound on record time

        Returns:
            Funnel counts with stage-over-stage percentages
        """
        records = await self._store.query(start_date=start_date, end_date=end_date, template_id=template_id)

        def notifications_where(predicate) -> int:
            return len({r.notification_id for r in records if predicate(r)})

        sent = notifications_where(lambda r: r.channel == Channel.APP and r.status == DeliveryStatus.SENT)
        delivered = notifications_where(lambda r: r.status == DeliveryStatus.DELIVERED)
        read = notifications_where(lambda r: r.metadata.get("read") is True)
        clicked = notifications_where(lambda r: r.status == DeliveryStatus.CLICKED)
        failed = notifications_where(lambda r: r.status == DeliveryStatus.FAILED)

        return TemplatePerformance(
            template_id=template_id,
            sent=sent,
            delivered=delivered,
            read=read,
            clicked=clicked,
            failed=failed,
            delivery_rate=_percent(delivered, sent),
            read_rate=_percent(read, delivered),
            click_rate=_percent(clicked, read),
        )

    async def compare_templates(
        self,
        template_ids: list[str],
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> list[TemplatePerformance]:
        """Performance of several templates over the same range, best click rate first."""
        results = [
            await self.get_template_performance(template_id, start_date, end_date)
            for template_id in dict.fromkeys(template_ids)
        ]
        return sorted(results, key=lambda p: (-p.click_rate, -p.read_rate, p.template_id))
