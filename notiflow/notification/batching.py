"""Batch aggregation: collapse bursts of similar notifications into one digest."""

from datetime import datetime, timedelta
from typing import Protocol

from pydantic import ValidationError

from notiflow.core.errors import NotFoundError, ValidationFailed
from notiflow.core.logging import get_logger
from notiflow.models.batch import BatchingRule, BatchingRuleUpdate, BatchStatus, NotificationBatch
from notiflow.models.common import ensure_utc, utcnow
from notiflow.models.notification import Notification
from notiflow.observability.metrics import BATCHES_PROCESSED
from notiflow.storage.batch_store import BatchStore
from notiflow.storage.notification_store import NotificationStore

logger = get_logger(__name__)


class BatchSender(Protocol):
    """Sends what the batch sweep decides; implemented by the orchestrator."""

    async def send_batch_digest(self, batch: NotificationBatch, members: list[Notification]) -> Notification:
        """Create and send one combined notification for ``members``."""
        ...

    async def send_individually(self, notification: Notification) -> None:
        """Send a member that was held back by batching on its own."""
        ...


class BatchAggregator:
    """Groups notifications per (user, type, category, group) under batching rules."""

    def __init__(self, store: BatchStore | None = None, notifications: NotificationStore | None = None):
        self._store = store or BatchStore()
        self._notifications = notifications or NotificationStore()

    async def find_matching_rule(self, user_id: str, template_type: str, category: str) -> BatchingRule | None:
        """Most specific enabled rule: exact > type-only > category-only > global."""
        rules = [
            rule
            for rule in await self._store.list_rules(user_id)
            if rule.enabled
            and rule.template_type in (None, template_type)
            and rule.category in (None, category)
        ]
        if not rules:
            return None
        return max(rules, key=lambda rule: rule.specificity)

    async def enqueue(self, notification: Notification, now: datetime | None = None) -> bool:
        """Hold a notification back for batching if a rule applies.

        Args:
            notification: Persisted notification
            now: Reference time, defaults to the current time

        Returns:
            True if the notification joined a batch and must not be sent now
        """
        now = ensure_utc(now or utcnow())
        category = notification.category.value
        rule = await self.find_matching_rule(notification.user_id, notification.type, category)
        if rule is None:
            return False

        candidate = NotificationBatch(
            user_id=notification.user_id,
            template_type=notification.type,
            category=category,
            group_id=notification.group_id,
            priority=notification.priority,
            batch_window_seconds=rule.batch_window_seconds,
            min_batch_size=rule.min_batch_size,
            max_batch_size=rule.max_batch_size,
            scheduled_for=now + timedelta(seconds=rule.batch_window_seconds),
            created_at=now,
        )
        batch = await self._store.join_or_open(candidate, notification.notification_id, now)
        logger.info(
            "Notification batched",
            notification_id=notification.notification_id,
            batch_id=batch.batch_id,
            count=batch.count,
        )
        return True

    async def sweep(self, sender: BatchSender, now: datetime | None = None) -> dict[str, int]:
        """Process every due batch; one failing batch never stops the rest.

        Returns:
            Count of batches per outcome
        """
        now = ensure_utc(now or utcnow())
        summary = {"sent": 0, "individual": 0, "failed": 0}
        for batch_id in await self._store.due_ids(now):
            try:
                outcome = await self.process_batch(batch_id, sender, now)
            except Exception as e:
                logger.exception("Batch processing error", batch_id=batch_id, error=str(e))
                outcome = "failed"
            if outcome in summary:
                summary[outcome] += 1
                BATCHES_PROCESSED.labels(outcome=outcome).inc()
        if any(summary.values()):
            logger.info("Batch sweep finished", **summary)
        return summary

    async def process_batch(self, batch_id: str, sender: BatchSender, now: datetime | None = None) -> str:
        """Claim and send one batch.

        Returns:
            ``sent``, ``individual``, ``failed``, or ``skipped`` if another
            sweep claimed it first
        """
        now = ensure_utc(now or utcnow())
        if not await self._store.claim(batch_id):
            return "skipped"
        batch = await self._store.get(batch_id)
        if batch is None:
            return "skipped"
        members = await self._notifications.get_many(await self._store.members(batch_id))

        if batch.count < batch.min_batch_size:
            await self._send_individually(sender, members)
            batch.status = BatchStatus.SENT
            batch.sent_at = now
            batch.metadata["delivered_individually"] = True
            await self._store.save(batch)
            return "individual"

        try:
            digest = await sender.send_batch_digest(batch, members)
        except Exception as e:
            logger.warning("Batch send failed, sending individually", batch_id=batch_id, error=str(e))
            batch.status = BatchStatus.FAILED
            batch.error = str(e)
            await self._store.save(batch)
            await self._send_individually(sender, members)
            return "failed"

        batch.status = BatchStatus.SENT
        batch.sent_at = now
        batch.metadata["digest_notification_id"] = digest.notification_id
        await self._store.save(batch)
        logger.info("Batch sent", batch_id=batch_id, count=batch.count)
        return "sent"

    async def _send_individually(self, sender: BatchSender, members: list[Notification]) -> None:
        for notification in members:
            try:
                await sender.send_individually(notification)
            except Exception as e:
                logger.error(
                    "Individual send failed",
                    notification_id=notification.notification_id,
                    error=str(e),
                )

    async def get_rules(self, user_id: str) -> list[BatchingRule]:
        rules = await self._store.list_rules(user_id)
        rules.sort(key=lambda rule: rule.specificity, reverse=True)
        return rules

    async def update_rule(self, user_id: str, config: BatchingRuleUpdate) -> BatchingRule:
        """Create or update the rule for ``(config.template_type, config.category)``.

        Raises:
            ValidationFailed: Resulting sizes are inconsistent
        """
        existing = await self._store.get_rule(user_id, config.template_type, config.category)
        base = existing or BatchingRule(
            user_id=user_id,
            template_type=config.template_type,
            category=config.category,
        )
        values = {**base.model_dump(), **config.model_dump(exclude_none=True)}
        try:
            rule = BatchingRule.model_validate(values)
        except ValidationError as e:
            raise ValidationFailed(str(e.errors()[0]["msg"])) from e
        await self._store.save_rule(rule)
        logger.info(
            "Batching rule updated",
            user_id=user_id,
            template_type=rule.template_type,
            category=rule.category,
            enabled=rule.enabled,
        )
        return rule

    async def get_batch(self, batch_id: str) -> NotificationBatch:
        batch = await self._store.get(batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")
        return batch

    async def get_batch_members(self, batch_id: str) -> list[Notification]:
        await self.get_batch(batch_id)
        return await self._notifications.get_many(await self._store.members(batch_id))
