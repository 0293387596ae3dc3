"""One-time and recurring scheduled notifications."""

from collections.abc import Awaitable, Callable
from datetime import datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

from notiflow.core.errors import InvalidScheduleError, ScheduleNotFound
from notiflow.core.logging import get_logger
from notiflow.models.common import ensure_utc, utcnow
from notiflow.models.event import CustomEventData, NotificationEvent
from notiflow.models.notification import Notification
from notiflow.models.schedule import (
    RecipientCriteria,
    RecurrenceType,
    ScheduleConfig,
    ScheduledNotification,
    ScheduleStatus,
    ScheduleType,
)
from notiflow.notification.criteria import CriteriaEvaluator
from notiflow.notification.templates import TemplateRegistry
from notiflow.observability.metrics import PENDING_SCHEDULES, SCHEDULES_PROCESSED
from notiflow.storage.schedule_store import ScheduleStore
from notiflow.storage.user_directory import UserDirectory

logger = get_logger(__name__)

DeliverFn = Callable[[NotificationEvent], Awaitable[list[Notification]]]

# Longest gap between two matching days (a monthly "31st" skips short months)
MAX_SEARCH_DAYS = 400


def _day_matches(config_type: RecurrenceType, days: list[int], candidate: datetime) -> bool:
    if config_type == RecurrenceType.WEEKLY:
        return candidate.isoweekday() % 7 in days
    if config_type == RecurrenceType.MONTHLY:
        return candidate.day in days
    return True


def calculate_next_run(schedule: ScheduleConfig, now: datetime | None = None) -> datetime:
    """Next UTC instant a schedule should fire.

    One-time schedules fire at their date. Recurring schedules fire at their
    local time of day in their timezone, on the first day strictly after
    ``now`` (and not before ``start_date``) that the recurrence allows.

    Raises:
        InvalidScheduleError: Missing or out-of-range days, or no matching day
    """
    now = ensure_utc(now or utcnow())

    if schedule.type == ScheduleType.ONE_TIME:
        if schedule.date is None:
            raise InvalidScheduleError("Date is required for one-time schedule")
        return ensure_utc(schedule.date)

    config = schedule.recurring
    if config is None:
        raise InvalidScheduleError("Recurring config is required for recurring schedule")

    if config.type != RecurrenceType.DAILY:
        if not config.days:
            raise InvalidScheduleError(f"Days are required for {config.type.value} schedule")
        valid = range(0, 7) if config.type == RecurrenceType.WEEKLY else range(1, 32)
        invalid = [day for day in config.days if day not in valid]
        if invalid:
            raise InvalidScheduleError(f"Invalid days for {config.type.value} schedule: {invalid}")

    tz = ZoneInfo(config.timezone)
    reference = max(now, ensure_utc(config.start_date))
    day = reference.astimezone(tz).date()
    at = time(config.hour, config.minute)

    for _ in range(MAX_SEARCH_DAYS):
        candidate = datetime.combine(day, at, tzinfo=tz)
        if candidate > reference and _day_matches(config.type, config.days, candidate):
            return candidate.astimezone(timezone.utc)
        day += timedelta(days=1)

    raise InvalidScheduleError("Schedule has no upcoming run")


class Scheduler:
    """Stores schedules and runs the due ones through a delivery callback."""

    def __init__(
        self,
        store: ScheduleStore | None = None,
        templates: TemplateRegistry | None = None,
        directory: UserDirectory | None = None,
        criteria: CriteriaEvaluator | None = None,
    ):
        self._store = store or ScheduleStore()
        self._templates = templates or TemplateRegistry()
        self._directory = directory or UserDirectory()
        self._criteria = criteria or CriteriaEvaluator()

    async def create_schedule(
        self,
        template_id: str,
        recipients: list[str] | RecipientCriteria,
        schedule: ScheduleConfig,
        data: dict[str, Any] | None = None,
        created_by: str = "system",
        now: datetime | None = None,
    ) -> ScheduledNotification:
        """Create a pending schedule.

        Raises:
            TemplateNotFound: Unknown template
            InvalidScheduleError: Schedule cannot produce a run time
            ValidationFailed: Recipient expression does not parse
        """
        await self._templates.get_template(template_id)
        if isinstance(recipients, RecipientCriteria):
            self._criteria.validate(recipients)

        scheduled = ScheduledNotification(
            template_id=template_id,
            recipients=recipients,
            schedule=schedule,
            data=data or {},
            next_run_at=calculate_next_run(schedule, now),
            created_by=created_by,
        )
        await self._store.save(scheduled)
        logger.info(
            "Schedule created",
            schedule_id=scheduled.schedule_id,
            template_id=template_id,
            type=schedule.type.value,
            next_run_at=scheduled.next_run_at.isoformat(),
        )
        return scheduled

    async def update_schedule(
        self,
        schedule_id: str,
        recipients: list[str] | RecipientCriteria | None = None,
        schedule: ScheduleConfig | None = None,
        data: dict[str, Any] | None = None,
        status: ScheduleStatus | None = None,
        now: datetime | None = None,
    ) -> ScheduledNotification:
        """Update a schedule; a new schedule config recomputes ``next_run_at``."""
        current = await self.get_schedule(schedule_id)

        changes: dict[str, Any] = {"updated_at": utcnow()}
        if recipients is not None:
            if isinstance(recipients, RecipientCriteria):
                self._criteria.validate(recipients)
            changes["recipients"] = recipients
        if schedule is not None:
            changes["schedule"] = schedule
            changes["next_run_at"] = calculate_next_run(schedule, now)
        if data is not None:
            changes["data"] = data
        if status is not None:
            changes["status"] = status
            if status == ScheduleStatus.PENDING:
                changes["error"] = None

        updated = current.model_copy(update=changes)
        await self._store.save(updated)
        logger.info("Schedule updated", schedule_id=schedule_id, status=updated.status.value)
        return updated

    async def delete_schedule(self, schedule_id: str) -> None:
        """Remove a schedule; a run already in progress still finishes."""
        if not await self._store.delete(schedule_id):
            raise ScheduleNotFound(schedule_id)
        logger.info("Schedule deleted", schedule_id=schedule_id)

    async def get_schedule(self, schedule_id: str) -> ScheduledNotification:
        scheduled = await self._store.get(schedule_id)
        if not scheduled:
            raise ScheduleNotFound(schedule_id)
        return scheduled

    async def list_schedules(self, status: ScheduleStatus | None = None) -> list[ScheduledNotification]:
        return await self._store.list_all(status)

    async def resolve_recipients(self, recipients: list[str] | RecipientCriteria) -> list[str]:
        if isinstance(recipients, RecipientCriteria):
            return self._criteria.select(recipients, await self._directory.list_all())
        return list(dict.fromkeys(recipients))

    async def process_due(self, deliver: DeliverFn, now: datetime | None = None) -> dict[str, int]:
        """Run every pending schedule whose ``next_run_at`` has passed.

        Each schedule is claimed first, so concurrent sweeps never run the
        same one twice. A failing schedule is marked ``failed`` and the
        sweep continues.

        Returns:
            Count of schedules per outcome
        """
        now = ensure_utc(now or utcnow())
        due = await self._store.due_ids(now)
        PENDING_SCHEDULES.set(len(due))
        summary = {"completed": 0, "rescheduled": 0, "failed": 0}

        for schedule_id in due:
            if not await self._store.claim(schedule_id):
                continue
            scheduled = await self._store.get(schedule_id)
            if scheduled is None:
                continue

            outcome = await self._run(scheduled, deliver, now)
            summary[outcome] += 1
            SCHEDULES_PROCESSED.labels(outcome=outcome).inc()

        if due:
            logger.info("Scheduled notifications processed", due=len(due), **summary)
        return summary

    async def _run(self, scheduled: ScheduledNotification, deliver: DeliverFn, now: datetime) -> str:
        config = scheduled.schedule.recurring
        try:
            if config and config.end_date and ensure_utc(config.end_date) <= now:
                scheduled.status = ScheduleStatus.COMPLETED
                logger.info("Schedule ended", schedule_id=scheduled.schedule_id)
                await self._store.finish_run(scheduled)
                return "completed"

            template = await self._templates.get_template(scheduled.template_id)
            # Render once up front so missing variables fail the run
            await self._templates.render(scheduled.template_id, scheduled.data)
            recipients = await self.resolve_recipients(scheduled.recipients)

            event = NotificationEvent(
                event_type=template.type,
                data=CustomEventData(variables=scheduled.data),
                recipients=recipients,
                template_id=scheduled.template_id,
            )
            await deliver(event)

            scheduled.last_run_at = now
            scheduled.error = None
            outcome = "completed"
            if scheduled.is_recurring:
                next_run = calculate_next_run(scheduled.schedule, now)
                if config and config.end_date and next_run > ensure_utc(config.end_date):
                    scheduled.status = ScheduleStatus.COMPLETED
                else:
                    scheduled.status = ScheduleStatus.PENDING
                    scheduled.next_run_at = next_run
                    outcome = "rescheduled"
            else:
                scheduled.status = ScheduleStatus.COMPLETED

            logger.info(
                "Schedule run finished",
                schedule_id=scheduled.schedule_id,
                recipients=len(recipients),
                status=scheduled.status.value,
            )
        except Exception as e:
            logger.exception("Schedule run failed", schedule_id=scheduled.schedule_id, error=str(e))
            scheduled.status = ScheduleStatus.FAILED
            scheduled.error = str(e)
            outcome = "failed"

        scheduled.updated_at = utcnow()
        await self._store.finish_run(scheduled)
        return outcome
