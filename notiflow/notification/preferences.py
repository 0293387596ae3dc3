"""User preference gate: opt-outs, channel flags, delivery windows and digest deferral."""

from collections.abc import Mapping
from datetime import datetime
from zoneinfo import ZoneInfo

from notiflow.core.logging import get_logger
from notiflow.models.common import Channel, ensure_utc, utcnow
from notiflow.models.preference import ChannelSchedule, DeliveryWindow, Preference, PreferenceUpdate
from notiflow.notification.event_templates import EVENT_TEMPLATES, EventTemplate, default_priority
from notiflow.storage.preference_store import PreferenceStore

logger = get_logger(__name__)


def _weekday(value: datetime) -> int:
    """0=Sunday .. 6=Saturday."""
    return value.isoweekday() % 7


def _window_contains(window: DeliveryWindow, local: datetime) -> bool:
    minute = local.hour * 60 + local.minute
    start, end = window.start_minutes, window.end_minutes
    today = _weekday(local)

    if start == end:
        return window.days is None or today in window.days
    if start < end:
        return start <= minute < end and (window.days is None or today in window.days)

    # Spans midnight: the part after midnight belongs to the previous day's window
    if minute >= start:
        return window.days is None or today in window.days
    if minute < end:
        return window.days is None or (today - 1) % 7 in window.days
    return False


def is_within_allowed_window(schedule: ChannelSchedule, now: datetime) -> bool:
    """Whether ``now`` falls in one of the schedule's windows, in its timezone.

    A schedule without windows allows every time.
    """
    if not schedule.windows:
        return True
    local = ensure_utc(now).astimezone(ZoneInfo(schedule.timezone))
    return any(_window_contains(window, local) for window in schedule.windows)


class PreferenceGate:
    """Decides per user, type and channel whether a notification may go out."""

    def __init__(
        self,
        store: PreferenceStore | None = None,
        event_templates: Mapping[str, EventTemplate] = EVENT_TEMPLATES,
    ):
        self._store = store or PreferenceStore()
        self._event_templates = event_templates

    def _default(self, user_id: str, template_type: str) -> Preference:
        return Preference(
            user_id=user_id,
            template_type=template_type,
            priority=default_priority(template_type, self._event_templates),
        )

    async def get_preference(self, user_id: str, template_type: str) -> Preference:
        """Stored preference, created with defaults on first access."""
        return await self._store.get_or_create(self._default(user_id, template_type))

    async def get_preferences(self, user_id: str) -> list[Preference]:
        """All of a user's preferences, including defaults for every built-in event type."""
        for template_type in self._event_templates:
            await self.get_preference(user_id, template_type)
        return await self._store.list_for_user(user_id)

    async def update_preference(
        self,
        user_id: str,
        template_type: str,
        update: PreferenceUpdate,
    ) -> Preference:
        preference = await self.get_preference(user_id, template_type)
        changes = update.model_dump(exclude_unset=True)
        if "channel_schedules" in changes:
            changes["channel_schedules"] = update.channel_schedules or []
        updated = preference.model_copy(update={**changes, "updated_at": utcnow()})
        await self._store.save(updated)
        logger.info("Preference updated", user_id=user_id, template_type=template_type, fields=sorted(changes))
        return updated

    async def should_send(
        self,
        user_id: str,
        template_type: str,
        channel: Channel,
        now: datetime | None = None,
    ) -> bool:
        """Single gate for every channel.

        The preference must be enabled; in-app needs nothing more, email and
        push need their flag. If the channel has delivery windows, ``now``
        must fall inside one of them.
        """
        preference = await self.get_preference(user_id, template_type)
        if not preference.enabled:
            return False

        if channel == Channel.EMAIL and not preference.email:
            return False
        if channel == Channel.PUSH and not preference.push:
            return False

        schedule = preference.schedule_for(channel)
        if schedule and not is_within_allowed_window(schedule, now or utcnow()):
            logger.debug("Outside delivery window", user_id=user_id, channel=channel.value)
            return False
        return True

    async def should_defer_to_digest(self, user_id: str, template_type: str, channel: Channel) -> Preference | None:
        """Preference to digest under, when ``channel`` should wait for the digest.

        Only email is digested, and only for preferences that opted into a
        digest frequency.
        """
        if channel != Channel.EMAIL:
            return None
        preference = await self.get_preference(user_id, template_type)
        if preference.include_in_digest and preference.digest_frequency is not None:
            return preference
        return None
