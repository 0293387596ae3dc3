"""Per-user, per-channel rate limiting over minute/hour/day windows."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from notiflow.core.config import Settings, get_settings
from notiflow.core.errors import RateLimitExceeded
from notiflow.core.logging import get_logger
from notiflow.models.common import Channel, ensure_utc, utcnow
from notiflow.models.rate_limit import (
    RateLimitConfig,
    RateLimitKey,
    RateLimitPolicy,
    RateLimitResult,
    ThrottleStatus,
    WindowType,
)
from notiflow.observability.metrics import RATE_LIMITED
from notiflow.storage.rate_limit_store import RateLimitStore

logger = get_logger(__name__)

WINDOW_ORDER = (WindowType.MINUTE, WindowType.HOUR, WindowType.DAY)


def window_bounds(window: WindowType, now: datetime, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Canonical [start, end) of the window containing ``now``, in UTC.

    Minute and hour windows truncate the UTC time; the day window starts at
    midnight in ``tz``.
    """
    now = ensure_utc(now)
    if window == WindowType.MINUTE:
        start = now.replace(second=0, microsecond=0)
        return start, start + timedelta(minutes=1)
    if window == WindowType.HOUR:
        start = now.replace(minute=0, second=0, microsecond=0)
        return start, start + timedelta(hours=1)

    local_start = now.astimezone(tz).replace(hour=0, minute=0, second=0, microsecond=0)
    local_end = local_start + timedelta(days=1)
    return local_start.astimezone(timezone.utc), local_end.astimezone(timezone.utc)


class RateLimiter:
    """Checks and counts sends against per-key policies."""

    def __init__(self, store: RateLimitStore | None = None, settings: Settings | None = None):
        self._store = store or RateLimitStore()
        self._settings = settings or get_settings()
        self._tz = ZoneInfo(self._settings.reference_timezone)

    def _default_policy(self, key: RateLimitKey) -> RateLimitPolicy:
        return RateLimitPolicy(
            user_id=key.user_id,
            channel=key.channel,
            template_type=key.template_type,
            category=key.category,
            max_per_minute=self._settings.rate_limit_per_minute,
            max_per_hour=self._settings.rate_limit_per_hour,
            max_per_day=self._settings.rate_limit_per_day,
        )

    async def get_policy(self, key: RateLimitKey) -> RateLimitPolicy:
        """Stored policy for exactly ``key``, created with defaults on first use."""
        return await self._store.get_or_create_policy(self._default_policy(key))

    async def resolve_policy(self, key: RateLimitKey) -> RateLimitPolicy:
        """Most specific policy governing ``key``.

        Exact (type+category) wins over type-only, then category-only, then
        the user+channel policy. When nothing matches, the user+channel
        default is created.
        """
        candidates = [policy for policy in await self._store.list_policies(key.user_id) if policy.matches(key)]
        if candidates:
            return max(candidates, key=lambda policy: policy.specificity)
        return await self.get_policy(RateLimitKey(user_id=key.user_id, channel=key.channel))

    async def check_rate_limit(
        self,
        user_id: str,
        channel: Channel,
        template_type: str | None = None,
        category: str | None = None,
        now: datetime | None = None,
    ) -> RateLimitResult:
        """Check whether one more send fits every window.

        Counters are only read. The first window at or over its maximum
        decides the result.

        Args:
            user_id: Recipient
            channel: Delivery channel
            template_type: Type of the notification being sent
            category: Category of the notification being sent
            now: Reference time, defaults to the current time

        Returns:
            Allowed flag, with reason and retry time when refused
        """
        now = ensure_utc(now or utcnow())
        key = RateLimitKey(user_id=user_id, channel=channel, template_type=template_type, category=category)
        policy = await self.resolve_policy(key)

        for window in WINDOW_ORDER:
            counter = await self._store.get_window(policy, window, *window_bounds(window, now, self._tz))
            if counter.count >= policy.max_for(window):
                return RateLimitResult(
                    allowed=False,
                    window=window,
                    reason=f"Rate limit exceeded for {window.value}",
                    next_allowed_at=counter.window_end,
                )
        return RateLimitResult(allowed=True)

    async def enforce(
        self,
        user_id: str,
        channel: Channel,
        template_type: str | None = None,
        category: str | None = None,
        now: datetime | None = None,
    ) -> None:
        """Raise if the send is not allowed.

        Raises:
            RateLimitExceeded: With the time the blocking window ends
        """
        result = await self.check_rate_limit(user_id, channel, template_type, category, now)
        if not result.allowed:
            RATE_LIMITED.labels(channel=channel.value, window=result.window.value).inc()
            logger.info(
                "Rate limit exceeded",
                user_id=user_id,
                channel=channel.value,
                reason=result.reason,
                next_allowed_at=result.next_allowed_at.isoformat() if result.next_allowed_at else None,
            )
            raise RateLimitExceeded(result.reason or "Rate limit exceeded", result.next_allowed_at)

    async def track_sent(
        self,
        user_id: str,
        channel: Channel,
        template_type: str | None = None,
        category: str | None = None,
        now: datetime | None = None,
    ) -> None:
        """Count one send in all three windows of the governing policy atomically."""
        now = ensure_utc(now or utcnow())
        key = RateLimitKey(user_id=user_id, channel=channel, template_type=template_type, category=category)
        policy = await self.resolve_policy(key)
        windows = [(window, *window_bounds(window, now, self._tz)) for window in WINDOW_ORDER]
        await self._store.increment(policy, windows)

    async def get_policies(self, user_id: str) -> list[RateLimitPolicy]:
        return await self._store.list_policies(user_id)

    async def update_policy(
        self,
        user_id: str,
        channel: Channel,
        config: RateLimitConfig,
        template_type: str | None = None,
        category: str | None = None,
    ) -> RateLimitPolicy:
        """Apply a partial update to a policy, creating it first if needed."""
        key = RateLimitKey(user_id=user_id, channel=channel, template_type=template_type, category=category)
        policy = await self.get_policy(key)
        updated = policy.model_copy(update=config.model_dump(exclude_none=True))
        logger.info("Rate limit policy updated", user_id=user_id, channel=channel.value, slug=key.slug())
        return await self._store.save_policy(updated)

    async def get_throttle_status(
        self,
        user_id: str,
        channel: Channel,
        template_type: str | None = None,
        category: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, ThrottleStatus]:
        """Current usage of each window under the governing policy."""
        now = ensure_utc(now or utcnow())
        key = RateLimitKey(user_id=user_id, channel=channel, template_type=template_type, category=category)
        policy = await self.resolve_policy(key)

        status = {}
        for window in WINDOW_ORDER:
            counter = await self._store.get_window(policy, window, *window_bounds(window, now, self._tz))
            maximum = policy.max_for(window)
            status[window.value] = ThrottleStatus(
                current=counter.count,
                max=maximum,
                remaining=max(0, maximum - counter.count),
                resets_at=counter.window_end,
            )
        return status
