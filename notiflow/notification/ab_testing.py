"""A/B testing of notification content."""

import random
from datetime import datetime
from typing import Any

from notiflow.core.errors import (
    ABTestNotActive,
    ABTestNotFound,
    InvalidStatusTransition,
    ValidationFailed,
)
from notiflow.core.logging import get_logger
from notiflow.models.ab_test import (
    STATUS_TRANSITIONS,
    ABTest,
    ABTestEvent,
    ABTestEventType,
    ABTestMetrics,
    ABTestStatus,
    Variant,
    VariantMetrics,
)
from notiflow.models.common import ensure_utc, utcnow
from notiflow.storage.ab_test_store import ABTestStore

logger = get_logger(__name__)


def _rate(numerator: int, denominator: int) -> float:
    return numerator / denominator * 100 if denominator else 0.0


def validate_status_transition(current: ABTestStatus, requested: ABTestStatus) -> None:
    """Raises InvalidStatusTransition unless ``current -> requested`` is allowed."""
    if requested not in STATUS_TRANSITIONS[current]:
        raise InvalidStatusTransition(current.value, requested.value)


class VariantSelector:
    """Manages tests, assigns variants and aggregates their funnel metrics."""

    def __init__(self, store: ABTestStore | None = None, rng: random.Random | None = None):
        self._store = store or ABTestStore()
        self._rng = rng or random.Random()

    async def create_test(
        self,
        name: str,
        template_id: str,
        variants: list[Variant],
        description: str = "",
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        created_by: str = "system",
    ) -> ABTest:
        """Create a test in ``draft``.

        Raises:
            ValidationFailed: Fewer than two variants
        """
        if len(variants) < 2:
            raise ValidationFailed("At least 2 variants are required")

        test = ABTest(
            name=name,
            description=description,
            template_id=template_id,
            variants=variants,
            start_date=start_date or utcnow(),
            end_date=end_date,
            created_by=created_by,
        )
        await self._store.save(test)
        logger.info("A/B test created", test_id=test.test_id, template_id=template_id, variants=len(variants))
        return test

    async def update_test(
        self,
        test_id: str,
        name: str | None = None,
        description: str | None = None,
        variants: list[Variant] | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        status: ABTestStatus | None = None,
        winning_variant: str | None = None,
    ) -> ABTest:
        """Update a test, enforcing the status lifecycle.

        Raises:
            ABTestNotFound: Unknown test
            InvalidStatusTransition: Illegal status change
            ValidationFailed: Fewer than two variants
        """
        test = await self.get_test(test_id)

        if status is not None and status != test.status:
            validate_status_transition(test.status, status)
        if variants is not None and len(variants) < 2:
            raise ValidationFailed("At least 2 variants are required")
        if winning_variant is not None and test.variant(winning_variant) is None and not (
            variants and any(v.variant_id == winning_variant for v in variants)
        ):
            raise ValidationFailed(f"Unknown variant {winning_variant}")

        changes: dict[str, Any] = {"updated_at": utcnow()}
        if name:
            changes["name"] = name
        if description is not None:
            changes["description"] = description
        if variants:
            changes["variants"] = variants
        if start_date:
            changes["start_date"] = start_date
        if end_date is not None:
            changes["end_date"] = end_date
        if status is not None:
            changes["status"] = status
        if winning_variant:
            changes["winning_variant"] = winning_variant

        updated = test.model_copy(update=changes)
        await self._store.save(updated)
        logger.info("A/B test updated", test_id=test_id, status=updated.status.value)
        return updated

    async def get_test(self, test_id: str) -> ABTest:
        test = await self._store.get(test_id)
        if not test:
            raise ABTestNotFound(test_id)
        return test

    async def list_tests(self, status: ABTestStatus | None = None) -> list[ABTest]:
        tests = await self._store.list_all()
        tests = [t for t in tests if status is None or t.status == status]
        tests.sort(key=lambda t: t.created_at, reverse=True)
        return tests

    async def find_active_test(self, template_id: str, now: datetime | None = None) -> ABTest | None:
        """The running test bound to ``template_id``, if any."""
        now = ensure_utc(now or utcnow())
        for test_id in await self._store.active_ids(template_id):
            test = await self._store.get(test_id)
            if not test or test.status != ABTestStatus.ACTIVE:
                continue
            if ensure_utc(test.start_date) > now:
                continue
            if test.end_date and ensure_utc(test.end_date) <= now:
                continue
            return test
        return None

    async def select_variant(self, test_id: str, user_id: str) -> Variant:
        """Weighted random pick among the variants of an active test.

        Raises:
            ABTestNotActive: Test missing or not active
        """
        test = await self._store.get(test_id)
        if not test or test.status != ABTestStatus.ACTIVE:
            raise ABTestNotActive(test_id)
        return self.pick(test.variants)

    def pick(self, variants: list[Variant]) -> Variant:
        total = sum(v.weight for v in variants)
        remaining = self._rng.random() * total
        for variant in variants:
            remaining -= variant.weight
            if remaining <= 0:
                return variant
        return variants[0]

    async def track_event(
        self,
        test_id: str,
        variant_id: str,
        user_id: str,
        event: ABTestEventType,
        metadata: dict[str, Any] | None = None,
    ) -> ABTestEvent:
        record = ABTestEvent(
            test_id=test_id,
            variant_id=variant_id,
            user_id=user_id,
            event=event,
            metadata=metadata or {},
        )
        await self._store.record_event(record)
        return record

    async def get_metrics(self, test_id: str) -> ABTestMetrics:
        """Per-variant funnel counts and percentage rates.

        Raises:
            ABTestNotFound: Unknown test
        """
        test = await self.get_test(test_id)
        counts = await self._store.counts(test_id)

        metrics = {}
        for variant in test.variants:
            sent, delivered, read, clicked = (
                counts.get(f"{variant.variant_id}:{event.value}", 0)
                for event in (
                    ABTestEventType.SENT,
                    ABTestEventType.DELIVERED,
                    ABTestEventType.READ,
                    ABTestEventType.CLICKED,
                )
            )
            metrics[variant.variant_id] = VariantMetrics(
                sent=sent,
                delivered=delivered,
                read=read,
                clicked=clicked,
                delivery_rate=_rate(delivered, sent),
                read_rate=_rate(read, delivered),
                click_rate=_rate(clicked, read),
            )

        return ABTestMetrics(
            test_id=test_id,
            metrics=metrics,
            status=test.status,
            start_date=test.start_date,
            end_date=test.end_date,
            winning_variant=test.winning_variant,
        )
