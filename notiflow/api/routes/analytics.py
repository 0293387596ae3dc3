"""Delivery analytics and batch inspection API routes."""

from datetime import datetime

from fastapi import APIRouter, Query

from notiflow.api.deps import OrchestratorDep
from notiflow.models.notification import (
    DeliveryAnalytics,
    TemplatePerformance,
    TimelineInterval,
    TimelinePoint,
)
from notiflow.schemas.common import APIResponse
from notiflow.schemas.notification import BatchDetail

router = APIRouter(tags=["analytics"])


@router.get("/analytics/delivery", response_model=APIResponse[DeliveryAnalytics])
async def get_delivery_analytics(
    orchestrator: OrchestratorDep,
    user_id: str | None = Query(default=None, description="Restrict to one user"),
    start_date: datetime | None = Query(default=None, description="Inclusive lower bound"),
    end_date: datetime | None = Query(default=None, description="Inclusive upper bound"),
) -> APIResponse[DeliveryAnalytics]:
    """Delivery totals by channel and status with per-channel rates."""
    analytics = await orchestrator.tracker.get_delivery_analytics(user_id, start_date, end_date)
    return APIResponse(data=analytics)


@router.get("/analytics/timeline", response_model=APIResponse[list[TimelinePoint]])
async def get_delivery_timeline(
    orchestrator: OrchestratorDep,
    user_id: str | None = Query(default=None),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    interval: TimelineInterval = Query(default=TimelineInterval.DAY),
) -> APIResponse[list[TimelinePoint]]:
    timeline = await orchestrator.tracker.get_delivery_timeline(user_id, start_date, end_date, interval)
    return APIResponse(data=timeline)


@router.get("/analytics/templates", response_model=APIResponse[list[TemplatePerformance]])
async def compare_templates(
    orchestrator: OrchestratorDep,
    template_ids: list[str] = Query(..., description="Templates to compare"),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
) -> APIResponse[list[TemplatePerformance]]:
    """Side-by-side funnels, best click rate first."""
    comparison = await orchestrator.tracker.compare_templates(template_ids, start_date, end_date)
    return APIResponse(data=comparison)


@router.get("/analytics/templates/{template_id}", response_model=APIResponse[TemplatePerformance])
async def get_template_performance(
    template_id: str,
    orchestrator: OrchestratorDep,
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
) -> APIResponse[TemplatePerformance]:
    """Sent, delivered, read and clicked counts of one template's notifications.

    Raises:
        TemplateNotFound: Unknown template
    """
    await orchestrator.templates.get_template(template_id)
    performance = await orchestrator.tracker.get_template_performance(template_id, start_date, end_date)
    return APIResponse(data=performance)


@router.get("/batches/{batch_id}", response_model=APIResponse[BatchDetail])
async def get_batch(
    batch_id: str,
    orchestrator: OrchestratorDep,
) -> APIResponse[BatchDetail]:
    batch = await orchestrator.batching.get_batch(batch_id)
    members = await orchestrator.batching.get_batch_members(batch_id)
    return APIResponse(data=BatchDetail(batch=batch, members=members))
