"""Scheduled notification API routes."""

from fastapi import APIRouter, Query

from notiflow.api.deps import OrchestratorDep, PaginationDep
from notiflow.models.schedule import ScheduledNotification, ScheduleStatus
from notiflow.schemas.common import APIResponse, PaginatedResponse
from notiflow.schemas.schedule import ScheduleCreate, ScheduleUpdate

router = APIRouter(prefix="/schedules", tags=["schedules"])


@router.post("", response_model=APIResponse[ScheduledNotification])
async def create_schedule(
    data: ScheduleCreate,
    orchestrator: OrchestratorDep,
) -> APIResponse[ScheduledNotification]:
    """Create a one-time or recurring scheduled notification."""
    schedule = await orchestrator.scheduler.create_schedule(
        template_id=data.template_id,
        recipients=data.recipients,
        schedule=data.schedule,
        data=data.data,
        created_by=data.created_by,
    )
    return APIResponse(data=schedule)


@router.get("", response_model=PaginatedResponse[ScheduledNotification])
async def list_schedules(
    orchestrator: OrchestratorDep,
    pagination: PaginationDep,
    status: ScheduleStatus | None = Query(default=None, description="Filter by status"),
) -> PaginatedResponse[ScheduledNotification]:
    """List schedules ordered by next run time."""
    schedules = await orchestrator.scheduler.list_schedules(status)
    return PaginatedResponse.from_items(schedules, pagination)


@router.get("/{schedule_id}", response_model=APIResponse[ScheduledNotification])
async def get_schedule(
    schedule_id: str,
    orchestrator: OrchestratorDep,
) -> APIResponse[ScheduledNotification]:
    schedule = await orchestrator.scheduler.get_schedule(schedule_id)
    return APIResponse(data=schedule)


@router.patch("/{schedule_id}", response_model=APIResponse[ScheduledNotification])
async def update_schedule(
    schedule_id: str,
    data: ScheduleUpdate,
    orchestrator: OrchestratorDep,
) -> APIResponse[ScheduledNotification]:
    """Partially update a schedule; a new schedule config recomputes the next run."""
    schedule = await orchestrator.scheduler.update_schedule(
        schedule_id,
        recipients=data.recipients,
        schedule=data.schedule,
        data=data.data,
        status=data.status,
    )
    return APIResponse(data=schedule)


@router.delete("/{schedule_id}", response_model=APIResponse)
async def delete_schedule(
    schedule_id: str,
    orchestrator: OrchestratorDep,
) -> APIResponse:
    await orchestrator.scheduler.delete_schedule(schedule_id)
    return APIResponse(message=f"Schedule {schedule_id} deleted")
