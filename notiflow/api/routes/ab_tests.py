"""A/B test API routes."""

from fastapi import APIRouter, Query

from notiflow.api.deps import OrchestratorDep, PaginationDep
from notiflow.models.ab_test import ABTest, ABTestMetrics, ABTestStatus, Variant
from notiflow.schemas.ab_test import ABTestCreate, ABTestUpdate
from notiflow.schemas.common import APIResponse, PaginatedResponse

router = APIRouter(prefix="/ab-tests", tags=["ab-tests"])


@router.post("", response_model=APIResponse[ABTest])
async def create_test(
    data: ABTestCreate,
    orchestrator: OrchestratorDep,
) -> APIResponse[ABTest]:
    """Create a test in draft status."""
    test = await orchestrator.variants.create_test(
        name=data.name,
        template_id=data.template_id,
        variants=data.variants,
        description=data.description,
        start_date=data.start_date,
        end_date=data.end_date,
        created_by=data.created_by,
    )
    return APIResponse(data=test)


@router.get("", response_model=PaginatedResponse[ABTest])
async def list_tests(
    orchestrator: OrchestratorDep,
    pagination: PaginationDep,
    status: ABTestStatus | None = Query(default=None, description="Filter by status"),
) -> PaginatedResponse[ABTest]:
    tests = await orchestrator.variants.list_tests(status)
    return PaginatedResponse.from_items(tests, pagination)


@router.get("/{test_id}", response_model=APIResponse[ABTest])
async def get_test(
    test_id: str,
    orchestrator: OrchestratorDep,
) -> APIResponse[ABTest]:
    test = await orchestrator.variants.get_test(test_id)
    return APIResponse(data=test)


@router.patch("/{test_id}", response_model=APIResponse[ABTest])
async def update_test(
    test_id: str,
    data: ABTestUpdate,
    orchestrator: OrchestratorDep,
) -> APIResponse[ABTest]:
    """Update a test; illegal status moves are rejected with 409."""
    test = await orchestrator.variants.update_test(
        test_id,
        name=data.name,
        description=data.description,
        variants=data.variants,
        start_date=data.start_date,
        end_date=data.end_date,
        status=data.status,
        winning_variant=data.winning_variant,
    )
    return APIResponse(data=test)


@router.get("/{test_id}/metrics", response_model=APIResponse[ABTestMetrics])
async def get_metrics(
    test_id: str,
    orchestrator: OrchestratorDep,
) -> APIResponse[ABTestMetrics]:
    """Per-variant counts and percentage rates."""
    metrics = await orchestrator.variants.get_metrics(test_id)
    return APIResponse(data=metrics)


@router.get("/{test_id}/variant", response_model=APIResponse[Variant])
async def select_variant(
    test_id: str,
    orchestrator: OrchestratorDep,
    user_id: str = Query(..., description="User to assign"),
) -> APIResponse[Variant]:
    """Draw a variant for a user from an active test."""
    variant = await orchestrator.variants.select_variant(test_id, user_id)
    return APIResponse(data=variant)
