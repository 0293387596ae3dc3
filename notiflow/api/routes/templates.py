"""Template management API routes."""

from fastapi import APIRouter, Query

from notiflow.api.deps import OrchestratorDep, PaginationDep
from notiflow.models.template import RenderedTemplate, Template, TemplateVersion
from notiflow.schemas.common import APIResponse, PaginatedResponse
from notiflow.schemas.template import (
    RenderRequest,
    RollbackRequest,
    TemplateCreate,
    TemplateUpdate,
)

router = APIRouter(prefix="/templates", tags=["templates"])


@router.post("", response_model=APIResponse[Template])
async def create_template(
    data: TemplateCreate,
    orchestrator: OrchestratorDep,
) -> APIResponse[Template]:
    """Create a template after validating its expressions."""
    template = await orchestrator.templates.create_template(
        name=data.name,
        type=data.type,
        title=data.title,
        body=data.body,
        variables=data.variables,
        metadata=data.metadata,
        created_by=data.created_by,
    )
    return APIResponse(data=template)


@router.get("", response_model=PaginatedResponse[Template])
async def list_templates(
    orchestrator: OrchestratorDep,
    pagination: PaginationDep,
    type: str | None = Query(default=None, description="Filter by notification type"),
    active_only: bool = Query(default=False, description="Only active templates"),
) -> PaginatedResponse[Template]:
    templates = await orchestrator.templates.list_templates(type, active_only)
    return PaginatedResponse.from_items(templates, pagination)


@router.get("/{template_id}", response_model=APIResponse[Template])
async def get_template(
    template_id: str,
    orchestrator: OrchestratorDep,
) -> APIResponse[Template]:
    template = await orchestrator.templates.get_template(template_id)
    return APIResponse(data=template)


@router.patch("/{template_id}", response_model=APIResponse[Template])
async def update_template(
    template_id: str,
    data: TemplateUpdate,
    orchestrator: OrchestratorDep,
) -> APIResponse[Template]:
    """Partially update a template; content changes bump the version."""
    template = await orchestrator.templates.update_template(
        template_id,
        name=data.name,
        title=data.title,
        body=data.body,
        variables=data.variables,
        metadata=data.metadata,
        is_active=data.is_active,
        updated_by=data.updated_by,
    )
    return APIResponse(data=template)


@router.get("/{template_id}/versions", response_model=APIResponse[list[TemplateVersion]])
async def get_versions(
    template_id: str,
    orchestrator: OrchestratorDep,
) -> APIResponse[list[TemplateVersion]]:
    """Version history, newest first."""
    versions = await orchestrator.templates.get_versions(template_id)
    return APIResponse(data=versions)


@router.post("/{template_id}/rollback", response_model=APIResponse[Template])
async def rollback(
    template_id: str,
    data: RollbackRequest,
    orchestrator: OrchestratorDep,
) -> APIResponse[Template]:
    """Restore an earlier version's content as a new version."""
    template = await orchestrator.templates.rollback(template_id, data.version, data.updated_by)
    return APIResponse(data=template)


@router.post("/{template_id}/render", response_model=APIResponse[RenderedTemplate])
async def render(
    template_id: str,
    data: RenderRequest,
    orchestrator: OrchestratorDep,
) -> APIResponse[RenderedTemplate]:
    """Preview a template with the given variables."""
    rendered = await orchestrator.templates.render(template_id, data.data)
    return APIResponse(data=rendered)
