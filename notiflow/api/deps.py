"""API dependency injection."""

from typing import Annotated

from fastapi import Depends, Query, Request

from notiflow.notification.orchestrator import NotificationOrchestrator
from notiflow.schemas.common import PaginationParams


def get_orchestrator(request: Request) -> NotificationOrchestrator:
    """Get the orchestrator built at startup."""
    return request.app.state.orchestrator


# Type aliases for dependency injection
OrchestratorDep = Annotated[NotificationOrchestrator, Depends(get_orchestrator)]


def get_pagination(
    page: int = Query(default=1, ge=1, description="Page number"),
    page_size: int = Query(default=20, ge=1, le=100, description="Items per page"),
) -> PaginationParams:
    """Get pagination parameters from query."""
    return PaginationParams(page=page, page_size=page_size)


PaginationDep = Annotated[PaginationParams, Depends(get_pagination)]
