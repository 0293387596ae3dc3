"""User directory and per-user delivery settings API routes."""

from fastapi import APIRouter, Query

from notiflow.api.deps import OrchestratorDep, PaginationDep
from notiflow.core.errors import NotFoundError
from notiflow.models.batch import BatchingRule, BatchingRuleUpdate
from notiflow.models.common import Channel
from notiflow.models.notification import UserContact
from notiflow.models.preference import Preference, PreferenceUpdate
from notiflow.models.rate_limit import RateLimitConfig, RateLimitPolicy, ThrottleStatus
from notiflow.schemas.common import APIResponse, PaginatedResponse
from notiflow.schemas.settings import RateLimitUpdate, UserContactUpdate

router = APIRouter(prefix="/users", tags=["users"])


def _user_not_found(user_id: str) -> NotFoundError:
    return NotFoundError(f"User {user_id} not found")


# Directory


@router.get("", response_model=PaginatedResponse[UserContact])
async def list_users(
    orchestrator: OrchestratorDep,
    pagination: PaginationDep,
) -> PaginatedResponse[UserContact]:
    users = await orchestrator.directory.list_all()
    return PaginatedResponse.from_items(users, pagination)


@router.put("/{user_id}", response_model=APIResponse[UserContact])
async def upsert_user(
    user_id: str,
    data: UserContactUpdate,
    orchestrator: OrchestratorDep,
) -> APIResponse[UserContact]:
    """Create or replace a user's contact details and attributes."""
    contact = UserContact(user_id=user_id, **data.model_dump())
    saved = await orchestrator.directory.upsert(contact)
    return APIResponse(data=saved)


@router.get("/{user_id}", response_model=APIResponse[UserContact])
async def get_user(
    user_id: str,
    orchestrator: OrchestratorDep,
) -> APIResponse[UserContact]:
    contact = await orchestrator.directory.get(user_id)
    if contact is None:
        raise _user_not_found(user_id)
    return APIResponse(data=contact)


@router.delete("/{user_id}", response_model=APIResponse)
async def delete_user(
    user_id: str,
    orchestrator: OrchestratorDep,
) -> APIResponse:
    if not await orchestrator.directory.delete(user_id):
        raise _user_not_found(user_id)
    return APIResponse(message=f"User {user_id} deleted")


# Preferences


@router.get("/{user_id}/preferences", response_model=APIResponse[list[Preference]])
async def get_preferences(
    user_id: str,
    orchestrator: OrchestratorDep,
) -> APIResponse[list[Preference]]:
    """All preferences, with defaults created for every built-in type."""
    preferences = await orchestrator.preferences.get_preferences(user_id)
    return APIResponse(data=preferences)


@router.get("/{user_id}/preferences/{template_type}", response_model=APIResponse[Preference])
async def get_preference(
    user_id: str,
    template_type: str,
    orchestrator: OrchestratorDep,
) -> APIResponse[Preference]:
    preference = await orchestrator.preferences.get_preference(user_id, template_type)
    return APIResponse(data=preference)


@router.patch("/{user_id}/preferences/{template_type}", response_model=APIResponse[Preference])
async def update_preference(
    user_id: str,
    template_type: str,
    data: PreferenceUpdate,
    orchestrator: OrchestratorDep,
) -> APIResponse[Preference]:
    preference = await orchestrator.preferences.update_preference(user_id, template_type, data)
    return APIResponse(data=preference)


# Rate limits


@router.get("/{user_id}/rate-limits", response_model=APIResponse[list[RateLimitPolicy]])
async def get_rate_limits(
    user_id: str,
    orchestrator: OrchestratorDep,
) -> APIResponse[list[RateLimitPolicy]]:
    policies = await orchestrator.rate_limiter.get_policies(user_id)
    return APIResponse(data=policies)


@router.patch("/{user_id}/rate-limits", response_model=APIResponse[RateLimitPolicy])
async def update_rate_limit(
    user_id: str,
    data: RateLimitUpdate,
    orchestrator: OrchestratorDep,
) -> APIResponse[RateLimitPolicy]:
    """Change the caps of one policy; unset caps keep their current value."""
    config = RateLimitConfig(
        max_per_minute=data.max_per_minute,
        max_per_hour=data.max_per_hour,
        max_per_day=data.max_per_day,
    )
    policy = await orchestrator.rate_limiter.update_policy(
        user_id,
        data.channel,
        config,
        template_type=data.template_type,
        category=data.category,
    )
    return APIResponse(data=policy)


@router.get("/{user_id}/rate-limits/status", response_model=APIResponse[dict[str, ThrottleStatus]])
async def get_throttle_status(
    user_id: str,
    orchestrator: OrchestratorDep,
    channel: Channel = Query(..., description="Channel to inspect"),
    template_type: str | None = Query(default=None),
    category: str | None = Query(default=None),
) -> APIResponse[dict[str, ThrottleStatus]]:
    """Current count, cap and reset time for each throttle window."""
    status = await orchestrator.rate_limiter.get_throttle_status(
        user_id, channel, template_type=template_type, category=category
    )
    return APIResponse(data=status)


# Batching


@router.get("/{user_id}/batching-rules", response_model=APIResponse[list[BatchingRule]])
async def get_batching_rules(
    user_id: str,
    orchestrator: OrchestratorDep,
) -> APIResponse[list[BatchingRule]]:
    rules = await orchestrator.batching.get_rules(user_id)
    return APIResponse(data=rules)


@router.patch("/{user_id}/batching-rules", response_model=APIResponse[BatchingRule])
async def update_batching_rule(
    user_id: str,
    data: BatchingRuleUpdate,
    orchestrator: OrchestratorDep,
) -> APIResponse[BatchingRule]:
    """Create or change the rule for the body's (template_type, category) key."""
    rule = await orchestrator.batching.update_rule(user_id, data)
    return APIResponse(data=rule)
