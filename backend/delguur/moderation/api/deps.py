"""Shared FastAPI dependencies for the moderation, discovery and system routers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Depends, HTTPException, status

from delguur.infra.auth import AuthenticatedUser, get_current_user, get_optional_user
from delguur.moderation.domain.container import (
    get_appeal_workflow,
    get_engine,
    get_listing_repository,
    get_moderator_directory,
    get_report_aggregator,
    get_system_mode_gate,
)
from delguur.moderation.domain.models import ModerationAction, OperationResult, assert_never
from delguur.moderation.domain.moderators import Moderator, ModeratorPermission, has_moderator_permission
from delguur.resilience.system_mode import UserAction

ADMIN_ROLE = "admin"

_FAILURE_STATUS = {
    "already_reported": status.HTTP_409_CONFLICT,
    "already_decided": status.HTTP_409_CONFLICT,
    "not_hidden": status.HTTP_409_CONFLICT,
    "conflict": status.HTTP_409_CONFLICT,
    "not_found": status.HTTP_404_NOT_FOUND,
    "unknown_preset": status.HTTP_404_NOT_FOUND,
    "storage_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def raise_for_result(result: OperationResult[Any]) -> None:
    """Map a failed OperationResult onto an HTTP error carrying its code."""
    if result.success:
        return
    raise HTTPException(
        status_code=_FAILURE_STATUS.get(result.code, status.HTTP_400_BAD_REQUEST),
        detail={"code": result.code, "message": result.message, "retryable": result.retryable},
    )


def report_aggregator_dep():
    return get_report_aggregator()


def engine_dep():
    return get_engine()


def appeal_workflow_dep():
    return get_appeal_workflow()


def moderator_directory_dep():
    return get_moderator_directory()


def system_mode_gate_dep():
    return get_system_mode_gate()


def require_action(action: UserAction):
    """Dependency refusing the request with 503 while the system mode forbids `action`.

    Admins are let through so they can clean up during an incident.
    """

    async def _dep(user: Optional[AuthenticatedUser] = Depends(get_optional_user)) -> None:
        if user is not None and user.has_role(ADMIN_ROLE):
            return
        decision = await get_system_mode_gate().is_action_allowed(action)
        if not decision.allowed:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"code": "system_mode", "mode": decision.mode.value, "message": decision.reason},
            )

    return _dep


@dataclass(slots=True)
class StaffMember:
    user: AuthenticatedUser
    moderator: Optional[Moderator] = None

    @property
    def is_admin(self) -> bool:
        return self.user.has_role(ADMIN_ROLE)


def require_staff(permission: ModeratorPermission):
    """Admins, or active community moderators whose level grants `permission`."""

    async def _dep(user: AuthenticatedUser = Depends(get_current_user)) -> StaffMember:
        if user.has_role(ADMIN_ROLE):
            return StaffMember(user=user)
        moderator = await get_moderator_directory().get(user.id)
        if has_moderator_permission(moderator, permission):
            return StaffMember(user=user, moderator=moderator)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="insufficient_role")

    return _dep


async def ensure_listing_scope(staff: StaffMember, permission: ModeratorPermission, listing_id: str) -> None:
    """Moderator holds `permission`, and soum/aimag moderators only inside their area."""
    if staff.is_admin:
        return
    listing = await get_listing_repository().get_listing(listing_id)
    location = listing.location if listing is not None else None
    if not has_moderator_permission(staff.moderator, permission, location):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="outside_moderator_area")


def permission_for_action(action: ModerationAction) -> ModeratorPermission:
    if action is ModerationAction.DELETE:
        return ModeratorPermission.REMOVE_LISTINGS
    if action is ModerationAction.SUSPEND:
        return ModeratorPermission.HIDE_LISTINGS
    if action is ModerationAction.WARN or action is ModerationAction.REQUEST_EDIT:
        return ModeratorPermission.WARN_USERS
    if action is ModerationAction.APPROVE:
        return ModeratorPermission.REVIEW_REPORTS
    assert_never(action)
