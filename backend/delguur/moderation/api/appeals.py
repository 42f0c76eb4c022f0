"""Appeals submission and resolution endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from delguur.infra.auth import AuthenticatedUser, get_current_user
from delguur.moderation.domain.appeals_service import MAX_EVIDENCE_LINKS, AppealWorkflow
from delguur.moderation.domain.container import get_engine
from delguur.moderation.domain.models import Appeal, AppealState
from delguur.moderation.domain.moderators import ModeratorPermission
from delguur.resilience.system_mode import UserAction

from .deps import (
    ADMIN_ROLE,
    StaffMember,
    appeal_workflow_dep,
    ensure_listing_scope,
    require_action,
    require_staff,
)

router = APIRouter(prefix="/api/mod/v1/appeals", tags=["moderation-appeals"])


class AppealIn(BaseModel):
    record_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=2000)
    evidence: list[str] = Field(default_factory=list, max_length=MAX_EVIDENCE_LINKS)


class AppealResolveIn(BaseModel):
    approved: bool
    reviewer_note: str = Field(default="", max_length=2000)


class AppealOut(BaseModel):
    id: str
    moderation_record_id: str
    submitter_id: str
    reason: str
    evidence: list[str]
    submitted_at: datetime
    status: AppealState
    reviewer_id: Optional[str] = None
    reviewer_note: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, appeal: Appeal) -> "AppealOut":
        return cls(
            id=appeal.id,
            moderation_record_id=appeal.moderation_record_id,
            submitter_id=appeal.submitter_id,
            reason=appeal.reason,
            evidence=list(appeal.evidence),
            submitted_at=appeal.submitted_at,
            status=appeal.status,
            reviewer_id=appeal.reviewer_id,
            reviewer_note=appeal.reviewer_note,
            resolved_at=appeal.resolved_at,
        )


async def _appeal_listing_id(appeal: Appeal) -> Optional[str]:
    record = await get_engine().get_record(appeal.moderation_record_id)
    return record.listing_id if record else None


@router.post(
    "",
    response_model=AppealOut,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_action(UserAction.APPEAL))],
)
async def submit_appeal(
    body: AppealIn,
    workflow: AppealWorkflow = Depends(appeal_workflow_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> AppealOut:
    record = await get_engine().get_record(body.record_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="record_not_found")
    if record.owner_id != user.id and not user.has_role(ADMIN_ROLE):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="not_record_owner")
    appeal = await workflow.submit_appeal(record.id, user.id, body.reason, body.evidence)
    if appeal is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="appeal_not_allowed")
    return AppealOut.from_model(appeal)


@router.get("", response_model=list[AppealOut])
async def list_appeals(
    appeal_status: Optional[AppealState] = Query(default=None, alias="status"),
    workflow: AppealWorkflow = Depends(appeal_workflow_dep),
    _staff: StaffMember = Depends(require_staff(ModeratorPermission.REVIEW_REPORTS)),
) -> list[AppealOut]:
    return [AppealOut.from_model(appeal) for appeal in await workflow.list_appeals(appeal_status)]


@router.post("/{appeal_id}/review", response_model=AppealOut)
async def start_review(
    appeal_id: str,
    workflow: AppealWorkflow = Depends(appeal_workflow_dep),
    staff: StaffMember = Depends(require_staff(ModeratorPermission.REVIEW_REPORTS)),
) -> AppealOut:
    appeal = await workflow.start_review(appeal_id, staff.user.id)
    if appeal is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="appeal_not_pending")
    return AppealOut.from_model(appeal)


@router.post(
    "/{appeal_id}/resolve",
    response_model=AppealOut,
    dependencies=[Depends(require_action(UserAction.EDIT))],
)
async def resolve_appeal(
    appeal_id: str,
    body: AppealResolveIn,
    workflow: AppealWorkflow = Depends(appeal_workflow_dep),
    staff: StaffMember = Depends(require_staff(ModeratorPermission.REMOVE_LISTINGS)),
) -> AppealOut:
    appeal = await workflow.get_appeal(appeal_id)
    if appeal is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="appeal_not_found")
    listing_id = await _appeal_listing_id(appeal)
    if listing_id is not None:
        await ensure_listing_scope(staff, ModeratorPermission.REMOVE_LISTINGS, listing_id)
    resolved = await workflow.resolve_appeal(appeal_id, body.approved, body.reviewer_note, reviewer_id=staff.user.id)
    if not resolved:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="appeal_already_resolved")
    updated = await workflow.get_appeal(appeal_id)
    assert updated is not None
    return AppealOut.from_model(updated)
