"""User reports on listings and the admin review of auto-hidden listings."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from delguur.infra.auth import AuthenticatedUser, get_current_user
from delguur.moderation.domain.models import AdminDecision, ReportReason, ReportRecord, ReportStatus
from delguur.moderation.domain.moderators import ModeratorPermission
from delguur.moderation.domain.reports_service import MAX_DESCRIPTION_LENGTH, ReportAggregator
from delguur.resilience.system_mode import UserAction

from .deps import (
    StaffMember,
    ensure_listing_scope,
    raise_for_result,
    report_aggregator_dep,
    require_action,
    require_staff,
)

router = APIRouter(prefix="/api/mod/v1/reports", tags=["moderation-reports"])


class ReportIn(BaseModel):
    product_id: str = Field(..., min_length=1)
    reason: ReportReason
    description: Optional[str] = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)


class ReviewIn(BaseModel):
    decision: AdminDecision


class ReportSummaryOut(BaseModel):
    product_id: str
    total_reports: int
    status: ReportStatus
    hidden_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    admin_decision: Optional[AdminDecision] = None

    @classmethod
    def from_record(cls, record: ReportRecord) -> "ReportSummaryOut":
        return cls(
            product_id=record.product_id,
            total_reports=record.total_reports,
            status=record.status,
            hidden_at=record.hidden_at,
            deleted_at=record.deleted_at,
            reviewed_at=record.reviewed_at,
            admin_decision=record.admin_decision,
        )


class ReportEntryOut(BaseModel):
    reporter_id: str
    reason: ReportReason
    description: Optional[str] = None
    reported_at: datetime


class ReportDetailOut(ReportSummaryOut):
    reports: list[ReportEntryOut] = Field(default_factory=list)

    @classmethod
    def from_record(cls, record: ReportRecord) -> "ReportDetailOut":
        summary = ReportSummaryOut.from_record(record)
        return cls(
            **summary.model_dump(),
            reports=[
                ReportEntryOut(
                    reporter_id=entry.reporter_id,
                    reason=entry.reason,
                    description=entry.description,
                    reported_at=entry.reported_at,
                )
                for entry in record.reports
            ],
        )


class ReportSubmitOut(BaseModel):
    message: str
    report: ReportSummaryOut


class ReportedByMeOut(BaseModel):
    product_id: str
    reported: bool


@router.post(
    "",
    response_model=ReportSubmitOut,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_action(UserAction.REPORT))],
)
async def submit_report(
    body: ReportIn,
    service: ReportAggregator = Depends(report_aggregator_dep),
    reporter: AuthenticatedUser = Depends(get_current_user),
) -> ReportSubmitOut:
    result = await service.report_product(body.product_id, reporter.id, body.reason, body.description)
    raise_for_result(result)
    assert result.record is not None
    return ReportSubmitOut(message=result.message, report=ReportSummaryOut.from_record(result.record))


@router.get("", response_model=list[ReportDetailOut])
async def list_reported_products(
    service: ReportAggregator = Depends(report_aggregator_dep),
    _staff: StaffMember = Depends(require_staff(ModeratorPermission.REVIEW_REPORTS)),
) -> list[ReportDetailOut]:
    return [ReportDetailOut.from_record(record) for record in await service.list_reported_products()]


@router.get("/{product_id}", response_model=ReportSummaryOut)
async def get_product_reports(
    product_id: str,
    service: ReportAggregator = Depends(report_aggregator_dep),
) -> ReportSummaryOut:
    record = await service.get_product_reports(product_id)
    return ReportSummaryOut.from_record(record or ReportRecord(product_id=product_id))


@router.get("/{product_id}/me", response_model=ReportedByMeOut)
async def reported_by_me(
    product_id: str,
    service: ReportAggregator = Depends(report_aggregator_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ReportedByMeOut:
    return ReportedByMeOut(product_id=product_id, reported=await service.has_user_reported(product_id, user.id))


@router.post(
    "/{product_id}/review",
    response_model=ReportSummaryOut,
    dependencies=[Depends(require_action(UserAction.DELETE))],
)
async def review_report(
    product_id: str,
    body: ReviewIn,
    service: ReportAggregator = Depends(report_aggregator_dep),
    staff: StaffMember = Depends(require_staff(ModeratorPermission.HIDE_LISTINGS)),
) -> ReportSummaryOut:
    permission = (
        ModeratorPermission.REMOVE_LISTINGS
        if body.decision is AdminDecision.DELETE
        else ModeratorPermission.HIDE_LISTINGS
    )
    await ensure_listing_scope(staff, permission, product_id)
    result = await service.admin_review_report(product_id, body.decision, reviewer_id=staff.user.id)
    raise_for_result(result)
    assert result.record is not None
    return ReportSummaryOut.from_record(result.record)
