"""Moderator actions on listings, refund quotes, the rule table and the import screen."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel, Field

from delguur.infra.auth import AuthenticatedUser, get_current_user
from delguur.moderation.domain.container import get_moderator_directory
from delguur.moderation.domain.enforcement import InvalidRefundInput, ModerationEngine, calculate_refund
from delguur.moderation.domain.models import (
    AppealStatus,
    ModerationAction,
    ModerationRecord,
    RefundPolicy,
    SubscriptionUsage,
    ViolationSeverity,
    ViolationType,
)
from delguur.moderation.domain.moderators import ModeratorPermission, has_moderator_permission
from delguur.moderation.domain.rules import get_rule, list_rules
from delguur.moderation.domain.screening import foreign_product_signals
from delguur.resilience.system_mode import UserAction

from .deps import (
    ADMIN_ROLE,
    StaffMember,
    engine_dep,
    ensure_listing_scope,
    permission_for_action,
    require_action,
    require_staff,
)

router = APIRouter(prefix="/api/mod/v1", tags=["moderation-actions"])


class SubscriptionIn(BaseModel):
    price: int = Field(..., ge=0)
    days_used: int
    total_days: int


class ModerateIn(BaseModel):
    listing_id: str = Field(..., min_length=1)
    violation_type: str
    moderator_note: str = Field(default="", max_length=2000)
    subscription: Optional[SubscriptionIn] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=200)


class ModerationRecordOut(BaseModel):
    id: str
    listing_id: str
    listing_title_snapshot: str
    owner_id: str
    violation_type: ViolationType
    action_taken: ModerationAction
    refund_policy: RefundPolicy
    refund_amount: Optional[int] = None
    moderator_id: Optional[str] = None
    moderator_note: str
    created_at: datetime
    appeal_deadline: datetime
    appeal_status: AppealStatus
    appeal_note: Optional[str] = None
    appeal_resolved_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, record: ModerationRecord) -> "ModerationRecordOut":
        return cls(
            id=record.id,
            listing_id=record.listing_id,
            listing_title_snapshot=record.listing_title_snapshot,
            owner_id=record.owner_id,
            violation_type=record.violation_type,
            action_taken=record.action_taken,
            refund_policy=record.refund_policy,
            refund_amount=record.refund_amount,
            moderator_id=record.moderator_id,
            moderator_note=record.moderator_note,
            created_at=record.created_at,
            appeal_deadline=record.appeal_deadline,
            appeal_status=record.appeal_status,
            appeal_note=record.appeal_note,
            appeal_resolved_at=record.appeal_resolved_at,
        )


class RefundQuoteIn(BaseModel):
    subscription_price: int = Field(..., ge=0)
    days_used: int
    total_days: int
    refund_policy: RefundPolicy
    refund_percent: Optional[float] = None


class RefundQuoteOut(BaseModel):
    refund_policy: RefundPolicy
    amount: int


class RuleOut(BaseModel):
    type: ViolationType
    severity: ViolationSeverity
    action: ModerationAction
    refund_policy: RefundPolicy
    refund_percent: Optional[int] = None
    appeal_allowed: bool
    description: str


class ScreeningIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = Field(default=None, max_length=10_000)


class ScreeningOut(BaseModel):
    foreign_product_suspected: bool
    matched_keywords: list[str]
    suggested_violation: Optional[ViolationType] = None


@router.post(
    "/actions",
    response_model=ModerationRecordOut,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_action(UserAction.DELETE))],
)
async def moderate_listing(
    body: ModerateIn,
    engine: ModerationEngine = Depends(engine_dep),
    staff: StaffMember = Depends(require_staff(ModeratorPermission.FLAG_LISTINGS)),
    idempotency_header: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> ModerationRecordOut:
    rule = get_rule(body.violation_type)
    await ensure_listing_scope(staff, permission_for_action(rule.action), body.listing_id)
    subscription = (
        SubscriptionUsage(
            price=body.subscription.price,
            days_used=body.subscription.days_used,
            total_days=body.subscription.total_days,
        )
        if body.subscription
        else None
    )
    record = await engine.moderate_listing(
        body.listing_id,
        rule.type,
        body.moderator_note,
        moderator_id=staff.user.id,
        subscription=subscription,
        idempotency_key=body.idempotency_key or idempotency_header,
    )
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="listing_not_found")
    return ModerationRecordOut.from_model(record)


@router.get("/actions", response_model=list[ModerationRecordOut])
async def list_actions(
    listing_id: Optional[str] = Query(default=None),
    engine: ModerationEngine = Depends(engine_dep),
    _staff: StaffMember = Depends(require_staff(ModeratorPermission.REVIEW_REPORTS)),
) -> list[ModerationRecordOut]:
    return [ModerationRecordOut.from_model(record) for record in await engine.list_records(listing_id=listing_id)]


@router.get("/actions/{record_id}", response_model=ModerationRecordOut)
async def get_action(
    record_id: str,
    engine: ModerationEngine = Depends(engine_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ModerationRecordOut:
    record = await engine.get_record(record_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="record_not_found")
    if record.owner_id != user.id and not user.has_role(ADMIN_ROLE):
        moderator = await get_moderator_directory().get(user.id)
        if not has_moderator_permission(moderator, ModeratorPermission.REVIEW_REPORTS):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="not_record_owner")
    return ModerationRecordOut.from_model(record)


@router.post("/refunds/quote", response_model=RefundQuoteOut)
async def quote_refund(body: RefundQuoteIn) -> RefundQuoteOut:
    try:
        amount = calculate_refund(
            body.subscription_price,
            body.days_used,
            body.total_days,
            body.refund_policy,
            body.refund_percent,
        )
    except InvalidRefundInput as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return RefundQuoteOut(refund_policy=body.refund_policy, amount=amount)


@router.get("/rules", response_model=list[RuleOut])
async def get_rules() -> list[RuleOut]:
    return [
        RuleOut(
            type=rule.type,
            severity=rule.severity,
            action=rule.action,
            refund_policy=rule.refund_policy,
            refund_percent=rule.refund_percent,
            appeal_allowed=rule.appeal_allowed,
            description=rule.description,
        )
        for rule in list_rules()
    ]


@router.post("/screening", response_model=ScreeningOut)
async def screen_listing(
    body: ScreeningIn,
    _staff: StaffMember = Depends(require_staff(ModeratorPermission.FLAG_LISTINGS)),
) -> ScreeningOut:
    matched = foreign_product_signals(body.title, body.description)
    return ScreeningOut(
        foreign_product_suspected=bool(matched),
        matched_keywords=matched,
        suggested_violation=ViolationType.FOREIGN_PRODUCT if matched else None,
    )
