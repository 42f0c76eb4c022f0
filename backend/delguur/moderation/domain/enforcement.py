"""Moderation engine: apply a violation rule to a listing and record the decision."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional
from uuid import uuid4

from delguur.moderation.domain import events
from delguur.moderation.domain.events import DomainEvent, EventPublisher
from delguur.moderation.domain.models import (
    Listing,
    ListingStatus,
    ModerationAction,
    ModerationRecord,
    RefundPolicy,
    SubscriptionUsage,
    ViolationType,
    assert_never,
    utcnow,
)
from delguur.moderation.domain.repository import (
    ListingRepository,
    ModerationRepository,
    ModerationWorkflowError,
    timed_audit,
)
from delguur.moderation.domain.rules import ViolationRule, get_rule
from delguur.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

MODERATION_REASON = "moderation_action"
DEFAULT_CREDIT_PERCENT = 50


class InvalidRefundInput(ModerationWorkflowError, ValueError):
    pass


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_refund(
    subscription_price: int | float,
    days_used: int,
    total_days: int,
    refund_policy: RefundPolicy | str,
    refund_percent: Optional[int | float] = None,
) -> int:
    """Amount owed back to the owner of a moderated listing.

    Partial refunds pay for unused days, with `days_used` clamped to
    [0, total_days]. Credit defaults to 50 percent when no percent is given.
    """
    policy = RefundPolicy(refund_policy)
    if subscription_price < 0:
        raise InvalidRefundInput("subscription_price must be non-negative")
    price = Decimal(str(subscription_price))

    if policy is RefundPolicy.NONE:
        return 0
    if policy is RefundPolicy.FULL:
        return _round_half_up(price)
    if policy is RefundPolicy.PARTIAL:
        if total_days <= 0:
            return 0
        used = min(max(days_used, 0), total_days)
        return _round_half_up(price * Decimal(total_days - used) / Decimal(total_days))
    if policy is RefundPolicy.CREDIT:
        percent = DEFAULT_CREDIT_PERCENT if refund_percent is None else refund_percent
        if not 0 <= percent <= 100:
            raise InvalidRefundInput("refund_percent must be within 0..100")
        return _round_half_up(price * Decimal(str(percent)) / Decimal(100))
    assert_never(policy)


def _apply_action(listing: Listing, rule: ViolationRule, record_id: str, now: datetime) -> Listing:
    action = rule.action
    if action is ModerationAction.DELETE:
        return replace(
            listing,
            status=ListingStatus.DELETED,
            deleted_at=now,
            deletion_reason=rule.type.value,
            moderation_record_id=record_id,
            status_reason=MODERATION_REASON,
            status_changed_at=now,
        )
    if action is ModerationAction.SUSPEND:
        return replace(
            listing,
            status=ListingStatus.SUSPENDED,
            suspended_at=now,
            moderation_record_id=record_id,
            status_reason=MODERATION_REASON,
            status_changed_at=now,
        )
    if action is ModerationAction.WARN or action is ModerationAction.REQUEST_EDIT:
        return replace(
            listing,
            warnings=[*listing.warnings, record_id],
            needs_edit=listing.needs_edit or action is ModerationAction.REQUEST_EDIT,
        )
    if action is ModerationAction.APPROVE:
        return listing
    assert_never(action)


@dataclass
class ModerationEngine:
    listings: ListingRepository
    repository: ModerationRepository
    events: Optional[EventPublisher] = None
    appeal_window_days: int = 7
    clock: Callable[[], datetime] = utcnow

    async def moderate_listing(
        self,
        listing_id: str,
        violation_type: ViolationType | str,
        moderator_note: str,
        *,
        moderator_id: Optional[str] = None,
        subscription: Optional[SubscriptionUsage] = None,
        idempotency_key: Optional[str] = None,
    ) -> Optional[ModerationRecord]:
        """Apply the rule for `violation_type` to the listing.

        Returns None when the listing does not exist. Replays carrying an
        already-used idempotency key return the stored record untouched.
        Storage failures propagate as StorageError.
        """
        if idempotency_key:
            existing = await self.repository.get_record_by_key(idempotency_key)
            if existing is not None:
                logger.info(
                    "moderation replay ignored",
                    extra={"record_id": existing.id, "listing_id": existing.listing_id},
                )
                return existing

        rule = get_rule(violation_type)
        listing = await self.listings.get_listing(listing_id)
        if listing is None:
            logger.info("moderation target missing", extra={"listing_id": listing_id})
            return None

        now = self.clock()
        refund_amount = None
        if subscription is not None:
            refund_amount = calculate_refund(
                subscription.price,
                subscription.days_used,
                subscription.total_days,
                rule.refund_policy,
                rule.refund_percent,
            )
        record = ModerationRecord(
            id=str(uuid4()),
            listing_id=listing.id,
            listing_title_snapshot=listing.title,
            owner_id=listing.owner_id,
            violation_type=rule.type,
            action_taken=rule.action,
            refund_policy=rule.refund_policy,
            refund_amount=refund_amount,
            moderator_id=moderator_id,
            moderator_note=moderator_note,
            created_at=now,
            appeal_deadline=now + timedelta(days=self.appeal_window_days),
            idempotency_key=idempotency_key,
        )
        updated = _apply_action(listing, rule, record.id, now)

        stored, created = await self.repository.apply_moderation(record, updated)
        if not created:
            return stored

        obs_metrics.inc_mod_action(rule.type.value, rule.action.value)
        await timed_audit(
            self.repository,
            moderator_id,
            f"moderation.{rule.action.value}",
            "listing",
            listing.id,
            {
                "record_id": stored.id,
                "violation_type": rule.type.value,
                "severity": rule.severity.value,
                "refund_amount": refund_amount,
            },
        )
        if self.events is not None:
            await self.events.publish(
                DomainEvent(
                    kind=events.MODERATION_ACTION,
                    listing_id=listing.id,
                    ids={"record_id": stored.id, "action": rule.action.value},
                )
            )
        return stored

    async def get_record(self, record_id: str) -> Optional[ModerationRecord]:
        return await self.repository.get_record(record_id)

    async def list_records(self, *, listing_id: Optional[str] = None) -> list[ModerationRecord]:
        return await self.repository.list_records(listing_id=listing_id)
