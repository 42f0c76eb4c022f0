"""Appeal workflow for owners contesting a moderation record."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional, Sequence
from uuid import uuid4

from delguur.moderation.domain import events
from delguur.moderation.domain.events import DomainEvent, EventPublisher
from delguur.moderation.domain.models import (
    Appeal,
    AppealState,
    AppealStatus,
    Listing,
    ListingStatus,
    ModerationAction,
    ModerationRecord,
    utcnow,
)
from delguur.moderation.domain.repository import (
    ListingRepository,
    ModerationRepository,
    timed_audit,
)
from delguur.moderation.domain.rules import get_rule
from delguur.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

MAX_EVIDENCE_LINKS = 10


def _restore_listing(listing: Listing, record: ModerationRecord, now: datetime) -> Optional[Listing]:
    """Undo what `record` did to the listing, or None when a later action superseded it."""
    if record.action_taken in (ModerationAction.DELETE, ModerationAction.SUSPEND):
        if listing.moderation_record_id != record.id:
            return None
        return replace(
            listing,
            status=ListingStatus.ACTIVE,
            deleted_at=None,
            suspended_at=None,
            deletion_reason=None,
            restored_at=now,
            status_reason="appeal_approved",
            status_changed_at=now,
        )
    if record.action_taken in (ModerationAction.WARN, ModerationAction.REQUEST_EDIT):
        warnings = [w for w in listing.warnings if w != record.id]
        return replace(
            listing,
            warnings=warnings,
            needs_edit=listing.needs_edit and record.action_taken is not ModerationAction.REQUEST_EDIT,
            restored_at=now,
        )
    return None


@dataclass
class AppealWorkflow:
    listings: ListingRepository
    repository: ModerationRepository
    events: Optional[EventPublisher] = None
    clock: Callable[[], datetime] = utcnow

    async def submit_appeal(
        self,
        record_id: str,
        submitter_id: str,
        reason: str,
        evidence: Optional[Sequence[str]] = None,
    ) -> Optional[Appeal]:
        """Open an appeal; None unless the record is appealable right now."""
        record = await self.repository.get_record(record_id)
        if record is None:
            return None
        now = self.clock()
        if now > record.appeal_deadline:
            logger.info("appeal deadline passed", extra={"record_id": record_id})
            obs_metrics.MOD_APPEALS_TOTAL.labels(stage="submit", outcome="expired").inc()
            return None
        if not get_rule(record.violation_type).appeal_allowed:
            obs_metrics.MOD_APPEALS_TOTAL.labels(stage="submit", outcome="not_allowed").inc()
            return None
        if record.appeal_status is not AppealStatus.NONE:
            return None
        reason = (reason or "").strip()
        if not reason:
            return None

        appeal = Appeal(
            id=str(uuid4()),
            moderation_record_id=record.id,
            submitter_id=submitter_id,
            reason=reason,
            evidence=tuple(link.strip() for link in (evidence or ()) if link.strip())[:MAX_EVIDENCE_LINKS],
            submitted_at=now,
        )
        if not await self.repository.open_appeal(appeal):
            return None

        obs_metrics.MOD_APPEALS_TOTAL.labels(stage="submit", outcome="pending").inc()
        await timed_audit(
            self.repository,
            submitter_id,
            "appeal.submit",
            "moderation_record",
            record.id,
            {"appeal_id": appeal.id},
        )
        await self._publish(
            DomainEvent(
                kind=events.APPEAL_SUBMITTED,
                listing_id=record.listing_id,
                ids={"record_id": record.id, "appeal_id": appeal.id},
            )
        )
        return appeal

    async def start_review(self, appeal_id: str, reviewer_id: Optional[str] = None) -> Optional[Appeal]:
        appeal = await self.repository.start_review(appeal_id, reviewer_id)
        if appeal is not None:
            obs_metrics.MOD_APPEALS_TOTAL.labels(stage="review", outcome="reviewing").inc()
        return appeal

    async def resolve_appeal(
        self,
        appeal_id: str,
        approved: bool,
        reviewer_note: str,
        reviewer_id: Optional[str] = None,
    ) -> bool:
        """Approve or reject an open appeal. Resolved appeals are terminal and return False."""
        appeal = await self.repository.get_appeal(appeal_id)
        if appeal is None or appeal.status.is_resolved:
            return False
        record = await self.repository.get_record(appeal.moderation_record_id)
        now = self.clock()
        resolved = replace(
            appeal,
            status=AppealState.APPROVED if approved else AppealState.REJECTED,
            reviewer_id=reviewer_id or appeal.reviewer_id,
            reviewer_note=reviewer_note,
            resolved_at=now,
        )

        restored: Optional[Listing] = None
        if approved and record is not None:
            listing = await self.listings.get_listing(record.listing_id)
            if listing is not None:
                restored = _restore_listing(listing, record, now)
                if restored is None:
                    logger.warning(
                        "appeal approved but listing was moderated again since",
                        extra={"record_id": record.id, "listing_id": listing.id},
                    )

        record_status = AppealStatus.APPROVED if approved else AppealStatus.REJECTED
        if not await self.repository.finalize_appeal(resolved, record_status, restored):
            return False

        outcome = "approved" if approved else "rejected"
        obs_metrics.MOD_APPEALS_TOTAL.labels(stage="resolve", outcome=outcome).inc()
        await timed_audit(
            self.repository,
            reviewer_id,
            f"appeal.{outcome}",
            "moderation_record",
            appeal.moderation_record_id,
            {"appeal_id": appeal.id, "listing_restored": restored is not None},
        )
        if record is not None:
            await self._publish(
                DomainEvent(
                    kind=events.APPEAL_RESOLVED,
                    listing_id=record.listing_id,
                    ids={"record_id": record.id, "appeal_id": appeal.id, "outcome": outcome},
                )
            )
        return True

    async def get_appeal(self, appeal_id: str) -> Optional[Appeal]:
        return await self.repository.get_appeal(appeal_id)

    async def list_appeals(self, status: Optional[AppealState] = None) -> list[Appeal]:
        return await self.repository.list_appeals(status=status)

    async def _publish(self, event: DomainEvent) -> None:
        if self.events is not None:
            await self.events.publish(event)
