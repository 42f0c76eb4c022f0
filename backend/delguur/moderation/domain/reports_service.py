"""Report aggregation: per-listing user reports with auto-hide and auto-delete thresholds."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from delguur.moderation.domain import events
from delguur.moderation.domain.events import DomainEvent, EventPublisher
from delguur.moderation.domain.models import (
    AdminDecision,
    ListingStatus,
    OperationResult,
    ReportEntry,
    ReportReason,
    ReportRecord,
    ReportStatus,
    assert_never,
    utcnow,
)
from delguur.moderation.domain.repository import (
    ListingRepository,
    ModerationRepository,
    ReportRepository,
    StorageError,
    sort_by_total,
    timed_audit,
)
from delguur.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

AUTO_REPORTED = "auto_reported"
ADMIN_DECISION = "admin_decision"
MAX_DESCRIPTION_LENGTH = 1000
_CAS_ATTEMPTS = 5
_HIDE_SOURCES = (ListingStatus.ACTIVE,)
_DELETE_SOURCES = (ListingStatus.ACTIVE, ListingStatus.HIDDEN)

_STORAGE_MESSAGE = "We could not save your request right now. Please try again."


def _listing_status_for(status: ReportStatus) -> ListingStatus:
    if status is ReportStatus.ACTIVE:
        return ListingStatus.ACTIVE
    if status is ReportStatus.HIDDEN:
        return ListingStatus.HIDDEN
    if status is ReportStatus.DELETED:
        return ListingStatus.DELETED
    assert_never(status)


@dataclass
class ReportAggregator:
    reports: ReportRepository
    listings: ListingRepository
    repository: ModerationRepository
    events: Optional[EventPublisher] = None
    hide_threshold: int = 15
    delete_threshold: int = 30
    clock: Callable[[], datetime] = utcnow

    def __post_init__(self) -> None:
        if self.hide_threshold < 1 or self.delete_threshold < self.hide_threshold:
            raise ValueError("report thresholds must satisfy 1 <= hide <= delete")

    async def report_product(
        self,
        product_id: str,
        reporter_id: str,
        reason: ReportReason | str,
        description: Optional[str] = None,
    ) -> OperationResult[ReportRecord]:
        if not reporter_id:
            return OperationResult.fail("invalid_reporter", "Sign in to report a listing")
        try:
            reason = ReportReason(reason)
        except ValueError:
            return OperationResult.fail("invalid_reason", "Choose a reason for your report")
        if description is not None:
            description = description.strip() or None
        if description and len(description) > MAX_DESCRIPTION_LENGTH:
            return OperationResult.fail("invalid_description", "The report description is too long")

        entry = ReportEntry(
            reporter_id=reporter_id,
            reason=reason,
            description=description,
            reported_at=self.clock(),
        )
        try:
            record, appended = await self.reports.append_report(product_id, entry)
            # Re-evaluated on duplicates too, so a retry after a failed transition heals it.
            record = await self._apply_thresholds(record)
            await self._sync_listing(record)
        except StorageError:
            logger.exception("report write failed", extra={"product_id": product_id})
            obs_metrics.inc_report(reason.value, "error")
            return OperationResult.fail("storage_unavailable", _STORAGE_MESSAGE, retryable=True)

        if not appended:
            obs_metrics.inc_report(reason.value, "duplicate")
            return OperationResult.fail(
                "already_reported",
                "You have already reported this listing",
                record=record,
            )

        obs_metrics.inc_report(reason.value, "accepted")
        await timed_audit(
            self.repository,
            reporter_id,
            "report.submit",
            "listing",
            product_id,
            {"reason": reason.value, "total_reports": record.total_reports},
        )
        await self._publish(DomainEvent(kind=events.REPORT_SUBMITTED, listing_id=product_id))
        return OperationResult.ok("Thank you, your report was received", record)

    def _target_status(self, record: ReportRecord) -> Optional[ReportStatus]:
        total = record.total_reports
        if record.status is ReportStatus.DELETED:
            return None
        if total >= self.delete_threshold:
            return ReportStatus.DELETED
        if (
            total >= self.hide_threshold
            and record.status is ReportStatus.ACTIVE
            and record.admin_decision is not AdminDecision.SHOW
        ):
            return ReportStatus.HIDDEN
        return None

    async def _apply_thresholds(self, record: ReportRecord) -> ReportRecord:
        for _ in range(_CAS_ATTEMPTS):
            target = self._target_status(record)
            if target is None:
                return record
            previous = record.status
            updated = await self.reports.transition_report(
                record.product_id, previous, target, at=self.clock()
            )
            if updated is not None:
                await self._on_auto_transition(previous, updated)
                return updated
            fresh = await self.reports.get_report(record.product_id)
            if fresh is None:
                return record
            record = fresh
        logger.warning("report status transition kept conflicting", extra={"product_id": record.product_id})
        return record

    async def _on_auto_transition(self, previous: ReportStatus, record: ReportRecord) -> None:
        transition = f"{previous.value}->{record.status.value}"
        obs_metrics.inc_report_transition(transition)
        logger.info(
            "listing auto-moderated by reports",
            extra={
                "product_id": record.product_id,
                "transition": transition,
                "total_reports": record.total_reports,
            },
        )
        await timed_audit(
            self.repository,
            None,
            f"report.auto_{record.status.value}",
            "listing",
            record.product_id,
            {"total_reports": record.total_reports, "from_status": previous.value},
        )
        await self._publish(
            DomainEvent(
                kind=events.REPORT_STATUS_CHANGED,
                listing_id=record.product_id,
                ids={"status": record.status.value},
            )
        )

    async def _sync_listing(self, record: ReportRecord) -> None:
        if record.status is ReportStatus.ACTIVE:
            return
        # Listings under a moderation action (deleted, suspended) are left alone.
        target = _listing_status_for(record.status)
        sources = _HIDE_SOURCES if target is ListingStatus.HIDDEN else _DELETE_SOURCES
        await self.listings.update_listing_status(
            record.product_id, target, reason=AUTO_REPORTED, at=self.clock(), expected=sources
        )

    async def admin_review_report(
        self,
        product_id: str,
        decision: AdminDecision | str,
        reviewer_id: Optional[str] = None,
    ) -> OperationResult[ReportRecord]:
        """Resolve a hidden listing. The first decision is final."""
        try:
            decision = AdminDecision(decision)
        except ValueError:
            return OperationResult.fail("invalid_decision", "Decision must be show or delete")
        try:
            record = await self.reports.get_report(product_id)
            if record is None:
                return OperationResult.fail("not_found", "This listing has no reports")
            rejection = self._review_rejection(record)
            if rejection is not None:
                return rejection
            target = ReportStatus.ACTIVE if decision is AdminDecision.SHOW else ReportStatus.DELETED
            now = self.clock()
            updated = await self.reports.transition_report(
                product_id, ReportStatus.HIDDEN, target, at=now, decision=decision
            )
            if updated is None:
                fresh = await self.reports.get_report(product_id)
                return self._review_rejection(fresh or record) or OperationResult.fail(
                    "conflict", "The report changed while it was being reviewed"
                )
            # Only a listing still hidden by reports follows the decision.
            listing_changed = await self.listings.update_listing_status(
                product_id,
                _listing_status_for(target),
                reason=ADMIN_DECISION,
                at=now,
                expected=(ListingStatus.HIDDEN,),
                expected_reason=AUTO_REPORTED,
            )
        except StorageError:
            logger.exception("admin report review failed", extra={"product_id": product_id})
            return OperationResult.fail("storage_unavailable", _STORAGE_MESSAGE, retryable=True)

        obs_metrics.inc_report_transition(f"hidden->{target.value}")
        await timed_audit(
            self.repository,
            reviewer_id,
            "report.admin_review",
            "listing",
            product_id,
            {"decision": decision.value, "total_reports": updated.total_reports},
        )
        await self._publish(
            DomainEvent(
                kind=events.REPORT_STATUS_CHANGED,
                listing_id=product_id,
                ids={"status": target.value},
            )
        )
        if not listing_changed:
            logger.info(
                "report decision recorded without a listing change",
                extra={"product_id": product_id, "decision": decision.value},
            )
            message = "Decision recorded; the listing status was left unchanged"
        elif decision is AdminDecision.SHOW:
            message = "Listing restored"
        else:
            message = "Listing deleted"
        return OperationResult.ok(message, updated)

    @staticmethod
    def _review_rejection(record: ReportRecord) -> Optional[OperationResult[ReportRecord]]:
        if record.admin_decision is not None:
            return OperationResult.fail(
                "already_decided", "A decision was already made for this listing", record=record
            )
        if record.status is not ReportStatus.HIDDEN:
            return OperationResult.fail(
                "not_hidden", "Only hidden listings can be reviewed", record=record
            )
        return None

    async def has_user_reported(self, product_id: str, user_id: str) -> bool:
        try:
            return await self.reports.has_reporter(product_id, user_id)
        except StorageError:
            logger.warning("report lookup failed", extra={"product_id": product_id}, exc_info=True)
            return False

    async def get_product_reports(self, product_id: str) -> Optional[ReportRecord]:
        try:
            return await self.reports.get_report(product_id)
        except StorageError:
            logger.warning("report lookup failed", extra={"product_id": product_id}, exc_info=True)
            return None

    async def list_reported_products(self) -> list[ReportRecord]:
        try:
            records = await self.reports.list_reports()
        except StorageError:
            logger.warning("report listing failed", exc_info=True)
            return []
        return sort_by_total([r for r in records if r.total_reports > 0])

    async def is_product_visible(self, product_id: str) -> bool:
        record = await self.get_product_reports(product_id)
        return record is None or record.status is ReportStatus.ACTIVE

    async def _publish(self, event: DomainEvent) -> None:
        if self.events is not None:
            await self.events.publish(event)
