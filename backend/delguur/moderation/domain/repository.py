"""Storage contracts for listings, reports, moderation records and appeals."""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence

from delguur.moderation.domain.models import (
    AdminDecision,
    Appeal,
    AppealState,
    AppealStatus,
    Listing,
    ListingStatus,
    ModerationRecord,
    ReportEntry,
    ReportRecord,
    ReportStatus,
    utcnow,
)
from delguur.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class ModerationWorkflowError(Exception):
    """Base class for moderation workflow failures."""


class StorageError(ModerationWorkflowError):
    """Persistence layer failure; callers may retry."""


@dataclass(frozen=True, slots=True)
class AuditEntry:
    actor_id: Optional[str]
    action: str
    subject_type: str
    subject_id: str
    meta: Mapping[str, Any]
    created_at: datetime


class ListingRepository(Protocol):
    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        ...

    async def save_listing(self, listing: Listing) -> None:
        ...

    async def update_listing_status(
        self,
        listing_id: str,
        status: ListingStatus,
        *,
        reason: str,
        at: datetime,
        expected: Optional[Sequence[ListingStatus]] = None,
        expected_reason: Optional[str] = None,
    ) -> bool:
        """Set status/status_reason/status_changed_at.

        With `expected` or `expected_reason`, only a listing currently in one of those
        statuses and carrying that reason is changed. False when nothing was updated.
        """
        ...

    async def list_active_listings(self, *, category: Optional[str] = None) -> list[Listing]:
        ...


class ReportRepository(Protocol):
    async def get_report(self, product_id: str) -> Optional[ReportRecord]:
        ...

    async def append_report(self, product_id: str, entry: ReportEntry) -> tuple[ReportRecord, bool]:
        """Atomically add `entry`; returns the refreshed record and False if the reporter already reported."""
        ...

    async def transition_report(
        self,
        product_id: str,
        expected: ReportStatus,
        new: ReportStatus,
        *,
        at: datetime,
        decision: Optional[AdminDecision] = None,
    ) -> Optional[ReportRecord]:
        """Compare-and-swap the report status; None when the current status is not `expected`."""
        ...

    async def has_reporter(self, product_id: str, reporter_id: str) -> bool:
        ...

    async def list_reports(self) -> list[ReportRecord]:
        ...


class ModerationRepository(Protocol):
    async def get_record(self, record_id: str) -> Optional[ModerationRecord]:
        ...

    async def get_record_by_key(self, idempotency_key: str) -> Optional[ModerationRecord]:
        ...

    async def list_records(self, *, listing_id: Optional[str] = None) -> list[ModerationRecord]:
        ...

    async def apply_moderation(
        self, record: ModerationRecord, listing: Listing
    ) -> tuple[ModerationRecord, bool]:
        """Persist the record and the updated listing in one unit.

        When the record's idempotency key is already taken nothing is written and
        the stored record is returned with False.
        """
        ...

    async def get_appeal(self, appeal_id: str) -> Optional[Appeal]:
        ...

    async def list_appeals(self, *, status: Optional[AppealState] = None) -> list[Appeal]:
        ...

    async def open_appeal(self, appeal: Appeal) -> bool:
        """Insert the appeal and move its record none -> pending; False if the record is not `none`."""
        ...

    async def start_review(self, appeal_id: str, reviewer_id: Optional[str]) -> Optional[Appeal]:
        ...

    async def finalize_appeal(
        self,
        appeal: Appeal,
        record_status: AppealStatus,
        listing: Optional[Listing],
    ) -> bool:
        """Write the resolved appeal, mirror it on the record and save `listing`.

        Applies only while the stored appeal is still pending or reviewing.
        """
        ...

    async def audit(
        self,
        actor_id: Optional[str],
        action: str,
        subject_type: str,
        subject_id: str,
        meta: Mapping[str, Any],
    ) -> None:
        ...

    async def list_audit(self, *, subject_id: Optional[str] = None) -> list[AuditEntry]:
        ...


class InMemoryModerationStore(ListingRepository, ReportRepository, ModerationRepository):
    """Process-local implementation of every moderation storage contract."""

    def __init__(self) -> None:
        self.listings: dict[str, Listing] = {}
        self.reports: dict[str, ReportRecord] = {}
        self.records: dict[str, ModerationRecord] = {}
        self.appeals: dict[str, Appeal] = {}
        self.audit_log: list[AuditEntry] = []
        self._report_locks: dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    def _report_lock(self, product_id: str) -> asyncio.Lock:
        lock = self._report_locks.get(product_id)
        if lock is None:
            lock = asyncio.Lock()
            self._report_locks[product_id] = lock
        return lock

    # --- listings ---------------------------------------------------------

    def seed_listings(self, listings: Iterable[Listing]) -> None:
        for listing in listings:
            self.listings[listing.id] = copy.deepcopy(listing)

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        listing = self.listings.get(listing_id)
        return copy.deepcopy(listing) if listing else None

    async def save_listing(self, listing: Listing) -> None:
        self.listings[listing.id] = copy.deepcopy(listing)

    async def update_listing_status(
        self,
        listing_id: str,
        status: ListingStatus,
        *,
        reason: str,
        at: datetime,
        expected: Optional[Sequence[ListingStatus]] = None,
        expected_reason: Optional[str] = None,
    ) -> bool:
        listing = self.listings.get(listing_id)
        if listing is None:
            return False
        if expected is not None and listing.status not in expected:
            return False
        if expected_reason is not None and listing.status_reason != expected_reason:
            return False
        listing.status = status
        listing.status_reason = reason
        listing.status_changed_at = at
        return True

    async def list_active_listings(self, *, category: Optional[str] = None) -> list[Listing]:
        return [
            copy.deepcopy(listing)
            for listing in self.listings.values()
            if listing.status is ListingStatus.ACTIVE and (category is None or listing.category == category)
        ]

    # --- reports ----------------------------------------------------------

    async def get_report(self, product_id: str) -> Optional[ReportRecord]:
        record = self.reports.get(product_id)
        return copy.deepcopy(record) if record else None

    async def append_report(self, product_id: str, entry: ReportEntry) -> tuple[ReportRecord, bool]:
        async with self._report_lock(product_id):
            record = self.reports.setdefault(product_id, ReportRecord(product_id=product_id))
            appended = record.add_report(entry)
            return copy.deepcopy(record), appended

    async def transition_report(
        self,
        product_id: str,
        expected: ReportStatus,
        new: ReportStatus,
        *,
        at: datetime,
        decision: Optional[AdminDecision] = None,
    ) -> Optional[ReportRecord]:
        async with self._report_lock(product_id):
            record = self.reports.get(product_id)
            if record is None or record.status is not expected:
                return None
            record.status = new
            if new is ReportStatus.HIDDEN:
                record.hidden_at = at
            elif new is ReportStatus.DELETED:
                record.deleted_at = at
            if decision is not None:
                record.admin_decision = decision
                record.reviewed_at = at
            return copy.deepcopy(record)

    async def has_reporter(self, product_id: str, reporter_id: str) -> bool:
        record = self.reports.get(product_id)
        return bool(record and record.has_reporter(reporter_id))

    async def list_reports(self) -> list[ReportRecord]:
        return [copy.deepcopy(record) for record in self.reports.values()]

    # --- moderation records -----------------------------------------------

    async def get_record(self, record_id: str) -> Optional[ModerationRecord]:
        record = self.records.get(record_id)
        return copy.deepcopy(record) if record else None

    async def get_record_by_key(self, idempotency_key: str) -> Optional[ModerationRecord]:
        for record in self.records.values():
            if record.idempotency_key == idempotency_key:
                return copy.deepcopy(record)
        return None

    async def list_records(self, *, listing_id: Optional[str] = None) -> list[ModerationRecord]:
        rows = [r for r in self.records.values() if listing_id is None or r.listing_id == listing_id]
        return [copy.deepcopy(r) for r in sorted(rows, key=lambda r: r.created_at, reverse=True)]

    async def apply_moderation(
        self, record: ModerationRecord, listing: Listing
    ) -> tuple[ModerationRecord, bool]:
        async with self._lock:
            if record.idempotency_key:
                for existing in self.records.values():
                    if existing.idempotency_key == record.idempotency_key:
                        return copy.deepcopy(existing), False
            self.records[record.id] = copy.deepcopy(record)
            self.listings[listing.id] = copy.deepcopy(listing)
            return copy.deepcopy(record), True

    # --- appeals ----------------------------------------------------------

    async def get_appeal(self, appeal_id: str) -> Optional[Appeal]:
        appeal = self.appeals.get(appeal_id)
        return copy.deepcopy(appeal) if appeal else None

    async def list_appeals(self, *, status: Optional[AppealState] = None) -> list[Appeal]:
        rows = [a for a in self.appeals.values() if status is None or a.status is status]
        return [copy.deepcopy(a) for a in sorted(rows, key=lambda a: a.submitted_at)]

    async def open_appeal(self, appeal: Appeal) -> bool:
        async with self._lock:
            record = self.records.get(appeal.moderation_record_id)
            if record is None or record.appeal_status is not AppealStatus.NONE:
                return False
            record.appeal_status = AppealStatus.PENDING
            self.appeals[appeal.id] = copy.deepcopy(appeal)
            return True

    async def start_review(self, appeal_id: str, reviewer_id: Optional[str]) -> Optional[Appeal]:
        async with self._lock:
            appeal = self.appeals.get(appeal_id)
            if appeal is None or appeal.status is not AppealState.PENDING:
                return None
            appeal.status = AppealState.REVIEWING
            appeal.reviewer_id = reviewer_id
            return copy.deepcopy(appeal)

    async def finalize_appeal(
        self,
        appeal: Appeal,
        record_status: AppealStatus,
        listing: Optional[Listing],
    ) -> bool:
        async with self._lock:
            stored = self.appeals.get(appeal.id)
            if stored is None or stored.status.is_resolved:
                return False
            self.appeals[appeal.id] = copy.deepcopy(appeal)
            record = self.records.get(appeal.moderation_record_id)
            if record is not None:
                record.appeal_status = record_status
                record.appeal_note = appeal.reviewer_note
                record.appeal_resolved_at = appeal.resolved_at
            if listing is not None:
                self.listings[listing.id] = copy.deepcopy(listing)
            return True

    # --- audit ------------------------------------------------------------

    async def audit(
        self,
        actor_id: Optional[str],
        action: str,
        subject_type: str,
        subject_id: str,
        meta: Mapping[str, Any],
    ) -> None:
        self.audit_log.append(
            AuditEntry(
                actor_id=actor_id,
                action=action,
                subject_type=subject_type,
                subject_id=subject_id,
                meta=dict(meta),
                created_at=utcnow(),
            )
        )

    async def list_audit(self, *, subject_id: Optional[str] = None) -> list[AuditEntry]:
        return [entry for entry in self.audit_log if subject_id is None or entry.subject_id == subject_id]


def sort_by_total(records: Sequence[ReportRecord]) -> list[ReportRecord]:
    return sorted(records, key=lambda r: (r.total_reports, r.product_id), reverse=True)


async def timed_audit(
    repository: ModerationRepository,
    actor_id: Optional[str],
    action: str,
    subject_type: str,
    subject_id: str,
    meta: Mapping[str, Any],
) -> None:
    """Write an audit entry; failures are logged because the audited change already committed."""
    start = time.perf_counter()
    try:
        await repository.audit(actor_id, action, subject_type, subject_id, meta)
    except StorageError:
        logger.exception("audit write failed", extra={"audit_action": action, "subject_id": subject_id})
        return
    obs_metrics.MOD_AUDIT_LATENCY_SECONDS.observe(time.perf_counter() - start)
