from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from delguur.moderation.domain.appeals_service import AppealWorkflow
from delguur.moderation.domain.enforcement import MODERATION_REASON, ModerationEngine
from delguur.moderation.domain.events import EVENTS_STREAM, EventPublisher
from delguur.moderation.domain.models import (
    AdminDecision,
    Listing,
    ListingStatus,
    ReportEntry,
    ReportReason,
    ReportRecord,
    ReportStatus,
)
from delguur.moderation.domain.reports_service import AUTO_REPORTED, ReportAggregator
from delguur.moderation.domain.repository import InMemoryModerationStore, StorageError


def _aggregator(store: InMemoryModerationStore, *, hide: int = 15, delete: int = 25, events=None) -> ReportAggregator:
    return ReportAggregator(
        reports=store,
        listings=store,
        repository=store,
        events=events,
        hide_threshold=hide,
        delete_threshold=delete,
    )


def _store_with_listing(listing_id: str = "p-1") -> InMemoryModerationStore:
    store = InMemoryModerationStore()
    store.seed_listings([Listing(id=listing_id, title="Hand-made deel", owner_id="owner-1")])
    return store


async def _report_many(service: ReportAggregator, product_id: str, count: int, *, start: int = 0) -> None:
    for i in range(start, start + count):
        result = await service.report_product(product_id, f"user-{i}", ReportReason.SPAM)
        assert result.success, result


@pytest.mark.asyncio
async def test_first_report_is_accepted():
    store = _store_with_listing()
    service = _aggregator(store)

    result = await service.report_product("p-1", "user-1", "counterfeit", "  looks fake  ")

    assert result.success
    assert result.message == "Thank you, your report was received"
    assert result.record.total_reports == 1
    assert result.record.status is ReportStatus.ACTIVE
    assert result.record.reports[0].description == "looks fake"
    assert await service.has_user_reported("p-1", "user-1")
    assert not await service.has_user_reported("p-1", "user-2")


@pytest.mark.asyncio
async def test_duplicate_report_is_rejected_and_not_counted():
    store = _store_with_listing()
    service = _aggregator(store)
    await service.report_product("p-1", "user-1", ReportReason.SCAM)

    again = await service.report_product("p-1", "user-1", ReportReason.SPAM)

    assert not again.success
    assert again.code == "already_reported"
    record = await service.get_product_reports("p-1")
    assert record.total_reports == 1
    assert record.reports[0].reason is ReportReason.SCAM


@pytest.mark.asyncio
async def test_invalid_input_is_rejected_before_storage():
    store = _store_with_listing()
    service = _aggregator(store)

    assert (await service.report_product("p-1", "", ReportReason.SPAM)).code == "invalid_reporter"
    assert (await service.report_product("p-1", "user-1", "not-a-reason")).code == "invalid_reason"
    too_long = await service.report_product("p-1", "user-1", ReportReason.OTHER, "x" * 1001)
    assert too_long.code == "invalid_description"
    assert await service.get_product_reports("p-1") is None


@pytest.mark.asyncio
async def test_listing_hidden_at_threshold_and_deleted_at_delete_threshold():
    store = _store_with_listing()
    service = _aggregator(store, hide=15, delete=25)

    await _report_many(service, "p-1", 14)
    assert (await service.get_product_reports("p-1")).status is ReportStatus.ACTIVE
    assert await service.is_product_visible("p-1")

    await _report_many(service, "p-1", 1, start=14)
    record = await service.get_product_reports("p-1")
    assert record.status is ReportStatus.HIDDEN
    assert record.hidden_at is not None
    assert store.listings["p-1"].status is ListingStatus.HIDDEN
    assert store.listings["p-1"].status_reason == AUTO_REPORTED
    assert not await service.is_product_visible("p-1")

    await _report_many(service, "p-1", 10, start=15)
    record = await service.get_product_reports("p-1")
    assert record.status is ReportStatus.DELETED
    assert record.deleted_at is not None
    assert store.listings["p-1"].status is ListingStatus.DELETED


@pytest.mark.asyncio
async def test_concurrent_reports_cross_threshold_once():
    store = _store_with_listing()
    service = _aggregator(store, hide=15, delete=25)

    results = await asyncio.gather(
        *(service.report_product("p-1", f"user-{i}", ReportReason.SPAM) for i in range(20))
    )

    assert all(r.success for r in results)
    record = await service.get_product_reports("p-1")
    assert record.total_reports == 20
    assert record.status is ReportStatus.HIDDEN
    hides = [entry for entry in store.audit_log if entry.action == "report.auto_hidden"]
    assert len(hides) == 1


@pytest.mark.asyncio
async def test_concurrent_duplicates_from_same_reporter_count_once():
    store = _store_with_listing()
    service = _aggregator(store)

    results = await asyncio.gather(
        *(service.report_product("p-1", "user-1", ReportReason.SPAM) for _ in range(5))
    )

    assert sum(1 for r in results if r.success) == 1
    assert {r.code for r in results if not r.success} == {"already_reported"}
    assert (await service.get_product_reports("p-1")).total_reports == 1


@pytest.mark.asyncio
async def test_admin_show_restores_and_blocks_rehide():
    store = _store_with_listing()
    service = _aggregator(store, hide=3, delete=6)
    await _report_many(service, "p-1", 3)

    shown = await service.admin_review_report("p-1", AdminDecision.SHOW, reviewer_id="admin-1")

    assert shown.success
    assert shown.record.status is ReportStatus.ACTIVE
    assert shown.record.admin_decision is AdminDecision.SHOW
    assert shown.record.reviewed_at is not None
    assert store.listings["p-1"].status is ListingStatus.ACTIVE

    await _report_many(service, "p-1", 2, start=3)
    assert (await service.get_product_reports("p-1")).status is ReportStatus.ACTIVE

    await _report_many(service, "p-1", 1, start=5)
    assert (await service.get_product_reports("p-1")).status is ReportStatus.DELETED


@pytest.mark.asyncio
async def test_admin_decision_is_final():
    store = _store_with_listing()
    service = _aggregator(store, hide=2, delete=10)
    await _report_many(service, "p-1", 2)

    first = await service.admin_review_report("p-1", "delete", reviewer_id="admin-1")
    second = await service.admin_review_report("p-1", "show", reviewer_id="admin-2")

    assert first.success
    assert first.record.status is ReportStatus.DELETED
    assert store.listings["p-1"].status is ListingStatus.DELETED
    assert not second.success
    assert second.code == "already_decided"


@pytest.mark.asyncio
async def test_admin_review_requires_hidden_listing():
    store = _store_with_listing()
    service = _aggregator(store)

    missing = await service.admin_review_report("p-1", AdminDecision.SHOW)
    await service.report_product("p-1", "user-1", ReportReason.SPAM)
    active = await service.admin_review_report("p-1", AdminDecision.SHOW)
    bogus = await service.admin_review_report("p-1", "maybe")

    assert missing.code == "not_found"
    assert active.code == "not_hidden"
    assert bogus.code == "invalid_decision"


@pytest.mark.asyncio
async def test_admin_show_does_not_undo_a_moderator_delete():
    store = _store_with_listing()
    service = _aggregator(store, hide=2, delete=10)
    engine = ModerationEngine(listings=store, repository=store)
    await _report_many(service, "p-1", 2)
    await engine.moderate_listing("p-1", "scam", "fraudulent seller", moderator_id="mod-1")

    shown = await service.admin_review_report("p-1", AdminDecision.SHOW, reviewer_id="admin-1")

    assert shown.success
    assert shown.record.status is ReportStatus.ACTIVE
    assert shown.message == "Decision recorded; the listing status was left unchanged"
    listing = store.listings["p-1"]
    assert listing.status is ListingStatus.DELETED
    assert listing.deleted_at is not None
    assert listing.deletion_reason == "scam"
    assert listing.status_reason == MODERATION_REASON


@pytest.mark.asyncio
async def test_report_thresholds_leave_moderated_listing_alone():
    store = _store_with_listing()
    service = _aggregator(store, hide=2, delete=3)
    engine = ModerationEngine(listings=store, repository=store)
    await engine.moderate_listing("p-1", "spam", "repeated posts")

    await _report_many(service, "p-1", 3)

    assert (await service.get_product_reports("p-1")).status is ReportStatus.DELETED
    listing = store.listings["p-1"]
    assert listing.status is ListingStatus.DELETED
    assert listing.deletion_reason == "spam"
    assert listing.status_reason == MODERATION_REASON


@pytest.mark.asyncio
async def test_replayed_appeal_approval_keeps_later_report_hide():
    store = _store_with_listing()
    service = _aggregator(store, hide=2, delete=10)
    engine = ModerationEngine(listings=store, repository=store)
    appeals = AppealWorkflow(listings=store, repository=store)
    record = await engine.moderate_listing("p-1", "spam", "looked like spam")
    appeal = await appeals.submit_appeal(record.id, "owner-1", "these are my own goods")
    assert await appeals.resolve_appeal(appeal.id, True, "valid listing", reviewer_id="admin-1")
    assert store.listings["p-1"].status is ListingStatus.ACTIVE

    await _report_many(service, "p-1", 2)
    assert store.listings["p-1"].status is ListingStatus.HIDDEN

    assert not await appeals.resolve_appeal(appeal.id, True, "approve again", reviewer_id="admin-2")
    assert await appeals.submit_appeal(record.id, "owner-1", "second try") is None
    listing = store.listings["p-1"]
    assert listing.status is ListingStatus.HIDDEN
    assert listing.status_reason == AUTO_REPORTED


@pytest.mark.asyncio
async def test_reported_products_sorted_by_total():
    store = InMemoryModerationStore()
    service = _aggregator(store)
    await _report_many(service, "p-a", 1)
    await _report_many(service, "p-b", 3)
    await _report_many(service, "p-c", 2)

    records = await service.list_reported_products()

    assert [r.product_id for r in records] == ["p-b", "p-c", "p-a"]


class FailingReportStore(InMemoryModerationStore):
    async def append_report(self, product_id: str, entry: ReportEntry):
        raise StorageError("connection reset")

    async def get_report(self, product_id: str):
        raise StorageError("connection reset")


@pytest.mark.asyncio
async def test_storage_failure_is_reported_as_retryable():
    store = FailingReportStore()
    service = _aggregator(store)

    result = await service.report_product("p-1", "user-1", ReportReason.SPAM)

    assert not result.success
    assert result.code == "storage_unavailable"
    assert result.retryable
    assert await service.get_product_reports("p-1") is None
    assert await service.is_product_visible("p-1")
    assert await service.list_reported_products() == []


@pytest.mark.asyncio
async def test_status_changes_are_published(fake_redis):
    store = _store_with_listing()
    service = _aggregator(store, hide=2, delete=5, events=EventPublisher())

    await _report_many(service, "p-1", 2)

    entries = await fake_redis.xrange(EVENTS_STREAM)
    kinds = [fields["kind"] for _, fields in entries]
    assert kinds.count("report.submitted") == 2
    assert "report.status_changed" in kinds


def test_thresholds_must_be_ordered():
    store = InMemoryModerationStore()
    with pytest.raises(ValueError):
        _aggregator(store, hide=10, delete=5)
    with pytest.raises(ValueError):
        _aggregator(store, hide=0, delete=5)


def test_report_record_indexes_reporters():
    at = datetime(2026, 3, 1, tzinfo=timezone.utc)
    record = ReportRecord(
        product_id="p-1",
        reports=[ReportEntry(reporter_id="user-1", reason=ReportReason.SPAM, reported_at=at)],
    )

    assert record.has_reporter("user-1")
    assert not record.add_report(ReportEntry(reporter_id="user-1", reason=ReportReason.SCAM, reported_at=at))
    assert record.add_report(ReportEntry(reporter_id="user-2", reason=ReportReason.SCAM, reported_at=at))
    assert record.has_reporter("user-2")
    assert record.total_reports == 2
