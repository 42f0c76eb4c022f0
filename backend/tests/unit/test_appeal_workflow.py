from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from delguur.moderation.domain.appeals_service import MAX_EVIDENCE_LINKS, AppealWorkflow
from delguur.moderation.domain.enforcement import ModerationEngine
from delguur.moderation.domain.models import AppealState, AppealStatus, Listing, ListingStatus
from delguur.moderation.domain.repository import InMemoryModerationStore


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return Clock(datetime(2026, 5, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    store = InMemoryModerationStore()
    store.seed_listings(
        [
            Listing(id="l-1", title="Cashmere scarf", owner_id="owner-1"),
            Listing(id="l-2", title="Airag", owner_id="owner-2"),
        ]
    )
    return store


@pytest.fixture
def engine(store, clock):
    return ModerationEngine(listings=store, repository=store, appeal_window_days=7, clock=clock)


@pytest.fixture
def workflow(store, clock):
    return AppealWorkflow(listings=store, repository=store, clock=clock)


@pytest.mark.asyncio
async def test_submit_appeal_marks_record_pending(engine, workflow, store):
    record = await engine.moderate_listing("l-1", "foreign_product", "imported")

    appeal = await workflow.submit_appeal(record.id, "owner-1", " Made in Ulaanbaatar ", ["https://a", " ", "https://b"])

    assert appeal is not None
    assert appeal.status is AppealState.PENDING
    assert appeal.reason == "Made in Ulaanbaatar"
    assert appeal.evidence == ("https://a", "https://b")
    assert store.records[record.id].appeal_status is AppealStatus.PENDING


@pytest.mark.asyncio
async def test_evidence_is_capped(engine, workflow):
    record = await engine.moderate_listing("l-1", "spam", "spam")
    links = [f"https://example.mn/{i}" for i in range(MAX_EVIDENCE_LINKS + 5)]

    appeal = await workflow.submit_appeal(record.id, "owner-1", "not spam", links)

    assert len(appeal.evidence) == MAX_EVIDENCE_LINKS


@pytest.mark.asyncio
async def test_appeal_rejected_after_deadline(engine, workflow, clock):
    record = await engine.moderate_listing("l-1", "spam", "spam")
    clock.now += timedelta(days=7, seconds=1)

    assert await workflow.submit_appeal(record.id, "owner-1", "too late") is None


@pytest.mark.asyncio
async def test_appeal_accepted_on_deadline(engine, workflow, clock):
    record = await engine.moderate_listing("l-1", "spam", "spam")
    clock.now += timedelta(days=7)

    assert await workflow.submit_appeal(record.id, "owner-1", "just in time") is not None


@pytest.mark.asyncio
async def test_counterfeit_records_cannot_be_appealed(engine, workflow):
    record = await engine.moderate_listing("l-1", "counterfeit", "fake brand")

    assert await workflow.submit_appeal(record.id, "owner-1", "it is real") is None


@pytest.mark.asyncio
async def test_only_one_appeal_per_record(engine, workflow):
    record = await engine.moderate_listing("l-1", "spam", "spam")

    first = await workflow.submit_appeal(record.id, "owner-1", "first")
    second = await workflow.submit_appeal(record.id, "owner-1", "second")

    assert first is not None
    assert second is None
    assert await workflow.submit_appeal("missing", "owner-1", "x") is None


@pytest.mark.asyncio
async def test_blank_reason_is_refused(engine, workflow):
    record = await engine.moderate_listing("l-1", "spam", "spam")

    assert await workflow.submit_appeal(record.id, "owner-1", "   ") is None


@pytest.mark.asyncio
async def test_approved_appeal_restores_deleted_listing(engine, workflow, store, clock):
    record = await engine.moderate_listing("l-1", "foreign_product", "imported")
    appeal = await workflow.submit_appeal(record.id, "owner-1", "local wool")
    clock.now += timedelta(hours=3)

    assert await workflow.resolve_appeal(appeal.id, True, "verified", reviewer_id="admin-1")

    listing = store.listings["l-1"]
    assert listing.status is ListingStatus.ACTIVE
    assert listing.deleted_at is None
    assert listing.restored_at == clock.now
    stored_record = store.records[record.id]
    assert stored_record.appeal_status is AppealStatus.APPROVED
    assert stored_record.appeal_note == "verified"
    assert stored_record.appeal_resolved_at == clock.now
    resolved = await workflow.get_appeal(appeal.id)
    assert resolved.status is AppealState.APPROVED
    assert resolved.reviewer_id == "admin-1"


@pytest.mark.asyncio
async def test_rejected_appeal_keeps_listing_removed(engine, workflow, store):
    record = await engine.moderate_listing("l-1", "spam", "spam")
    appeal = await workflow.submit_appeal(record.id, "owner-1", "please")

    assert await workflow.resolve_appeal(appeal.id, False, "confirmed spam")

    assert store.listings["l-1"].status is ListingStatus.DELETED
    assert store.records[record.id].appeal_status is AppealStatus.REJECTED


@pytest.mark.asyncio
async def test_resolution_is_terminal(engine, workflow, store):
    record = await engine.moderate_listing("l-1", "spam", "spam")
    appeal = await workflow.submit_appeal(record.id, "owner-1", "please")

    assert await workflow.resolve_appeal(appeal.id, False, "no")
    assert not await workflow.resolve_appeal(appeal.id, True, "changed my mind")

    assert store.listings["l-1"].status is ListingStatus.DELETED
    assert (await workflow.get_appeal(appeal.id)).status is AppealState.REJECTED
    assert not await workflow.resolve_appeal("missing", True, "x")


@pytest.mark.asyncio
async def test_approval_does_not_undo_a_later_action(engine, workflow, store):
    first = await engine.moderate_listing("l-1", "spam", "spam")
    appeal = await workflow.submit_appeal(first.id, "owner-1", "not spam")
    store.listings["l-1"].status = ListingStatus.ACTIVE
    second = await engine.moderate_listing("l-1", "scam", "scam confirmed")

    assert await workflow.resolve_appeal(appeal.id, True, "first one was wrong")

    listing = store.listings["l-1"]
    assert listing.status is ListingStatus.DELETED
    assert listing.moderation_record_id == second.id


@pytest.mark.asyncio
async def test_approved_warning_appeal_clears_flag(engine, workflow, store):
    record = await engine.moderate_listing("l-2", "wrong_category", "move to food")
    appeal = await workflow.submit_appeal(record.id, "owner-2", "category is right")

    assert await workflow.resolve_appeal(appeal.id, True, "ok")

    listing = store.listings["l-2"]
    assert listing.warnings == []
    assert listing.needs_edit is False


@pytest.mark.asyncio
async def test_review_moves_pending_to_reviewing(engine, workflow):
    record = await engine.moderate_listing("l-1", "spam", "spam")
    appeal = await workflow.submit_appeal(record.id, "owner-1", "please")

    reviewing = await workflow.start_review(appeal.id, "mod-1")

    assert reviewing.status is AppealState.REVIEWING
    assert await workflow.start_review(appeal.id, "mod-2") is None
    assert [a.id for a in await workflow.list_appeals(AppealState.REVIEWING)] == [appeal.id]
    assert await workflow.list_appeals(AppealState.PENDING) == []
    assert await workflow.resolve_appeal(appeal.id, True, "fine")
