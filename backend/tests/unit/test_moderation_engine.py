from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from delguur.moderation.domain.enforcement import InvalidRefundInput, ModerationEngine, calculate_refund
from delguur.moderation.domain.models import (
    Listing,
    ListingStatus,
    ModerationAction,
    RefundPolicy,
    SubscriptionUsage,
    ViolationType,
)
from delguur.moderation.domain.repository import InMemoryModerationStore
from delguur.moderation.domain.rules import VIOLATION_RULES, coerce_violation_type, get_rule

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _engine(store: InMemoryModerationStore) -> ModerationEngine:
    return ModerationEngine(listings=store, repository=store, appeal_window_days=7, clock=lambda: NOW)


def _store(*listing_ids: str) -> InMemoryModerationStore:
    store = InMemoryModerationStore()
    store.seed_listings(
        Listing(id=listing_id, title=f"Listing {listing_id}", owner_id="owner-1") for listing_id in listing_ids
    )
    return store


def test_every_violation_type_has_a_rule():
    assert set(VIOLATION_RULES) == set(ViolationType)
    assert get_rule("counterfeit").appeal_allowed is False
    assert get_rule(ViolationType.FOREIGN_PRODUCT).action is ModerationAction.DELETE
    assert get_rule("duplicate").action is ModerationAction.WARN
    assert get_rule("wrong_category").action is ModerationAction.REQUEST_EDIT


def test_unknown_violation_falls_back_to_other():
    assert coerce_violation_type("  SPAM ") is ViolationType.SPAM
    assert coerce_violation_type("something-new") is ViolationType.OTHER
    assert get_rule("something-new").type is ViolationType.OTHER


@pytest.mark.asyncio
async def test_delete_violation_removes_listing_and_records_decision():
    store = _store("l-1")
    engine = _engine(store)

    record = await engine.moderate_listing("l-1", ViolationType.FOREIGN_PRODUCT, "made abroad", moderator_id="mod-1")

    assert record is not None
    assert record.action_taken is ModerationAction.DELETE
    assert record.listing_title_snapshot == "Listing l-1"
    assert record.owner_id == "owner-1"
    assert record.appeal_deadline == NOW + timedelta(days=7)
    listing = store.listings["l-1"]
    assert listing.status is ListingStatus.DELETED
    assert listing.deleted_at == NOW
    assert listing.deletion_reason == "foreign_product"
    assert listing.moderation_record_id == record.id
    assert [entry.action for entry in store.audit_log] == ["moderation.delete"]


@pytest.mark.asyncio
async def test_warning_and_edit_request_keep_listing_active():
    store = _store("l-1")
    engine = _engine(store)

    warned = await engine.moderate_listing("l-1", "duplicate", "posted twice")
    edited = await engine.moderate_listing("l-1", "low_quality", "blurry photos")

    listing = store.listings["l-1"]
    assert listing.status is ListingStatus.ACTIVE
    assert listing.warnings == [warned.id, edited.id]
    assert listing.needs_edit is True


@pytest.mark.asyncio
async def test_missing_listing_returns_none_and_writes_nothing():
    store = _store()
    engine = _engine(store)

    assert await engine.moderate_listing("ghost", ViolationType.SPAM, "spam") is None
    assert store.records == {}
    assert store.audit_log == []


@pytest.mark.asyncio
async def test_idempotent_replay_returns_stored_record():
    store = _store("l-1")
    engine = _engine(store)

    first = await engine.moderate_listing("l-1", "duplicate", "note", idempotency_key="req-1")
    replay = await engine.moderate_listing("l-1", "duplicate", "note", idempotency_key="req-1")

    assert replay.id == first.id
    assert len(store.records) == 1
    assert store.listings["l-1"].warnings == [first.id]


@pytest.mark.asyncio
async def test_refund_amount_recorded_when_subscription_given():
    store = _store("l-1")
    engine = _engine(store)

    record = await engine.moderate_listing(
        "l-1",
        "spam",
        "spam",
        subscription=SubscriptionUsage(price=30000, days_used=10, total_days=30),
    )

    assert record.refund_policy is RefundPolicy.NONE
    assert record.refund_amount == 0


@pytest.mark.asyncio
async def test_records_listed_newest_first():
    store = _store("l-1", "l-2")
    times = iter([NOW, NOW + timedelta(minutes=5)])
    engine = ModerationEngine(listings=store, repository=store, clock=lambda: next(times))

    older = await engine.moderate_listing("l-1", "duplicate", "a")
    newer = await engine.moderate_listing("l-2", "duplicate", "b")

    assert [r.id for r in await engine.list_records()] == [newer.id, older.id]
    assert [r.id for r in await engine.list_records(listing_id="l-1")] == [older.id]
    assert (await engine.get_record(older.id)).listing_id == "l-1"


@pytest.mark.parametrize(
    ("policy", "days_used", "percent", "expected"),
    [
        (RefundPolicy.NONE, 5, None, 0),
        (RefundPolicy.FULL, 5, None, 30000),
        (RefundPolicy.PARTIAL, 10, None, 20000),
        (RefundPolicy.PARTIAL, -4, None, 30000),
        (RefundPolicy.PARTIAL, 45, None, 0),
        (RefundPolicy.CREDIT, 0, None, 15000),
        (RefundPolicy.CREDIT, 0, 25, 7500),
    ],
)
def test_calculate_refund(policy, days_used, percent, expected):
    assert calculate_refund(30000, days_used, 30, policy, percent) == expected


def test_partial_refund_rounds_half_up_and_handles_zero_days():
    assert calculate_refund(1001, 1, 2, "partial") == 501
    assert calculate_refund(1000, 0, 0, RefundPolicy.PARTIAL) == 0


def test_refund_rejects_invalid_input():
    with pytest.raises(InvalidRefundInput):
        calculate_refund(-1, 0, 30, RefundPolicy.FULL)
    with pytest.raises(InvalidRefundInput):
        calculate_refund(100, 0, 30, RefundPolicy.CREDIT, 150)
    with pytest.raises(ValueError):
        calculate_refund(100, 0, 30, "bogus")
