from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

import pytest

from delguur.discovery.ranking import (
	FeedConfig,
	FeedSource,
	build_discovery_feed,
	engagement_score,
	lucky_discovery,
	shuffle,
)
from delguur.moderation.domain.models import Listing

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _listing(listing_id: str, *, age_hours: float = 72.0, views: int = 0, **kwargs) -> Listing:
	return Listing(
		id=listing_id,
		title=listing_id,
		owner_id="owner",
		created_at=NOW - timedelta(hours=age_hours),
		views=views,
		**kwargs,
	)


def test_engagement_weights():
	listing = _listing("a", age_hours=0, views=10, saves=2, call_clicks=1, chat_clicks=1, shares=1)
	assert engagement_score(listing, NOW) == pytest.approx(10 + 6 + 20 + 5)


def test_engagement_halves_every_week():
	fresh = _listing("a", age_hours=0, views=100)
	week_old = _listing("b", age_hours=7 * 24, views=100)
	assert engagement_score(week_old, NOW) == pytest.approx(engagement_score(fresh, NOW) / 2)


def test_shuffle_keeps_every_item():
	items = list(range(50))
	shuffled = shuffle(items, random.Random(3))
	assert sorted(shuffled) == items
	assert items == list(range(50))


def test_feed_has_no_duplicates_and_respects_size():
	pool = [_listing(f"old-{i}", views=i) for i in range(40)]
	pool += [_listing(f"new-{i}", age_hours=2) for i in range(6)]

	feed = build_discovery_feed(pool, FeedConfig(), now=NOW, rng=random.Random(7))

	ids = [item.listing_id for item in feed]
	assert len(ids) == 20
	assert len(set(ids)) == 20
	sources = [item.source for item in feed]
	assert sources.count(FeedSource.NEW) == 3
	assert sources.count(FeedSource.POPULAR) == 15
	assert sources.count(FeedSource.RANDOM) == 2


def test_popular_slots_take_highest_scores():
	pool = [_listing(f"l-{i}", views=i * 10) for i in range(30)]
	config = FeedConfig(total_items=5, new_item_slots=0, random_slots=0)

	feed = build_discovery_feed(pool, config, now=NOW, rng=random.Random(1))

	assert [item.listing_id for item in feed] == ["l-29", "l-28", "l-27", "l-26", "l-25"]


def test_unfilled_new_slots_stay_empty():
	pool = [_listing(f"l-{i}", views=i) for i in range(4)]
	config = FeedConfig(total_items=6, new_item_slots=3, random_slots=1)

	feed = build_discovery_feed(pool, config, now=NOW, rng=random.Random(2))

	assert len(feed) == 3
	assert {item.source for item in feed} == {FeedSource.POPULAR, FeedSource.RANDOM}
	assert len({item.listing_id for item in feed}) == 3


def test_small_pool_is_returned_whole():
	pool = [_listing("a", age_hours=1), _listing("b")]

	feed = build_discovery_feed(pool, FeedConfig(), now=NOW, rng=random.Random(4))

	assert sorted(item.listing_id for item in feed) == ["a", "b"]


def test_empty_pool_gives_empty_feed():
	assert build_discovery_feed([], FeedConfig(), now=NOW) == []


def test_invalid_config_is_rejected():
	with pytest.raises(ValueError):
		build_discovery_feed([], FeedConfig(total_items=3, new_item_slots=2, random_slots=2), now=NOW)


def test_lucky_excludes_seen_listings():
	pool = [_listing(f"l-{i}") for i in range(5)]

	picks = lucky_discovery(pool, exclude_ids={"l-0", "l-1", "l-2", "l-3"}, count=3, rng=random.Random(9))

	assert [p.id for p in picks] == ["l-4"]
	assert lucky_discovery(pool, count=0) == []
	assert lucky_discovery(pool, exclude_ids=[p.id for p in pool]) == []
