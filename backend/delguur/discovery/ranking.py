"""Fair discovery ranking: engagement scoring plus new/popular/random slot blending."""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from time import perf_counter
from typing import Iterable, Optional, Sequence, TypeVar

from delguur.moderation.domain.models import Listing
from delguur.obs import metrics as obs_metrics

T = TypeVar("T")

VIEW_WEIGHT = 1.0
SAVE_WEIGHT = 3.0
CONTACT_WEIGHT = 10.0  # call and chat clicks
SHARE_WEIGHT = 5.0
HALF_LIFE_HOURS = 7 * 24.0


class FeedSource(str, Enum):
	NEW = "new"
	POPULAR = "popular"
	RANDOM = "random"


@dataclass(frozen=True, slots=True)
class FeedConfig:
	total_items: int = 20
	new_item_slots: int = 3
	random_slots: int = 2
	boost_new_hours: float = 24.0

	@property
	def popular_slots(self) -> int:
		return max(0, self.total_items - self.new_item_slots - self.random_slots)

	def validate(self) -> "FeedConfig":
		if self.total_items < 0 or self.new_item_slots < 0 or self.random_slots < 0:
			raise ValueError("feed slot counts must be non-negative")
		if self.new_item_slots + self.random_slots > self.total_items:
			raise ValueError("new and random slots exceed total_items")
		if self.boost_new_hours < 0:
			raise ValueError("boost_new_hours must be non-negative")
		return self


@dataclass(frozen=True, slots=True)
class FeedItem:
	"""Ranked listing with the slot that selected it."""

	listing: Listing
	source: FeedSource
	score: float

	@property
	def listing_id(self) -> str:
		return self.listing.id


def _age_hours(created_at: datetime, now: datetime) -> float:
	return max(0.0, (now - created_at).total_seconds() / 3600.0)


def engagement_score(listing: Listing, now: Optional[datetime] = None) -> float:
	"""Weighted engagement halved every seven days of listing age."""

	current = now or datetime.now(timezone.utc)
	raw = (
		listing.views * VIEW_WEIGHT
		+ listing.saves * SAVE_WEIGHT
		+ (listing.call_clicks + listing.chat_clicks) * CONTACT_WEIGHT
		+ listing.shares * SHARE_WEIGHT
	)
	decay = 0.5 ** (_age_hours(listing.created_at, current) / HALF_LIFE_HOURS)
	return float(raw * decay)


def shuffle(items: Iterable[T], rng: Optional[random.Random] = None) -> list[T]:
	"""Fisher-Yates shuffle returning a new list."""

	rnd = rng or random.Random()
	shuffled = list(items)
	for i in range(len(shuffled) - 1, 0, -1):
		j = rnd.randint(0, i)
		shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
	return shuffled


def build_discovery_feed(
	pool: Sequence[Listing],
	config: FeedConfig | None = None,
	*,
	now: Optional[datetime] = None,
	rng: Optional[random.Random] = None,
) -> list[FeedItem]:
	"""Blend new, popular and random listings into one deduplicated feed.

	New listings are shuffled into the reserved slots first, the popular budget
	is filled by engagement score, and lottery picks are inserted at random
	positions so they do not cluster at the tail. Slots that cannot be filled
	stay empty.
	"""

	cfg = (config or FeedConfig()).validate()
	current = now or datetime.now(timezone.utc)
	rnd = rng or random.Random()
	start = perf_counter()

	scores = {listing.id: engagement_score(listing, current) for listing in pool}
	used: set[str] = set()
	result: list[FeedItem] = []

	new_cutoff = current - timedelta(hours=cfg.boost_new_hours)
	fresh = [listing for listing in pool if listing.created_at >= new_cutoff]
	for listing in shuffle(fresh, rnd):
		if len(result) >= cfg.new_item_slots:
			break
		if listing.id in used:
			continue
		used.add(listing.id)
		result.append(FeedItem(listing=listing, source=FeedSource.NEW, score=scores[listing.id]))

	popular_taken = 0
	ranked = sorted(
		pool,
		key=lambda item: (scores[item.id], item.created_at.timestamp(), item.id),
		reverse=True,
	)
	for listing in ranked:
		if popular_taken >= cfg.popular_slots:
			break
		if listing.id in used:
			continue
		used.add(listing.id)
		result.append(FeedItem(listing=listing, source=FeedSource.POPULAR, score=scores[listing.id]))
		popular_taken += 1

	random_taken = 0
	for listing in shuffle(pool, rnd):
		if random_taken >= cfg.random_slots or len(result) >= cfg.total_items:
			break
		if listing.id in used:
			continue
		used.add(listing.id)
		position = rnd.randrange(len(result)) if result else 0
		result.insert(position, FeedItem(listing=listing, source=FeedSource.RANDOM, score=scores[listing.id]))
		random_taken += 1

	feed = result[: cfg.total_items]
	obs_metrics.observe_feed_build((perf_counter() - start) * 1000.0)
	for source in FeedSource:
		obs_metrics.inc_feed_items(source.value, sum(1 for item in feed if item.source is source))
	return feed


def lucky_discovery(
	pool: Sequence[Listing],
	exclude_ids: Iterable[str] = (),
	count: int = 1,
	rng: Optional[random.Random] = None,
) -> list[Listing]:
	"""Pick `count` random listings the viewer has not been shown yet."""

	if count <= 0:
		return []
	excluded = set(exclude_ids)
	candidates = [listing for listing in pool if listing.id not in excluded]
	return shuffle(candidates, rng)[:count]


__all__ = [
	"FeedConfig",
	"FeedItem",
	"FeedSource",
	"build_discovery_feed",
	"engagement_score",
	"lucky_discovery",
	"shuffle",
]
