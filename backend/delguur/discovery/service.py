"""Discovery feed over the active-listing pool with location tiers applied."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from delguur.discovery.ranking import FeedConfig, FeedItem, build_discovery_feed, lucky_discovery
from delguur.discovery.tiers import is_listing_visible
from delguur.moderation.domain.models import Listing, ListingStatus, Location, utcnow
from delguur.moderation.domain.repository import ListingRepository, StorageError

logger = logging.getLogger(__name__)

POOL_TTL_SECONDS = 30.0


@dataclass
class _PoolSnapshot:
	listings: dict[str, Listing]
	loaded_at: float


@dataclass
class DiscoveryService:
	listings: ListingRepository
	config: FeedConfig = field(default_factory=FeedConfig)
	pool_ttl_seconds: float = POOL_TTL_SECONDS
	clock: Callable[[], datetime] = utcnow
	rng: Optional[random.Random] = None
	_pools: dict[Optional[str], _PoolSnapshot] = field(default_factory=dict, init=False, repr=False)
	_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

	async def _pool(self, category: Optional[str]) -> list[Listing]:
		snapshot = self._pools.get(category)
		if snapshot is not None and time.monotonic() - snapshot.loaded_at < self.pool_ttl_seconds:
			return list(snapshot.listings.values())
		async with self._lock:
			snapshot = self._pools.get(category)
			if snapshot is not None and time.monotonic() - snapshot.loaded_at < self.pool_ttl_seconds:
				return list(snapshot.listings.values())
			try:
				rows = await self.listings.list_active_listings(category=category)
			except StorageError:
				logger.warning("discovery pool load failed", extra={"category": category}, exc_info=True)
				return list(snapshot.listings.values()) if snapshot else []
			self._pools[category] = _PoolSnapshot({row.id: row for row in rows}, time.monotonic())
			return rows

	async def feed(
		self,
		category: Optional[str] = None,
		location: Optional[Location] = None,
	) -> list[FeedItem]:
		pool = [
			listing
			for listing in await self._pool(category)
			if is_listing_visible(listing.location, location, listing.tier)
		]
		return build_discovery_feed(pool, self.config, now=self.clock(), rng=self.rng)

	async def lucky(
		self,
		exclude_ids: tuple[str, ...] = (),
		count: int = 1,
		location: Optional[Location] = None,
	) -> list[Listing]:
		pool = [
			listing
			for listing in await self._pool(None)
			if is_listing_visible(listing.location, location, listing.tier)
		]
		return lucky_discovery(pool, exclude_ids, count, rng=self.rng)

	async def refresh_listing(self, listing_id: str) -> None:
		"""Re-read one listing into every cached pool; drop it once it is no longer active."""
		try:
			listing = await self.listings.get_listing(listing_id)
		except StorageError:
			logger.warning("listing refresh failed; dropping cached pools", extra={"listing_id": listing_id})
			self._pools.clear()
			return
		for category, snapshot in self._pools.items():
			if (
				listing is not None
				and listing.status is ListingStatus.ACTIVE
				and (category is None or listing.category == category)
			):
				snapshot.listings[listing_id] = listing
			else:
				snapshot.listings.pop(listing_id, None)

	def invalidate(self) -> None:
		self._pools.clear()
