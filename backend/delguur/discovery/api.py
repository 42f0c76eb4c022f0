"""Fair discovery feed endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from delguur.discovery.ranking import FeedItem, FeedSource
from delguur.discovery.service import DiscoveryService
from delguur.infra.auth import AuthenticatedUser, get_optional_user
from delguur.moderation.domain.container import get_discovery_service
from delguur.moderation.domain.models import Listing, Location, VisibilityTier

router = APIRouter(prefix="/api/discovery/v1", tags=["discovery"])


class FeedListingOut(BaseModel):
	listing_id: str
	title: str
	category: Optional[str] = None
	tier: VisibilityTier
	aimag: Optional[str] = None
	soum: Optional[str] = None

	@classmethod
	def from_listing(cls, listing: Listing) -> "FeedListingOut":
		location = listing.location
		return cls(
			listing_id=listing.id,
			title=listing.title,
			category=listing.category,
			tier=listing.tier,
			aimag=location.aimag if location else None,
			soum=location.soum if location else None,
		)


class FeedItemOut(FeedListingOut):
	source: FeedSource
	score: float

	@classmethod
	def from_item(cls, item: FeedItem) -> "FeedItemOut":
		base = FeedListingOut.from_listing(item.listing)
		return cls(**base.model_dump(), source=item.source, score=round(item.score, 4))


class FeedOut(BaseModel):
	items: list[FeedItemOut]


def discovery_service_dep() -> DiscoveryService:
	return get_discovery_service()


def _viewer_location(
	aimag: Optional[str],
	soum: Optional[str],
	user: Optional[AuthenticatedUser],
) -> Optional[Location]:
	if aimag:
		return Location(aimag=aimag, soum=soum or None)
	return user.location if user is not None else None


@router.get("/feed", response_model=FeedOut)
async def discovery_feed(
	*,
	category: Optional[str] = Query(default=None),
	aimag: Optional[str] = Query(default=None),
	soum: Optional[str] = Query(default=None),
	service: DiscoveryService = Depends(discovery_service_dep),
	user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> FeedOut:
	items = await service.feed(category=category, location=_viewer_location(aimag, soum, user))
	return FeedOut(items=[FeedItemOut.from_item(item) for item in items])


@router.get("/lucky", response_model=list[FeedListingOut])
async def lucky_pick(
	*,
	exclude: Optional[list[str]] = Query(default=None),
	count: int = Query(default=1, ge=1, le=20),
	aimag: Optional[str] = Query(default=None),
	soum: Optional[str] = Query(default=None),
	service: DiscoveryService = Depends(discovery_service_dep),
	user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> list[FeedListingOut]:
	picks = await service.lucky(tuple(exclude or ()), count, location=_viewer_location(aimag, soum, user))
	return [FeedListingOut.from_listing(listing) for listing in picks]
