"""Visibility tiers: listings start local and earn wider reach by engagement.

A soum top-5 listing becomes visible across its aimag, an aimag top-5 listing
across the country.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

from delguur.discovery.ranking import engagement_score
from delguur.moderation.domain.models import Listing, Location, VisibilityTier, assert_never

TOP_COUNT = 5
SOUM_SCORE_FLOOR = 50.0
AIMAG_SCORE_FLOOR = 200.0


def is_listing_visible(
	listing_location: Optional[Location],
	viewer_location: Optional[Location],
	tier: VisibilityTier,
) -> bool:
	"""Viewers without a chosen location browse unfiltered."""

	if tier is VisibilityTier.NATIONAL or viewer_location is None:
		return True
	if listing_location is None:
		return False
	if tier is VisibilityTier.AIMAG:
		return listing_location.aimag == viewer_location.aimag
	if tier is VisibilityTier.SOUM:
		return (
			listing_location.aimag == viewer_location.aimag
			and listing_location.soum == viewer_location.soum
		)
	assert_never(tier)


def top_listings(
	listings: Sequence[Listing],
	aimag: str,
	soum: Optional[str] = None,
	*,
	now: Optional[datetime] = None,
) -> list[str]:
	"""IDs of the top five listings in a soum (or a whole aimag) above the score floor."""

	floor = SOUM_SCORE_FLOOR if soum else AIMAG_SCORE_FLOOR
	scoped = [
		listing
		for listing in listings
		if listing.location is not None
		and listing.location.aimag == aimag
		and (soum is None or listing.location.soum == soum)
	]
	scored = [(engagement_score(listing, now), listing.id) for listing in scoped]
	ranked = sorted((item for item in scored if item[0] >= floor), reverse=True)
	return [listing_id for _, listing_id in ranked[:TOP_COUNT]]


def resolve_tier(
	listing: Listing,
	pool: Sequence[Listing],
	*,
	now: Optional[datetime] = None,
) -> VisibilityTier:
	"""Tier the listing has earned against its neighbours in `pool`."""

	location = listing.location
	if location is None:
		return VisibilityTier.SOUM
	if listing.id in top_listings(pool, location.aimag, now=now):
		return VisibilityTier.NATIONAL
	if location.soum and listing.id in top_listings(pool, location.aimag, location.soum, now=now):
		return VisibilityTier.AIMAG
	return VisibilityTier.SOUM


__all__ = [
	"AIMAG_SCORE_FLOOR",
	"SOUM_SCORE_FLOOR",
	"is_listing_visible",
	"resolve_tier",
	"top_listings",
]
