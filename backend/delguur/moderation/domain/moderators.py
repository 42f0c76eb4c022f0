"""Volunteer community moderators with location-scoped permissions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Callable, Mapping, Optional, Protocol

from delguur.moderation.domain.models import Location, OperationResult, utcnow
from delguur.moderation.domain.repository import StorageError

logger = logging.getLogger(__name__)


class ModeratorLevel(str, Enum):
    COMMUNITY = "community"
    SOUM = "soum"
    AIMAG = "aimag"
    NATIONAL = "national"


class ModeratorPermission(str, Enum):
    REVIEW_REPORTS = "review_reports"
    FLAG_LISTINGS = "flag_listings"
    HIDE_LISTINGS = "hide_listings"
    WARN_USERS = "warn_users"
    REMOVE_LISTINGS = "remove_listings"
    BAN_USERS = "ban_users"


_P = ModeratorPermission
MODERATOR_PERMISSIONS: Mapping[ModeratorLevel, frozenset[ModeratorPermission]] = MappingProxyType(
    {
        ModeratorLevel.COMMUNITY: frozenset({_P.REVIEW_REPORTS, _P.FLAG_LISTINGS}),
        ModeratorLevel.SOUM: frozenset({_P.REVIEW_REPORTS, _P.FLAG_LISTINGS, _P.HIDE_LISTINGS, _P.WARN_USERS}),
        ModeratorLevel.AIMAG: frozenset(
            {_P.REVIEW_REPORTS, _P.FLAG_LISTINGS, _P.HIDE_LISTINGS, _P.WARN_USERS, _P.REMOVE_LISTINGS}
        ),
        ModeratorLevel.NATIONAL: frozenset(ModeratorPermission),
    }
)


@dataclass
class Moderator:
    user_id: str
    level: ModeratorLevel
    appointed_by: str
    appointed_at: datetime
    location: Optional[Location] = None
    is_active: bool = True


def has_moderator_permission(
    moderator: Optional[Moderator],
    permission: ModeratorPermission,
    target_location: Optional[Location] = None,
) -> bool:
    """Level grants the permission and, for soum/aimag moderators, the target is in their area."""
    if moderator is None or not moderator.is_active:
        return False
    if permission not in MODERATOR_PERMISSIONS[moderator.level]:
        return False
    if target_location is None:
        return True
    home = moderator.location
    if moderator.level is ModeratorLevel.SOUM:
        return home is not None and home.aimag == target_location.aimag and home.soum == target_location.soum
    if moderator.level is ModeratorLevel.AIMAG:
        return home is not None and home.aimag == target_location.aimag
    return True


class ModeratorRepository(Protocol):
    async def get_moderator(self, user_id: str) -> Optional[Moderator]:
        ...

    async def upsert_moderator(self, moderator: Moderator) -> None:
        ...


class InMemoryModeratorRepository(ModeratorRepository):
    def __init__(self) -> None:
        self.store: dict[str, Moderator] = {}
        self._lock = asyncio.Lock()

    async def get_moderator(self, user_id: str) -> Optional[Moderator]:
        moderator = self.store.get(user_id)
        return replace(moderator) if moderator else None

    async def upsert_moderator(self, moderator: Moderator) -> None:
        async with self._lock:
            self.store[moderator.user_id] = replace(moderator)


@dataclass
class ModeratorDirectory:
    repository: ModeratorRepository
    clock: Callable[[], datetime] = utcnow

    async def appoint(
        self,
        user_id: str,
        level: ModeratorLevel | str,
        appointed_by: str,
        location: Optional[Location] = None,
    ) -> OperationResult[Moderator]:
        try:
            level = ModeratorLevel(level)
        except ValueError:
            return OperationResult.fail("invalid_level", f"Unknown moderator level: {level}")
        if level is ModeratorLevel.SOUM and (location is None or not location.soum):
            return OperationResult.fail("location_required", "Soum moderators need an aimag and soum")
        if level is ModeratorLevel.AIMAG and location is None:
            return OperationResult.fail("location_required", "Aimag moderators need an aimag")
        moderator = Moderator(
            user_id=user_id,
            level=level,
            appointed_by=appointed_by,
            appointed_at=self.clock(),
            location=location,
        )
        try:
            await self.repository.upsert_moderator(moderator)
        except StorageError:
            logger.exception("moderator appointment failed", extra={"moderator_id": user_id})
            return OperationResult.fail(
                "storage_unavailable", "Could not appoint the moderator, please retry", retryable=True
            )
        logger.info(
            "moderator appointed",
            extra={"moderator_id": user_id, "level": level.value, "appointed_by": appointed_by},
        )
        return OperationResult.ok("Moderator appointed", moderator)

    async def deactivate(self, user_id: str) -> bool:
        moderator = await self.repository.get_moderator(user_id)
        if moderator is None or not moderator.is_active:
            return False
        moderator.is_active = False
        await self.repository.upsert_moderator(moderator)
        return True

    async def get(self, user_id: str) -> Optional[Moderator]:
        try:
            return await self.repository.get_moderator(user_id)
        except StorageError:
            logger.warning("moderator lookup failed", extra={"moderator_id": user_id}, exc_info=True)
            return None

    async def can(
        self,
        user_id: str,
        permission: ModeratorPermission,
        target_location: Optional[Location] = None,
    ) -> bool:
        return has_moderator_permission(await self.get(user_id), permission, target_location)
