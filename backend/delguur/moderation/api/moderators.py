"""Admin endpoints appointing and retiring community moderators."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from delguur.infra.auth import AuthenticatedUser, get_admin_user
from delguur.moderation.domain.models import Location
from delguur.moderation.domain.moderators import (
    MODERATOR_PERMISSIONS,
    Moderator,
    ModeratorDirectory,
    ModeratorLevel,
    ModeratorPermission,
)

from .deps import moderator_directory_dep, raise_for_result

router = APIRouter(prefix="/api/mod/v1/moderators", tags=["moderation-moderators"])


class AppointIn(BaseModel):
    user_id: str = Field(..., min_length=1)
    level: ModeratorLevel
    aimag: Optional[str] = None
    soum: Optional[str] = None


class ModeratorOut(BaseModel):
    user_id: str
    level: ModeratorLevel
    appointed_by: str
    appointed_at: datetime
    aimag: Optional[str] = None
    soum: Optional[str] = None
    is_active: bool
    permissions: list[ModeratorPermission]

    @classmethod
    def from_model(cls, moderator: Moderator) -> "ModeratorOut":
        location = moderator.location
        return cls(
            user_id=moderator.user_id,
            level=moderator.level,
            appointed_by=moderator.appointed_by,
            appointed_at=moderator.appointed_at,
            aimag=location.aimag if location else None,
            soum=location.soum if location else None,
            is_active=moderator.is_active,
            permissions=sorted(MODERATOR_PERMISSIONS[moderator.level], key=lambda p: p.value),
        )


@router.post("", response_model=ModeratorOut, status_code=status.HTTP_201_CREATED)
async def appoint_moderator(
    body: AppointIn,
    directory: ModeratorDirectory = Depends(moderator_directory_dep),
    admin: AuthenticatedUser = Depends(get_admin_user),
) -> ModeratorOut:
    location = Location(aimag=body.aimag, soum=body.soum or None) if body.aimag else None
    result = await directory.appoint(body.user_id, body.level, admin.id, location)
    raise_for_result(result)
    assert result.record is not None
    return ModeratorOut.from_model(result.record)


@router.get("/{user_id}", response_model=ModeratorOut)
async def get_moderator(
    user_id: str,
    directory: ModeratorDirectory = Depends(moderator_directory_dep),
    _admin: AuthenticatedUser = Depends(get_admin_user),
) -> ModeratorOut:
    moderator = await directory.get(user_id)
    if moderator is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="moderator_not_found")
    return ModeratorOut.from_model(moderator)


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def deactivate_moderator(
    user_id: str,
    directory: ModeratorDirectory = Depends(moderator_directory_dep),
    _admin: AuthenticatedUser = Depends(get_admin_user),
) -> None:
    if not await directory.deactivate(user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="moderator_not_found")
