"""Moderation API routers."""

from fastapi import APIRouter

from . import actions, appeals, moderators, reports

router = APIRouter()
router.include_router(reports.router)
router.include_router(actions.router)
router.include_router(appeals.router)
router.include_router(moderators.router)

__all__ = ["router"]
