"""Moderation worker exports."""

from .refresh_worker import ListingRefreshWorker

__all__ = ["ListingRefreshWorker"]
