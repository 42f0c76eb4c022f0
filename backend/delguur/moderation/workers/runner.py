"""Utilities for wiring moderation workers into an event loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from delguur.moderation.domain.container import get_discovery_service
from delguur.moderation.workers.refresh_worker import ListingRefreshWorker

logger = logging.getLogger(__name__)

ERROR_BACKOFF_SECONDS = 1.0


async def _run_forever(worker, delay: float) -> None:
    while True:
        try:
            await worker.run_once()
        except RedisError:
            logger.warning("worker poll failed", extra={"worker": type(worker).__name__}, exc_info=True)
            await asyncio.sleep(max(delay, ERROR_BACKOFF_SECONDS))
            continue
        except Exception:
            # Anything else is logged too; the consumer keeps polling.
            logger.exception("worker batch failed", extra={"worker": type(worker).__name__})
            await asyncio.sleep(max(delay, ERROR_BACKOFF_SECONDS))
            continue
        await asyncio.sleep(delay)


def spawn_workers(
    redis_client: Redis,
    *,
    poll_interval: float = 0.1,
    loop: Optional[asyncio.AbstractEventLoop] = None,
) -> Iterable[asyncio.Task]:
    """Create asyncio tasks for the moderation event consumers."""

    event_loop = loop or asyncio.get_running_loop()
    refresher = ListingRefreshWorker(redis=redis_client, refresher=get_discovery_service())
    return [event_loop.create_task(_run_forever(refresher, poll_interval), name="moderation-listing-refresh")]
