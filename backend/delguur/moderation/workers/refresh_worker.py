"""Worker that keeps cached discovery pools in step with moderation events."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from delguur.moderation.domain.events import EVENTS_STREAM, DomainEvent

logger = logging.getLogger(__name__)


class RedisStream(Protocol):
    async def xread(
        self,
        streams: Mapping[str, str],
        count: int,
        block: int,
    ) -> list[tuple[str, list[tuple[str, Mapping[Any, Any]]]]]:
        ...


class ListingRefresher(Protocol):
    async def refresh_listing(self, listing_id: str) -> None:
        ...


@dataclass
class ListingRefreshWorker:
    """Re-reads each listing named by a moderation event; the event itself carries no state."""

    redis: RedisStream
    refresher: ListingRefresher
    stream_key: str = EVENTS_STREAM
    batch_size: int = 100
    block_ms: int = 5000
    last_id: str = "$"

    async def run_once(self) -> int:
        """Refresh each listing named in the next batch once; returns the number refreshed."""
        batch = await self.redis.xread({self.stream_key: self.last_id}, count=self.batch_size, block=self.block_ms)
        pending: dict[str, None] = {}
        for _stream, entries in batch or ():
            for entry_id, fields in entries:
                event = DomainEvent.from_fields(_as_text(fields))
                if event is None:
                    logger.debug("skipping malformed moderation event", extra={"entry_id": entry_id})
                else:
                    pending.setdefault(event.listing_id)
            if entries:
                self.last_id = entries[-1][0]
        for listing_id in pending:
            await self.refresher.refresh_listing(listing_id)
        return len(pending)


def _text(raw: Any) -> Any:
    return raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw


def _as_text(fields: Mapping[Any, Any]) -> Mapping[str, Any]:
    return {str(_text(key)): _text(value) for key, value in fields.items()}
