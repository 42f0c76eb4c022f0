"""Domain events announcing that moderation state changed.

Events carry identifiers only; consumers re-read the authoritative record.
Delivery is at-least-once through a Redis stream.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional

from redis.exceptions import RedisError

from delguur.infra.redis import redis_client
from delguur.moderation.domain.models import utcnow
from delguur.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

EVENTS_STREAM = "mod:events"

REPORT_SUBMITTED = "report.submitted"
REPORT_STATUS_CHANGED = "report.status_changed"
MODERATION_ACTION = "moderation.action"
APPEAL_SUBMITTED = "moderation.appeal.submitted"
APPEAL_RESOLVED = "moderation.appeal.resolved"


@dataclass(frozen=True)
class DomainEvent:
    kind: str
    listing_id: str
    ids: Mapping[str, str] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_fields(self) -> dict[str, str]:
        fields = {"kind": self.kind, "listing_id": self.listing_id, "at": self.occurred_at.isoformat()}
        for key, value in self.ids.items():
            fields[key] = str(value)
        return fields

    @classmethod
    def from_fields(cls, fields: Mapping[str, Any]) -> Optional["DomainEvent"]:
        kind = fields.get("kind")
        listing_id = fields.get("listing_id")
        if not kind or not listing_id:
            return None
        ids = {k: str(v) for k, v in fields.items() if k not in {"kind", "listing_id", "at"}}
        at = fields.get("at")
        try:
            occurred_at = datetime.fromisoformat(str(at)) if at else utcnow()
        except ValueError:
            return None
        return cls(kind=str(kind), listing_id=str(listing_id), ids=ids, occurred_at=occurred_at)


class EventPublisher:
    """Appends domain events to the moderation stream."""

    def __init__(self, redis: Any | None = None, *, stream: str = EVENTS_STREAM, maxlen: int = 10_000) -> None:
        self.redis = redis or redis_client
        self.stream = stream
        self.maxlen = maxlen

    async def publish(self, event: DomainEvent) -> Optional[str]:
        try:
            entry_id = await self.redis.xadd(self.stream, event.to_fields(), maxlen=self.maxlen, approximate=True)
        except RedisError:
            obs_metrics.inc_event_published(event.kind, "failed")
            logger.exception(
                "failed to publish moderation event",
                extra={"kind": event.kind, "listing_id": event.listing_id},
            )
            return None
        obs_metrics.inc_event_published(event.kind, "ok")
        return entry_id
