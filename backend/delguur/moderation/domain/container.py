"""Lightweight service container shared by moderation, discovery and system-mode modules."""

from __future__ import annotations

from typing import Optional

import asyncpg
from redis.asyncio import Redis

from delguur.discovery.service import DiscoveryService
from delguur.infra.caching import JsonCache
from delguur.infra.redis import RedisProxy, redis_client
from delguur.moderation.domain.appeals_service import AppealWorkflow
from delguur.moderation.domain.enforcement import ModerationEngine
from delguur.moderation.domain.events import EventPublisher
from delguur.moderation.domain.moderators import (
    InMemoryModeratorRepository,
    ModeratorDirectory,
    ModeratorRepository,
)
from delguur.moderation.domain.policy import ModerationPolicy, load_policy
from delguur.moderation.domain.reports_service import ReportAggregator
from delguur.moderation.domain.repository import (
    InMemoryModerationStore,
    ListingRepository,
    ModerationRepository,
    ReportRepository,
)
from delguur.moderation.infra.postgres_repo import (
    PostgresModerationStore,
    PostgresModeratorRepository,
    PostgresSystemStatusStore,
)
from delguur.resilience.circuit_breaker import CircuitBreakerRegistry
from delguur.resilience.system_mode import InMemorySystemStatusStore, SystemModeGate, SystemStatusStore

SYSTEM_STATUS_BREAKER = "system_status_store"

_policy: ModerationPolicy = ModerationPolicy.default()
_redis_proxy: RedisProxy = redis_client
_store = InMemoryModerationStore()
_listings: ListingRepository = _store
_reports: ReportRepository = _store
_repository: ModerationRepository = _store
_moderator_repository: ModeratorRepository = InMemoryModeratorRepository()
_status_store: SystemStatusStore = InMemorySystemStatusStore()
_publisher = EventPublisher(redis=_redis_proxy)
_breakers = CircuitBreakerRegistry(config=_policy.breaker)
_aggregator: ReportAggregator
_engine: ModerationEngine
_appeals: AppealWorkflow
_moderators: ModeratorDirectory
_gate: SystemModeGate
_discovery: DiscoveryService


def _wire() -> None:
    global _aggregator, _engine, _appeals, _moderators, _gate, _discovery, _publisher, _breakers
    _publisher = EventPublisher(redis=_redis_proxy)
    _breakers = CircuitBreakerRegistry(config=_policy.breaker)
    _aggregator = ReportAggregator(
        reports=_reports,
        listings=_listings,
        repository=_repository,
        events=_publisher,
        hide_threshold=_policy.reports.hide,
        delete_threshold=_policy.reports.delete,
    )
    _engine = ModerationEngine(
        listings=_listings,
        repository=_repository,
        events=_publisher,
        appeal_window_days=_policy.appeal_window_days,
    )
    _appeals = AppealWorkflow(listings=_listings, repository=_repository, events=_publisher)
    _moderators = ModeratorDirectory(repository=_moderator_repository)
    _gate = SystemModeGate(
        store=_status_store,
        cache=JsonCache(_redis_proxy, namespace="delguur:system_status:"),
        breaker=_breakers.get(SYSTEM_STATUS_BREAKER),
        cache_ttl_seconds=_policy.status_cache_ttl_seconds,
    )
    _discovery = DiscoveryService(listings=_listings, config=_policy.feed)


_wire()


def configure(
    *,
    store: Optional[InMemoryModerationStore | PostgresModerationStore] = None,
    moderator_repository: Optional[ModeratorRepository] = None,
    status_store: Optional[SystemStatusStore] = None,
    redis_proxy: Optional[RedisProxy] = None,
    policy: Optional[ModerationPolicy] = None,
) -> None:
    """Swap collaborators and rebuild every service on top of them."""
    global _store, _listings, _reports, _repository, _moderator_repository, _status_store, _redis_proxy, _policy
    if store is not None:
        _store = store
        _listings = store
        _reports = store
        _repository = store
    if moderator_repository is not None:
        _moderator_repository = moderator_repository
    if status_store is not None:
        _status_store = status_store
    if redis_proxy is not None:
        _redis_proxy = redis_proxy
    if policy is not None:
        _policy = policy
    _wire()


def configure_postgres(
    pool: asyncpg.Pool,
    redis_conn: Redis | RedisProxy,
    *,
    policy_path: Optional[str] = None,
) -> None:
    proxy = redis_conn if isinstance(redis_conn, RedisProxy) else RedisProxy(redis_conn)
    configure(
        store=PostgresModerationStore(pool),
        moderator_repository=PostgresModeratorRepository(pool),
        status_store=PostgresSystemStatusStore(pool),
        redis_proxy=proxy,
        policy=load_policy(policy_path) if policy_path else None,
    )


def reset() -> None:
    """Fresh in-memory stores and default policy; used by tests."""
    configure(
        store=InMemoryModerationStore(),
        moderator_repository=InMemoryModeratorRepository(),
        status_store=InMemorySystemStatusStore(),
        redis_proxy=redis_client,
        policy=ModerationPolicy.default(),
    )


def get_policy() -> ModerationPolicy:
    return _policy


def get_store() -> InMemoryModerationStore | PostgresModerationStore:
    return _store


def get_listing_repository() -> ListingRepository:
    return _listings


def get_report_aggregator() -> ReportAggregator:
    return _aggregator


def get_engine() -> ModerationEngine:
    return _engine


def get_appeal_workflow() -> AppealWorkflow:
    return _appeals


def get_moderator_directory() -> ModeratorDirectory:
    return _moderators


def get_system_mode_gate() -> SystemModeGate:
    return _gate


def get_breakers() -> CircuitBreakerRegistry:
    return _breakers


def get_event_publisher() -> EventPublisher:
    return _publisher


def get_discovery_service() -> DiscoveryService:
    return _discovery
