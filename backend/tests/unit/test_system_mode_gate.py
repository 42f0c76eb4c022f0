from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from delguur.infra.caching import JsonCache
from delguur.moderation.domain.repository import StorageError
from delguur.resilience.circuit_breaker import BreakerConfig, CircuitBreaker, CircuitState
from delguur.resilience.system_mode import (
    EMERGENCY_PRESETS,
    InMemorySystemStatusStore,
    SystemMode,
    SystemModeGate,
    SystemStatus,
    UserAction,
    allowed_actions,
)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FlakyStatusStore(InMemorySystemStatusStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail = False
        self.reads = 0

    async def get_active(self):
        self.reads += 1
        if self.fail:
            raise StorageError("status table unavailable")
        return await super().get_active()


class SlowStatusStore(FlakyStatusStore):
    """Holds the first read open until released, returning what it saw on entry."""

    def __init__(self) -> None:
        super().__init__()
        self.reading = asyncio.Event()
        self.release = asyncio.Event()

    async def get_active(self):
        status = await super().get_active()
        if self.reads == 1:
            self.reading.set()
            await self.release.wait()
        return status


@pytest.fixture
def clock():
    return Clock(datetime(2026, 8, 1, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return FlakyStatusStore()


@pytest.fixture
def gate(store, clock, fake_redis):
    return SystemModeGate(
        store=store,
        cache=JsonCache(fake_redis, namespace="test:system_status:"),
        breaker=CircuitBreaker("system_status", BreakerConfig(failure_threshold=2, reset_timeout_seconds=30)),
        cache_ttl_seconds=60,
        clock=clock,
    )


def test_allowed_actions_per_mode():
    assert allowed_actions(SystemMode.NORMAL) == frozenset(UserAction)
    assert allowed_actions(SystemMode.READ_ONLY) == {UserAction.VIEW, UserAction.LOGIN}
    assert allowed_actions(SystemMode.MAINTENANCE) == {UserAction.VIEW}
    assert allowed_actions(SystemMode.LOCKDOWN) == {UserAction.VIEW}


@pytest.mark.asyncio
async def test_defaults_to_normal_when_nothing_stored(gate):
    status = await gate.get_status()

    assert status.mode is SystemMode.NORMAL
    assert (await gate.is_action_allowed("post")).allowed
    assert await gate.get_banner() is None


@pytest.mark.asyncio
async def test_read_only_denies_writes_with_reason(gate):
    result = await gate.set_system_mode(SystemMode.READ_ONLY, "admin-1", "Posting paused")
    assert result.success

    post = await gate.is_action_allowed(UserAction.POST)
    login = await gate.is_action_allowed(UserAction.LOGIN)

    assert not post.allowed
    assert post.mode is SystemMode.READ_ONLY
    assert post.reason == "Posting paused"
    assert login.allowed


@pytest.mark.asyncio
async def test_default_reason_used_without_message(gate):
    await gate.set_system_mode("lockdown", "admin-1")

    decision = await gate.is_action_allowed(UserAction.REPORT)

    assert not decision.allowed
    assert decision.reason == "The system is temporarily paused."


@pytest.mark.asyncio
async def test_mode_change_invalidates_cache(gate):
    await gate.get_status()
    await gate.set_system_mode(SystemMode.MAINTENANCE, "admin-1")

    assert (await gate.get_status()).mode is SystemMode.MAINTENANCE


@pytest.mark.asyncio
async def test_cached_status_served_until_forced_refresh(gate, store, clock):
    await gate.get_status()
    await store.activate(SystemStatus(mode=SystemMode.LOCKDOWN, enabled_at=clock(), enabled_by="ops"))

    assert (await gate.get_status()).mode is SystemMode.NORMAL
    assert (await gate.get_status(force_refresh=True)).mode is SystemMode.LOCKDOWN


@pytest.mark.asyncio
async def test_scheduled_end_returns_to_normal(gate, clock):
    await gate.set_system_mode(SystemMode.READ_ONLY, "admin-1", duration_hours=2)
    assert (await gate.get_status()).mode is SystemMode.READ_ONLY

    clock.now += timedelta(hours=2)

    assert (await gate.get_status()).mode is SystemMode.NORMAL
    assert (await gate.is_action_allowed(UserAction.POST)).allowed


@pytest.mark.asyncio
async def test_invalid_requests_are_rejected(gate):
    assert (await gate.set_system_mode("party", "admin-1")).code == "invalid_mode"
    assert (await gate.set_system_mode("read_only", "admin-1", duration_hours=0)).code == "invalid_duration"
    assert (await gate.activate_preset("meteor", "admin-1")).code == "unknown_preset"


@pytest.mark.asyncio
async def test_presets_apply_mode_message_and_duration(gate, clock):
    result = await gate.activate_preset("ddos_attack", "admin-1")

    preset = EMERGENCY_PRESETS["ddos_attack"]
    assert result.success
    assert result.record.mode is SystemMode.LOCKDOWN
    assert result.record.message == preset.message
    assert result.record.scheduled_end == clock.now + timedelta(hours=preset.duration_hours)
    banner = await gate.get_banner()
    assert banner.type == "error"
    assert banner.message == preset.message


@pytest.mark.asyncio
async def test_banner_levels(gate):
    await gate.activate_preset("maintenance", "admin-1")
    assert (await gate.get_banner()).type == "warning"

    await gate.activate_preset("pr_crisis", "admin-1")
    assert (await gate.get_banner()).type == "info"

    await gate.return_to_normal("admin-1")
    assert await gate.get_banner() is None


@pytest.mark.asyncio
async def test_storage_outage_serves_last_known_mode(gate, store):
    await gate.set_system_mode(SystemMode.READ_ONLY, "admin-1")
    store.fail = True

    for _ in range(3):
        status = await gate.get_status(force_refresh=True)
        assert status.mode is SystemMode.READ_ONLY

    assert gate.breaker.state is CircuitState.OPEN
    assert store.reads == 2


@pytest.mark.asyncio
async def test_storage_outage_without_history_fails_open(gate, store):
    store.fail = True

    assert (await gate.get_status()).mode is SystemMode.NORMAL
    assert (await gate.is_action_allowed(UserAction.POST)).allowed


@pytest.mark.asyncio
async def test_mode_change_during_slow_read_applies_immediately(clock, fake_redis):
    store = SlowStatusStore()
    gate = SystemModeGate(
        store=store,
        cache=JsonCache(fake_redis, namespace="test:system_status:"),
        breaker=CircuitBreaker("system_status", BreakerConfig(failure_threshold=2, reset_timeout_seconds=30)),
        cache_ttl_seconds=60,
        clock=clock,
    )
    in_flight = asyncio.create_task(gate.get_status())
    await store.reading.wait()

    changed = await gate.set_system_mode(SystemMode.LOCKDOWN, "admin-1")
    store.release.set()

    assert changed.success
    assert (await in_flight).mode is SystemMode.NORMAL
    decision = await gate.is_action_allowed(UserAction.POST)
    assert not decision.allowed
    assert decision.mode is SystemMode.LOCKDOWN

    store.fail = True
    assert (await gate.get_status(force_refresh=True)).mode is SystemMode.LOCKDOWN
