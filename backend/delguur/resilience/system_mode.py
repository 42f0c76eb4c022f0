"""System mode gate: which user actions are allowed while the platform is degraded."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Protocol
from uuid import uuid4

from redis.exceptions import RedisError

from delguur.infra.caching import JsonCache
from delguur.moderation.domain.models import OperationResult, assert_never, utcnow
from delguur.moderation.domain.repository import StorageError
from delguur.obs import metrics as obs_metrics
from delguur.resilience.circuit_breaker import CircuitBreaker, CircuitOpenError

logger = logging.getLogger(__name__)

STATUS_CACHE_KEY = "active"


class SystemMode(str, Enum):
    NORMAL = "normal"
    READ_ONLY = "read_only"
    MAINTENANCE = "maintenance"
    LOCKDOWN = "lockdown"


class UserAction(str, Enum):
    VIEW = "view"
    LOGIN = "login"
    REGISTER = "register"
    POST = "post"
    EDIT = "edit"
    DELETE = "delete"
    COMMENT = "comment"
    REPORT = "report"
    APPEAL = "appeal"


def allowed_actions(mode: SystemMode) -> frozenset[UserAction]:
    if mode is SystemMode.NORMAL:
        return frozenset(UserAction)
    if mode is SystemMode.READ_ONLY:
        return frozenset({UserAction.VIEW, UserAction.LOGIN})
    if mode is SystemMode.MAINTENANCE:
        return frozenset({UserAction.VIEW})
    if mode is SystemMode.LOCKDOWN:
        return frozenset({UserAction.VIEW})
    assert_never(mode)


_DEFAULT_REASONS: Mapping[SystemMode, str] = MappingProxyType(
    {
        SystemMode.NORMAL: "",
        SystemMode.READ_ONLY: "The site is in read-only mode. Browsing is still available.",
        SystemMode.MAINTENANCE: "Technical maintenance in progress. Please wait a moment.",
        SystemMode.LOCKDOWN: "The system is temporarily paused.",
    }
)


@dataclass
class SystemStatus:
    mode: SystemMode
    enabled_at: datetime
    enabled_by: str
    message: Optional[str] = None
    scheduled_end: Optional[datetime] = None
    is_active: bool = True
    id: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "mode": self.mode.value,
            "message": self.message,
            "enabled_at": self.enabled_at.isoformat(),
            "enabled_by": self.enabled_by,
            "scheduled_end": self.scheduled_end.isoformat() if self.scheduled_end else None,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SystemStatus":
        scheduled_end = data.get("scheduled_end")
        return cls(
            id=str(data.get("id") or uuid4()),
            mode=SystemMode(data["mode"]),
            message=data.get("message"),
            enabled_at=datetime.fromisoformat(str(data["enabled_at"])),
            enabled_by=str(data.get("enabled_by") or "system"),
            scheduled_end=datetime.fromisoformat(str(scheduled_end)) if scheduled_end else None,
            is_active=bool(data.get("is_active", True)),
        )


@dataclass(frozen=True, slots=True)
class ActionDecision:
    allowed: bool
    mode: SystemMode
    reason: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Banner:
    type: str  # info | warning | error
    message: str
    mode: SystemMode


@dataclass(frozen=True, slots=True)
class EmergencyPreset:
    name: str
    mode: SystemMode
    message: str
    duration_hours: float


EMERGENCY_PRESETS: Mapping[str, EmergencyPreset] = MappingProxyType(
    {
        preset.name: preset
        for preset in (
            EmergencyPreset(
                "pr_crisis",
                SystemMode.READ_ONLY,
                "We are improving our system. Posting new listings is temporarily disabled.",
                24,
            ),
            EmergencyPreset(
                "spam_attack",
                SystemMode.READ_ONLY,
                "New registrations and listings are temporarily limited to keep the platform safe.",
                6,
            ),
            EmergencyPreset(
                "maintenance",
                SystemMode.MAINTENANCE,
                "Technical maintenance in progress. Please try again in 30 minutes.",
                1,
            ),
            EmergencyPreset(
                "ddos_attack",
                SystemMode.LOCKDOWN,
                "The system is temporarily paused. Service will be restored shortly.",
                2,
            ),
        )
    }
)


class SystemStatusStore(Protocol):
    async def get_active(self) -> Optional[SystemStatus]:
        ...

    async def activate(self, status: SystemStatus) -> None:
        """Deactivate the current row and insert `status` as the only active one."""
        ...

    async def history(self, limit: int = 20) -> list[SystemStatus]:
        ...


class InMemorySystemStatusStore(SystemStatusStore):
    def __init__(self) -> None:
        self.rows: list[SystemStatus] = []
        self._lock = asyncio.Lock()

    async def get_active(self) -> Optional[SystemStatus]:
        for row in reversed(self.rows):
            if row.is_active:
                return replace(row)
        return None

    async def activate(self, status: SystemStatus) -> None:
        async with self._lock:
            for row in self.rows:
                row.is_active = False
            self.rows.append(replace(status, is_active=True))

    async def history(self, limit: int = 20) -> list[SystemStatus]:
        return [replace(row) for row in reversed(self.rows[-limit:])]


@dataclass
class SystemModeGate:
    """Reads the active status through a TTL cache and a circuit breaker.

    While the breaker is open the last status read from storage is served (or
    `normal` when nothing was ever read) without touching the store.
    """

    store: SystemStatusStore
    cache: JsonCache
    breaker: CircuitBreaker
    cache_ttl_seconds: int = 60
    clock: Callable[[], datetime] = utcnow
    _last_known: Optional[SystemStatus] = field(default=None, init=False, repr=False)
    _status_writes: int = field(default=0, init=False, repr=False)

    def _default_status(self) -> SystemStatus:
        return SystemStatus(mode=SystemMode.NORMAL, enabled_at=self.clock(), enabled_by="system")

    def _effective(self, status: SystemStatus) -> SystemStatus:
        if (
            status.mode is not SystemMode.NORMAL
            and status.scheduled_end is not None
            and status.scheduled_end <= self.clock()
        ):
            return SystemStatus(
                mode=SystemMode.NORMAL,
                enabled_at=status.scheduled_end,
                enabled_by="schedule",
            )
        return status

    async def _load_payload(self) -> dict[str, Any]:
        writes = self._status_writes
        status = await self.breaker.call(self.store.get_active, failure_types=(StorageError,))
        if status is None:
            status = self._default_status()
        # A mode change that landed during the read wins.
        if writes == self._status_writes:
            self._last_known = status
        return status.to_dict()

    def _fallback(self) -> SystemStatus:
        return self._last_known or self._default_status()

    async def get_status(self, *, force_refresh: bool = False) -> SystemStatus:
        if force_refresh:
            await self._invalidate_cache()
        try:
            payload = await self.cache.get_or_build(
                STATUS_CACHE_KEY, ttl=self.cache_ttl_seconds, builder=self._load_payload
            )
        except (StorageError, CircuitOpenError) as exc:
            logger.warning(
                "system status unavailable; serving last known mode",
                extra={"error": exc.__class__.__name__},
            )
            return self._effective(self._fallback())
        except RedisError:
            logger.warning("system status cache unavailable; reading store directly", exc_info=True)
            try:
                payload = await self._load_payload()
            except (StorageError, CircuitOpenError):
                return self._effective(self._fallback())
        return self._effective(SystemStatus.from_dict(payload))

    async def is_action_allowed(self, action: UserAction | str) -> ActionDecision:
        action = UserAction(action)
        status = await self.get_status()
        if action in allowed_actions(status.mode):
            return ActionDecision(allowed=True, mode=status.mode)
        obs_metrics.inc_mode_denial(status.mode.value, action.value)
        return ActionDecision(
            allowed=False,
            mode=status.mode,
            reason=status.message or _DEFAULT_REASONS[status.mode],
        )

    async def set_system_mode(
        self,
        mode: SystemMode | str,
        admin_id: str,
        message: Optional[str] = None,
        duration_hours: Optional[float] = None,
    ) -> OperationResult[SystemStatus]:
        try:
            target = SystemMode(mode)
        except ValueError:
            return OperationResult.fail("invalid_mode", f"Unknown system mode: {mode}")
        if duration_hours is not None and duration_hours <= 0:
            return OperationResult.fail("invalid_duration", "Duration must be positive")
        now = self.clock()
        status = SystemStatus(
            mode=target,
            message=message,
            enabled_at=now,
            enabled_by=admin_id,
            scheduled_end=now + timedelta(hours=duration_hours) if duration_hours else None,
        )
        try:
            await self.store.activate(status)
        except StorageError:
            logger.exception("failed to persist system mode", extra={"mode": target.value})
            return OperationResult.fail(
                "storage_unavailable",
                "Could not change the system mode, please retry",
                retryable=True,
            )
        self._status_writes += 1
        self._last_known = status
        await self._invalidate_cache()
        obs_metrics.set_active_mode(target.value, tuple(m.value for m in SystemMode))
        logger.warning(
            "system mode changed",
            extra={
                "mode": target.value,
                "admin_id": admin_id,
                "scheduled_end": status.scheduled_end.isoformat() if status.scheduled_end else None,
            },
        )
        return OperationResult.ok(f"System switched to {target.value} mode", record=status)

    async def activate_preset(self, name: str, admin_id: str) -> OperationResult[SystemStatus]:
        preset = EMERGENCY_PRESETS.get(name)
        if preset is None:
            return OperationResult.fail("unknown_preset", f"Unknown emergency preset: {name}")
        return await self.set_system_mode(
            preset.mode, admin_id, message=preset.message, duration_hours=preset.duration_hours
        )

    async def return_to_normal(self, admin_id: str) -> OperationResult[SystemStatus]:
        return await self.set_system_mode(
            SystemMode.NORMAL, admin_id, message="System is operating normally"
        )

    async def get_banner(self) -> Optional[Banner]:
        status = await self.get_status()
        if status.mode is SystemMode.NORMAL:
            return None
        if status.mode is SystemMode.LOCKDOWN:
            kind = "error"
        elif status.mode is SystemMode.MAINTENANCE:
            kind = "warning"
        else:
            kind = "info"
        message = status.message or "The system is running in a restricted mode"
        return Banner(type=kind, message=message, mode=status.mode)

    async def _invalidate_cache(self) -> None:
        try:
            await self.cache.invalidate(STATUS_CACHE_KEY)
        except RedisError:
            logger.warning("failed to invalidate system status cache", exc_info=True)
