"""System mode status and admin switches."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from delguur.infra.auth import AuthenticatedUser, get_admin_user
from delguur.moderation.api.deps import raise_for_result, system_mode_gate_dep
from delguur.moderation.domain.container import get_breakers
from delguur.resilience.system_mode import (
    EMERGENCY_PRESETS,
    SystemMode,
    SystemModeGate,
    SystemStatus,
    UserAction,
    allowed_actions,
)

router = APIRouter(prefix="/api/system/v1", tags=["system"])


class BannerOut(BaseModel):
    type: str
    message: str
    mode: SystemMode


class SystemStatusOut(BaseModel):
    mode: SystemMode
    message: Optional[str] = None
    enabled_at: datetime
    enabled_by: str
    scheduled_end: Optional[datetime] = None
    allowed_actions: list[UserAction]
    banner: Optional[BannerOut] = None

    @classmethod
    def build(cls, status: SystemStatus, banner: Optional[BannerOut] = None) -> "SystemStatusOut":
        return cls(
            mode=status.mode,
            message=status.message,
            enabled_at=status.enabled_at,
            enabled_by=status.enabled_by,
            scheduled_end=status.scheduled_end,
            allowed_actions=sorted(allowed_actions(status.mode), key=lambda a: a.value),
            banner=banner,
        )


class ModeIn(BaseModel):
    mode: SystemMode
    message: Optional[str] = Field(default=None, max_length=500)
    duration_hours: Optional[float] = Field(default=None, gt=0)


class PresetOut(BaseModel):
    name: str
    mode: SystemMode
    message: str
    duration_hours: float


async def _status_out(gate: SystemModeGate) -> SystemStatusOut:
    status = await gate.get_status()
    banner = await gate.get_banner()
    return SystemStatusOut.build(
        status,
        BannerOut(type=banner.type, message=banner.message, mode=banner.mode) if banner else None,
    )


@router.get("/status", response_model=SystemStatusOut)
async def get_status(gate: SystemModeGate = Depends(system_mode_gate_dep)) -> SystemStatusOut:
    return await _status_out(gate)


@router.post("/mode", response_model=SystemStatusOut)
async def set_mode(
    body: ModeIn,
    gate: SystemModeGate = Depends(system_mode_gate_dep),
    admin: AuthenticatedUser = Depends(get_admin_user),
) -> SystemStatusOut:
    result = await gate.set_system_mode(body.mode, admin.id, body.message, body.duration_hours)
    raise_for_result(result)
    return await _status_out(gate)


@router.get("/presets", response_model=list[PresetOut])
async def list_presets(_admin: AuthenticatedUser = Depends(get_admin_user)) -> list[PresetOut]:
    return [
        PresetOut(name=p.name, mode=p.mode, message=p.message, duration_hours=p.duration_hours)
        for p in EMERGENCY_PRESETS.values()
    ]


@router.post("/presets/{name}", response_model=SystemStatusOut)
async def activate_preset(
    name: str,
    gate: SystemModeGate = Depends(system_mode_gate_dep),
    admin: AuthenticatedUser = Depends(get_admin_user),
) -> SystemStatusOut:
    result = await gate.activate_preset(name, admin.id)
    raise_for_result(result)
    return await _status_out(gate)


@router.get("/breakers", response_model=dict[str, str])
async def breaker_states(_admin: AuthenticatedUser = Depends(get_admin_user)) -> dict[str, str]:
    return get_breakers().snapshot()
