"""
fraud.py — Router del equipo de riesgo
--------------------------------------
Superficie del equipo de riesgo: revisión de alertas, bloqueo de
usuarios y dispositivos conocidos. Todo requiere role=admin en el JWT,
salvo la consulta de las alertas propias.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from pix_engine.api.dependencies import PixServices, get_current_user, get_services, require_admin
from pix_engine.domain.schemas import (
    AlertResponse,
    AlertStatus,
    AlertStatusUpdate,
    BlockUserRequest,
    CurrentUser,
    RiskProfileResponse,
)
from pix_engine.infrastructure.database.session import get_db

router = APIRouter(prefix="/v1/fraud", tags=["Fraud"])


# ── Alertas ───────────────────────────────────────────────────────────

@router.get("/alerts", response_model=list[AlertResponse])
async def my_alerts(
    status_filter: Optional[AlertStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    services: PixServices = Depends(get_services),
) -> list[AlertResponse]:
    alerts = await services.alerts.list_for_user(db, user.user_id, status_filter, limit)
    return [AlertResponse.model_validate(a) for a in alerts]


@router.get("/alerts/pending", response_model=list[AlertResponse])
async def pending_alerts(
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    _admin: CurrentUser = Depends(require_admin),
    services: PixServices = Depends(get_services),
) -> list[AlertResponse]:
    alerts = await services.alerts.list_pending(db, limit)
    return [AlertResponse.model_validate(a) for a in alerts]


@router.patch("/alerts/{alert_id}", response_model=AlertResponse)
async def review_alert(
    alert_id: uuid.UUID,
    body: AlertStatusUpdate,
    db: AsyncSession = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
    services: PixServices = Depends(get_services),
) -> AlertResponse:
    alert = await services.alerts.update_status(
        db, alert_id, body.status, reviewed_by=str(admin.user_id), resolution=body.resolution
    )
    return AlertResponse.model_validate(alert)


# ── Usuarios ──────────────────────────────────────────────────────────

@router.get("/users/blocked", response_model=list[RiskProfileResponse])
async def blocked_users(
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    _admin: CurrentUser = Depends(require_admin),
    services: PixServices = Depends(get_services),
) -> list[RiskProfileResponse]:
    profiles = await services.profiles.list_blocked(db, limit)
    return [RiskProfileResponse.model_validate(p) for p in profiles]


@router.post("/users/{user_id}/block", response_model=RiskProfileResponse)
async def block_user(
    user_id: uuid.UUID,
    body: BlockUserRequest,
    db: AsyncSession = Depends(get_db),
    _admin: CurrentUser = Depends(require_admin),
    services: PixServices = Depends(get_services),
) -> RiskProfileResponse:
    profile = await services.profiles.block(db, user_id, body.reason)
    return RiskProfileResponse.model_validate(profile)


@router.post("/users/{user_id}/unblock", response_model=RiskProfileResponse)
async def unblock_user(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _admin: CurrentUser = Depends(require_admin),
    services: PixServices = Depends(get_services),
) -> RiskProfileResponse:
    profile = await services.profiles.unblock(db, user_id)
    return RiskProfileResponse.model_validate(profile)


# ── Dispositivos ──────────────────────────────────────────────────────

@router.get("/users/{user_id}/devices", response_model=list[str])
async def list_devices(
    user_id: uuid.UUID,
    _admin: CurrentUser = Depends(require_admin),
    services: PixServices = Depends(get_services),
) -> list[str]:
    return sorted(await services.devices.list_devices(user_id))


@router.delete("/users/{user_id}/devices/{fingerprint}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_device(
    user_id: uuid.UUID,
    fingerprint: str,
    _admin: CurrentUser = Depends(require_admin),
    services: PixServices = Depends(get_services),
) -> None:
    await services.devices.remove(user_id, fingerprint)
