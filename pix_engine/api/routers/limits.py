"""
limits.py — Router de límites de transferencia
----------------------------------------------
Expone:
  GET   /v1/pix/limits   → Límites, consumo del día y del mes, ventana nocturna
  PATCH /v1/pix/limits   → Ajustar límites (por transacción y nocturno ≤ diario)
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from pix_engine.api.dependencies import PixServices, get_current_user, get_services
from pix_engine.domain.schemas import CurrentUser, LimitsResponse, LimitsUpdateRequest
from pix_engine.infrastructure.database.session import get_db

router = APIRouter(prefix="/v1/pix/limits", tags=["PIX Limits"])


@router.get("", response_model=LimitsResponse)
async def get_limits(
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    services: PixServices = Depends(get_services),
) -> LimitsResponse:
    return await services.limits.get_limits(db, user.user_id)


@router.patch("", response_model=LimitsResponse)
async def update_limits(
    body: LimitsUpdateRequest,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    services: PixServices = Depends(get_services),
) -> LimitsResponse:
    return await services.limits.update_limits(db, user.user_id, **body.model_dump(exclude_none=True))
