"""
audit.py — Router de la cadena de auditoría
-------------------------------------------
Expone:
  GET /v1/audit/chain/verify   → Verifica enlaces y firmas de la cadena
  GET /v1/audit/chain/export   → Entradas de un período para cumplimiento

Un usuario solo consulta su propia cadena; role=admin puede pasar user_id.
"""

import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from pix_engine.api.dependencies import PixServices, get_current_user, get_services
from pix_engine.core.exceptions import PermissionDeniedError, ValidationError
from pix_engine.domain.schemas import (
    ChainExportResponse,
    ChainVerificationResponse,
    CurrentUser,
)
from pix_engine.infrastructure.database.session import get_db

router = APIRouter(prefix="/v1/audit/chain", tags=["Audit"])


def _target_user(user: CurrentUser, user_id: Optional[uuid.UUID]) -> uuid.UUID:
    """Un usuario solo consulta su propia cadena; el equipo de riesgo, cualquiera."""
    if user_id is None or user_id == user.user_id:
        return user.user_id
    if not user.is_admin:
        raise PermissionDeniedError()
    return user_id


@router.get("/verify", response_model=ChainVerificationResponse)
async def verify_chain(
    user_id: Optional[uuid.UUID] = None,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    services: PixServices = Depends(get_services),
) -> ChainVerificationResponse:
    result = await services.audit.verify_chain(db, _target_user(user, user_id))
    return ChainVerificationResponse(
        is_valid         = result.is_valid,
        checked_count    = result.checked_count,
        broken_links     = result.broken_links,
        tampered_entries = result.tampered_entries,
    )


@router.get("/export", response_model=ChainExportResponse)
async def export_chain(
    start: datetime = Query(...),
    end: datetime = Query(...),
    user_id: Optional[uuid.UUID] = None,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    services: PixServices = Depends(get_services),
) -> ChainExportResponse:
    if end < start:
        raise ValidationError("El fin del período debe ser posterior al inicio.")
    return await services.audit.export_chain(db, _target_user(user, user_id), start, end)
