"""
transfers.py — Router de transferencias PIX
-------------------------------------------
Expone:
  POST /v1/pix/transfers                   → Enviar (o programar con scheduled_for)
  GET  /v1/pix/transfers                   → Historial paginado, filtros de estado y fecha
  GET  /v1/pix/transfers/{id}              → Detalle visible para emisor o receptor
  POST /v1/pix/transfers/{id}/cancel       → Cancelar una programada propia

Barrido de programadas (role=admin, lo invoca el scheduler externo):
  GET  /v1/pix/transfers/scheduled/due     → Ids PENDING vencidos
  POST /v1/pix/transfers/{id}/execute      → Ejecutar una programada vencida
"""

import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from pix_engine.api.dependencies import PixServices, get_current_user, get_services, require_admin
from pix_engine.domain.schemas import (
    CurrentUser,
    TransferHistoryPage,
    TransferRequest,
    TransferResponse,
    TransferStatus,
    TransferView,
)
from pix_engine.infrastructure.database.session import get_db

router = APIRouter(prefix="/v1/pix/transfers", tags=["PIX Transfers"])


@router.post("", response_model=TransferResponse, status_code=status.HTTP_201_CREATED)
async def send_transfer(
    body: TransferRequest,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    services: PixServices = Depends(get_services),
) -> TransferResponse:
    return await services.orchestrator.send(db, user.user_id, body)


@router.get("", response_model=TransferHistoryPage)
async def transfer_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[TransferStatus] = Query(None, alias="status"),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    services: PixServices = Depends(get_services),
) -> TransferHistoryPage:
    return await services.orchestrator.list_history(
        db, user.user_id, page=page, limit=limit, status=status_filter, start=start, end=end
    )


@router.get("/{transfer_id}", response_model=TransferView)
async def get_transfer(
    transfer_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    services: PixServices = Depends(get_services),
) -> TransferView:
    return await services.orchestrator.get_transfer(db, user.user_id, transfer_id)


@router.post("/{transfer_id}/cancel", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_scheduled_transfer(
    transfer_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    services: PixServices = Depends(get_services),
) -> None:
    await services.orchestrator.cancel_scheduled(db, user.user_id, transfer_id)


# ── Barrido de programadas (lo invoca el scheduler externo) ──────────

@router.get("/scheduled/due", response_model=list[uuid.UUID])
async def due_scheduled_transfers(
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    _admin: CurrentUser = Depends(require_admin),
    services: PixServices = Depends(get_services),
) -> list[uuid.UUID]:
    return await services.orchestrator.due_scheduled(db, limit=limit)


@router.post("/{transfer_id}/execute", response_model=TransferResponse)
async def execute_scheduled_transfer(
    transfer_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _admin: CurrentUser = Depends(require_admin),
    services: PixServices = Depends(get_services),
) -> TransferResponse:
    return await services.orchestrator.execute_scheduled(db, transfer_id)
