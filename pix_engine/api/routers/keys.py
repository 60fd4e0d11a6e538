"""
keys.py — Router del directorio de llaves PIX
--------------------------------------------
Expone:
  POST   /v1/pix/keys                 → Registrar una llave (valida y normaliza)
  GET    /v1/pix/keys                 → Listar las llaves activas del usuario
  GET    /v1/pix/keys/resolve?value=  → Vista previa enmascarada del destinatario
  POST   /v1/pix/keys/{id}/primary    → Marcar como llave principal
  DELETE /v1/pix/keys/{id}            → Desactivar (rechaza llaves en uso)
"""

import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from pix_engine.api.dependencies import PixServices, get_current_user, get_services
from pix_engine.domain.schemas import (
    CurrentUser,
    KeyCreateRequest,
    KeyResolutionResponse,
    KeyResponse,
)
from pix_engine.infrastructure.database.session import get_db

router = APIRouter(prefix="/v1/pix/keys", tags=["PIX Keys"])


@router.post("", response_model=KeyResponse, status_code=status.HTTP_201_CREATED)
async def create_key(
    body: KeyCreateRequest,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    services: PixServices = Depends(get_services),
) -> KeyResponse:
    key = await services.keys.create(db, user.user_id, body.type, body.value, body.is_primary)
    return services.keys.to_response(key)


@router.get("", response_model=list[KeyResponse])
async def list_keys(
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    services: PixServices = Depends(get_services),
) -> list[KeyResponse]:
    return await services.keys.list_keys(db, user.user_id)


@router.get("/resolve", response_model=KeyResolutionResponse)
async def resolve_key(
    value: str = Query(..., min_length=1, max_length=140),
    db: AsyncSession = Depends(get_db),
    _user: CurrentUser = Depends(get_current_user),
    services: PixServices = Depends(get_services),
) -> KeyResolutionResponse:
    """Vista previa del destinatario antes de confirmar una transferencia."""
    resolution = await services.keys.resolve(db, value.strip())
    return KeyResolutionResponse(
        found       = resolution.found,
        is_internal = resolution.is_internal,
        key_type    = resolution.key_type,
        masked_key  = resolution.masked_key,
        owner_name  = resolution.owner_name,
        bank_name   = resolution.bank_name,
    )


@router.post("/{key_id}/primary", response_model=KeyResponse)
async def set_primary_key(
    key_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    services: PixServices = Depends(get_services),
) -> KeyResponse:
    key = await services.keys.set_primary(db, user.user_id, key_id)
    return services.keys.to_response(key)


@router.delete("/{key_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_key(
    key_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    services: PixServices = Depends(get_services),
) -> None:
    await services.keys.delete(db, user.user_id, key_id)
