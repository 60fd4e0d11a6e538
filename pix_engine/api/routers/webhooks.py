"""
webhooks.py — Router de eventos de la red de pagos
--------------------------------------------------
Expone:
  POST /v1/pix/webhook          → Evento firmado (X-Webhook-Signature, HMAC-SHA256)
  POST /v1/pix/webhook/retry    → Reaplicar eventos FAILED (role=admin)
  GET  /v1/pix/webhook/events   → Historial de eventos (role=admin)
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from pix_engine.api.dependencies import (
    PixServices,
    get_services,
    require_admin,
    verify_webhook_signature,
)
from pix_engine.core.exceptions import ValidationError
from pix_engine.domain.schemas import (
    CurrentUser,
    WebhookAck,
    WebhookEventResponse,
    WebhookPayload,
)
from pix_engine.infrastructure.database.session import get_db

router = APIRouter(prefix="/v1/pix/webhook", tags=["PIX Webhooks"])


@router.post("", response_model=WebhookAck)
async def receive_webhook(
    raw: bytes = Depends(verify_webhook_signature),
    db: AsyncSession = Depends(get_db),
    services: PixServices = Depends(get_services),
) -> WebhookAck:
    """
    Entrada de eventos de la red de pagos. La firma se valida sobre el
    body crudo; el mismo body es el que se guarda cifrado.
    """
    try:
        payload = WebhookPayload.model_validate_json(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"Payload de webhook inválido ({e.error_count()} errores).")
    return await services.reconciler.process(db, payload, raw)


@router.post("/retry", response_model=list[WebhookAck])
async def retry_failed_webhooks(
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    _admin: CurrentUser = Depends(require_admin),
    services: PixServices = Depends(get_services),
) -> list[WebhookAck]:
    return await services.reconciler.retry_failed(db, limit=limit)


@router.get("/events", response_model=list[WebhookEventResponse])
async def webhook_history(
    external_reference_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    _admin: CurrentUser = Depends(require_admin),
    services: PixServices = Depends(get_services),
) -> list[WebhookEventResponse]:
    events = await services.reconciler.history(db, external_reference_id, limit)
    return [WebhookEventResponse.model_validate(e) for e in events]
