"""
qr_codes.py — Router de cobros por QR
-------------------------------------
Expone:
  POST /v1/pix/qrcode/generate   → BR Code con la llave principal del usuario
                                   (con monto → dinámico, sin monto → estático)
  POST /v1/pix/qrcode/read       → Decodifica un payload escaneado y resuelve
                                   el destinatario para la vista previa

El pago posterior usa POST /v1/pix/transfers con type=QR_CODE.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from pix_engine.api.dependencies import PixServices, get_current_user, get_services
from pix_engine.domain.schemas import (
    CurrentUser,
    QrCodeReadRequest,
    QrCodeReadResponse,
    QrCodeRequest,
    QrCodeResponse,
)
from pix_engine.infrastructure.database.session import get_db

router = APIRouter(prefix="/v1/pix/qrcode", tags=["PIX QR Code"])


@router.post("/generate", response_model=QrCodeResponse)
async def generate_qr_code(
    body: QrCodeRequest,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    services: PixServices = Depends(get_services),
) -> QrCodeResponse:
    return await services.qr_codes.generate(db, user.user_id, body.amount, body.description)


@router.post("/read", response_model=QrCodeReadResponse)
async def read_qr_code(
    body: QrCodeReadRequest,
    db: AsyncSession = Depends(get_db),
    _user: CurrentUser = Depends(get_current_user),
    services: PixServices = Depends(get_services),
) -> QrCodeReadResponse:
    return await services.qr_codes.read(db, body.payload)
