"""
qr_codes.py
-----------
Cobros por QR: payload BR Code (EMV-MPM) con la llave principal del
receptor y lectura de payloads escaneados.

Estructura del payload (TLV: id de 2 dígitos + largo de 2 dígitos + valor):

  00  Payload Format Indicator         "01"
  01  Point of Initiation Method       "11" estático / "12" dinámico
  26  Merchant Account Information
        00  GUI                        "br.gov.bcb.pix"
        01  llave PIX
        02  descripción (opcional)
  52  Merchant Category Code           "0000"
  53  Moneda                           "986" (BRL)
  54  Monto (opcional en estáticos)
  58  País                             "BR"
  59  Nombre del receptor              máx. 25
  60  Ciudad                           máx. 15
  62  Additional Data Field
        05  txid
  63  CRC16-CCITT (0x1021, inicial 0xFFFF) sobre todo lo anterior + "6304"

Con monto → QR dinámico (vence en minutos); sin monto → estático (24 h).
"""

import base64
import binascii
import logging
import unicodedata
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from io import BytesIO
from typing import Optional

import qrcode.constants
from qrcode.main import QRCode
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pix_engine.core import clock
from pix_engine.core.exceptions import AccountNotFoundError, InvalidQrCodeError, ValidationError
from pix_engine.domain.models import Account
from pix_engine.domain.schemas import QrCodeReadResponse, QrCodeResponse, ReceiverInfo
from pix_engine.services.key_directory import KeyDirectory

logger = logging.getLogger(__name__)

PIX_GUI       = "br.gov.bcb.pix"
CURRENCY_BRL  = "986"
COUNTRY_CODE  = "BR"
STATIC        = "11"
DYNAMIC       = "12"
TXID_STATIC   = "***"

MAX_FIELD_LEN = 99
MAX_NAME_LEN  = 25
MAX_CITY_LEN  = 15


# ─────────────────────────────────────────────────────────────────────
# Codec BR Code
# ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BrCode:
    key:           str
    merchant_name: str
    merchant_city: str
    amount:        Optional[Decimal] = None
    description:   Optional[str] = None
    txid:          str = TXID_STATIC
    is_dynamic:    bool = False


def crc16(data: str) -> str:
    return f"{binascii.crc_hqx(data.encode('ascii'), 0xFFFF):04X}"


def _ascii(value: str, max_len: Optional[int] = None) -> str:
    """Sin acentos y solo ASCII imprimible: los largos TLV cuentan caracteres."""
    text = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    text = "".join(c for c in text if 32 <= ord(c) < 127).strip()
    return text[:max_len] if max_len else text


def _field(tag: str, value: str) -> str:
    if len(value) > MAX_FIELD_LEN:
        raise ValidationError(f"Campo {tag} del QR excede {MAX_FIELD_LEN} caracteres.")
    return f"{tag}{len(value):02d}{value}"


def encode(code: BrCode) -> str:
    account_info = _field("00", PIX_GUI) + _field("01", code.key)
    if code.description:
        account_info += _field("02", _ascii(code.description))

    payload = (
        _field("00", "01")
        + _field("01", DYNAMIC if code.is_dynamic else STATIC)
        + _field("26", account_info)
        + _field("52", "0000")
        + _field("53", CURRENCY_BRL)
    )
    if code.amount is not None:
        payload += _field("54", f"{code.amount:.2f}")
    payload += (
        _field("58", COUNTRY_CODE)
        + _field("59", _ascii(code.merchant_name, MAX_NAME_LEN) or "N")
        + _field("60", _ascii(code.merchant_city, MAX_CITY_LEN) or "N")
        + _field("62", _field("05", code.txid))
        + "6304"
    )
    return payload + crc16(payload)


def _tlv(data: str) -> dict[str, str]:
    fields: dict[str, str] = {}
    pos = 0
    while pos < len(data):
        header = data[pos:pos + 4]
        if len(header) < 4 or not header.isdigit():
            raise InvalidQrCodeError(f"Campo TLV mal formado en la posición {pos}.")
        tag, length = header[:2], int(header[2:])
        value = data[pos + 4:pos + 4 + length]
        if len(value) != length:
            raise InvalidQrCodeError(f"Campo {tag} truncado.")
        fields[tag] = value
        pos += 4 + length
    return fields


def decode(payload: str) -> BrCode:
    payload = payload.strip()
    if not payload.isascii():
        raise InvalidQrCodeError("El payload contiene caracteres no ASCII.")
    if len(payload) < 8 or payload[-8:-4] != "6304":
        raise InvalidQrCodeError("Payload sin CRC.")
    if crc16(payload[:-4]) != payload[-4:].upper():
        raise InvalidQrCodeError("CRC del QR inválido.")

    fields = _tlv(payload[:-8])
    if fields.get("00") != "01":
        raise InvalidQrCodeError("Formato de payload no soportado.")

    account_info = _tlv(fields.get("26", ""))
    if account_info.get("00", "").lower() != PIX_GUI or not account_info.get("01"):
        raise InvalidQrCodeError("El QR no contiene una llave PIX.")

    amount = None
    if "54" in fields:
        try:
            amount = Decimal(fields["54"])
        except InvalidOperation:
            amount = None
        if amount is None or not amount.is_finite() or amount <= 0:
            raise InvalidQrCodeError("Monto del QR inválido.")

    additional = _tlv(fields.get("62", ""))
    return BrCode(
        key           = account_info["01"],
        merchant_name = fields.get("59", ""),
        merchant_city = fields.get("60", ""),
        amount        = amount,
        description   = account_info.get("02"),
        txid          = additional.get("05", TXID_STATIC),
        is_dynamic    = fields.get("01") == DYNAMIC,
    )


def render_png(payload: str, box_size: int = 8, border: int = 4) -> str:
    """Imagen PNG del QR en base64."""
    qr = QRCode(
        version          = None,
        error_correction = qrcode.constants.ERROR_CORRECT_M,
        box_size         = box_size,
        border           = border,
    )
    qr.add_data(payload)
    qr.make(fit=True)

    buffered = BytesIO()
    qr.make_image(fill_color="black", back_color="white").save(buffered, format="PNG")
    return base64.b64encode(buffered.getvalue()).decode()


# ─────────────────────────────────────────────────────────────────────
# Servicio
# ─────────────────────────────────────────────────────────────────────

class QrCodeService:

    def __init__(
        self,
        keys: KeyDirectory,
        merchant_city: str = "SAO PAULO",
        static_ttl: timedelta = timedelta(hours=24),
        dynamic_ttl: timedelta = timedelta(minutes=30),
    ):
        self.keys          = keys
        self.merchant_city = merchant_city
        self.static_ttl    = static_ttl
        self.dynamic_ttl   = dynamic_ttl

    async def generate(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        amount: Optional[Decimal] = None,
        description: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> QrCodeResponse:
        now = clock.as_utc(now or clock.utcnow())
        if amount is not None and amount <= 0:
            raise ValidationError("El monto debe ser mayor que cero.")

        account = await db.scalar(
            select(Account).where(Account.owner_id == user_id, Account.is_active.is_(True))
        )
        if account is None:
            raise AccountNotFoundError()

        primary = await self.keys.get_primary(db, user_id)
        if primary is None:
            raise ValidationError("Necesitas registrar una llave PIX primero.")

        is_dynamic = amount is not None
        txid       = uuid.uuid4().hex[:25] if is_dynamic else TXID_STATIC
        payload    = encode(BrCode(
            key           = primary.value,
            merchant_name = account.holder_name,
            merchant_city = self.merchant_city,
            amount        = amount,
            description   = description,
            txid          = txid,
            is_dynamic    = is_dynamic,
        ))

        logger.info(
            f"[QrCode] QR {'dinámico' if is_dynamic else 'estático'} generado "
            f"user={user_id} txid={txid} amount={amount}"
        )
        return QrCodeResponse(
            payload      = payload,
            image_base64 = render_png(payload),
            txid         = txid,
            is_dynamic   = is_dynamic,
            amount       = amount,
            expires_at   = now + (self.dynamic_ttl if is_dynamic else self.static_ttl),
        )

    async def read(self, db: AsyncSession, payload: str) -> QrCodeReadResponse:
        """Decodifica el payload y resuelve la llave para la vista previa del pago."""
        code       = decode(payload)
        resolution = await self.keys.resolve(db, code.key)

        logger.info(f"[QrCode] QR leído txid={code.txid} found={resolution.found}")
        return QrCodeReadResponse(
            receiver_key  = code.key,
            amount        = code.amount,
            description   = code.description,
            txid          = code.txid,
            is_dynamic    = code.is_dynamic,
            merchant_name = code.merchant_name,
            merchant_city = code.merchant_city,
            found         = resolution.found,
            receiver      = ReceiverInfo(
                name       = resolution.owner_name,
                masked_key = resolution.masked_key,
                bank       = resolution.bank_name,
            ) if resolution.found else None,
        )
