"""
webhook_reconciler.py
---------------------
Conciliación de eventos asíncronos de la red de pagos.

Cada evento se guarda primero (payload crudo cifrado con AES-256-GCM +
SHA-256 del contenido, status RECEIVED) y recién después se aplica,
correlacionado por external_reference_id:

  pix.received  PROCESSING → grupo de completado
                COMPLETED con receptor interno sin acreditar → crédito
  pix.sent      PROCESSING → grupo de completado
  pix.failed    PENDING / PROCESSING → libera la retención, FAILED
  pix.refunded  COMPLETED → reembolso completo, REFUNDED

Cualquier otro estado es un evento duplicado o desfasado: NO_OP, que
cuenta como éxito. Referencias desconocidas o errores del handler dejan
el evento en FAILED con retry_count + 1; retry_failed() los reaplica
desde el payload descifrado.
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pix_engine.core import clock
from pix_engine.core.crypto import PayloadCipher, sha256_hex
from pix_engine.core.exceptions import (
    EncryptionError,
    PixEngineException,
    ReconciliationConflict,
    ReconciliationError,
)
from pix_engine.domain.models import Transfer, WebhookEvent
from pix_engine.domain.schemas import (
    TransferStatus,
    WebhookAck,
    WebhookEventType,
    WebhookPayload,
    WebhookStatus,
)
from pix_engine.services.fraud_engine import FraudEngine
from pix_engine.services.transfer_settlement import TransferSettlement

logger = logging.getLogger(__name__)


class WebhookReconciler:

    def __init__(
        self,
        settlement: TransferSettlement,
        fraud: FraudEngine,
        cipher: PayloadCipher,
        max_retries: int = 3,
    ):
        self.settlement  = settlement
        self.fraud       = fraud
        self.cipher      = cipher
        self.max_retries = max_retries

    async def process(
        self,
        db: AsyncSession,
        payload: WebhookPayload,
        raw: Optional[bytes] = None,
    ) -> WebhookAck:
        raw = raw if raw is not None else payload.model_dump_json().encode()

        event = WebhookEvent(
            id                    = uuid.uuid4(),
            event_type            = payload.event_type.value,
            external_reference_id = payload.external_reference_id,
            encrypted_payload     = self.cipher.encrypt(raw),
            payload_digest        = sha256_hex(raw),
            status                = WebhookStatus.RECEIVED.value,
            retry_count           = 0,
        )
        db.add(event)
        await db.commit()

        logger.info(
            f"[Reconciler] Evento recibido id={event.id} type={event.event_type} "
            f"ref={event.external_reference_id}"
        )
        return await self._apply(db, event, payload)

    async def _apply(self, db: AsyncSession, event: WebhookEvent, payload: WebhookPayload) -> WebhookAck:
        try:
            outcome = await self._dispatch(db, payload)
            event.status        = WebhookStatus.PROCESSED.value
            event.outcome       = outcome
            event.error_message = None
        except ReconciliationConflict as e:
            await db.rollback()
            await db.refresh(event)
            event.status  = WebhookStatus.NO_OP.value
            event.outcome = e.message
            logger.warning(
                f"[Reconciler] No-op id={event.id} type={event.event_type} "
                f"ref={event.external_reference_id}: {e.message}"
            )
        except Exception as e:
            # Errores de dominio y de infraestructura: el evento queda reintentable
            message = e.message if isinstance(e, PixEngineException) else f"Error inesperado: {e}"
            await db.rollback()
            await db.refresh(event)
            event.status        = WebhookStatus.FAILED.value
            event.retry_count   = event.retry_count + 1
            event.error_message = message[:500]
            logger.error(
                f"[Reconciler] Evento fallido id={event.id} ref={event.external_reference_id} "
                f"retry={event.retry_count}: {message}"
            )

        event.processed_at = clock.utcnow()
        await db.commit()
        return WebhookAck(event_id=event.id, status=WebhookStatus(event.status), outcome=event.outcome)

    async def _dispatch(self, db: AsyncSession, payload: WebhookPayload) -> str:
        ref = payload.external_reference_id
        transfer = await db.scalar(
            select(Transfer)
            .where(Transfer.external_reference_id == ref)
            .execution_options(populate_existing=True)
        )
        if transfer is None:
            raise ReconciliationError(f"Referencia externa desconocida: {ref}")

        if payload.amount is not None and Decimal(str(payload.amount)) != transfer.amount:
            raise ReconciliationError(
                f"Monto del evento ({payload.amount}) no coincide con la transferencia ({transfer.amount})"
            )

        transfer_id = transfer.id
        status      = TransferStatus(transfer.status)
        event_type  = payload.event_type

        if event_type in (WebhookEventType.RECEIVED, WebhookEventType.SENT):
            if status == TransferStatus.PROCESSING and await self.settlement.complete(db, transfer_id):
                await self.fraud.update_profile(
                    db, transfer.sender_user_id, transfer.amount, transfer.device_fingerprint
                )
                return "COMPLETED"
            if event_type == WebhookEventType.RECEIVED and await self.settlement.credit_receiver(db, transfer_id):
                return "RECEIVER_CREDITED"

        elif event_type == WebhookEventType.FAILED:
            reason = payload.data.get("reason") or "Rechazada por la red de pagos"
            if await self.settlement.fail(db, transfer_id, reason):
                return "FAILED"

        elif event_type == WebhookEventType.REFUNDED:
            if await self.settlement.refund(db, transfer_id):
                return "REFUNDED"

        raise ReconciliationConflict(f"{event_type.value} ya aplicado o fuera de orden (status={status.value})")

    # ─────────────────────────────────────────────────────────────────
    # Reintentos e historial
    # ─────────────────────────────────────────────────────────────────

    async def retry_failed(self, db: AsyncSession, limit: int = 10) -> list[WebhookAck]:
        result = await db.execute(
            select(WebhookEvent)
            .where(
                WebhookEvent.status == WebhookStatus.FAILED.value,
                WebhookEvent.retry_count < self.max_retries,
            )
            .order_by(WebhookEvent.created_at)
            .limit(limit)
        )
        events = list(result.scalars())

        acks = []
        for event in events:
            try:
                payload = WebhookPayload.model_validate_json(self.cipher.decrypt(event.encrypted_payload))
            except (EncryptionError, PydanticValidationError) as e:
                # Irrecuperable: se agota el presupuesto de reintentos
                event.retry_count   = self.max_retries
                event.error_message = f"Payload ilegible: {e}"[:500]
                await db.commit()
                logger.error(f"[Reconciler] Payload ilegible id={event.id}: {e}")
                acks.append(WebhookAck(event_id=event.id, status=WebhookStatus.FAILED))
                continue
            acks.append(await self._apply(db, event, payload))

        logger.info(f"[Reconciler] Reintento de {len(events)} eventos fallidos")
        return acks

    async def history(
        self,
        db: AsyncSession,
        external_reference_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[WebhookEvent]:
        stmt = select(WebhookEvent)
        if external_reference_id is not None:
            stmt = stmt.where(WebhookEvent.external_reference_id == external_reference_id)
        result = await db.execute(stmt.order_by(WebhookEvent.created_at.desc()).limit(limit))
        return list(result.scalars())
