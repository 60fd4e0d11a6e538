"""
transfer_orchestrator.py
------------------------
Orquestador de transferencias PIX.

No contiene lógica de detección ni de saldo propia: delega en el
directorio de llaves, el ledger de límites, el motor de riesgo, la red
de pagos y los grupos atómicos de TransferSettlement.

Flujo de send() para una transferencia inmediata:
  1. Monto > 0 y saldo disponible (lectura optimista, sin efectos)
  2. Llave del emisor: la indicada o la principal
  3. Límites → LimitExceededError(constraint, headroom)
  4. Resolución del receptor (interno o directorio externo)
     → se crea la fila Transfer en PROCESSING
  5. Motor de riesgo con un RuleSet recién cargado
       bloqueada                         → FAILED + FraudBlockedError
       requiere verificación adicional   → FAILED + ExtraAuthenticationRequiredError
     Retención de fondos y reserva de límites bajo el lock de la
     cuenta (FOR UPDATE) → FAILED + LimitExceededError si otra
     transferencia en vuelo ya agotó la ventana
  6. Liquidación con idempotency_key = transfer.id y timeout
       fallo / excepción / timeout       → FAILED + SettlementError
       éxito                             → external_reference_id persistido
  7. Grupo de completado (TransferSettlement.complete) y, si aplicó,
     actualización del perfil de riesgo

Las transferencias programadas quedan en PENDING; solo
execute_scheduled() las mueve, reentrando en el paso 1.
"""

import asyncio
import logging
import math
import uuid
from datetime import datetime
from decimal import Decimal
from typing import NamedTuple, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from pix_engine.core import clock
from pix_engine.core.exceptions import (
    AccountNotFoundError,
    ExtraAuthenticationRequiredError,
    FraudBlockedError,
    InsufficientFundsError,
    InvalidTransitionError,
    LimitExceededError,
    PixEngineException,
    ReceiverNotFoundError,
    SelfTransferError,
    SettlementError,
    TransferNotCancellableError,
    TransferNotFoundError,
    ValidationError,
)
from pix_engine.domain.models import Account, Transfer, TransferKey
from pix_engine.domain.schemas import (
    FraudContext,
    KeyResolution,
    ReceiverInfo,
    SettlementRequest,
    TransferHistoryPage,
    TransferRequest,
    TransferResponse,
    TransferStatus,
    TransferType,
    TransferView,
)
from pix_engine.infrastructure.network.psp_client import PaymentNetworkAdapter
from pix_engine.services.fraud_engine import FraudEngine
from pix_engine.services.fraud_rules import RuleSetLoader
from pix_engine.services.key_directory import KeyDirectory
from pix_engine.services.key_validation import detect_key, mask_key
from pix_engine.services.limit_ledger import LimitLedger
from pix_engine.services.transfer_settlement import TransferSettlement

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class _Preflight(NamedTuple):
    account:        Account
    sender_key:     TransferKey
    receiver:       KeyResolution
    receiver_value: str


class TransferOrchestrator:

    def __init__(
        self,
        keys: KeyDirectory,
        limits: LimitLedger,
        fraud: FraudEngine,
        rule_loader: RuleSetLoader,
        settlement: TransferSettlement,
        network: PaymentNetworkAdapter,
        settlement_timeout: float = 10.0,
        tz_name: Optional[str] = None,
    ):
        self.keys               = keys
        self.limits             = limits
        self.fraud              = fraud
        self.rule_loader        = rule_loader
        self.settlement         = settlement
        self.network            = network
        self.settlement_timeout = settlement_timeout
        self.tz_name            = tz_name

    # ─────────────────────────────────────────────────────────────────
    # Punto de entrada
    # ─────────────────────────────────────────────────────────────────

    async def send(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        request: TransferRequest,
        now: Optional[datetime] = None,
    ) -> TransferResponse:
        now = clock.as_utc(now or clock.utcnow())

        if request.scheduled_for is not None and clock.as_utc(request.scheduled_for) > now:
            return await self.schedule(db, user_id, request, now)

        try:
            checked = await self._preflight(
                db, user_id, request.amount, request.receiver_key, request.sender_key_id, now
            )
        except PixEngineException:
            await db.rollback()
            raise

        transfer = self._new_transfer(user_id, request, checked, now, TransferStatus.PROCESSING)
        db.add(transfer)
        await db.commit()

        logger.info(
            f"[Orchestrator] Transferencia creada id={transfer.id} user={user_id} "
            f"amount={transfer.amount} receiver={checked.receiver.masked_key}"
        )
        return await self._execute(
            db,
            transfer,
            sender_key         = checked.sender_key.value,
            receiver_value     = checked.receiver_value,
            receiver           = checked.receiver,
            device_fingerprint = request.device_fingerprint,
            auth_verified      = request.auth_verified,
            now                = now,
        )

    # ─────────────────────────────────────────────────────────────────
    # Pasos 1–4: validación optimista
    # ─────────────────────────────────────────────────────────────────

    async def _preflight(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        amount: Decimal,
        receiver_value: str,
        sender_key_id: Optional[uuid.UUID],
        now: datetime,
    ) -> _Preflight:
        if amount is None or amount <= 0:
            raise ValidationError("El monto debe ser mayor que cero.")

        account = await db.scalar(
            select(Account).where(Account.owner_id == user_id, Account.is_active.is_(True))
        )
        if account is None:
            raise AccountNotFoundError()
        if account.available_balance < amount:
            raise InsufficientFundsError(available=str(account.available_balance))

        if sender_key_id is not None:
            sender_key = await self.keys.get_owned_key(db, user_id, sender_key_id)
        else:
            sender_key = await self.keys.get_primary(db, user_id)
        if sender_key is None:
            raise ValidationError("Necesitas registrar una llave PIX antes de transferir.")

        check = await self.limits.can_transact(
            db, user_id, amount, self.limits.is_night_window(now), now
        )
        if not check.allowed:
            raise LimitExceededError(check.constraint.value, check.headroom, check.reason)

        receiver = await self.keys.resolve(db, receiver_value)
        if not receiver.found:
            raise ReceiverNotFoundError()
        if receiver.is_internal and receiver.key_id == sender_key.id:
            raise SelfTransferError()

        _, normalized = detect_key(receiver_value)
        return _Preflight(account, sender_key, receiver, normalized)

    def _new_transfer(
        self,
        user_id: uuid.UUID,
        request: TransferRequest,
        checked: _Preflight,
        now: datetime,
        status: TransferStatus,
    ) -> Transfer:
        receiver = checked.receiver
        return Transfer(
            id                    = uuid.uuid4(),
            sender_account_id     = checked.account.id,
            sender_user_id        = user_id,
            sender_key_id         = checked.sender_key.id,
            receiver_key_id       = receiver.key_id if receiver.is_internal else None,
            receiver_account_id   = receiver.account_id if receiver.is_internal else None,
            receiver_user_id      = receiver.owner_id if receiver.is_internal else None,
            external_receiver_key = None if receiver.is_internal else checked.receiver_value,
            receiver_name         = receiver.owner_name,
            receiver_bank         = receiver.bank_name,
            type                  = TransferType(request.type).value,
            amount                = request.amount,
            description           = request.description,
            status                = status.value,
            scheduled_for         = clock.as_utc(request.scheduled_for) if request.scheduled_for else None,
            device_fingerprint    = request.device_fingerprint,
            triggered_rules       = [],
            funds_held            = False,
            created_at            = now,
        )

    # ─────────────────────────────────────────────────────────────────
    # Pasos 5–7: riesgo, retención, liquidación y completado
    # ─────────────────────────────────────────────────────────────────

    async def _execute(
        self,
        db: AsyncSession,
        transfer: Transfer,
        sender_key: str,
        receiver_value: str,
        receiver: KeyResolution,
        device_fingerprint: Optional[str],
        auth_verified: bool,
        now: datetime,
    ) -> TransferResponse:
        transfer_id = transfer.id
        amount      = transfer.amount

        # ── 5. Motor de riesgo ───────────────────────────────────────
        rule_set = await self.rule_loader.load(db)
        result   = await self.fraud.analyze(
            db,
            FraudContext(
                user_id            = transfer.sender_user_id,
                amount             = amount,
                type               = TransferType(transfer.type),
                timestamp          = now,
                recipient_key      = receiver_value,
                device_fingerprint = device_fingerprint,
                transfer_id        = transfer_id,
            ),
            rule_set,
        )
        await db.execute(
            update(Transfer)
            .where(Transfer.id == transfer_id)
            .values(
                fraud_score     = result.score,
                triggered_rules = [
                    {"id": r.rule_id, "name": r.rule_name, "score": r.score, "reason": r.reason}
                    for r in result.triggered_rules
                ],
            )
        )
        await db.commit()

        if not result.is_allowed:
            reason = result.blocked_reason or f"Bloqueada por riesgo (score {result.score})"
            await self.settlement.fail(db, transfer_id, reason, now)
            logger.warning(
                f"[Orchestrator] Bloqueada por riesgo id={transfer_id} score={result.score} "
                f"rules={result.triggered_rule_names}"
            )
            raise FraudBlockedError(result.score, result.triggered_rule_names)

        if result.requires_extra_auth and not auth_verified:
            await self.settlement.fail(db, transfer_id, "Verificación adicional requerida", now)
            logger.warning(
                f"[Orchestrator] Verificación adicional requerida id={transfer_id} score={result.score}"
            )
            raise ExtraAuthenticationRequiredError(result.score, transfer_id)

        # ── Retención de fondos y reserva de límites ─────────────────
        try:
            held = await self.settlement.freeze(db, transfer_id, now)
        except LimitExceededError as e:
            await self.settlement.fail(db, transfer_id, e.message, now)
            raise
        if not held:
            await self.settlement.fail(db, transfer_id, "Saldo insuficiente", now)
            raise InsufficientFundsError(transfer_id=str(transfer_id))

        # ── 6. Liquidación, sin locks tomados ───────────────────────
        settlement_request = SettlementRequest(
            sender_key      = sender_key,
            receiver_key    = receiver_value,
            amount          = amount,
            idempotency_key = str(transfer_id),
            description     = transfer.description,
        )
        failure_reason = None
        try:
            async with asyncio.timeout(self.settlement_timeout):
                outcome = await self.network.execute_transfer(settlement_request)
            if not outcome.success:
                failure_reason = outcome.failure_reason or "Liquidación rechazada por la red"
        except TimeoutError:
            failure_reason = f"Timeout de liquidación ({self.settlement_timeout}s)"
            logger.warning(f"[Orchestrator] Timeout de liquidación id={transfer_id}")
        except Exception as e:
            failure_reason = f"Error de la red de pagos: {e}"
            logger.error(f"[Orchestrator] Error de liquidación id={transfer_id}: {e}")

        if failure_reason is not None:
            await self.settlement.fail(db, transfer_id, failure_reason, now)
            raise SettlementError(transfer_id, failure_reason)

        # Persistido antes de completar para correlacionar webhooks tempranos
        await db.execute(
            update(Transfer)
            .where(Transfer.id == transfer_id)
            .values(external_reference_id=outcome.external_reference_id)
        )
        await db.commit()

        # ── 7. Grupo de completado ───────────────────────────────────
        if await self.settlement.complete(db, transfer_id, now):
            await self.fraud.update_profile(db, transfer.sender_user_id, amount, device_fingerprint)

        await db.refresh(transfer)
        if transfer.status != TransferStatus.COMPLETED.value:
            raise SettlementError(
                transfer_id, transfer.failure_reason or f"Transferencia en estado {transfer.status}"
            )

        logger.info(
            f"[Orchestrator] Transferencia completada id={transfer_id} "
            f"e2e={transfer.external_reference_id} score={result.score}"
        )
        return TransferResponse(
            id                    = transfer.id,
            status                = TransferStatus.COMPLETED,
            amount                = transfer.amount,
            external_reference_id = transfer.external_reference_id,
            processed_at          = transfer.processed_at,
            fraud_score           = result.score,
            receiver              = ReceiverInfo(
                name       = receiver.owner_name,
                masked_key = receiver.masked_key,
                bank       = receiver.bank_name,
            ),
            message               = "PIX enviado con éxito",
        )

    # ─────────────────────────────────────────────────────────────────
    # Programadas
    # ─────────────────────────────────────────────────────────────────

    async def schedule(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        request: TransferRequest,
        now: Optional[datetime] = None,
    ) -> TransferResponse:
        now = clock.as_utc(now or clock.utcnow())
        try:
            checked = await self._preflight(
                db, user_id, request.amount, request.receiver_key, request.sender_key_id, now
            )
        except PixEngineException:
            await db.rollback()
            raise

        transfer = self._new_transfer(user_id, request, checked, now, TransferStatus.PENDING)
        db.add(transfer)
        await db.commit()

        logger.info(
            f"[Orchestrator] Transferencia programada id={transfer.id} "
            f"scheduled_for={transfer.scheduled_for}"
        )
        return TransferResponse(
            id            = transfer.id,
            status        = TransferStatus.PENDING,
            amount        = transfer.amount,
            scheduled_for = request.scheduled_for,
            receiver      = ReceiverInfo(
                name       = checked.receiver.owner_name,
                masked_key = checked.receiver.masked_key,
                bank       = checked.receiver.bank_name,
            ),
            message       = "PIX programado con éxito",
        )

    async def execute_scheduled(
        self,
        db: AsyncSession,
        transfer_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> TransferResponse:
        """Entrada del barrido externo: toma una PENDING vencida y reentra en el paso 1."""
        now = clock.as_utc(now or clock.utcnow())

        claimed = await db.execute(
            update(Transfer)
            .where(
                Transfer.id == transfer_id,
                Transfer.status == TransferStatus.PENDING.value,
                Transfer.scheduled_for <= now,
            )
            .values(status=TransferStatus.PROCESSING.value)
        )
        await db.commit()
        if claimed.rowcount != 1:
            raise InvalidTransitionError(
                "La transferencia no está programada o aún no vence.",
                transfer_id = str(transfer_id),
            )

        transfer = await db.get(Transfer, transfer_id, populate_existing=True)
        receiver_value = transfer.external_receiver_key
        if transfer.receiver_key_id is not None:
            receiver_key   = await db.get(TransferKey, transfer.receiver_key_id)
            receiver_value = receiver_key.value

        try:
            checked = await self._preflight(
                db, transfer.sender_user_id, transfer.amount, receiver_value, transfer.sender_key_id, now
            )
        except PixEngineException as e:
            await db.rollback()
            await self.settlement.fail(db, transfer_id, e.message, now)
            logger.warning(f"[Orchestrator] Programada fallida en validación id={transfer_id}: {e.message}")
            raise

        receiver = checked.receiver
        await db.execute(
            update(Transfer)
            .where(Transfer.id == transfer_id)
            .values(
                receiver_account_id = receiver.account_id if receiver.is_internal else None,
                receiver_user_id    = receiver.owner_id if receiver.is_internal else None,
                receiver_name       = receiver.owner_name,
                receiver_bank       = receiver.bank_name,
            )
        )
        await db.commit()
        await db.refresh(transfer)

        logger.info(f"[Orchestrator] Ejecutando programada id={transfer_id}")
        return await self._execute(
            db,
            transfer,
            sender_key         = checked.sender_key.value,
            receiver_value     = checked.receiver_value,
            receiver           = receiver,
            device_fingerprint = transfer.device_fingerprint,
            auth_verified      = False,
            now                = now,
        )

    async def cancel_scheduled(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        transfer_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> None:
        result = await db.execute(
            update(Transfer)
            .where(
                Transfer.id == transfer_id,
                Transfer.sender_user_id == user_id,
                Transfer.status == TransferStatus.PENDING.value,
                Transfer.scheduled_for.is_not(None),
            )
            .values(status=TransferStatus.CANCELLED.value, processed_at=now or clock.utcnow())
        )
        await db.commit()
        if result.rowcount != 1:
            raise TransferNotCancellableError()
        logger.info(f"[Orchestrator] Programada cancelada id={transfer_id} user={user_id}")

    async def due_scheduled(
        self, db: AsyncSession, now: Optional[datetime] = None, limit: int = 100
    ) -> list[uuid.UUID]:
        now = clock.as_utc(now or clock.utcnow())
        result = await db.execute(
            select(Transfer.id)
            .where(
                Transfer.status == TransferStatus.PENDING.value,
                Transfer.scheduled_for <= now,
            )
            .order_by(Transfer.scheduled_for)
            .limit(limit)
        )
        return list(result.scalars())

    # ─────────────────────────────────────────────────────────────────
    # Consultas
    # ─────────────────────────────────────────────────────────────────

    def _view_query(self):
        sender_key   = aliased(TransferKey)
        receiver_key = aliased(TransferKey)
        return (
            select(Transfer, sender_key, receiver_key)
            .outerjoin(sender_key, sender_key.id == Transfer.sender_key_id)
            .outerjoin(receiver_key, receiver_key.id == Transfer.receiver_key_id)
        )

    def _to_view(self, transfer: Transfer, sender_key, receiver_key, user_id: uuid.UUID) -> TransferView:
        if receiver_key is not None:
            receiver_masked = mask_key(receiver_key.type, receiver_key.value)
        elif transfer.external_receiver_key:
            key_type, _     = detect_key(transfer.external_receiver_key)
            receiver_masked = mask_key(key_type, transfer.external_receiver_key)
        else:
            receiver_masked = None

        return TransferView(
            id                    = transfer.id,
            type                  = TransferType(transfer.type),
            amount                = transfer.amount,
            description           = transfer.description,
            status                = TransferStatus(transfer.status),
            direction             = "OUT" if transfer.sender_user_id == user_id else "IN",
            sender_key            = mask_key(sender_key.type, sender_key.value) if sender_key else None,
            receiver_key          = receiver_masked,
            external_reference_id = transfer.external_reference_id,
            failure_reason        = transfer.failure_reason,
            scheduled_for         = transfer.scheduled_for,
            created_at            = transfer.created_at,
            processed_at          = transfer.processed_at,
        )

    def _visible_to(self, user_id: uuid.UUID):
        # El receptor solo ve lo que efectivamente le fue acreditado
        return or_(
            Transfer.sender_user_id == user_id,
            (Transfer.receiver_user_id == user_id) & Transfer.receiver_credited_at.is_not(None),
        )

    async def list_history(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        page: int = 1,
        limit: int = 20,
        status: Optional[TransferStatus] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> TransferHistoryPage:
        page  = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))

        filters = [self._visible_to(user_id)]
        if status is not None:
            filters.append(Transfer.status == TransferStatus(status).value)
        if start is not None:
            filters.append(Transfer.created_at >= clock.as_utc(start))
        if end is not None:
            filters.append(Transfer.created_at <= clock.as_utc(end))

        total = await db.scalar(select(func.count(Transfer.id)).where(*filters)) or 0
        rows  = await db.execute(
            self._view_query()
            .where(*filters)
            .order_by(Transfer.created_at.desc(), Transfer.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )

        return TransferHistoryPage(
            items       = [self._to_view(t, sk, rk, user_id) for t, sk, rk in rows.all()],
            page        = page,
            limit       = limit,
            total       = total,
            total_pages = math.ceil(total / limit) if total else 0,
        )

    async def get_transfer(
        self, db: AsyncSession, user_id: uuid.UUID, transfer_id: uuid.UUID
    ) -> TransferView:
        row = (
            await db.execute(
                self._view_query().where(Transfer.id == transfer_id, self._visible_to(user_id))
            )
        ).first()
        if row is None:
            raise TransferNotFoundError()
        transfer, sender_key, receiver_key = row
        return self._to_view(transfer, sender_key, receiver_key, user_id)
