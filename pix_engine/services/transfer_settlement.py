"""
transfer_settlement.py
----------------------
Movimientos de saldo de una transferencia, compartidos por el
orquestador y el conciliador de webhooks.

  freeze          → retiene el monto en frozen_balance del emisor y
                    reserva sus límites bajo el mismo lock
  complete        → débito del emisor + crédito del receptor interno,
                    COMPLETED, extracto y auditoría
  credit_receiver → solo la pata del receptor (webhook pix.received
                    llegado después de la liquidación)
  fail            → libera la retención y la reserva de límites, FAILED
  refund          → devuelve al emisor, revierte al receptor interno,
                    libera límites y marca REFUNDED

Cada operación:
  1. Toma los locks de las cuentas involucradas (orden por id)
  2. Relee la transferencia y las cuentas con SELECT ... FOR UPDATE
  3. Verifica el estado: si otro actor ya decidió, retorna False (no-op)
  4. Aplica todo en una sola transacción

La sesión se confirma antes de tomar los locks: ninguna transacción
abierta queda esperando un lock del proceso.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pix_engine.core import clock
from pix_engine.core.exceptions import (
    InvalidTransitionError,
    LimitExceededError,
    ReconciliationError,
    TransferNotFoundError,
)
from pix_engine.domain.models import Account, LedgerEntry, Transfer
from pix_engine.domain.schemas import AuditEventType, LedgerEntryType, TransferStatus
from pix_engine.services.account_locks import AccountLockManager
from pix_engine.services.audit_chain import AuditChain
from pix_engine.services.limit_ledger import LimitLedger

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────
# Máquina de estados
# ─────────────────────────────────────────────────────────────────────

TRANSITIONS: dict[TransferStatus, frozenset[TransferStatus]] = {
    TransferStatus.PENDING:    frozenset({TransferStatus.PROCESSING, TransferStatus.CANCELLED, TransferStatus.FAILED}),
    TransferStatus.PROCESSING: frozenset({TransferStatus.COMPLETED, TransferStatus.FAILED}),
    TransferStatus.COMPLETED:  frozenset({TransferStatus.REFUNDED}),
    TransferStatus.FAILED:     frozenset(),
    TransferStatus.CANCELLED:  frozenset(),
    TransferStatus.REFUNDED:   frozenset(),
}


def can_transition(current: TransferStatus, new: TransferStatus) -> bool:
    return new in TRANSITIONS[TransferStatus(current)]


def transition(transfer: Transfer, new: TransferStatus) -> None:
    current = TransferStatus(transfer.status)
    if not can_transition(current, new):
        raise InvalidTransitionError(
            f"Transición no permitida: {current.value} → {new.value}",
            transfer_id = str(transfer.id),
        )
    transfer.status = new.value


# ─────────────────────────────────────────────────────────────────────
# Grupos atómicos
# ─────────────────────────────────────────────────────────────────────

class TransferSettlement:

    def __init__(self, limits: LimitLedger, audit: AuditChain, locks: AccountLockManager):
        self.limits = limits
        self.audit  = audit
        self.locks  = locks

    async def _locked_transfer(self, db: AsyncSession, transfer_id: uuid.UUID) -> Transfer:
        transfer = await db.scalar(
            select(Transfer)
            .where(Transfer.id == transfer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if transfer is None:
            raise TransferNotFoundError()
        return transfer

    async def _locked_account(self, db: AsyncSession, account_id: uuid.UUID) -> Account:
        return await db.scalar(
            select(Account)
            .where(Account.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )

    async def _account_ids(self, db: AsyncSession, transfer_id: uuid.UUID) -> tuple:
        await db.commit()
        row = (
            await db.execute(
                select(Transfer.sender_account_id, Transfer.receiver_account_id)
                .where(Transfer.id == transfer_id)
            )
        ).first()
        if row is None:
            raise TransferNotFoundError()
        return row.sender_account_id, row.receiver_account_id

    def _ledger(
        self,
        db: AsyncSession,
        account: Account,
        transfer: Transfer,
        entry_type: LedgerEntryType,
        amount: Decimal,
        description: str,
    ) -> None:
        db.add(LedgerEntry(
            id          = uuid.uuid4(),
            account_id  = account.id,
            user_id     = account.owner_id,
            transfer_id = transfer.id,
            entry_type  = entry_type.value,
            amount      = amount,
            description = description,
        ))

    def _audit_payload(self, transfer: Transfer, **extra) -> dict:
        return {
            "transfer_id":           transfer.id,
            "external_reference_id": transfer.external_reference_id,
            "type":                  transfer.type,
            **extra,
        }

    # ─────────────────────────────────────────────────────────────────
    # Retención
    # ─────────────────────────────────────────────────────────────────

    async def freeze(self, db: AsyncSession, transfer_id: uuid.UUID, now: Optional[datetime] = None) -> bool:
        """
        Retiene el monto y reserva los límites del emisor en el mismo grupo.

        False si el saldo disponible ya no alcanza; LimitExceededError si
        otra transferencia en vuelo ya consumió la ventana.
        """
        now = now or clock.utcnow()
        sender_account_id, _ = await self._account_ids(db, transfer_id)

        async with self.locks.hold(sender_account_id):
            try:
                transfer = await self._locked_transfer(db, transfer_id)
                if transfer.funds_held:
                    await db.commit()
                    return True

                sender = await self._locked_account(db, transfer.sender_account_id)
                if sender.available_balance < transfer.amount:
                    await db.commit()
                    logger.warning(
                        f"[Settlement] Saldo insuficiente al retener transfer={transfer_id} "
                        f"available={sender.available_balance} amount={transfer.amount}"
                    )
                    return False

                check = await self.limits.can_transact(
                    db, transfer.sender_user_id, transfer.amount, self.limits.is_night_window(now), now
                )
                if not check.allowed:
                    await db.commit()
                    logger.warning(
                        f"[Settlement] Límite agotado al retener transfer={transfer_id} "
                        f"constraint={check.constraint.value} headroom={check.headroom}"
                    )
                    raise LimitExceededError(check.constraint.value, check.headroom, check.reason)

                await self.limits.consume(db, transfer.sender_user_id, transfer.amount, now)
                sender.frozen_balance = sender.frozen_balance + transfer.amount
                transfer.funds_held         = True
                transfer.limits_reserved_at = now
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.info(f"[Settlement] Fondos retenidos transfer={transfer_id} amount={transfer.amount}")
        return True

    # ─────────────────────────────────────────────────────────────────
    # Completar
    # ─────────────────────────────────────────────────────────────────

    async def complete(self, db: AsyncSession, transfer_id: uuid.UUID, now: Optional[datetime] = None) -> bool:
        now = now or clock.utcnow()
        sender_account_id, receiver_account_id = await self._account_ids(db, transfer_id)

        async with self.locks.hold(sender_account_id, receiver_account_id):
            try:
                transfer = await self._locked_transfer(db, transfer_id)
                if transfer.status != TransferStatus.PROCESSING.value:
                    await db.commit()
                    logger.info(
                        f"[Settlement] Completar ignorado transfer={transfer_id} status={transfer.status}"
                    )
                    return False

                amount = transfer.amount
                sender = await self._locked_account(db, transfer.sender_account_id)
                before = sender.balance

                if transfer.funds_held:
                    # Límites ya reservados en freeze
                    sender.frozen_balance = sender.frozen_balance - amount
                    transfer.funds_held   = False
                elif sender.available_balance < amount:
                    raise ReconciliationError(
                        "Saldo insuficiente para completar la transferencia.",
                        transfer_id = str(transfer_id),
                    )
                else:
                    await self.limits.consume(db, transfer.sender_user_id, amount, now)
                    transfer.limits_reserved_at = now
                sender.balance = sender.balance - amount

                self._ledger(db, sender, transfer, LedgerEntryType.PIX_OUT, -amount,
                             transfer.description or "PIX enviado")
                await self.audit.append(
                    db,
                    user_id        = transfer.sender_user_id,
                    event_type     = AuditEventType.PIX_SENT,
                    payload        = self._audit_payload(transfer, receiver_name=transfer.receiver_name),
                    amount         = amount,
                    balance_before = before,
                    balance_after  = sender.balance,
                )

                if transfer.receiver_account_id is not None and transfer.receiver_credited_at is None:
                    await self._credit(db, transfer, now)

                transition(transfer, TransferStatus.COMPLETED)
                transfer.processed_at = now
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.info(f"[Settlement] Transferencia completada transfer={transfer_id} amount={amount}")
        return True

    async def _credit(self, db: AsyncSession, transfer: Transfer, now: datetime) -> None:
        receiver = await self._locked_account(db, transfer.receiver_account_id)
        before   = receiver.balance
        receiver.balance = receiver.balance + transfer.amount

        self._ledger(db, receiver, transfer, LedgerEntryType.PIX_IN, transfer.amount, "PIX recibido")
        await self.audit.append(
            db,
            user_id        = receiver.owner_id,
            event_type     = AuditEventType.PIX_RECEIVED,
            payload        = self._audit_payload(transfer, sender_user_id=transfer.sender_user_id),
            amount         = transfer.amount,
            balance_before = before,
            balance_after  = receiver.balance,
        )
        transfer.receiver_credited_at = now

    async def credit_receiver(
        self, db: AsyncSession, transfer_id: uuid.UUID, now: Optional[datetime] = None
    ) -> bool:
        now = now or clock.utcnow()
        _, receiver_account_id = await self._account_ids(db, transfer_id)
        if receiver_account_id is None:
            return False

        async with self.locks.hold(receiver_account_id):
            try:
                transfer = await self._locked_transfer(db, transfer_id)
                if (
                    transfer.status != TransferStatus.COMPLETED.value
                    or transfer.receiver_credited_at is not None
                ):
                    await db.commit()
                    return False
                await self._credit(db, transfer, now)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.info(f"[Settlement] Receptor acreditado transfer={transfer_id}")
        return True

    # ─────────────────────────────────────────────────────────────────
    # Fallo
    # ─────────────────────────────────────────────────────────────────

    async def fail(
        self,
        db: AsyncSession,
        transfer_id: uuid.UUID,
        reason: str,
        now: Optional[datetime] = None,
    ) -> bool:
        now = now or clock.utcnow()
        sender_account_id, _ = await self._account_ids(db, transfer_id)

        async with self.locks.hold(sender_account_id):
            try:
                transfer = await self._locked_transfer(db, transfer_id)
                if not can_transition(transfer.status, TransferStatus.FAILED):
                    await db.commit()
                    logger.info(
                        f"[Settlement] Fallo ignorado transfer={transfer_id} status={transfer.status}"
                    )
                    return False

                if transfer.funds_held:
                    sender = await self._locked_account(db, transfer.sender_account_id)
                    sender.frozen_balance = sender.frozen_balance - transfer.amount
                    transfer.funds_held   = False
                    await self.limits.release(
                        db, transfer.sender_user_id, transfer.amount, now, transfer.limits_reserved_at
                    )

                transition(transfer, TransferStatus.FAILED)
                transfer.failure_reason = (reason or "")[:255]
                transfer.processed_at   = now
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.warning(f"[Settlement] Transferencia fallida transfer={transfer_id} reason={reason}")
        return True

    # ─────────────────────────────────────────────────────────────────
    # Reembolso
    # ─────────────────────────────────────────────────────────────────

    async def refund(self, db: AsyncSession, transfer_id: uuid.UUID, now: Optional[datetime] = None) -> bool:
        now = now or clock.utcnow()
        sender_account_id, receiver_account_id = await self._account_ids(db, transfer_id)

        async with self.locks.hold(sender_account_id, receiver_account_id):
            try:
                transfer = await self._locked_transfer(db, transfer_id)
                if transfer.status != TransferStatus.COMPLETED.value:
                    await db.commit()
                    logger.info(
                        f"[Settlement] Reembolso ignorado transfer={transfer_id} status={transfer.status}"
                    )
                    return False

                amount   = transfer.amount
                receiver = None
                if transfer.receiver_credited_at is not None:
                    receiver = await self._locked_account(db, transfer.receiver_account_id)
                    if receiver.available_balance < amount:
                        raise ReconciliationError(
                            "El receptor no tiene saldo disponible para revertir el reembolso.",
                            transfer_id = str(transfer_id),
                        )

                sender = await self._locked_account(db, transfer.sender_account_id)
                before = sender.balance
                sender.balance = sender.balance + amount
                self._ledger(db, sender, transfer, LedgerEntryType.PIX_REFUND, amount, "PIX reembolsado")
                await self.audit.append(
                    db,
                    user_id        = transfer.sender_user_id,
                    event_type     = AuditEventType.PIX_REFUNDED,
                    payload        = self._audit_payload(transfer),
                    amount         = amount,
                    balance_before = before,
                    balance_after  = sender.balance,
                )

                if receiver is not None:
                    before = receiver.balance
                    receiver.balance = receiver.balance - amount
                    self._ledger(db, receiver, transfer, LedgerEntryType.PIX_REVERSAL, -amount, "PIX revertido")
                    await self.audit.append(
                        db,
                        user_id        = receiver.owner_id,
                        event_type     = AuditEventType.PIX_REVERSED,
                        payload        = self._audit_payload(transfer),
                        amount         = amount,
                        balance_before = before,
                        balance_after  = receiver.balance,
                    )

                await self.limits.release(db, transfer.sender_user_id, amount, now, transfer.limits_reserved_at)
                transition(transfer, TransferStatus.REFUNDED)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.info(f"[Settlement] Transferencia reembolsada transfer={transfer_id} amount={amount}")
        return True
