"""
audit_chain.py
--------------
Cadena de auditoría inmutable por usuario.

Cada entrada enlaza con la anterior:

    hash      = SHA-256(JSON canónico de user_id, sequence, event_type,
                        payload, amount, balance_before, balance_after,
                        previous_hash, timestamp)
    signature = HMAC-SHA256(secreto, hash)

La primera entrada de un usuario tiene previous_hash = None y sequence = 1.
Los llamadores sostienen el lock de la cuenta del usuario, así que los
append de un mismo usuario quedan serializados; la restricción única
(user_id, sequence) rechaza cualquier bifurcación que se escape.

verify_chain() recorre la cadena completa y reporta:
  - broken_links     → previous_hash no coincide con el hash anterior
  - tampered_entries → el hash recalculado o la firma no coinciden
Nunca repara nada.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pix_engine.core import clock
from pix_engine.core.crypto import HmacSigner, sha256_hex
from pix_engine.core.exceptions import ChainIntegrityError
from pix_engine.core.security import canonical_json, to_json_safe
from pix_engine.domain.models import AuditEntry
from pix_engine.domain.schemas import (
    AuditEventType,
    ChainExportResponse,
    ChainVerification,
)

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")


def _money(value: Optional[Decimal]) -> Optional[str]:
    if value is None:
        return None
    return str(Decimal(str(value)).quantize(_CENTS))


def _stamp(value: datetime) -> str:
    # UTC naive con microsegundos: idéntico en PostgreSQL y SQLite
    return clock.as_utc(value).replace(tzinfo=None).isoformat(timespec="microseconds")


def _content(entry: AuditEntry) -> dict[str, Any]:
    return {
        "user_id":        str(entry.user_id),
        "sequence":       entry.sequence,
        "event_type":     entry.event_type,
        "payload":        entry.payload,
        "amount":         _money(entry.amount),
        "balance_before": _money(entry.balance_before),
        "balance_after":  _money(entry.balance_after),
        "previous_hash":  entry.previous_hash,
        "timestamp":      _stamp(entry.created_at),
    }


def compute_hash(entry: AuditEntry) -> str:
    return sha256_hex(canonical_json(_content(entry)))


class AuditChain:

    def __init__(self, signer: HmacSigner):
        self.signer = signer

    async def _latest(self, db: AsyncSession, user_id: uuid.UUID) -> Optional[AuditEntry]:
        return await db.scalar(
            select(AuditEntry)
            .where(AuditEntry.user_id == user_id)
            .order_by(AuditEntry.sequence.desc())
            .limit(1)
        )

    async def append(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        event_type: AuditEventType,
        payload: dict,
        amount: Optional[Decimal] = None,
        balance_before: Optional[Decimal] = None,
        balance_after: Optional[Decimal] = None,
        now: Optional[datetime] = None,
    ) -> AuditEntry:
        """Sin commit: la entrada entra en la misma transacción que el movimiento."""
        previous = await self._latest(db, user_id)

        entry = AuditEntry(
            id             = uuid.uuid4(),
            user_id        = user_id,
            sequence       = previous.sequence + 1 if previous else 1,
            event_type     = AuditEventType(event_type).value,
            payload        = to_json_safe(payload),
            amount         = amount,
            balance_before = balance_before,
            balance_after  = balance_after,
            previous_hash  = previous.hash if previous else None,
            created_at     = clock.as_utc(now or clock.utcnow()),
        )
        entry.hash      = compute_hash(entry)
        entry.signature = self.signer.sign(entry.hash.encode())

        db.add(entry)
        await db.flush()

        logger.info(
            f"[AuditChain] Entrada #{entry.sequence} user={user_id} "
            f"event={entry.event_type} hash={entry.hash[:12]}"
        )
        return entry

    async def _entries(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[AuditEntry]:
        stmt = select(AuditEntry).where(AuditEntry.user_id == user_id)
        if start is not None:
            stmt = stmt.where(AuditEntry.created_at >= clock.as_utc(start))
        if end is not None:
            stmt = stmt.where(AuditEntry.created_at <= clock.as_utc(end))
        result = await db.execute(stmt.order_by(AuditEntry.sequence))
        return list(result.scalars())

    async def verify_chain(self, db: AsyncSession, user_id: uuid.UUID) -> ChainVerification:
        entries      = await self._entries(db, user_id)
        verification = ChainVerification(is_valid=True, checked_count=len(entries))

        previous_hash = None
        for entry in entries:
            if entry.previous_hash != previous_hash:
                verification.broken_links.append({
                    "sequence":      entry.sequence,
                    "entry_id":      str(entry.id),
                    "expected":      previous_hash,
                    "found":         entry.previous_hash,
                })

            if compute_hash(entry) != entry.hash:
                verification.tampered_entries.append({
                    "sequence": entry.sequence,
                    "entry_id": str(entry.id),
                    "reason":   "HASH_MISMATCH",
                })
            elif not self.signer.verify(entry.hash.encode(), entry.signature):
                verification.tampered_entries.append({
                    "sequence": entry.sequence,
                    "entry_id": str(entry.id),
                    "reason":   "INVALID_SIGNATURE",
                })

            previous_hash = entry.hash

        verification.is_valid = not (verification.broken_links or verification.tampered_entries)
        if not verification.is_valid:
            logger.error(
                f"[AuditChain] Cadena comprometida user={user_id} "
                f"links={len(verification.broken_links)} "
                f"tampered={len(verification.tampered_entries)}"
            )
        return verification

    async def assert_chain_intact(self, db: AsyncSession, user_id: uuid.UUID) -> ChainVerification:
        verification = await self.verify_chain(db, user_id)
        if not verification.is_valid:
            raise ChainIntegrityError(
                broken_links     = verification.broken_links,
                tampered_entries = verification.tampered_entries,
            )
        return verification

    async def export_chain(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        start: datetime,
        end: datetime,
    ) -> ChainExportResponse:
        entries = await self._entries(db, user_id, start, end)
        return ChainExportResponse(
            user_id     = user_id,
            start       = start,
            end         = end,
            entry_count = len(entries),
            entries     = [
                {
                    "id":             str(e.id),
                    "sequence":       e.sequence,
                    "event_type":     e.event_type,
                    "payload":        e.payload,
                    "amount":         _money(e.amount),
                    "balance_before": _money(e.balance_before),
                    "balance_after":  _money(e.balance_after),
                    "hash":           e.hash,
                    "previous_hash":  e.previous_hash,
                    "signature":      e.signature,
                    "timestamp":      clock.as_utc(e.created_at).isoformat(),
                }
                for e in entries
            ],
        )
