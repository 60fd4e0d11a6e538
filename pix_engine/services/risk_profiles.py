"""
risk_profiles.py
----------------
Perfil de riesgo por usuario.

  - get_or_create       → crea el perfil al primer acceso (sin commit)
  - record_flag         → flag_count + 1 cuando una evaluación llega a 40
  - record_transfer     → UPDATE atómico de transfer_count y promedio,
                          serializado por usuario, más el histograma horario
  - block / unblock     → acciones administrativas
  - adjust_score        → ajuste manual acotado a [0, 100]
"""

import logging
import uuid
from collections import Counter
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pix_engine.core import clock
from pix_engine.domain.models import RiskProfile, Transfer
from pix_engine.domain.schemas import TransferStatus
from pix_engine.services.account_locks import UserLockManager

logger = logging.getLogger(__name__)

HISTOGRAM_SAMPLE = 100
UNBLOCK_SCORE    = 30


class RiskProfileService:

    def __init__(self, locks: Optional[UserLockManager] = None, tz_name: Optional[str] = None):
        self.locks   = locks or UserLockManager()
        self.tz_name = tz_name

    async def get_or_create(self, db: AsyncSession, user_id: uuid.UUID) -> RiskProfile:
        profile = await db.scalar(select(RiskProfile).where(RiskProfile.user_id == user_id))
        if profile is None:
            profile = RiskProfile(
                id             = uuid.uuid4(),
                user_id        = user_id,
                score          = 0,
                transfer_count = 0,
                typical_hours  = {},
                flag_count     = 0,
                is_blocked     = False,
            )
            db.add(profile)
            await db.flush()
        return profile

    async def record_flag(self, db: AsyncSession, user_id: uuid.UUID, now: Optional[datetime] = None) -> None:
        await db.execute(
            update(RiskProfile)
            .where(RiskProfile.user_id == user_id)
            .values(flag_count=RiskProfile.flag_count + 1, last_flag_at=now or clock.utcnow())
        )

    async def record_transfer(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        amount: Decimal,
    ) -> RiskProfile:
        """
        n' = n + 1 ; avg' = (avg·n + amount) / n'
        Un solo UPDATE: el motor evalúa ambos lados con los valores previos
        de la fila, así que dos transferencias concurrentes no pierden
        ninguna actualización.
        """
        async with self.locks.hold(user_id):
            await self.get_or_create(db, user_id)

            await db.execute(
                update(RiskProfile)
                .where(RiskProfile.user_id == user_id)
                .values(
                    transfer_count=RiskProfile.transfer_count + 1,
                    average_transaction_amount=(
                        func.coalesce(RiskProfile.average_transaction_amount, 0)
                        * RiskProfile.transfer_count
                        + amount
                    ) / (RiskProfile.transfer_count + 1),
                )
                .execution_options(synchronize_session=False)
            )

            profile = await db.scalar(
                select(RiskProfile)
                .where(RiskProfile.user_id == user_id)
                .execution_options(populate_existing=True)
            )
            profile.typical_hours = await self._hour_histogram(db, user_id)
            await db.commit()

        logger.info(
            f"[RiskProfile] Perfil actualizado user={user_id} "
            f"count={profile.transfer_count} avg={profile.average_transaction_amount}"
        )
        return profile

    async def _hour_histogram(self, db: AsyncSession, user_id: uuid.UUID) -> dict[str, int]:
        result = await db.execute(
            select(Transfer.created_at)
            .where(
                Transfer.sender_user_id == user_id,
                Transfer.status == TransferStatus.COMPLETED.value,
            )
            .order_by(Transfer.created_at.desc())
            .limit(HISTOGRAM_SAMPLE)
        )
        hours = Counter(clock.to_local(created_at, self.tz_name).hour for created_at in result.scalars())
        return {str(hour): count for hour, count in sorted(hours.items())}

    # ─────────────────────────────────────────────────────────────────
    # Acciones administrativas
    # ─────────────────────────────────────────────────────────────────

    async def block(self, db: AsyncSession, user_id: uuid.UUID, reason: str) -> RiskProfile:
        profile = await self.get_or_create(db, user_id)
        profile.is_blocked     = True
        profile.blocked_reason = reason
        profile.blocked_at     = clock.utcnow()
        await db.commit()
        logger.warning(f"[RiskProfile] Usuario bloqueado user={user_id} reason={reason}")
        return profile

    async def unblock(self, db: AsyncSession, user_id: uuid.UUID) -> RiskProfile:
        profile = await self.get_or_create(db, user_id)
        profile.is_blocked     = False
        profile.blocked_reason = None
        profile.blocked_at     = None
        profile.score          = UNBLOCK_SCORE
        await db.commit()
        logger.info(f"[RiskProfile] Usuario desbloqueado user={user_id}")
        return profile

    async def adjust_score(self, db: AsyncSession, user_id: uuid.UUID, delta: int) -> RiskProfile:
        async with self.locks.hold(user_id):
            profile = await self.get_or_create(db, user_id)
            profile.score = max(0, min(100, profile.score + delta))
            await db.commit()
        return profile

    async def list_blocked(self, db: AsyncSession, limit: int = 100) -> list[RiskProfile]:
        result = await db.execute(
            select(RiskProfile)
            .where(RiskProfile.is_blocked.is_(True))
            .order_by(RiskProfile.blocked_at.desc())
            .limit(limit)
        )
        return list(result.scalars())
