"""
limit_ledger.py
---------------
Ventanas de límite por usuario: por transacción, diario, nocturno y mensual.

  - La fila se crea al primer acceso con los límites por defecto
  - used_today / used_this_month se reinician a cero en el primer acceso
    posterior a cada frontera de día / mes del calendario local; ambos
    reinicios son independientes y nunca retroactivos
  - La fila se lee FOR UPDATE: un reinicio de frontera ocurre una sola vez

consume() y release() no hacen commit: forman parte del grupo atómico
del orquestador o del conciliador que las invoca.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pix_engine.core import clock
from pix_engine.core.exceptions import ValidationError
from pix_engine.domain.models import TransferLimit
from pix_engine.domain.schemas import LimitCheck, LimitConstraint, LimitsResponse

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

_LIMIT_FIELDS = ("daily_limit", "nightly_limit", "per_transaction_limit", "monthly_limit")


class LimitLedger:

    def __init__(
        self,
        daily_limit: Decimal = Decimal("5000.00"),
        nightly_limit: Decimal = Decimal("1000.00"),
        per_transaction_limit: Decimal = Decimal("2000.00"),
        monthly_limit: Decimal = Decimal("50000.00"),
        tz_name: Optional[str] = None,
    ):
        self.defaults = {
            "daily_limit":           daily_limit,
            "nightly_limit":         nightly_limit,
            "per_transaction_limit": per_transaction_limit,
            "monthly_limit":         monthly_limit,
        }
        self.tz_name = tz_name

    def is_night_window(self, moment: Optional[datetime] = None) -> bool:
        return clock.is_night_window(moment or clock.utcnow(), self.tz_name)

    # ─────────────────────────────────────────────────────────────────
    # Lectura con reinicio perezoso
    # ─────────────────────────────────────────────────────────────────

    async def get_or_create(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> TransferLimit:
        now = now or clock.utcnow()

        limit = await db.scalar(
            select(TransferLimit)
            .where(TransferLimit.user_id == user_id)
            .with_for_update()
        )
        if limit is None:
            limit = await self._create(db, user_id, now)

        self._apply_resets(limit, now)
        return limit

    async def _create(self, db: AsyncSession, user_id: uuid.UUID, now: datetime) -> TransferLimit:
        limit = TransferLimit(
            id              = uuid.uuid4(),
            user_id         = user_id,
            used_today      = ZERO,
            used_this_month = ZERO,
            last_reset_at   = now,
            **self.defaults,
        )
        db.add(limit)
        await db.flush()
        logger.info(f"[LimitLedger] Ventana creada user={user_id}")
        return limit

    def _apply_resets(self, limit: TransferLimit, now: datetime) -> None:
        last    = clock.to_local(limit.last_reset_at, self.tz_name)
        current = clock.to_local(now, self.tz_name)

        reset_day   = current.date() > last.date()
        reset_month = (current.year, current.month) > (last.year, last.month)

        if reset_day:
            limit.used_today = ZERO
        if reset_month:
            limit.used_this_month = ZERO
        if reset_day or reset_month:
            limit.last_reset_at = now
            logger.info(
                f"[LimitLedger] Reinicio user={limit.user_id} "
                f"day={reset_day} month={reset_month}"
            )

    # ─────────────────────────────────────────────────────────────────
    # Verificación
    # ─────────────────────────────────────────────────────────────────

    async def can_transact(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        amount: Decimal,
        is_night_window: bool,
        now: Optional[datetime] = None,
    ) -> LimitCheck:
        """
        Orden: por transacción → ventana (nocturna o diaria) → mensual.
        Solo se reporta la primera restricción violada.
        """
        limit = await self.get_or_create(db, user_id, now)

        if amount > limit.per_transaction_limit:
            return LimitCheck(
                allowed    = False,
                constraint = LimitConstraint.PER_TRANSACTION,
                headroom   = limit.per_transaction_limit,
                reason     = f"El monto excede el límite por transacción de R$ {limit.per_transaction_limit}",
            )

        window     = limit.nightly_limit if is_night_window else limit.daily_limit
        constraint = LimitConstraint.NIGHTLY if is_night_window else LimitConstraint.DAILY
        remaining  = max(ZERO, window - limit.used_today)
        if amount > remaining:
            label = "nocturno" if is_night_window else "diario"
            return LimitCheck(
                allowed    = False,
                constraint = constraint,
                headroom   = remaining,
                reason     = f"El monto excede el límite {label} disponible de R$ {remaining}",
            )

        month_remaining = max(ZERO, limit.monthly_limit - limit.used_this_month)
        if amount > month_remaining:
            return LimitCheck(
                allowed    = False,
                constraint = LimitConstraint.MONTHLY,
                headroom   = month_remaining,
                reason     = f"El monto excede el límite mensual disponible de R$ {month_remaining}",
            )

        return LimitCheck(allowed=True)

    # ─────────────────────────────────────────────────────────────────
    # Consumo (sin commit)
    # ─────────────────────────────────────────────────────────────────

    async def consume(
        self, db: AsyncSession, user_id: uuid.UUID, amount: Decimal, now: Optional[datetime] = None
    ) -> None:
        limit = await self.get_or_create(db, user_id, now)
        limit.used_today      = limit.used_today + amount
        limit.used_this_month = limit.used_this_month + amount

    async def release(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        amount: Decimal,
        now: Optional[datetime] = None,
        consumed_at: Optional[datetime] = None,
    ) -> None:
        """
        Devuelve el monto a las ventanas donde se consumió. Si el consumo
        quedó en un día (o mes) ya reiniciado, esa ventana no se toca.
        """
        now   = now or clock.utcnow()
        limit = await self.get_or_create(db, user_id, now)

        current  = clock.to_local(now, self.tz_name)
        consumed = clock.to_local(consumed_at or now, self.tz_name)

        if consumed.date() == current.date():
            limit.used_today = max(ZERO, limit.used_today - amount)
        if (consumed.year, consumed.month) == (current.year, current.month):
            limit.used_this_month = max(ZERO, limit.used_this_month - amount)

    # ─────────────────────────────────────────────────────────────────
    # Superficie para la API
    # ─────────────────────────────────────────────────────────────────

    async def get_limits(
        self, db: AsyncSession, user_id: uuid.UUID, now: Optional[datetime] = None
    ) -> LimitsResponse:
        now   = now or clock.utcnow()
        limit = await self.get_or_create(db, user_id, now)
        await db.commit()
        return self._to_response(limit, now)

    async def update_limits(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        now: Optional[datetime] = None,
        **changes: Optional[Decimal],
    ) -> LimitsResponse:
        now     = now or clock.utcnow()
        changes = {k: v for k, v in changes.items() if v is not None}

        unknown = set(changes) - set(_LIMIT_FIELDS)
        if unknown:
            raise ValidationError(f"Campos de límite desconocidos: {', '.join(sorted(unknown))}")
        if any(v <= 0 for v in changes.values()):
            raise ValidationError("Los límites deben ser positivos.")

        limit    = await self.get_or_create(db, user_id, now)
        proposed = {f: changes.get(f, getattr(limit, f)) for f in _LIMIT_FIELDS}

        if proposed["per_transaction_limit"] > proposed["daily_limit"]:
            raise ValidationError("El límite por transacción no puede superar el límite diario.")
        if proposed["nightly_limit"] > proposed["daily_limit"]:
            raise ValidationError("El límite nocturno no puede superar el límite diario.")

        for field_name, value in changes.items():
            setattr(limit, field_name, value)
        await db.commit()

        logger.info(f"[LimitLedger] Límites actualizados user={user_id} fields={sorted(changes)}")
        return self._to_response(limit, now)

    def _to_response(self, limit: TransferLimit, now: datetime) -> LimitsResponse:
        return LimitsResponse(
            daily_limit           = limit.daily_limit,
            nightly_limit         = limit.nightly_limit,
            per_transaction_limit = limit.per_transaction_limit,
            monthly_limit         = limit.monthly_limit,
            used_today            = limit.used_today,
            used_this_month       = limit.used_this_month,
            available_today       = max(ZERO, limit.daily_limit - limit.used_today),
            available_this_month  = max(ZERO, limit.monthly_limit - limit.used_this_month),
            is_night_window       = self.is_night_window(now),
        )
