"""
alert_service.py
----------------
Alertas de fraude. Se crean cuando una evaluación llega a score 40 y
tienen su propio ciclo de vida (PENDING → INVESTIGATING → CONFIRMED |
FALSE_POSITIVE | RESOLVED), independiente de la transferencia.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pix_engine.core import clock
from pix_engine.core.exceptions import AlertNotFoundError, ValidationError
from pix_engine.domain.models import FraudAlert
from pix_engine.domain.schemas import AlertStatus, Severity

logger = logging.getLogger(__name__)


class AlertService:

    async def create(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        severity: Severity,
        score: int,
        triggered_rules: list,
        transfer_id: Optional[uuid.UUID] = None,
        transfer_type: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> FraudAlert:
        """Sin commit: la alerta se persiste junto con el resto de la evaluación."""
        alert = FraudAlert(
            id              = uuid.uuid4(),
            user_id         = user_id,
            transfer_id     = transfer_id,
            transfer_type   = transfer_type,
            severity        = Severity(severity).value,
            score           = score,
            triggered_rules = triggered_rules,
            details         = details or {},
            status          = AlertStatus.PENDING.value,
        )
        db.add(alert)
        await db.flush()

        logger.warning(
            f"[Alerts] Alerta creada id={alert.id} user={user_id} "
            f"severity={alert.severity} score={score}"
        )
        return alert

    async def list_for_user(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        status: Optional[AlertStatus] = None,
        limit: int = 50,
    ) -> list[FraudAlert]:
        stmt = select(FraudAlert).where(FraudAlert.user_id == user_id)
        if status is not None:
            stmt = stmt.where(FraudAlert.status == AlertStatus(status).value)
        result = await db.execute(stmt.order_by(FraudAlert.created_at.desc()).limit(limit))
        return list(result.scalars())

    async def list_pending(self, db: AsyncSession, limit: int = 100) -> list[FraudAlert]:
        result = await db.execute(
            select(FraudAlert)
            .where(FraudAlert.status.in_((AlertStatus.PENDING.value, AlertStatus.INVESTIGATING.value)))
            .order_by(FraudAlert.score.desc(), FraudAlert.created_at)
            .limit(limit)
        )
        return list(result.scalars())

    async def update_status(
        self,
        db: AsyncSession,
        alert_id: uuid.UUID,
        status: AlertStatus,
        reviewed_by: str,
        resolution: Optional[str] = None,
    ) -> FraudAlert:
        status = AlertStatus(status)
        if status == AlertStatus.PENDING:
            raise ValidationError("Una alerta revisada no puede volver a PENDING.")

        alert = await db.get(FraudAlert, alert_id)
        if alert is None:
            raise AlertNotFoundError()

        alert.status      = status.value
        alert.reviewed_by = reviewed_by
        alert.reviewed_at = clock.utcnow()
        if resolution is not None:
            alert.resolution = resolution
        await db.commit()

        logger.info(f"[Alerts] Alerta {alert_id} → {status.value} por {reviewed_by}")
        return alert
