"""
fraud_rules.py
--------------
Reglas declarativas del motor de riesgo.

  - RuleSetLoader  → lee las reglas activas y las congela en un RuleSet
                     versionado (SHA-256 del contenido). No hay caché en
                     memoria: cada evaluación recibe su RuleSet por valor.
  - TransferFacts  → hechos que necesitan las reglas (velocidad, total del
                     día, historial del destinatario, dispositivo conocido),
                     consultados una sola vez por evaluación
  - evaluate_rule  → evalúa una regla contra el contexto y el perfil

Condiciones por tipo de regla:
  AMOUNT_THRESHOLD  {"maxAmount": 5000}
  VELOCITY          {"windowMinutes": 60, "maxTransactions": 5}
  TIME_BASED        {"suspiciousHours": [0, 1, 2, 3, 4, 5]}
  NEW_DEVICE        {}
  AMOUNT_DEVIATION  {"maxDeviation": 5}
  NEW_RECIPIENT     {"thresholdForNew": 1000}
  CUMULATIVE_DAILY  {"maxDaily": 20000}
"""

import logging
import uuid
from dataclasses import asdict
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, or_, select, true
from sqlalchemy.ext.asyncio import AsyncSession

from pix_engine.core import clock
from pix_engine.core.crypto import sha256_hex
from pix_engine.core.security import canonical_json
from pix_engine.domain.models import FraudRule, Transfer, TransferKey
from pix_engine.domain.schemas import (
    FraudContext,
    FraudRuleSpec,
    RuleSet,
    RuleType,
    TransferStatus,
    TriggeredRule,
)
from pix_engine.services.device_registry import DeviceRegistry

logger = logging.getLogger(__name__)


DEFAULT_RULES = (
    {
        "name": "High Amount Transfer",
        "description": "Transferencias mayores a R$ 5.000",
        "rule_type": RuleType.AMOUNT_THRESHOLD,
        "conditions": {"maxAmount": 5000},
        "score": 15,
        "priority": 1,
    },
    {
        "name": "Very High Amount Transfer",
        "description": "Transferencias mayores a R$ 10.000",
        "rule_type": RuleType.AMOUNT_THRESHOLD,
        "conditions": {"maxAmount": 10000},
        "score": 30,
        "priority": 2,
    },
    {
        "name": "High Velocity",
        "description": "Más de 5 transferencias en 1 hora",
        "rule_type": RuleType.VELOCITY,
        "conditions": {"windowMinutes": 60, "maxTransactions": 5},
        "score": 25,
        "priority": 3,
    },
    {
        "name": "Night Time Transaction",
        "description": "Transferencias entre medianoche y las 6am",
        "rule_type": RuleType.TIME_BASED,
        "conditions": {"suspiciousHours": [0, 1, 2, 3, 4, 5]},
        "score": 10,
        "priority": 4,
    },
    {
        "name": "New Device",
        "description": "Transferencias desde dispositivos desconocidos",
        "rule_type": RuleType.NEW_DEVICE,
        "conditions": {},
        "score": 20,
        "priority": 5,
    },
    {
        "name": "Amount Deviation",
        "description": "Monto 5 veces mayor al promedio del usuario",
        "rule_type": RuleType.AMOUNT_DEVIATION,
        "conditions": {"maxDeviation": 5},
        "score": 20,
        "priority": 6,
    },
    {
        "name": "New Recipient High Value",
        "description": "Monto alto hacia un destinatario nuevo",
        "rule_type": RuleType.NEW_RECIPIENT,
        "conditions": {"thresholdForNew": 1000},
        "score": 15,
        "priority": 7,
    },
    {
        "name": "Daily Limit",
        "description": "Gasto del día mayor a R$ 20.000",
        "rule_type": RuleType.CUMULATIVE_DAILY,
        "conditions": {"maxDaily": 20000},
        "score": 25,
        "priority": 8,
    },
)


# ─────────────────────────────────────────────────────────────────────
# Carga del RuleSet
# ─────────────────────────────────────────────────────────────────────

class RuleSetLoader:

    async def load(self, db: AsyncSession) -> RuleSet:
        result = await db.execute(
            select(FraudRule).where(FraudRule.is_active.is_(True))
        )

        specs = []
        for row in result.scalars():
            try:
                rule_type = RuleType(row.rule_type)
            except ValueError:
                logger.warning(f"[FraudRules] Tipo de regla desconocido ignorado: {row.rule_type} ({row.name})")
                continue
            specs.append(
                FraudRuleSpec(
                    id         = str(row.id),
                    name       = row.name,
                    rule_type  = rule_type,
                    conditions = dict(row.conditions or {}),
                    score      = row.score,
                    priority   = row.priority,
                )
            )

        specs.sort(key=lambda s: (-s.priority, s.id))
        version = sha256_hex(canonical_json([asdict(s) for s in specs]))
        return RuleSet(version=version, rules=tuple(specs))


async def seed_default_rules(db: AsyncSession) -> int:
    """Inserta o actualiza las ocho reglas por defecto (por nombre)."""
    for rule in DEFAULT_RULES:
        existing = await db.scalar(select(FraudRule).where(FraudRule.name == rule["name"]))
        fields = {**rule, "rule_type": rule["rule_type"].value}
        if existing is None:
            db.add(FraudRule(id=uuid.uuid4(), is_active=True, **fields))
        else:
            for key, value in fields.items():
                setattr(existing, key, value)
    await db.commit()
    logger.info(f"[FraudRules] {len(DEFAULT_RULES)} reglas por defecto sembradas")
    return len(DEFAULT_RULES)


# ─────────────────────────────────────────────────────────────────────
# Hechos consultados una sola vez por evaluación
# ─────────────────────────────────────────────────────────────────────

class TransferFacts:

    _UNSET = object()

    def __init__(
        self,
        db: AsyncSession,
        context: FraudContext,
        devices: DeviceRegistry,
        tz_name: Optional[str] = None,
    ):
        self.db       = db
        self.context  = context
        self.devices  = devices
        self.tz_name  = tz_name
        self._velocity: dict[int, int] = {}
        self._daily_total  = self._UNSET
        self._new_recipient = self._UNSET
        self._known_device  = self._UNSET

    def _exclude_current(self):
        if self.context.transfer_id is None:
            return true()
        return Transfer.id != self.context.transfer_id

    async def recent_count(self, window_minutes: int) -> int:
        if window_minutes not in self._velocity:
            since = clock.as_utc(self.context.timestamp) - timedelta(minutes=window_minutes)
            self._velocity[window_minutes] = await self.db.scalar(
                select(func.count(Transfer.id)).where(
                    Transfer.sender_user_id == self.context.user_id,
                    Transfer.created_at >= since,
                    self._exclude_current(),
                )
            ) or 0
        return self._velocity[window_minutes]

    async def daily_total(self) -> Decimal:
        if self._daily_total is self._UNSET:
            day_start = clock.local_day_start(self.context.timestamp, self.tz_name)
            total = await self.db.scalar(
                select(func.coalesce(func.sum(Transfer.amount), 0)).where(
                    Transfer.sender_user_id == self.context.user_id,
                    Transfer.created_at >= day_start,
                    Transfer.status.in_(
                        (TransferStatus.PROCESSING.value, TransferStatus.COMPLETED.value)
                    ),
                    self._exclude_current(),
                )
            )
            self._daily_total = Decimal(str(total or 0))
        return self._daily_total

    async def is_new_recipient(self) -> bool:
        if self._new_recipient is self._UNSET:
            recipient = self.context.recipient_key
            previous = await self.db.scalar(
                select(Transfer.id)
                .outerjoin(TransferKey, TransferKey.id == Transfer.receiver_key_id)
                .where(
                    Transfer.sender_user_id == self.context.user_id,
                    Transfer.status == TransferStatus.COMPLETED.value,
                    or_(
                        Transfer.external_receiver_key == recipient,
                        TransferKey.value == recipient,
                    ),
                )
                .limit(1)
            )
            self._new_recipient = previous is None
        return self._new_recipient

    async def is_known_device(self) -> bool:
        if self._known_device is self._UNSET:
            self._known_device = await self.devices.is_known(
                self.context.user_id, self.context.device_fingerprint
            )
        return self._known_device


# ─────────────────────────────────────────────────────────────────────
# Evaluación de una regla
# ─────────────────────────────────────────────────────────────────────

async def evaluate_rule(
    rule: FraudRuleSpec,
    context: FraudContext,
    average_amount: Optional[Decimal],
    facts: TransferFacts,
    tz_name: Optional[str] = None,
) -> Optional[TriggeredRule]:
    """Retorna TriggeredRule si la regla se dispara, None si no aplica."""
    c      = rule.conditions
    amount = context.amount
    reason = None

    if rule.rule_type == RuleType.AMOUNT_THRESHOLD:
        max_amount = Decimal(str(c.get("maxAmount", 0)))
        if amount > max_amount:
            reason = f"HIGH_AMOUNT:{amount}"

    elif rule.rule_type == RuleType.VELOCITY:
        window = int(c.get("windowMinutes", 60))
        count  = await facts.recent_count(window)
        if count >= int(c.get("maxTransactions", 5)):
            reason = f"HIGH_VELOCITY:{count}/{window}min"

    elif rule.rule_type == RuleType.TIME_BASED:
        hour = clock.to_local(context.timestamp, tz_name).hour
        if hour in c.get("suspiciousHours", []):
            reason = f"SUSPICIOUS_HOUR:{hour}"

    elif rule.rule_type == RuleType.NEW_DEVICE:
        if context.device_fingerprint and not await facts.is_known_device():
            reason = "NEW_DEVICE"

    elif rule.rule_type == RuleType.AMOUNT_DEVIATION:
        if average_amount and average_amount > 0:
            deviation = amount / average_amount
            if deviation > Decimal(str(c.get("maxDeviation", 5))):
                reason = f"AMOUNT_DEVIATION:{deviation:.1f}x"

    elif rule.rule_type == RuleType.NEW_RECIPIENT:
        threshold = Decimal(str(c.get("thresholdForNew", 1000)))
        if context.recipient_key and amount > threshold and await facts.is_new_recipient():
            reason = "NEW_RECIPIENT_HIGH_VALUE"

    elif rule.rule_type == RuleType.CUMULATIVE_DAILY:
        projected = await facts.daily_total() + amount
        if projected > Decimal(str(c.get("maxDaily", 0))):
            reason = f"DAILY_LIMIT_EXCEEDED:{projected}"

    if reason is None:
        return None

    return TriggeredRule(
        rule_id   = rule.id,
        rule_name = rule.name,
        rule_type = rule.rule_type,
        score     = rule.score,
        reason    = reason,
    )
