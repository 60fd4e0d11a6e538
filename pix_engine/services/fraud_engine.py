"""
fraud_engine.py
---------------
Motor de riesgo en tiempo real para transferencias PIX.

Flujo de analyze():
  1. Carga/crea el perfil de riesgo del usuario
  2. Perfil bloqueado → score 100, CRITICAL, declinada, sin evaluar reglas
  3. Evalúa cada regla del RuleSet (ya ordenado por prioridad descendente)
  4. total = min(100, score del perfil + Σ scores de reglas disparadas)
  5. Score ≥ 40 → alerta + flag_count del perfil

Umbrales:
  < 40   LOW       → permitida
  40–59  MEDIUM    → permitida, con alerta
  60–79  HIGH      → requiere verificación adicional
  80–89  CRITICAL  → requiere verificación adicional
  ≥ 90   CRITICAL  → declinada

El RuleSet llega por parámetro: el motor no guarda reglas en memoria.
"""

import logging
import uuid
from dataclasses import replace
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pix_engine.domain.schemas import (
    FraudCheckResult,
    FraudContext,
    RuleSet,
    Severity,
)
from pix_engine.services.alert_service import AlertService
from pix_engine.services.device_registry import DeviceRegistry
from pix_engine.services.fraud_rules import TransferFacts, evaluate_rule
from pix_engine.services.risk_profiles import RiskProfileService

logger = logging.getLogger(__name__)

MAX_SCORE            = 100
ALERT_THRESHOLD      = 40
EXTRA_AUTH_THRESHOLD = 60
CRITICAL_THRESHOLD   = 80
BLOCK_THRESHOLD      = 90


def severity_for(score: int) -> Severity:
    if score >= CRITICAL_THRESHOLD:
        return Severity.CRITICAL
    if score >= EXTRA_AUTH_THRESHOLD:
        return Severity.HIGH
    if score >= ALERT_THRESHOLD:
        return Severity.MEDIUM
    return Severity.LOW


class FraudEngine:

    def __init__(
        self,
        profiles: RiskProfileService,
        alerts: AlertService,
        devices: DeviceRegistry,
        tz_name: Optional[str] = None,
    ):
        self.profiles = profiles
        self.alerts   = alerts
        self.devices  = devices
        self.tz_name  = tz_name

    async def analyze(
        self,
        db: AsyncSession,
        context: FraudContext,
        rule_set: RuleSet,
    ) -> FraudCheckResult:
        profile = await self.profiles.get_or_create(db, context.user_id)

        if profile.is_blocked:
            result = FraudCheckResult(
                score               = MAX_SCORE,
                severity            = Severity.CRITICAL,
                is_allowed          = False,
                requires_extra_auth = False,
                rules_evaluated     = 0,
                rule_set_version    = rule_set.version,
                blocked_reason      = profile.blocked_reason or "Cuenta bloqueada por seguridad",
            )
            logger.warning(f"[FraudEngine] Usuario bloqueado user={context.user_id}")
            return await self._finish(db, context, result)

        facts     = TransferFacts(db, context, self.devices, self.tz_name)
        triggered = []
        for rule in rule_set.rules:
            hit = await evaluate_rule(
                rule, context, profile.average_transaction_amount, facts, self.tz_name
            )
            if hit is not None:
                triggered.append(hit)

        total = min(MAX_SCORE, profile.score + sum(r.score for r in triggered))

        result = FraudCheckResult(
            score               = total,
            severity            = severity_for(total),
            is_allowed          = total < BLOCK_THRESHOLD,
            requires_extra_auth = EXTRA_AUTH_THRESHOLD <= total < BLOCK_THRESHOLD,
            triggered_rules     = tuple(triggered),
            rules_evaluated     = len(rule_set),
            rule_set_version    = rule_set.version,
        )

        logger.info(
            f"[FraudEngine] Análisis user={context.user_id} score={total} "
            f"severity={result.severity.value} allowed={result.is_allowed} "
            f"rules={result.triggered_rule_names} ruleset={rule_set.version[:12]}"
        )
        return await self._finish(db, context, result)

    async def _finish(
        self,
        db: AsyncSession,
        context: FraudContext,
        result: FraudCheckResult,
    ) -> FraudCheckResult:
        """Alerta + flag para score ≥ 40; persiste todo lo escrito en la evaluación."""
        if result.score >= ALERT_THRESHOLD:
            alert = await self.alerts.create(
                db,
                user_id         = context.user_id,
                severity        = result.severity,
                score           = result.score,
                triggered_rules = [
                    {"id": r.rule_id, "name": r.rule_name, "score": r.score, "reason": r.reason}
                    for r in result.triggered_rules
                ],
                transfer_id     = context.transfer_id,
                transfer_type   = context.type.value,
                details         = {
                    "amount":           str(context.amount),
                    "rule_set_version": result.rule_set_version,
                    "blocked_reason":   result.blocked_reason,
                },
            )
            await self.profiles.record_flag(db, context.user_id, context.timestamp)
            result = replace(result, alert_id=alert.id)

        await db.commit()
        return result

    async def update_profile(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        amount: Decimal,
        device_fingerprint: Optional[str] = None,
    ) -> None:
        """Solo después de una transferencia permitida y completada."""
        await self.profiles.record_transfer(db, user_id, amount)
        if device_fingerprint:
            await self.devices.register(user_id, device_fingerprint)
