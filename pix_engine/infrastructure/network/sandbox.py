"""
sandbox.py
----------
Red de pagos simulada para desarrollo (PAYMENT_NETWORK_URL vacío).

  - Latencia aleatoria en cada llamada
  - Tasa de fallo configurable (SANDBOX_FAILURE_RATE, 5% por defecto)
  - Directorio pequeño de llaves externas conocidas
  - Identificadores end-to-end con formato
        E + ISPB(8) + yyyyMMddHHmmss + 11 caracteres
"""

import asyncio
import logging
import random
import uuid
from datetime import datetime, timezone

from pix_engine.domain.schemas import (
    ExternalKeyLookup,
    KeyType,
    SettlementRequest,
    SettlementResult,
)

logger = logging.getLogger(__name__)

_FAILURE_REASONS = (
    "Llave PIX no encontrada en el directorio",
    "Cuenta destino bloqueada",
    "Límite excedido en la institución destino",
    "Timeout en la comunicación con el banco central",
    "Transacción rechazada por la institución receptora",
)

# valor normalizado → datos del titular externo
_EXTERNAL_KEYS = {
    "12345678901":      ("João Silva",     "Banco Mock", "001", KeyType.NATIONAL_ID),
    "teste@email.com":  ("Maria Santos",   "Nubank",     "260", KeyType.EMAIL),
    "+5511999998888":   ("Pedro Oliveira", "Itaú",       "341", KeyType.PHONE),
}


def generate_e2e_id(ispb: str, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    sequential = uuid.uuid4().hex[:11].upper()
    return f"E{ispb[:8].rjust(8, '0')}{now.strftime('%Y%m%d%H%M%S')}{sequential}"


class SandboxPaymentNetwork:

    def __init__(
        self,
        ispb: str,
        failure_rate: float = 0.05,
        latency_ms: tuple[int, int] = (500, 2000),
        rng: random.Random | None = None,
    ):
        self.ispb         = ispb
        self.failure_rate = failure_rate
        self.latency_ms   = latency_ms
        self._rng         = rng or random.Random()
        # idempotency_key → resultado ya emitido
        self._results: dict[str, SettlementResult] = {}

    async def execute_transfer(self, request: SettlementRequest) -> SettlementResult:
        previous = self._results.get(request.idempotency_key)
        if previous is not None:
            return previous

        await self._simulate_latency()

        if self._rng.random() < self.failure_rate:
            result = SettlementResult(
                success=False,
                external_reference_id=generate_e2e_id(self.ispb),
                failure_reason=self._rng.choice(_FAILURE_REASONS),
            )
        else:
            result = SettlementResult(success=True, external_reference_id=generate_e2e_id(self.ispb))

        self._results[request.idempotency_key] = result
        logger.info(
            f"[PSP] Sandbox liquidación success={result.success} "
            f"e2e={result.external_reference_id}"
        )
        return result

    async def _simulate_latency(self) -> None:
        low, high = self.latency_ms
        if high > 0:
            await asyncio.sleep(self._rng.randint(low, high) / 1000)


class SandboxKeyLookup:

    def __init__(self, latency_ms: tuple[int, int] = (200, 500), rng: random.Random | None = None):
        self.latency_ms = latency_ms
        self._rng       = rng or random.Random()

    async def lookup(self, value: str) -> ExternalKeyLookup:
        low, high = self.latency_ms
        if high > 0:
            await asyncio.sleep(self._rng.randint(low, high) / 1000)

        entry = _EXTERNAL_KEYS.get(value)
        if entry is None:
            return ExternalKeyLookup(found=False)

        owner_name, bank_name, bank_code, key_type = entry
        return ExternalKeyLookup(
            found=True,
            owner_name=owner_name,
            bank_name=bank_name,
            bank_code=bank_code,
            key_type=key_type,
        )
