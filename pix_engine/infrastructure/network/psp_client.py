"""
psp_client.py
-------------
Clientes HTTP hacia la red de pagos (PSP) y el directorio externo de llaves.

Provee:
  - PaymentNetworkAdapter  → protocolo de liquidación síncrona
  - KeyLookupClient        → protocolo de consulta de llaves externas
  - HttpPaymentNetwork     → POST /transfers con Idempotency-Key
  - HttpKeyLookupClient    → GET /keys/{valor}

Principios de diseño:
  - Timeouts estrictos: si la red no responde en tiempo el resultado es
    un fallo, nunca un bloqueo del flujo de la transferencia
  - Errores de red y HTTP se traducen a SettlementResult(success=False);
    el orquestador decide qué hacer con el fallo
  - `transport` inyectable para tests (httpx.MockTransport)
"""

import logging
from typing import Optional, Protocol

import httpx

from pix_engine.domain.schemas import (
    ExternalKeyLookup,
    KeyType,
    SettlementRequest,
    SettlementResult,
)

logger = logging.getLogger(__name__)


class PaymentNetworkAdapter(Protocol):
    async def execute_transfer(self, request: SettlementRequest) -> SettlementResult: ...


class KeyLookupClient(Protocol):
    async def lookup(self, value: str) -> ExternalKeyLookup: ...


# ─────────────────────────────────────────────────────────────────────
# Liquidación
# ─────────────────────────────────────────────────────────────────────

class HttpPaymentNetwork:
    """
    Adaptador HTTP de la red de pagos.

    Respuesta esperada:
        {"success": true, "e2e_id": "E12345678...", "failure_reason": null}
    """

    def __init__(
        self,
        base_url: str,
        timeout_sec: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url    = base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self._transport  = transport

    async def execute_transfer(self, request: SettlementRequest) -> SettlementResult:
        body = {
            "sender_key":   request.sender_key,
            "receiver_key": request.receiver_key,
            "amount":       str(request.amount),
            "description":  request.description,
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_sec,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    "/transfers",
                    json=body,
                    headers={"Idempotency-Key": request.idempotency_key},
                )
                response.raise_for_status()
                data = response.json()

        except httpx.TimeoutException:
            logger.warning(f"[PSP] Timeout liquidando idempotency_key={request.idempotency_key}")
            return SettlementResult(success=False, failure_reason="Timeout en la red de pagos")

        except httpx.HTTPStatusError as e:
            logger.warning(
                f"[PSP] HTTP {e.response.status_code} liquidando "
                f"idempotency_key={request.idempotency_key}"
            )
            return SettlementResult(
                success=False,
                failure_reason=f"Red de pagos respondió HTTP {e.response.status_code}",
            )

        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[PSP] Error de comunicación: {e}")
            return SettlementResult(success=False, failure_reason="Error de comunicación con la red de pagos")

        if not data.get("success"):
            return SettlementResult(
                success=False,
                external_reference_id=data.get("e2e_id"),
                failure_reason=data.get("failure_reason") or "Transferencia rechazada por la red",
            )

        return SettlementResult(success=True, external_reference_id=data.get("e2e_id"))


# ─────────────────────────────────────────────────────────────────────
# Directorio externo de llaves
# ─────────────────────────────────────────────────────────────────────

class HttpKeyLookupClient:
    """
    Consulta el directorio externo. 404 → found=False.
    Cualquier otro error también retorna found=False: una llave que no se
    puede resolver no se puede usar como destino.
    """

    def __init__(
        self,
        base_url: str,
        timeout_sec: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url    = base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self._transport  = transport

    async def lookup(self, value: str) -> ExternalKeyLookup:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_sec,
                transport=self._transport,
            ) as client:
                response = await client.get(f"/keys/{value}")
                if response.status_code == 404:
                    return ExternalKeyLookup(found=False)
                response.raise_for_status()
                data = response.json()

        except httpx.TimeoutException:
            logger.warning("[PSP] Timeout consultando directorio de llaves")
            return ExternalKeyLookup(found=False)

        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[PSP] Error consultando directorio de llaves: {e}")
            return ExternalKeyLookup(found=False)

        key_type = data.get("key_type")
        return ExternalKeyLookup(
            found      = bool(data.get("found", True)),
            owner_name = data.get("owner_name"),
            bank_name  = data.get("bank_name"),
            bank_code  = data.get("bank_code"),
            key_type   = KeyType(key_type) if key_type in KeyType.__members__ else None,
        )
