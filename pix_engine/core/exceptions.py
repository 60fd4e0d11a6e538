"""
exceptions.py
-------------
Excepciones personalizadas del motor de transferencias PIX.

Todas heredan de PixEngineException para poder capturarlas
en un solo handler global en main.py. Cada excepción puede
cargar `details` adicionales que el handler agrega al JSON
de respuesta (ej. la restricción de límite violada y el saldo
disponible de esa ventana).

Uso en main.py:
    @app.exception_handler(PixEngineException)
    async def pix_exception_handler(request: Request, exc: PixEngineException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, **exc.details},
        )
"""

from decimal import Decimal
from typing import Any, Optional


class PixEngineException(Exception):
    """Base de todas las excepciones del motor."""
    status_code: int = 500
    message: str = "Error interno del motor de transferencias."

    def __init__(self, message: str | None = None, **details: Any):
        self.message = message or self.__class__.message
        self.details = details
        super().__init__(self.message)


# ─────────────────────────────────────────────────────────────────────
# Errores de validación (pre-flight, sin cambios de estado)
# ─────────────────────────────────────────────────────────────────────

class ValidationError(PixEngineException):
    """Llave mal formada, monto no positivo o datos incompletos."""
    status_code = 422
    message = "Datos de la operación inválidos."


class AccountNotFoundError(ValidationError):
    status_code = 404
    message = "Cuenta no encontrada. Completa el registro primero."


class InvalidQrCodeError(ValidationError):
    """Payload BR Code mal formado, con CRC inválido o sin llave PIX."""
    message = "Código QR inválido."


class InvalidTransitionError(PixEngineException):
    """Transición de estado no permitida por la máquina de estados."""
    status_code = 409
    message = "Transición de estado no permitida."


# ─────────────────────────────────────────────────────────────────────
# Errores del directorio de llaves
# ─────────────────────────────────────────────────────────────────────

class KeyNotFoundError(PixEngineException):
    status_code = 404
    message = "Llave PIX no encontrada."


class DuplicateKeyError(PixEngineException):
    status_code = 409
    message = "Esta llave PIX ya está registrada."


class KeyLimitReachedError(PixEngineException):
    status_code = 422
    message = "Se alcanzó el máximo de llaves PIX por cuenta."


class KeyInUseError(PixEngineException):
    """La llave tiene transferencias PENDING o PROCESSING."""
    status_code = 409
    message = "No es posible eliminar una llave con transferencias pendientes."


# ─────────────────────────────────────────────────────────────────────
# Errores de transferencia
# ─────────────────────────────────────────────────────────────────────

class ReceiverNotFoundError(PixEngineException):
    status_code = 404
    message = "Llave PIX del destinatario no encontrada."


class SelfTransferError(PixEngineException):
    status_code = 422
    message = "No es posible transferir a la misma llave."


class InsufficientFundsError(PixEngineException):
    status_code = 422
    message = "Saldo insuficiente."


class LimitExceededError(PixEngineException):
    """
    Carga la restricción violada (PER_TRANSACTION, NIGHTLY, DAILY, MONTHLY)
    y el saldo disponible exacto de esa restricción.
    """
    status_code = 422
    message = "Límite de transferencia excedido."

    def __init__(self, constraint: str, headroom: Decimal, message: str | None = None):
        super().__init__(message, constraint=constraint, headroom=str(headroom))
        self.constraint = constraint
        self.headroom = headroom


class FraudBlockedError(PixEngineException):
    """La transferencia fue bloqueada por el motor de riesgo."""
    status_code = 403
    message = "Operación declinada por políticas de seguridad."

    def __init__(
        self,
        score: int,
        triggered_rules: Optional[list[str]] = None,
        message: str | None = None,
    ):
        super().__init__(message, score=score)
        self.score = score
        self.triggered_rules = triggered_rules or []


class ExtraAuthenticationRequiredError(PixEngineException):
    """Score entre 60 y 89: se requiere verificación adicional del usuario."""
    status_code = 428
    message = "Se requiere verificación adicional para continuar."

    def __init__(self, score: int, transfer_id: Any = None, message: str | None = None):
        super().__init__(message, score=score, transfer_id=str(transfer_id) if transfer_id else None)
        self.score = score
        self.transfer_id = transfer_id


class SettlementError(PixEngineException):
    """La red de pagos rechazó la liquidación o no respondió a tiempo."""
    status_code = 502
    message = "La red de pagos no pudo liquidar la transferencia."

    def __init__(self, transfer_id: Any, reason: str):
        super().__init__(reason, transfer_id=str(transfer_id))
        self.transfer_id = transfer_id
        self.reason = reason


class TransferNotFoundError(PixEngineException):
    status_code = 404
    message = "Transferencia no encontrada."


class TransferNotCancellableError(PixEngineException):
    status_code = 409
    message = "Transferencia programada no encontrada o ya no puede cancelarse."


class AlertNotFoundError(PixEngineException):
    status_code = 404
    message = "Alerta de fraude no encontrada."


# ─────────────────────────────────────────────────────────────────────
# Errores de conciliación (webhooks)
# ─────────────────────────────────────────────────────────────────────

class ReconciliationConflict(PixEngineException):
    """
    Evento duplicado o desfasado. Nunca se expone al llamador:
    el conciliador lo registra y lo trata como no-op exitoso.
    """
    status_code = 200
    message = "Evento ya aplicado o fuera de orden."


class ReconciliationError(PixEngineException):
    """Fallo reintentable al aplicar un evento (ej. referencia aún desconocida)."""
    status_code = 500
    message = "No se pudo aplicar el evento de la red de pagos."


# ─────────────────────────────────────────────────────────────────────
# Integridad y seguridad
# ─────────────────────────────────────────────────────────────────────

class ChainIntegrityError(PixEngineException):
    """Solo lo lanzan las verificaciones explícitas de la cadena."""
    status_code = 409
    message = "La cadena de auditoría presenta enlaces rotos o entradas alteradas."


class InvalidSignatureError(PixEngineException):
    """La firma HMAC del webhook no es válida."""
    status_code = 401
    message = "Firma del webhook inválida."


class InvalidTokenError(PixEngineException):
    status_code = 401
    message = "Token inválido o expirado."


class PermissionDeniedError(PixEngineException):
    status_code = 403
    message = "Operación reservada al equipo de riesgo."


class EncryptionError(PixEngineException):
    """Error durante el cifrado o descifrado de datos sensibles."""
    status_code = 500
    message = "Error al procesar datos sensibles."
