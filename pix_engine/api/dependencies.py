"""
dependencies.py
---------------
Dependencias reutilizables para inyectar en los routers de FastAPI.

get_services:
  Contenedor con los servicios del motor, construido una sola vez a
  partir de settings. Los tests lo reemplazan con
  app.dependency_overrides[get_services].

get_current_user / require_admin:
  Leen el JWT del header Authorization y retornan la identidad:

      @router.get("/limits")
      async def limits(user: CurrentUser = Depends(get_current_user)):
          ...

verify_webhook_signature:
  Valida el header X-Webhook-Signature (HMAC-SHA256 del body crudo con
  el secreto compartido con la red de pagos) y retorna el body.
"""

from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from pix_engine.core.config import Settings, settings
from pix_engine.core.crypto import HmacSigner, PayloadCipher
from pix_engine.core.exceptions import InvalidSignatureError, PermissionDeniedError
from pix_engine.core.security import verify_access_token
from pix_engine.domain.schemas import CurrentUser
from pix_engine.infrastructure.cache.redis_client import RedisManager, redis_manager
from pix_engine.infrastructure.network.psp_client import (
    HttpKeyLookupClient,
    HttpPaymentNetwork,
    KeyLookupClient,
    PaymentNetworkAdapter,
)
from pix_engine.infrastructure.network.sandbox import SandboxKeyLookup, SandboxPaymentNetwork
from pix_engine.services.account_locks import AccountLockManager, UserLockManager
from pix_engine.services.alert_service import AlertService
from pix_engine.services.audit_chain import AuditChain
from pix_engine.services.device_registry import DeviceRegistry
from pix_engine.services.fraud_engine import FraudEngine
from pix_engine.services.fraud_rules import RuleSetLoader
from pix_engine.services.key_directory import KeyDirectory
from pix_engine.services.limit_ledger import LimitLedger
from pix_engine.services.qr_codes import QrCodeService
from pix_engine.services.risk_profiles import RiskProfileService
from pix_engine.services.transfer_orchestrator import TransferOrchestrator
from pix_engine.services.transfer_settlement import TransferSettlement
from pix_engine.services.webhook_reconciler import WebhookReconciler


# ── Contenedor de servicios ───────────────────────────────────────────

@dataclass
class PixServices:
    keys:         KeyDirectory
    limits:       LimitLedger
    profiles:     RiskProfileService
    alerts:       AlertService
    devices:      DeviceRegistry
    fraud:        FraudEngine
    audit:        AuditChain
    settlement:   TransferSettlement
    orchestrator: TransferOrchestrator
    reconciler:   WebhookReconciler
    qr_codes:     QrCodeService


def build_services(
    config: Settings,
    redis: RedisManager,
    network: PaymentNetworkAdapter | None = None,
    key_lookup: KeyLookupClient | None = None,
) -> PixServices:
    """
    Arma el grafo de servicios. Sin URL configurada se usa la red
    simulada; los tests pasan `network` y `key_lookup` propios.
    """
    if network is None:
        network = (
            HttpPaymentNetwork(config.PAYMENT_NETWORK_URL, config.SETTLEMENT_TIMEOUT_SEC)
            if config.PAYMENT_NETWORK_URL
            else SandboxPaymentNetwork(config.INSTITUTION_ISPB, config.SANDBOX_FAILURE_RATE)
        )
    if key_lookup is None:
        key_lookup = (
            HttpKeyLookupClient(config.KEY_LOOKUP_URL, config.KEY_LOOKUP_TIMEOUT_SEC)
            if config.KEY_LOOKUP_URL
            else SandboxKeyLookup()
        )

    tz_name       = config.LOCAL_TIMEZONE
    account_locks = AccountLockManager()

    keys = KeyDirectory(
        key_lookup,
        max_keys_per_owner = config.MAX_KEYS_PER_OWNER,
        institution_name   = config.INSTITUTION_NAME,
        institution_code   = config.INSTITUTION_CODE,
    )
    limits = LimitLedger(
        daily_limit           = config.DEFAULT_DAILY_LIMIT,
        nightly_limit         = config.DEFAULT_NIGHTLY_LIMIT,
        per_transaction_limit = config.DEFAULT_PER_TRANSACTION_LIMIT,
        monthly_limit         = config.DEFAULT_MONTHLY_LIMIT,
        tz_name               = tz_name,
    )
    profiles = RiskProfileService(UserLockManager(), tz_name)
    alerts   = AlertService()
    devices  = DeviceRegistry(redis)
    fraud    = FraudEngine(profiles, alerts, devices, tz_name)
    audit    = AuditChain(HmacSigner(config.AUDIT_SIGNING_SECRET.encode()))

    settlement = TransferSettlement(limits, audit, account_locks)
    orchestrator = TransferOrchestrator(
        keys               = keys,
        limits             = limits,
        fraud              = fraud,
        rule_loader        = RuleSetLoader(),
        settlement         = settlement,
        network            = network,
        settlement_timeout = config.SETTLEMENT_TIMEOUT_SEC,
        tz_name            = tz_name,
    )
    reconciler = WebhookReconciler(
        settlement,
        fraud,
        PayloadCipher.from_secret(config.SECRET_KEY),
        max_retries = config.WEBHOOK_MAX_RETRIES,
    )
    qr_codes = QrCodeService(
        keys,
        merchant_city = config.QR_MERCHANT_CITY,
        static_ttl    = timedelta(hours=config.QR_STATIC_TTL_HOURS),
        dynamic_ttl   = timedelta(minutes=config.QR_DYNAMIC_TTL_MINUTES),
    )

    return PixServices(
        keys         = keys,
        limits       = limits,
        profiles     = profiles,
        alerts       = alerts,
        devices      = devices,
        fraud        = fraud,
        audit        = audit,
        settlement   = settlement,
        orchestrator = orchestrator,
        reconciler   = reconciler,
        qr_codes     = qr_codes,
    )


@lru_cache(maxsize=1)
def get_services() -> PixServices:
    return build_services(settings, redis_manager)


# ── Autenticación JWT ─────────────────────────────────────────────────

# Esquema Bearer para que Swagger muestre el candado en los endpoints
bearer_scheme = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> CurrentUser:
    """Lanza InvalidTokenError (401) si el token es inválido o expiró."""
    return verify_access_token(credentials.credentials)


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise PermissionDeniedError()
    return user


# ── Firma de webhooks ─────────────────────────────────────────────────

@lru_cache(maxsize=1)
def get_webhook_signer() -> HmacSigner:
    return HmacSigner(settings.WEBHOOK_SHARED_SECRET.encode())


async def verify_webhook_signature(
    request: Request,
    x_webhook_signature: str = Header(...),
    signer: HmacSigner = Depends(get_webhook_signer),
) -> bytes:
    body = await request.body()
    if not signer.verify(body, x_webhook_signature):
        raise InvalidSignatureError()
    return body
