"""
schemas.py
----------
Enums, schemas Pydantic de requests/responses y value objects internos
del motor de transferencias PIX.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, List
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ─────────────────────────────────────────────────────────────────────
# ENUMS
# ─────────────────────────────────────────────────────────────────────

class KeyType(str, Enum):
    NATIONAL_ID = "NATIONAL_ID"   # CPF
    BUSINESS_ID = "BUSINESS_ID"   # CNPJ
    EMAIL       = "EMAIL"
    PHONE       = "PHONE"
    RANDOM      = "RANDOM"


class TransferType(str, Enum):
    TRANSFER   = "TRANSFER"
    PAYMENT    = "PAYMENT"
    WITHDRAWAL = "WITHDRAWAL"
    QR_CODE    = "QR_CODE"
    SCHEDULED  = "SCHEDULED"


class TransferStatus(str, Enum):
    PENDING    = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED  = "COMPLETED"
    FAILED     = "FAILED"
    CANCELLED  = "CANCELLED"
    REFUNDED   = "REFUNDED"


class LedgerEntryType(str, Enum):
    PIX_OUT      = "PIX_OUT"
    PIX_IN       = "PIX_IN"
    PIX_REFUND   = "PIX_REFUND"
    PIX_REVERSAL = "PIX_REVERSAL"


class AuditEventType(str, Enum):
    PIX_SENT     = "PIX_SENT"
    PIX_RECEIVED = "PIX_RECEIVED"
    PIX_REFUNDED = "PIX_REFUNDED"
    PIX_REVERSED = "PIX_REVERSED"


class LimitConstraint(str, Enum):
    PER_TRANSACTION = "PER_TRANSACTION"
    NIGHTLY         = "NIGHTLY"
    DAILY           = "DAILY"
    MONTHLY         = "MONTHLY"


class RuleType(str, Enum):
    AMOUNT_THRESHOLD = "AMOUNT_THRESHOLD"
    VELOCITY         = "VELOCITY"
    TIME_BASED       = "TIME_BASED"
    NEW_DEVICE       = "NEW_DEVICE"
    AMOUNT_DEVIATION = "AMOUNT_DEVIATION"
    NEW_RECIPIENT    = "NEW_RECIPIENT"
    CUMULATIVE_DAILY = "CUMULATIVE_DAILY"


class Severity(str, Enum):
    LOW      = "LOW"
    MEDIUM   = "MEDIUM"
    HIGH     = "HIGH"
    CRITICAL = "CRITICAL"


class AlertStatus(str, Enum):
    PENDING        = "PENDING"
    INVESTIGATING  = "INVESTIGATING"
    CONFIRMED      = "CONFIRMED"
    FALSE_POSITIVE = "FALSE_POSITIVE"
    RESOLVED       = "RESOLVED"


class WebhookEventType(str, Enum):
    RECEIVED = "pix.received"
    SENT     = "pix.sent"
    FAILED   = "pix.failed"
    REFUNDED = "pix.refunded"


class WebhookStatus(str, Enum):
    RECEIVED  = "RECEIVED"
    PROCESSED = "PROCESSED"
    NO_OP     = "NO_OP"
    FAILED    = "FAILED"


# ─────────────────────────────────────────────────────────────────────
# VALUE OBJECTS INTERNOS
# Inmutables: se pasan por valor entre servicios.
# ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FraudRuleSpec:
    id:          str
    name:        str
    rule_type:   RuleType
    conditions:  dict
    score:       int
    priority:    int


@dataclass(frozen=True)
class RuleSet:
    """Conjunto de reglas congelado; `version` es un SHA-256 de su contenido."""
    version: str
    rules:   tuple[FraudRuleSpec, ...] = ()

    def __len__(self) -> int:
        return len(self.rules)


@dataclass(frozen=True)
class FraudContext:
    user_id:            UUID
    amount:             Decimal
    type:               TransferType
    timestamp:          datetime
    recipient_key:      Optional[str] = None
    device_fingerprint: Optional[str] = None
    transfer_id:        Optional[UUID] = None


@dataclass(frozen=True)
class TriggeredRule:
    rule_id:   str
    rule_name: str
    rule_type: RuleType
    score:     int
    reason:    str


@dataclass(frozen=True)
class FraudCheckResult:
    score:                      int
    severity:                   Severity
    is_allowed:                 bool
    requires_extra_auth:        bool
    triggered_rules:            tuple[TriggeredRule, ...] = ()
    rules_evaluated:            int = 0
    rule_set_version:           Optional[str] = None
    blocked_reason:             Optional[str] = None
    alert_id:                   Optional[UUID] = None

    @property
    def triggered_rule_names(self) -> list[str]:
        return [r.rule_name for r in self.triggered_rules]


@dataclass(frozen=True)
class LimitCheck:
    allowed:    bool
    constraint: Optional[LimitConstraint] = None
    headroom:   Optional[Decimal] = None
    reason:     Optional[str] = None


@dataclass(frozen=True)
class KeyResolution:
    found:        bool
    is_internal:  bool = False
    key_type:     Optional[KeyType] = None
    masked_key:   Optional[str] = None
    owner_name:   Optional[str] = None
    bank_name:    Optional[str] = None
    bank_code:    Optional[str] = None
    key_id:       Optional[UUID] = None
    account_id:   Optional[UUID] = None
    owner_id:     Optional[UUID] = None


@dataclass(frozen=True)
class SettlementRequest:
    sender_key:      str
    receiver_key:    str
    amount:          Decimal
    idempotency_key: str
    description:     Optional[str] = None


@dataclass(frozen=True)
class SettlementResult:
    success:               bool
    external_reference_id: Optional[str] = None
    failure_reason:        Optional[str] = None


@dataclass(frozen=True)
class ExternalKeyLookup:
    found:      bool
    owner_name: Optional[str] = None
    bank_name:  Optional[str] = None
    bank_code:  Optional[str] = None
    key_type:   Optional[KeyType] = None


@dataclass
class ChainVerification:
    is_valid:         bool
    checked_count:    int
    broken_links:     List[dict] = field(default_factory=list)
    tampered_entries: List[dict] = field(default_factory=list)


@dataclass(frozen=True)
class CurrentUser:
    """Identidad extraída del JWT de la sesión."""
    user_id: UUID
    role:    str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


# ─────────────────────────────────────────────────────────────────────
# LLAVES PIX
# ─────────────────────────────────────────────────────────────────────

class KeyCreateRequest(BaseModel):
    type:       KeyType
    value:      Optional[str]  = Field(None, max_length=140)
    is_primary: bool           = False

    model_config = ConfigDict(extra="ignore")


class KeyResponse(BaseModel):
    id:          UUID
    type:        KeyType
    value:       str
    masked_value: str
    is_primary:  bool
    created_at:  datetime


class KeyResolutionResponse(BaseModel):
    found:       bool
    is_internal: bool = False
    key_type:    Optional[KeyType] = None
    masked_key:  Optional[str] = None
    owner_name:  Optional[str] = None
    bank_name:   Optional[str] = None


# ─────────────────────────────────────────────────────────────────────
# TRANSFERENCIAS
# ─────────────────────────────────────────────────────────────────────

class TransferRequest(BaseModel):
    receiver_key:       str            = Field(..., min_length=1, max_length=140)
    amount:             Decimal        = Field(..., decimal_places=2)
    description:        Optional[str]  = Field(None, max_length=140)
    type:               TransferType   = TransferType.TRANSFER
    sender_key_id:      Optional[UUID] = None
    scheduled_for:      Optional[datetime] = None
    device_fingerprint: Optional[str]  = Field(None, max_length=256)
    # True cuando el cliente ya completó la verificación adicional
    auth_verified:      bool           = False

    model_config = ConfigDict(extra="ignore")

    @field_validator("receiver_key")
    @classmethod
    def strip_key(cls, v: str) -> str:
        return v.strip()


class ReceiverInfo(BaseModel):
    name:       Optional[str] = None
    masked_key: Optional[str] = None
    bank:       Optional[str] = None


class TransferResponse(BaseModel):
    id:                    UUID
    status:                TransferStatus
    amount:                Decimal
    external_reference_id: Optional[str]      = None
    scheduled_for:         Optional[datetime] = None
    processed_at:          Optional[datetime] = None
    fraud_score:           Optional[int]      = None
    receiver:              Optional[ReceiverInfo] = None
    message:               str


class TransferView(BaseModel):
    id:                    UUID
    type:                  TransferType
    amount:                Decimal
    description:           Optional[str]
    status:                TransferStatus
    direction:             str
    sender_key:            Optional[str]
    receiver_key:          Optional[str]
    external_reference_id: Optional[str]
    failure_reason:        Optional[str]
    scheduled_for:         Optional[datetime]
    created_at:            datetime
    processed_at:          Optional[datetime]


class TransferHistoryPage(BaseModel):
    items:       List[TransferView]
    page:        int
    limit:       int
    total:       int
    total_pages: int


# ─────────────────────────────────────────────────────────────────────
# QR CODES
# ─────────────────────────────────────────────────────────────────────

class QrCodeRequest(BaseModel):
    amount:      Optional[Decimal] = Field(None, gt=0, decimal_places=2)
    description: Optional[str]     = Field(None, max_length=50)


class QrCodeResponse(BaseModel):
    payload:      str
    image_base64: str
    txid:         str
    is_dynamic:   bool
    amount:       Optional[Decimal] = None
    expires_at:   datetime


class QrCodeReadRequest(BaseModel):
    payload: str = Field(..., min_length=8, max_length=512)


class QrCodeReadResponse(BaseModel):
    receiver_key:  str
    amount:        Optional[Decimal] = None
    description:   Optional[str]     = None
    txid:          str
    is_dynamic:    bool
    merchant_name: str
    merchant_city: str
    found:         bool
    receiver:      Optional[ReceiverInfo] = None


# ─────────────────────────────────────────────────────────────────────
# LÍMITES
# ─────────────────────────────────────────────────────────────────────

class LimitsResponse(BaseModel):
    daily_limit:           Decimal
    nightly_limit:         Decimal
    per_transaction_limit: Decimal
    monthly_limit:         Decimal
    used_today:            Decimal
    used_this_month:       Decimal
    available_today:       Decimal
    available_this_month:  Decimal
    is_night_window:       bool


class LimitsUpdateRequest(BaseModel):
    daily_limit:           Optional[Decimal] = Field(None, gt=0)
    nightly_limit:         Optional[Decimal] = Field(None, gt=0)
    per_transaction_limit: Optional[Decimal] = Field(None, gt=0)
    monthly_limit:         Optional[Decimal] = Field(None, gt=0)

    model_config = ConfigDict(extra="forbid")


# ─────────────────────────────────────────────────────────────────────
# WEBHOOKS
# ─────────────────────────────────────────────────────────────────────

class WebhookPayload(BaseModel):
    event_type:            WebhookEventType
    external_reference_id: str               = Field(..., min_length=1, max_length=64)
    amount:                Optional[Decimal] = None
    status:                Optional[str]     = None
    timestamp:             datetime
    data:                  dict[str, Any]    = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")


class WebhookAck(BaseModel):
    event_id: UUID
    status:   WebhookStatus
    outcome:  Optional[str] = None


class WebhookEventResponse(BaseModel):
    id:                    UUID
    event_type:            WebhookEventType
    external_reference_id: str
    payload_digest:        str
    status:                WebhookStatus
    outcome:               Optional[str]
    error_message:         Optional[str]
    retry_count:           int
    created_at:            datetime
    processed_at:          Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


# ─────────────────────────────────────────────────────────────────────
# FRAUDE
# ─────────────────────────────────────────────────────────────────────

class BlockUserRequest(BaseModel):
    reason: str = Field(..., min_length=3, max_length=255)


class AlertStatusUpdate(BaseModel):
    status:     AlertStatus
    resolution: Optional[str] = Field(None, max_length=500)


class AlertResponse(BaseModel):
    id:              UUID
    user_id:         UUID
    transfer_id:     Optional[UUID]
    severity:        Severity
    score:           int
    triggered_rules: list
    status:          AlertStatus
    created_at:      datetime

    model_config = ConfigDict(from_attributes=True)


class RiskProfileResponse(BaseModel):
    user_id:                    UUID
    score:                      int
    average_transaction_amount: Optional[Decimal]
    transfer_count:             int
    flag_count:                 int
    is_blocked:                 bool
    blocked_reason:             Optional[str]
    blocked_at:                 Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


# ─────────────────────────────────────────────────────────────────────
# AUDITORÍA
# ─────────────────────────────────────────────────────────────────────

class ChainVerificationResponse(BaseModel):
    is_valid:         bool
    checked_count:    int
    broken_links:     List[dict]
    tampered_entries: List[dict]


class ChainExportResponse(BaseModel):
    user_id:     UUID
    start:       datetime
    end:         datetime
    entry_count: int
    entries:     List[dict]
