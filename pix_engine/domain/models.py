"""
models.py
---------
Modelos SQLAlchemy del motor de transferencias PIX.

Tablas:
  - Account        → saldo y fondos retenidos por transferencias en curso
  - TransferKey    → llaves PIX (CPF, CNPJ, email, teléfono, aleatoria)
  - Transfer       → transferencia y su máquina de estados
  - LedgerEntry    → extracto de la cuenta (una fila por movimiento de saldo)
  - TransferLimit  → ventana de límites por usuario
  - RiskProfile    → estadísticas de riesgo por usuario
  - FraudRule      → reglas declarativas del motor de riesgo
  - FraudAlert     → alertas generadas por score ≥ 40
  - AuditEntry     → cadena inmutable de eventos financieros
  - WebhookEvent   → eventos de la red de pagos, con el payload cifrado

Principios de diseño:
  - Todos los IDs son UUID v4 → no secuenciales, no predecibles
  - Montos en Numeric(18, 2) → Decimal exacto, nunca float
  - Fechas siempre con timezone=True → UTC en la base de datos
  - Tipos genéricos (Uuid, JSON) con variante PostgreSQL para poder
    correr los tests sobre SQLite
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import BYTEA, JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from pix_engine.core.clock import utcnow
from pix_engine.domain.schemas import (
    AlertStatus,
    TransferStatus,
    TransferType,
    WebhookStatus,
)

Money = Numeric(18, 2)
JsonType = JSON().with_variant(JSONB(), "postgresql")
BinaryType = LargeBinary().with_variant(BYTEA(), "postgresql")


class Base(DeclarativeBase):
    pass


# ─────────────────────────────────────────────────────────────────────
# CUENTAS
# El CRUD de cuentas vive fuera del motor; aquí solo se leen y mutan
# saldos. frozen_balance retiene fondos mientras la red liquida.
# ─────────────────────────────────────────────────────────────────────
class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    holder_name: Mapped[str] = mapped_column(String(120), nullable=False)

    balance: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    frozen_balance: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
        CheckConstraint("frozen_balance >= 0", name="ck_accounts_frozen_non_negative"),
        CheckConstraint("frozen_balance <= balance", name="ck_accounts_frozen_le_balance"),
    )

    @property
    def available_balance(self) -> Decimal:
        return self.balance - self.frozen_balance


# ─────────────────────────────────────────────────────────────────────
# LLAVES PIX
# Nunca se borran: al eliminar se desactivan y quedan para el historial.
# Un valor dado de baja puede registrarse otra vez como fila nueva.
# ─────────────────────────────────────────────────────────────────────
class TransferKey(Base):
    __tablename__ = "transfer_keys"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id"), nullable=False
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    type: Mapped[str] = mapped_column(String(20), nullable=False)
    value: Mapped[str] = mapped_column(String(140), nullable=False)

    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    deactivated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_transfer_keys_active_value", "value",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index(
            "uq_transfer_keys_active_primary", "owner_account_id",
            unique=True,
            postgresql_where=text("is_active AND is_primary"),
            sqlite_where=text("is_active = 1 AND is_primary = 1"),
        ),
        Index("idx_transfer_keys_owner_active", "owner_id", "is_active"),
    )


# ─────────────────────────────────────────────────────────────────────
# TRANSFERENCIAS
# PENDING (agendada) → PROCESSING → COMPLETED | FAILED
# PENDING → CANCELLED | FAILED ; COMPLETED → REFUNDED
# ─────────────────────────────────────────────────────────────────────
class Transfer(Base):
    __tablename__ = "transfers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    sender_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id"), nullable=False
    )
    sender_user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    sender_key_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("transfer_keys.id"), nullable=False
    )

    # Destino interno (llave registrada aquí) o externo (solo el valor)
    receiver_key_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("transfer_keys.id"), nullable=True
    )
    receiver_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id"), nullable=True
    )
    receiver_user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=True)
    external_receiver_key: Mapped[str] = mapped_column(String(140), nullable=True)
    receiver_name: Mapped[str] = mapped_column(String(120), nullable=True)
    receiver_bank: Mapped[str] = mapped_column(String(120), nullable=True)

    type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransferType.TRANSFER.value
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    description: Mapped[str] = mapped_column(String(140), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransferStatus.PROCESSING.value
    )

    # Identificador end-to-end asignado por la red de pagos
    external_reference_id: Mapped[str] = mapped_column(String(64), nullable=True, unique=True)

    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str] = mapped_column(String(255), nullable=True)

    fraud_score: Mapped[int] = mapped_column(Integer, nullable=True)
    triggered_rules: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)
    device_fingerprint: Mapped[str] = mapped_column(String(256), nullable=True)

    # Fondos retenidos en frozen_balance del emisor para esta transferencia
    funds_held: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Momento en que se consumieron los límites: release() descuenta solo de esas ventanas
    limits_reserved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    # Marca de idempotencia del crédito al receptor interno
    receiver_credited_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transfers_amount_positive"),
        Index("idx_transfers_sender_created", "sender_user_id", "created_at"),
        Index("idx_transfers_receiver_created", "receiver_user_id", "created_at"),
        Index("idx_transfers_status_scheduled", "status", "scheduled_for"),
    )


# ─────────────────────────────────────────────────────────────────────
# EXTRACTO
# Una fila por cada mutación de saldo, escrita en la misma transacción.
# ─────────────────────────────────────────────────────────────────────
class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id"), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    transfer_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("transfers.id"), nullable=False)

    # PIX_OUT | PIX_IN | PIX_REFUND | PIX_REVERSAL
    entry_type: Mapped[str] = mapped_column(String(20), nullable=False)
    # Con signo: negativo para débitos
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_ledger_account_created", "account_id", "created_at"),
        Index("idx_ledger_transfer", "transfer_id"),
    )


# ─────────────────────────────────────────────────────────────────────
# LÍMITES
# Se crean al primer acceso; los contadores se reinician en el primer
# acceso posterior a cada frontera de día / mes del calendario local.
# ─────────────────────────────────────────────────────────────────────
class TransferLimit(Base):
    __tablename__ = "transfer_limits"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)

    daily_limit: Mapped[Decimal] = mapped_column(Money, nullable=False)
    nightly_limit: Mapped[Decimal] = mapped_column(Money, nullable=False)
    per_transaction_limit: Mapped[Decimal] = mapped_column(Money, nullable=False)
    monthly_limit: Mapped[Decimal] = mapped_column(Money, nullable=False)

    used_today: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    used_this_month: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))

    last_reset_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("used_today >= 0", name="ck_limits_used_today_non_negative"),
        CheckConstraint("used_this_month >= 0", name="ck_limits_used_month_non_negative"),
    )


# ─────────────────────────────────────────────────────────────────────
# PERFIL DE RIESGO
# ─────────────────────────────────────────────────────────────────────
class RiskProfile(Base):
    __tablename__ = "risk_profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)

    # Score base 0–100 que se suma al de las reglas disparadas
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    average_transaction_amount: Mapped[Decimal] = mapped_column(Money, nullable=True)
    transfer_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # {"14": 3, "20": 1} → hora local → número de transferencias
    typical_hours: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)

    flag_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_flag_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)

    is_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    blocked_reason: Mapped[str] = mapped_column(String(255), nullable=True)
    blocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("score >= 0 AND score <= 100", name="ck_risk_profiles_score_range"),
        Index("idx_risk_profiles_blocked", "is_blocked"),
    )


# ─────────────────────────────────────────────────────────────────────
# REGLAS DE FRAUDE
# ─────────────────────────────────────────────────────────────────────
class FraudRule(Base):
    __tablename__ = "fraud_rules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, nullable=True)

    rule_type: Mapped[str] = mapped_column(String(30), nullable=False)
    conditions: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


# ─────────────────────────────────────────────────────────────────────
# ALERTAS
# Ciclo de vida propio, independiente de la transferencia que las originó.
# ─────────────────────────────────────────────────────────────────────
class FraudAlert(Base):
    __tablename__ = "fraud_alerts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    transfer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=True)
    transfer_type: Mapped[str] = mapped_column(String(20), nullable=True)

    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    triggered_rules: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)
    details: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AlertStatus.PENDING.value
    )
    reviewed_by: Mapped[str] = mapped_column(String(100), nullable=True)
    reviewed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution: Mapped[str] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_fraud_alerts_user_created", "user_id", "created_at"),
        Index("idx_fraud_alerts_status", "status"),
    )


# ─────────────────────────────────────────────────────────────────────
# CADENA DE AUDITORÍA
# Solo INSERT. `sequence` fija el orden de la cadena de cada usuario.
# ─────────────────────────────────────────────────────────────────────
class AuditEntry(Base):
    __tablename__ = "audit_entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    payload: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)

    amount: Mapped[Decimal] = mapped_column(Money, nullable=True)
    balance_before: Mapped[Decimal] = mapped_column(Money, nullable=True)
    balance_after: Mapped[Decimal] = mapped_column(Money, nullable=True)

    hash: Mapped[str] = mapped_column(String(64), nullable=False)
    previous_hash: Mapped[str] = mapped_column(String(64), nullable=True)
    signature: Mapped[str] = mapped_column(String(64), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "sequence", name="uq_audit_entries_user_sequence"),
        Index("idx_audit_entries_user_created", "user_id", "created_at"),
    )


# ─────────────────────────────────────────────────────────────────────
# WEBHOOKS
# El payload crudo se guarda cifrado con AES-256-GCM antes de procesarlo.
# ─────────────────────────────────────────────────────────────────────
class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_type: Mapped[str] = mapped_column(String(30), nullable=False)
    external_reference_id: Mapped[str] = mapped_column(String(64), nullable=False)

    encrypted_payload: Mapped[bytes] = mapped_column(BinaryType, nullable=False)
    payload_digest: Mapped[str] = mapped_column(String(64), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WebhookStatus.RECEIVED.value
    )
    outcome: Mapped[str] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str] = mapped_column(String(500), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_webhook_events_reference", "external_reference_id"),
        Index("idx_webhook_events_status_retry", "status", "retry_count"),
    )
