"""
Fixtures compartidas de la suite del motor PIX.

Cada test corre contra su propia base SQLite (archivo temporal, aiosqlite)
creada con init_db(). Redis y la red de pagos se reemplazan por dobles en
memoria; el directorio externo de llaves es un diccionario.
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-pix-engine")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOCAL_TIMEZONE", "America/Sao_Paulo")

import asyncio
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio

from pix_engine.api.dependencies import PixServices, build_services
from pix_engine.core.config import settings
from pix_engine.domain.models import Account, Transfer, TransferKey
from pix_engine.domain.schemas import (
    ExternalKeyLookup,
    KeyType,
    SettlementRequest,
    SettlementResult,
    TransferStatus,
)
from pix_engine.infrastructure.cache.redis_client import RedisManager
from pix_engine.infrastructure.database.session import build_engine, build_sessionmaker, init_db
from pix_engine.infrastructure.network.sandbox import generate_e2e_id
from pix_engine.services.fraud_rules import seed_default_rules

# 12:00 en São Paulo: fuera del horario nocturno y de las horas sospechosas
NOON = datetime(2025, 3, 12, 15, 0, tzinfo=timezone.utc)

SENDER_CPF    = "529.982.247-25"
RECEIVER_MAIL = "maria.silva@example.com"
EXTERNAL_MAIL = "externo@outrobanco.com"


# ─────────────────────────────────────────────────────────────────────
# Dobles de infraestructura
# ─────────────────────────────────────────────────────────────────────

class FakeRedis:
    """Solo los comandos de SET que usa DeviceRegistry."""

    def __init__(self):
        self.sets: dict[str, set[str]] = {}

    async def sismember(self, key, member):
        return member in self.sets.get(key, set())

    async def sadd(self, key, member):
        members = self.sets.setdefault(key, set())
        if member in members:
            return 0
        members.add(member)
        return 1

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def srem(self, key, member):
        members = self.sets.get(key, set())
        if member not in members:
            return 0
        members.discard(member)
        return 1

    async def ping(self):
        return True


class ScriptedNetwork:
    """
    Red de pagos con respuestas programadas.

        network.results.append(SettlementResult(success=False, failure_reason="x"))
        network.delay = 1.0          → fuerza timeout
        network.error = RuntimeError → la llamada lanza
    """

    def __init__(self):
        self.requests: list[SettlementRequest] = []
        self.results: list[SettlementResult] = []
        self.delay: float = 0.0
        self.error: Optional[Exception] = None

    async def execute_transfer(self, request: SettlementRequest) -> SettlementResult:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.results:
            return self.results.pop(0)
        return SettlementResult(success=True, external_reference_id=generate_e2e_id(settings.INSTITUTION_ISPB))


class StaticKeyLookup:

    def __init__(self, entries: Optional[dict[str, ExternalKeyLookup]] = None):
        self.entries = entries or {}
        self.calls: list[str] = []

    async def lookup(self, value: str) -> ExternalKeyLookup:
        self.calls.append(value)
        return self.entries.get(value, ExternalKeyLookup(found=False))


# ─────────────────────────────────────────────────────────────────────
# Base de datos
# ─────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'pix.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ─────────────────────────────────────────────────────────────────────
# Servicios
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def redis(fake_redis):
    manager = RedisManager("redis://test")
    manager.client = fake_redis
    return manager


@pytest.fixture
def network():
    return ScriptedNetwork()


@pytest.fixture
def key_lookup():
    return StaticKeyLookup({
        EXTERNAL_MAIL: ExternalKeyLookup(
            found      = True,
            owner_name = "João Pereira",
            bank_name  = "Banco Externo",
            bank_code  = "260",
            key_type   = KeyType.EMAIL,
        ),
    })


@pytest_asyncio.fixture
async def services(db, redis, network, key_lookup) -> PixServices:
    await seed_default_rules(db)
    return build_services(settings, redis, network=network, key_lookup=key_lookup)


# ─────────────────────────────────────────────────────────────────────
# Helpers de datos
# ─────────────────────────────────────────────────────────────────────

async def make_account(db, balance="0.00", holder_name="Cliente Teste", owner_id=None) -> Account:
    account = Account(
        id             = uuid.uuid4(),
        owner_id       = owner_id or uuid.uuid4(),
        holder_name    = holder_name,
        balance        = Decimal(balance),
        frozen_balance = Decimal("0.00"),
    )
    db.add(account)
    await db.commit()
    return account


async def reload(db, model, id_):
    return await db.get(model, id_, populate_existing=True)


async def insert_transfer(
    db,
    sender: Account,
    sender_key: TransferKey,
    amount,
    status: TransferStatus = TransferStatus.COMPLETED,
    receiver: Optional[Account] = None,
    receiver_key: Optional[TransferKey] = None,
    external_reference_id: Optional[str] = None,
    created_at: datetime = NOON,
    external_receiver_key: Optional[str] = None,
) -> Transfer:
    transfer = Transfer(
        id                    = uuid.uuid4(),
        sender_account_id     = sender.id,
        sender_user_id        = sender.owner_id,
        sender_key_id         = sender_key.id,
        receiver_key_id       = receiver_key.id if receiver_key else None,
        receiver_account_id   = receiver.id if receiver else None,
        receiver_user_id      = receiver.owner_id if receiver else None,
        external_receiver_key = external_receiver_key,
        amount                = Decimal(amount),
        status                = status.value,
        external_reference_id = external_reference_id,
        triggered_rules       = [],
        funds_held            = False,
        created_at            = created_at,
    )
    db.add(transfer)
    await db.commit()
    return transfer


@pytest_asyncio.fixture
async def parties(db, services):
    """Emisor con R$ 1.000 y llave CPF; receptor interno sin saldo con llave email."""
    sender   = await make_account(db, "1000.00", "Carlos Andrade")
    receiver = await make_account(db, "0.00", "Maria da Silva")
    sender_key   = await services.keys.create(db, sender.owner_id, KeyType.NATIONAL_ID, SENDER_CPF)
    receiver_key = await services.keys.create(db, receiver.owner_id, KeyType.EMAIL, RECEIVER_MAIL)
    return sender, sender_key, receiver, receiver_key
