"""
seed_sandbox.py
---------------
Puebla una base de desarrollo con cuentas, llaves PIX y reglas de
fraude, y ejecuta algunas transferencias contra la red simulada.

    python -m pix_engine.seed_sandbox --accounts 10 --transfers 15
"""

import argparse
import asyncio
import logging
import random
import uuid
from decimal import Decimal

from faker import Faker

from pix_engine.api.dependencies import build_services
from pix_engine.core.config import settings
from pix_engine.core.exceptions import PixEngineException
from pix_engine.domain.models import Account
from pix_engine.domain.schemas import KeyType, TransferRequest
from pix_engine.infrastructure.cache.redis_client import redis_manager
from pix_engine.infrastructure.database.session import AsyncSessionLocal, init_db
from pix_engine.infrastructure.network.sandbox import SandboxPaymentNetwork
from pix_engine.services.fraud_rules import seed_default_rules

logger = logging.getLogger(__name__)

fake = Faker("pt_BR")


async def seed(accounts: int, transfers: int) -> None:
    await init_db()
    services = build_services(
        settings,
        redis_manager,
        network=SandboxPaymentNetwork(settings.INSTITUTION_ISPB, failure_rate=0.0, latency_ms=(10, 50)),
    )

    async with AsyncSessionLocal() as db:
        print("==> Ejecutando seeder del sandbox PIX <==")
        await seed_default_rules(db)

        owners = []
        for _ in range(accounts):
            owner_id = uuid.uuid4()
            db.add(Account(
                id          = uuid.uuid4(),
                owner_id    = owner_id,
                holder_name = fake.name(),
                balance     = Decimal(random.randint(500, 20_000)),
            ))
            owners.append(owner_id)
        await db.commit()
        print(f"{accounts} cuentas creadas.")

        receiver_values = []
        for owner_id in owners:
            cpf = await services.keys.create(db, owner_id, KeyType.NATIONAL_ID, fake.cpf(), is_primary=True)
            email = await services.keys.create(db, owner_id, KeyType.EMAIL, fake.unique.email())
            await services.keys.create(db, owner_id, KeyType.RANDOM)
            receiver_values.extend([cpf.value, email.value])
        print(f"{len(owners) * 3} llaves PIX registradas.")

        completed = 0
        for _ in range(transfers):
            sender = random.choice(owners)
            request = TransferRequest(
                receiver_key       = random.choice(receiver_values),
                amount             = Decimal(random.randint(10, 900)),
                description        = fake.sentence(nb_words=4)[:140],
                device_fingerprint = fake.sha256()[:32],
            )
            try:
                await services.orchestrator.send(db, sender, request)
                completed += 1
            except PixEngineException as e:
                # Rechazos esperables: misma llave, límites o reglas de riesgo
                print(f"  transferencia rechazada: {e.message}")

        print(f"Éxito. {completed}/{transfers} transferencias completadas en el sandbox.")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seeder del sandbox PIX")
    parser.add_argument("--accounts", type=int, default=10)
    parser.add_argument("--transfers", type=int, default=15)
    args = parser.parse_args()

    logging.basicConfig(level=settings.LOG_LEVEL.upper())
    asyncio.run(seed(args.accounts, args.transfers))


if __name__ == "__main__":
    main()
