"""
key_directory.py
----------------
Directorio de llaves PIX: registro, llave principal, baja lógica y
resolución de destinos.

Reglas:
  - Un valor es único entre las llaves activas (índice único parcial)
  - Máximo MAX_KEYS_PER_OWNER llaves activas por titular
  - La primera llave siempre es principal; a lo sumo una principal activa
  - Las llaves no se borran: se desactivan y nunca se reactivan
  - Al resolver, el resultado lleva la llave enmascarada, nunca el valor crudo
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pix_engine.core.clock import utcnow
from pix_engine.core.exceptions import (
    AccountNotFoundError,
    DuplicateKeyError,
    KeyInUseError,
    KeyLimitReachedError,
    KeyNotFoundError,
)
from pix_engine.domain.models import Account, Transfer, TransferKey
from pix_engine.domain.schemas import (
    KeyResolution,
    KeyResponse,
    KeyType,
    TransferStatus,
)
from pix_engine.infrastructure.network.psp_client import KeyLookupClient
from pix_engine.services.key_validation import (
    detect_key,
    mask_key,
    mask_name,
    normalize_key,
)

logger = logging.getLogger(__name__)

_IN_FLIGHT = (TransferStatus.PENDING.value, TransferStatus.PROCESSING.value)


class KeyDirectory:

    def __init__(
        self,
        key_lookup: KeyLookupClient,
        max_keys_per_owner: int = 5,
        institution_name: str = "FragTech",
        institution_code: str = "999",
    ):
        self.key_lookup         = key_lookup
        self.max_keys_per_owner = max_keys_per_owner
        self.institution_name   = institution_name
        self.institution_code   = institution_code

    # ─────────────────────────────────────────────────────────────────
    # Registro
    # ─────────────────────────────────────────────────────────────────

    async def create(
        self,
        db: AsyncSession,
        owner_id: uuid.UUID,
        key_type: KeyType,
        value: Optional[str] = None,
        is_primary: bool = False,
    ) -> TransferKey:
        key_type = KeyType(key_type)
        account  = await self._get_active_account(db, owner_id)
        value    = normalize_key(key_type, value)

        if await self._get_active_by_value(db, value) is not None:
            raise DuplicateKeyError()

        active_count = await db.scalar(
            select(func.count(TransferKey.id)).where(
                TransferKey.owner_id  == owner_id,
                TransferKey.is_active.is_(True),
            )
        )
        if active_count >= self.max_keys_per_owner:
            raise KeyLimitReachedError(limit=self.max_keys_per_owner)

        if active_count == 0:
            is_primary = True
        elif is_primary:
            await self._demote_primary(db, account.id)

        key = TransferKey(
            id               = uuid.uuid4(),
            owner_account_id = account.id,
            owner_id         = owner_id,
            type             = key_type.value,
            value            = value,
            is_primary       = is_primary,
            is_active        = True,
        )
        db.add(key)

        try:
            await db.commit()
        except IntegrityError:
            # Otro request registró el mismo valor entre la consulta y el commit
            await db.rollback()
            raise DuplicateKeyError()

        logger.info(
            f"[KeyDirectory] Llave creada owner={owner_id} type={key_type.value} "
            f"key={mask_key(key_type, value)} primary={is_primary}"
        )
        return key

    async def list_keys(self, db: AsyncSession, owner_id: uuid.UUID) -> list[KeyResponse]:
        """Solo para el titular: incluye el valor crudo además del enmascarado."""
        result = await db.execute(
            select(TransferKey)
            .where(TransferKey.owner_id == owner_id, TransferKey.is_active.is_(True))
            .order_by(TransferKey.is_primary.desc(), TransferKey.created_at)
        )
        return [self.to_response(key) for key in result.scalars()]

    @staticmethod
    def to_response(key: TransferKey) -> KeyResponse:
        return KeyResponse(
            id           = key.id,
            type         = KeyType(key.type),
            value        = key.value,
            masked_value = mask_key(key.type, key.value),
            is_primary   = key.is_primary,
            created_at   = key.created_at,
        )

    # ─────────────────────────────────────────────────────────────────
    # Llave principal y baja
    # ─────────────────────────────────────────────────────────────────

    async def set_primary(self, db: AsyncSession, owner_id: uuid.UUID, key_id: uuid.UUID) -> TransferKey:
        key = await self.get_owned_key(db, owner_id, key_id)
        if key is None:
            raise KeyNotFoundError()
        if key.is_primary:
            return key

        await self._demote_primary(db, key.owner_account_id)
        key.is_primary = True
        await db.commit()

        logger.info(f"[KeyDirectory] Llave principal cambiada owner={owner_id} key_id={key_id}")
        return key

    async def delete(self, db: AsyncSession, owner_id: uuid.UUID, key_id: uuid.UUID) -> None:
        key = await self.get_owned_key(db, owner_id, key_id)
        if key is None:
            raise KeyNotFoundError()

        in_flight = await db.scalar(
            select(func.count(Transfer.id)).where(
                or_(Transfer.sender_key_id == key.id, Transfer.receiver_key_id == key.id),
                Transfer.status.in_(_IN_FLIGHT),
            )
        )
        if in_flight:
            raise KeyInUseError(pending_transfers=in_flight)

        was_primary        = key.is_primary
        key.is_active      = False
        key.is_primary     = False
        key.deactivated_at = utcnow()
        await db.flush()

        if was_primary:
            successor = await db.scalar(
                select(TransferKey)
                .where(TransferKey.owner_id == owner_id, TransferKey.is_active.is_(True))
                .order_by(TransferKey.created_at, TransferKey.id)
                .limit(1)
            )
            if successor is not None:
                successor.is_primary = True

        await db.commit()
        logger.info(f"[KeyDirectory] Llave desactivada owner={owner_id} key_id={key_id}")

    async def deactivate_for_account(self, db: AsyncSession, account_id: uuid.UUID) -> int:
        """Baja en cascada de todas las llaves de una cuenta que se cierra."""
        result = await db.execute(
            update(TransferKey)
            .where(TransferKey.owner_account_id == account_id, TransferKey.is_active.is_(True))
            .values(is_active=False, is_primary=False, deactivated_at=utcnow())
        )
        await db.commit()
        logger.info(f"[KeyDirectory] {result.rowcount} llaves desactivadas account={account_id}")
        return result.rowcount

    # ─────────────────────────────────────────────────────────────────
    # Consultas para el orquestador
    # ─────────────────────────────────────────────────────────────────

    async def get_primary(self, db: AsyncSession, owner_id: uuid.UUID) -> Optional[TransferKey]:
        return await db.scalar(
            select(TransferKey).where(
                TransferKey.owner_id   == owner_id,
                TransferKey.is_active.is_(True),
                TransferKey.is_primary.is_(True),
            )
        )

    async def get_owned_key(
        self, db: AsyncSession, owner_id: uuid.UUID, key_id: uuid.UUID
    ) -> Optional[TransferKey]:
        return await db.scalar(
            select(TransferKey).where(
                TransferKey.id       == key_id,
                TransferKey.owner_id == owner_id,
                TransferKey.is_active.is_(True),
            )
        )

    async def resolve(self, db: AsyncSession, value: str) -> KeyResolution:
        """
        Resuelve una llave ingresada libremente.
        Interna → datos de la cuenta local; si no, consulta el directorio externo.
        """
        key_type, normalized = detect_key(value)

        row = (
            await db.execute(
                select(TransferKey, Account)
                .join(Account, Account.id == TransferKey.owner_account_id)
                .where(TransferKey.value == normalized, TransferKey.is_active.is_(True))
            )
        ).first()

        if row is not None:
            key, account = row
            return KeyResolution(
                found       = True,
                is_internal = True,
                key_type    = KeyType(key.type),
                masked_key  = mask_key(key.type, key.value),
                owner_name  = mask_name(account.holder_name),
                bank_name   = self.institution_name,
                bank_code   = self.institution_code,
                key_id      = key.id,
                account_id  = account.id,
                owner_id    = account.owner_id,
            )

        external = await self.key_lookup.lookup(normalized)
        if not external.found:
            logger.info(f"[KeyDirectory] Llave no encontrada key={mask_key(key_type, normalized)}")
            return KeyResolution(found=False)

        resolved_type = external.key_type or key_type
        return KeyResolution(
            found       = True,
            is_internal = False,
            key_type    = resolved_type,
            masked_key  = mask_key(resolved_type, normalized),
            owner_name  = mask_name(external.owner_name),
            bank_name   = external.bank_name,
            bank_code   = external.bank_code,
        )

    # ─────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────

    async def _get_active_account(self, db: AsyncSession, owner_id: uuid.UUID) -> Account:
        account = await db.scalar(
            select(Account).where(Account.owner_id == owner_id, Account.is_active.is_(True))
        )
        if account is None:
            raise AccountNotFoundError()
        return account

    async def _get_active_by_value(self, db: AsyncSession, value: str) -> Optional[TransferKey]:
        return await db.scalar(
            select(TransferKey).where(TransferKey.value == value, TransferKey.is_active.is_(True))
        )

    async def _demote_primary(self, db: AsyncSession, account_id: uuid.UUID) -> None:
        # Debe ejecutarse antes de marcar la nueva principal por el índice parcial
        await db.execute(
            update(TransferKey)
            .where(
                TransferKey.owner_account_id == account_id,
                TransferKey.is_active.is_(True),
                TransferKey.is_primary.is_(True),
            )
            .values(is_primary=False)
        )
