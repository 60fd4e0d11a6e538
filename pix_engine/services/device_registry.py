"""
device_registry.py
------------------
Dispositivos conocidos por usuario, guardados en un SET de Redis.

    pix:devices:{user_id} → {fingerprint, ...}

La regla NEW_DEVICE consulta is_known(); el motor registra el
dispositivo después de cada transferencia completada.

Si Redis no responde, is_known() retorna False: el dispositivo se trata
como nuevo y la transferencia suma el score de la regla.
"""

import logging
import uuid

from redis.exceptions import RedisError

from pix_engine.infrastructure.cache.redis_client import RedisManager

logger = logging.getLogger(__name__)


class DeviceRegistry:

    KEY_PREFIX = "pix:devices"

    def __init__(self, manager: RedisManager):
        self.manager = manager

    def _key(self, user_id: uuid.UUID) -> str:
        return f"{self.KEY_PREFIX}:{user_id}"

    async def is_known(self, user_id: uuid.UUID, fingerprint: str) -> bool:
        client = self.manager.client
        if client is None:
            logger.error("[Devices] Redis no inicializado; dispositivo tratado como nuevo")
            return False
        try:
            return bool(await client.sismember(self._key(user_id), fingerprint))
        except RedisError as e:
            logger.error(f"[Devices] Error consultando dispositivo: {e}")
            return False

    async def register(self, user_id: uuid.UUID, fingerprint: str) -> bool:
        client = self.manager.client
        if client is None:
            logger.error("[Devices] Redis no inicializado; dispositivo no registrado")
            return False
        try:
            added = await client.sadd(self._key(user_id), fingerprint)
        except RedisError as e:
            logger.error(f"[Devices] Error registrando dispositivo: {e}")
            return False
        if added:
            logger.info(f"[Devices] Nuevo dispositivo registrado user={user_id}")
        return True

    async def list_devices(self, user_id: uuid.UUID) -> set[str]:
        client = self.manager.client
        if client is None:
            return set()
        try:
            return set(await client.smembers(self._key(user_id)))
        except RedisError as e:
            logger.error(f"[Devices] Error listando dispositivos: {e}")
            return set()

    async def remove(self, user_id: uuid.UUID, fingerprint: str) -> bool:
        client = self.manager.client
        if client is None:
            return False
        try:
            return await client.srem(self._key(user_id), fingerprint) > 0
        except RedisError as e:
            logger.error(f"[Devices] Error eliminando dispositivo: {e}")
            return False
