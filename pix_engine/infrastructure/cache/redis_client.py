"""
redis_client.py
---------------
Cliente Redis del motor de transferencias.

Redis guarda solo el conjunto de dispositivos conocidos por usuario
(SISMEMBER / SADD desde DeviceRegistry); ningún dato financiero vive aquí.
Si Redis cae, la regla NEW_DEVICE trata el dispositivo como nuevo, así
que el cliente no reintenta: cada comando falla rápido.

Uso en main.py (lifespan):
    await redis_manager.connect()
    ...
    await redis_manager.disconnect()
"""

import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from pix_engine.core.config import settings

logger = logging.getLogger(__name__)


class RedisManager:
    """
      max_connections=20         → una consulta SISMEMBER por transferencia en curso
      socket_timeout=0.5         → máximo por comando
      socket_connect_timeout=2.0 → máximo para establecer la conexión
    """

    def __init__(self, url: str | None = None):
        self.url = url or settings.REDIS_URL
        self.client: redis.Redis | None = None

    async def connect(self) -> None:
        logger.info(f"[Redis] Conectando a {self.url} ...")
        self.client = redis.Redis.from_url(
            self.url,
            max_connections        = 20,
            socket_timeout         = 0.5,
            socket_connect_timeout = 2.0,
            decode_responses       = True,
        )
        await self.client.ping()
        logger.info("[Redis] Conexión establecida y verificada")

    async def disconnect(self) -> None:
        if self.client:
            try:
                await self.client.aclose()
                logger.info("[Redis] Conexiones cerradas correctamente")
            except RedisError as e:
                logger.error(f"[Redis] Error al cerrar conexiones: {e}")

    async def ping(self) -> bool:
        """Estado para /health: nunca lanza."""
        if not self.client:
            return False
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.error(f"[Redis] Health check falló: {e}")
            return False


redis_manager = RedisManager()
