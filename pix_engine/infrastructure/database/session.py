"""
session.py
----------
Configuración de la conexión asíncrona a la base de datos.

Provee:
  - build_engine: motor SQLAlchemy async (pool solo para servidores reales)
  - engine / AsyncSessionLocal: instancias por defecto según settings
  - get_db: dependency de FastAPI para inyectar sesión en routers
  - init_db: crea tablas en desarrollo (en producción usa migraciones)
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from pix_engine.core.config import settings


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    # asyncpg no entiende el parámetro sslmode de libpq
    if "?sslmode=" in url:
        url = url.split("?sslmode=")[0]

    if url.startswith("sqlite"):
        # SQLite (tests y sandbox local) no admite pool_size/max_overflow
        return create_async_engine(url, echo=echo)

    return create_async_engine(
        url,
        echo           = echo,
        pool_pre_ping  = True,   # Verifica conexión antes de usarla
        pool_size      = 10,     # Conexiones permanentes en el pool
        max_overflow   = 20,     # Conexiones extra bajo carga alta
    )


def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind             = bind,
        class_           = AsyncSession,
        expire_on_commit = False,
        autoflush        = False,
    )


# ── Instancias por defecto ────────────────────────────────────────────
engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
AsyncSessionLocal = build_sessionmaker(engine)


# ── Dependency para FastAPI ───────────────────────────────────────────
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Inyecta una sesión de base de datos en cada request.
    Los servicios hacen commit explícito de cada grupo atómico;
    aquí solo se hace rollback si el request termina con excepción.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# ── Init para desarrollo ─────────────────────────────────────────────
async def init_db(bind: AsyncEngine | None = None) -> None:
    """
    Crea todas las tablas definidas en models.py.
    Solo usar en desarrollo y tests.
    """
    from pix_engine.domain.models import Base
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
