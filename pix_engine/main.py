"""
main.py
-------
Entry point del motor de transferencias PIX.

Orden de registro de middlewares (importa el orden, se ejecutan al revés):
  1. CORS            → primero en registrarse, último en ejecutarse
  2. SecurityHeaders → headers de seguridad en todas las respuestas
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from pix_engine.api.middlewares import SecurityHeadersMiddleware, setup_cors
from pix_engine.api.routers import audit, fraud, keys, limits, qr_codes, transfers, webhooks
from pix_engine.core.config import settings
from pix_engine.core.exceptions import PixEngineException
from pix_engine.infrastructure.cache.redis_client import redis_manager
from pix_engine.infrastructure.database.session import AsyncSessionLocal, init_db
from pix_engine.services.fraud_rules import seed_default_rules

logging.basicConfig(
    level  = settings.LOG_LEVEL.upper(),
    format = "%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # ── Startup ───────────────────────────────────────────────────────
    try:
        await redis_manager.connect()
    except (RedisError, ConnectionError) as e:
        # Sin Redis los dispositivos se tratan como nuevos; el resto funciona
        logger.error(f"[Startup] Redis no disponible, modo degradado: {e}")

    if settings.DEBUG:
        await init_db()
        async with AsyncSessionLocal() as session:
            await seed_default_rules(session)

    logger.info(f"[Startup] Motor PIX listo environment={settings.ENVIRONMENT}")
    yield
    # ── Shutdown ──────────────────────────────────────────────────────
    await redis_manager.disconnect()


app = FastAPI(
    title    = "PIX Transfer Engine API",
    version  = "1.0.0",
    docs_url = "/docs"  if settings.DEBUG else None,
    redoc_url= "/redoc" if settings.DEBUG else None,
    lifespan = lifespan,
)

# ── Middlewares (registrar en este orden exacto) ──────────────────────

# 1. CORS: debe ser el primero para que los preflight pasen
setup_cors(app, allowed_origins=settings.ALLOWED_ORIGINS)

# 2. Security headers: aplica a todas las respuestas
app.add_middleware(
    SecurityHeadersMiddleware,
    enforce_https = settings.ENVIRONMENT == "production",
)

# ── Routers ───────────────────────────────────────────────────────────
app.include_router(keys.router)
app.include_router(transfers.router)
app.include_router(qr_codes.router)
app.include_router(limits.router)
app.include_router(webhooks.router)
app.include_router(audit.router)
app.include_router(fraud.router)


# ── Handler global de excepciones ────────────────────────────────────
@app.exception_handler(PixEngineException)
async def pix_exception_handler(request: Request, exc: PixEngineException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path} → {exc.status_code}: {exc.message}")
    return JSONResponse(
        status_code = exc.status_code,
        content     = {"error": exc.message, **exc.details},
    )


# ── Health check ──────────────────────────────────────────────────────
@app.get("/health")
async def health_check():
    redis_ok = await redis_manager.ping()
    return {
        "status":      "ok",
        "environment": settings.ENVIRONMENT,
        "redis":       "ok" if redis_ok else "degraded",
    }
