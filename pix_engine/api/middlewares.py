"""
middlewares.py
--------------
Middlewares del motor de transferencias PIX.

  1. SecurityHeadersMiddleware → headers de seguridad HTTP en todas las respuestas
  2. setup_cors()              → CORS para web y móvil

Orden de registro en main.py (importa el orden):
  1. CORS            → primero, para que los preflight pasen
  2. SecurityHeaders → segundo, aplica a todas las respuestas
"""

import logging
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────
# 1. Security Headers Middleware
# ─────────────────────────────────────────────────────────────────────

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Headers incluidos:
      - X-Content-Type-Options    → evita MIME sniffing
      - X-Frame-Options           → evita clickjacking
      - Strict-Transport-Security → fuerza HTTPS (solo con enforce_https)
      - Content-Security-Policy   → la API no sirve contenido embebible
      - Referrer-Policy           → no filtra URLs con ids de transferencia
      - Cache-Control             → saldos y llaves nunca quedan en caché
    """

    def __init__(self, app: ASGIApp, enforce_https: bool = False, server_name: str = "PIX-API"):
        super().__init__(app)
        self.enforce_https = enforce_https
        self.server_name   = server_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"]  = "nosniff"
        response.headers["X-Frame-Options"]         = "DENY"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["Referrer-Policy"]         = "no-referrer"
        response.headers["Cache-Control"]           = "no-store, no-cache, must-revalidate, private"
        response.headers["Server"]                  = self.server_name

        # Solo en producción para no romper desarrollo local
        if self.enforce_https:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response


# ─────────────────────────────────────────────────────────────────────
# 2. CORS
# ─────────────────────────────────────────────────────────────────────

def setup_cors(app: FastAPI, allowed_origins: list[str]) -> None:
    """
    Llamar desde main.py antes de registrar otros middlewares:
        setup_cors(app, settings.ALLOWED_ORIGINS)

    El webhook de la red de pagos es servidor a servidor: no necesita
    CORS, por eso X-Webhook-Signature no está en la lista.
    """
    logger.info(f"[CORS] Orígenes permitidos: {allowed_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins     = allowed_origins,
        allow_credentials = True,
        allow_methods     = ["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers     = [
            "Content-Type",
            "Authorization",
            "X-Request-ID",
        ],
        # Cuánto tiempo el browser puede cachear el preflight (segundos)
        max_age           = 600,
    )
