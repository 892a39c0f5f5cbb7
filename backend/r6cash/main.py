"""
=============================================================================
R6CASH - Punto de Entrada Principal (FastAPI + Socket.IO)
=============================================================================
Servidor del ledger de apuestas: depósitos, partidas con escrow,
liquidación con comisión y retiros con aprobación manual.

Integra:
- FastAPI para REST API (/api/v1)
- Socket.IO para notificaciones en tiempo real
- Middleware de seguridad y CORS
=============================================================================
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .admin import router as admin_router, wallet_router, webhook_router
from .config import Settings
from .database import Database
from .errors import PlatformError, RateLimited
from .monitoring import SERVICE_VERSION
from .processor import PaymentProcessor
from .rpc import games_router, rpc_router
from .services import build_services

logger = logging.getLogger(__name__)


# =============================================================================
# MANEJO DE ERRORES
# =============================================================================

async def platform_error_handler(request: Request, exc: PlatformError) -> JSONResponse:
    """Convierte la taxonomía de errores en respuestas JSON con mensaje seguro."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.code, exc.message)
    headers = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.code, "message": exc.client_message()},
        headers=headers,
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "invalid_input",
            "message": f"Solicitud inválida: {', '.join(fields) or 'cuerpo'}",
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "internal_error", "message": "Error interno"},
    )


# =============================================================================
# APLICACIÓN FASTAPI
# =============================================================================

def create_app(
    settings: Settings,
    *,
    database: Optional[Database] = None,
    processor: Optional[PaymentProcessor] = None,
) -> FastAPI:
    """Construye la aplicación con sus servicios inyectados."""
    services = build_services(settings, database=database, processor=processor)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Gestiona el ciclo de vida de la aplicación."""
        logger.info("[R6CASH] Iniciando servidor...")
        if settings.auto_create_schema:
            await services.database.create_schema()
        purged = await services.rate_limiter.purge_expired()
        if purged:
            logger.info("[R6CASH] %d expired rate limit windows purged", purged)
        yield
        logger.info("[R6CASH] Cerrando servidor...")
        await services.database.dispose()

    app = FastAPI(
        title="R6Cash API",
        description="Ledger de apuestas entre jugadores: escrow, liquidación, depósitos y retiros.",
        version=SERVICE_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.services = services

    # -------------------------------------------------------------------------
    # Middleware
    # -------------------------------------------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.public_site_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Agrega headers de seguridad a las respuestas."""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    app.add_exception_handler(PlatformError, platform_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # -------------------------------------------------------------------------
    # Rutas
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health_check():
        """Endpoint de health check para Docker y load balancers."""
        return {
            "status": "healthy",
            "service": "r6cash-backend",
            "version": SERVICE_VERSION,
            "timestamp": time.time(),
        }

    app.include_router(rpc_router, prefix="/api/v1")
    app.include_router(games_router, prefix="/api/v1")
    app.include_router(wallet_router, prefix="/api/v1")
    app.include_router(admin_router, prefix="/api/v1")
    app.include_router(webhook_router, prefix="/api/v1")
    return app


def build_asgi_app(settings: Settings):
    """API + Socket.IO en una sola aplicación ASGI (`/socket.io`)."""
    app = create_app(settings)
    return app.state.services.hub.asgi_app(app)


def run() -> None:
    """Entrypoint de consola: `r6cash`."""
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(build_asgi_app(settings), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    run()
