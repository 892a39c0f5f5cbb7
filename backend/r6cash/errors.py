"""
=============================================================================
R6CASH - Taxonomía de Errores
=============================================================================
Todos los errores de negocio derivan de PlatformError. Cada uno conoce su
código HTTP y un mensaje seguro para el cliente; el detalle interno se
registra sólo en los logs del servidor.
=============================================================================
"""

from typing import Optional


class PlatformError(Exception):
    """Error base de la plataforma."""

    status_code = 500
    code = "internal_error"
    public_message = "Error interno"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message

    def client_message(self) -> str:
        return self.message


class InvalidInput(PlatformError):
    """Solicitud malformada o fuera de rango. Se rechaza antes de tocar estado."""

    status_code = 400
    code = "invalid_input"
    public_message = "Solicitud inválida"


class InsufficientFunds(PlatformError):
    """El débito dejaría el balance disponible en negativo."""

    status_code = 400
    code = "insufficient_funds"
    public_message = "Balance insuficiente"


class Unauthorized(PlatformError):
    status_code = 401
    code = "unauthorized"
    public_message = "Autenticación requerida"

    def client_message(self) -> str:
        return self.public_message


class Forbidden(PlatformError):
    status_code = 403
    code = "forbidden"
    public_message = "Acceso denegado"

    def client_message(self) -> str:
        return self.public_message


class NotFound(PlatformError):
    """El recurso referenciado no existe."""

    status_code = 404
    code = "not_found"
    public_message = "Recurso no encontrado"


class Conflict(PlatformError):
    """Estado no elegible o carrera perdida (último cupo, doble liquidación, doble proceso)."""

    status_code = 409
    code = "conflict"
    public_message = "Conflicto de estado"


class RateLimited(PlatformError):
    status_code = 429
    code = "rate_limited"
    public_message = "Demasiadas solicitudes"

    def __init__(self, message: Optional[str] = None, *, retry_after: int = 60):
        super().__init__(message)
        self.retry_after = retry_after


class ExternalServiceError(PlatformError):
    """El procesador de pagos no respondió o devolvió algo inesperado. Reintentable."""

    status_code = 503
    code = "external_service_error"
    public_message = "Servicio de pagos no disponible, intente nuevamente"
    retryable = True

    def client_message(self) -> str:
        return self.public_message


__all__ = [
    "PlatformError",
    "InvalidInput",
    "InsufficientFunds",
    "Unauthorized",
    "Forbidden",
    "NotFound",
    "Conflict",
    "RateLimited",
    "ExternalServiceError",
]
