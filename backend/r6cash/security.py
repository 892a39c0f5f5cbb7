"""
=============================================================================
R6CASH - Seguridad: Autenticación y Rate Limiting
=============================================================================
Implementa:
- Verificación de tokens de acceso (JWT HS256 del proveedor de identidad)
- Rate limiting del lado del servidor con contadores persistentes
  compartidos, por cuenta y por IP
=============================================================================
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional

import jwt
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from .database import Database
from .errors import RateLimited, Unauthorized
from .models import AppRole, RateLimitCounter

logger = logging.getLogger(__name__)


# =============================================================================
# AUTENTICACIÓN
# =============================================================================

@dataclass(frozen=True)
class AuthenticatedUser:
    """Identidad verificada del llamador."""
    user_id: uuid.UUID
    role: AppRole = AppRole.CLIENT
    display_name: Optional[str] = None
    ip_address: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == AppRole.ADMIN


@dataclass(frozen=True)
class TokenClaims:
    user_id: uuid.UUID
    display_name: Optional[str]


class TokenVerifier:
    """Verifica tokens de acceso emitidos por el proveedor de identidad."""

    ALGORITHMS = ["HS256"]

    def __init__(self, secret: str, *, audience: Optional[str] = "authenticated"):
        if not secret:
            raise ValueError("JWT secret must be provided")
        self._secret = secret
        self._audience = audience

    def verify(self, token: str) -> TokenClaims:
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=self.ALGORITHMS,
                audience=self._audience,
                options={"require": ["sub", "exp"], "verify_aud": self._audience is not None},
            )
            user_id = uuid.UUID(str(payload["sub"]))
        except (jwt.InvalidTokenError, ValueError) as exc:
            logger.warning("Rejected access token: %s", exc)
            raise Unauthorized() from exc

        metadata = payload.get("user_metadata") or {}
        display_name = metadata.get("display_name") or payload.get("email")
        return TokenClaims(user_id=user_id, display_name=display_name)


# =============================================================================
# RATE LIMITING (contadores persistentes compartidos)
# =============================================================================

class RateLimiter:
    """
    Ventanas fijas almacenadas en `rate_limit_counters`.
    Todas las instancias del servicio comparten los mismos contadores.
    """

    def __init__(self, database: Database, *, limit: int, window_seconds: int):
        self._db = database
        self.limit = limit
        self.window_seconds = window_seconds

    async def hit(self, key: str, *, limit: Optional[int] = None, window: Optional[int] = None) -> int:
        """
        Registra un intento para la llave y retorna el conteo de la ventana.

        Raises:
            RateLimited: si el conteo supera el límite
        """
        limit = limit or self.limit
        window = window or self.window_seconds
        now = int(time.time())
        window_start = now - (now % window)

        count = await self._increment(key, window_start)
        if count > limit:
            retry_after = max(1, window_start + window - now)
            logger.warning("Rate limit exceeded for %s (%d/%d)", key, count, limit)
            raise RateLimited(retry_after=retry_after)
        return count

    async def _increment(self, key: str, window_start: int) -> int:
        try:
            return await self._increment_once(key, window_start)
        except IntegrityError:
            # Otra instancia creó la ventana al mismo tiempo; ahora existe
            return await self._increment_once(key, window_start)

    async def _increment_once(self, key: str, window_start: int) -> int:
        async with self._db.transaction() as session:
            result = await session.execute(
                select(RateLimitCounter)
                .where(
                    RateLimitCounter.key == key,
                    RateLimitCounter.window_start == window_start,
                )
                .with_for_update()
            )
            counter = result.scalar_one_or_none()
            if counter is None:
                counter = RateLimitCounter(key=key, window_start=window_start, count=1)
                session.add(counter)
            else:
                counter.count += 1
            await session.flush()
            return counter.count

    async def purge_expired(self, *, older_than_seconds: int = 86400) -> int:
        cutoff = int(time.time()) - older_than_seconds
        async with self._db.transaction() as session:
            result = await session.execute(
                delete(RateLimitCounter).where(RateLimitCounter.window_start < cutoff)
            )
            return result.rowcount or 0


__all__ = [
    "AuthenticatedUser",
    "TokenClaims",
    "TokenVerifier",
    "RateLimiter",
]
