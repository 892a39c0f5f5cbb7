"""
=============================================================================
R6CASH - Dependencias FastAPI
=============================================================================
- get_current_user:  verifica el bearer token y garantiza el perfil
- get_current_admin: exige rol admin en user_roles
- rate_limit(scope): límite por cuenta y por IP con contadores compartidos
=============================================================================
"""

import logging
from typing import Callable, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .errors import Forbidden, Unauthorized
from .ledger import ensure_profile, get_user_role
from .security import AuthenticatedUser
from .services import Services

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    services: Services = Depends(get_services),
) -> AuthenticatedUser:
    """
    Verifica el token y garantiza que exista el perfil del usuario.
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise Unauthorized()
    claims = services.token_verifier.verify(credentials.credentials)

    async with services.database.transaction() as session:
        await ensure_profile(
            session,
            claims.user_id,
            claims.display_name,
            default_elo=services.settings.default_elo,
        )
        role = await get_user_role(session, claims.user_id)

    return AuthenticatedUser(
        user_id=claims.user_id,
        role=role,
        display_name=claims.display_name,
        ip_address=client_ip(request),
    )


async def get_current_admin(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
    """Verifica que el token pertenece a un administrador."""
    if not user.is_admin:
        logger.warning("Forbidden admin access attempt by %s from %s", user.user_id, user.ip_address)
        raise Forbidden()
    return user


def rate_limit(scope: str, *, admin: bool = False) -> Callable:
    """
    Dependencia que aplica el límite por cuenta y por IP para `scope`.
    Con admin=True además exige rol de administrador.
    """
    identity = get_current_admin if admin else get_current_user

    async def _dependency(
        user: AuthenticatedUser = Depends(identity),
        services: Services = Depends(get_services),
    ) -> AuthenticatedUser:
        limiter = services.rate_limiter
        await limiter.hit(f"account:{user.user_id}:{scope}")
        if user.ip_address:
            # La IP puede ser compartida (NAT), se le da más margen
            await limiter.hit(f"ip:{user.ip_address}:{scope}", limit=limiter.limit * 5)
        return user

    return _dependency


__all__ = [
    "bearer",
    "client_ip",
    "get_current_admin",
    "get_current_user",
    "get_services",
    "rate_limit",
]
