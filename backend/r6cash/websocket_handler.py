"""
=============================================================================
R6CASH - Notificaciones en Tiempo Real (Socket.IO)
=============================================================================
Empuja a los clientes los cambios ya confirmados en la base de datos:
- balance_updated     -> sala del dueño (user:<id>)
- game_updated        -> salas de los participantes y sala `lobby`
- withdrawal_updated  -> sala del dueño

Los clientes se autentican con el mismo bearer token de la API en el
payload `auth` de la conexión. Sin token válido, la conexión se rechaza.

Un fallo de entrega nunca afecta al cambio confirmado: se registra y sigue.
=============================================================================
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

import socketio

from .errors import Unauthorized
from .models import Profile
from .security import TokenVerifier

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURACIÓN DEL SOCKET
# =============================================================================

class SocketConfig:
    """Configuración del servidor de WebSockets."""

    PING_INTERVAL = 25   # Segundos entre pings
    PING_TIMEOUT = 20    # Timeout para considerar desconexión
    LOBBY_ROOM = "lobby"


def user_room(user_id: Any) -> str:
    return f"user:{user_id}"


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


# =============================================================================
# HUB DE NOTIFICACIONES
# =============================================================================

class RealtimeHub:
    """
    Envuelve un `socketio.AsyncServer` y expone un método por evento.
    Se construye por aplicación; no hay servidor global.
    """

    def __init__(self, token_verifier: TokenVerifier, *, cors_allowed_origins: Any = "*"):
        self._verifier = token_verifier
        self.sio = socketio.AsyncServer(
            async_mode="asgi",
            cors_allowed_origins=cors_allowed_origins,
            ping_timeout=SocketConfig.PING_TIMEOUT,
            ping_interval=SocketConfig.PING_INTERVAL,
        )
        self.sio.on("connect", self._on_connect)
        self.sio.on("disconnect", self._on_disconnect)

    # -------------------------------------------------------------------------
    # Handlers de conexión
    # -------------------------------------------------------------------------

    async def _on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None):
        token = (auth or {}).get("token")
        if not token:
            logger.warning("[WS] Connection %s refused: missing token", sid)
            raise socketio.exceptions.ConnectionRefusedError("unauthorized")
        try:
            claims = self._verifier.verify(token)
        except Unauthorized:
            logger.warning("[WS] Connection %s refused: invalid token", sid)
            raise socketio.exceptions.ConnectionRefusedError("unauthorized")

        await self.sio.save_session(sid, {"user_id": str(claims.user_id)})
        await self.sio.enter_room(sid, user_room(claims.user_id))
        await self.sio.enter_room(sid, SocketConfig.LOBBY_ROOM)
        logger.info("[WS] %s connected as %s", sid, claims.user_id)

    async def _on_disconnect(self, sid: str, *args):
        logger.info("[WS] %s disconnected", sid)

    # -------------------------------------------------------------------------
    # Emisión
    # -------------------------------------------------------------------------

    async def _emit(self, event: str, data: Dict[str, Any], room: str) -> None:
        try:
            await self.sio.emit(event, _jsonable(data), room=room)
        except Exception:
            logger.exception("[WS] Failed to deliver %s to %s", event, room)

    async def balance_updated(self, user_id: uuid.UUID, balance: Decimal, available: Decimal) -> None:
        await self._emit(
            "balance_updated",
            {"user_id": user_id, "balance": balance, "available_balance": available},
            user_room(user_id),
        )

    async def game_updated(self, game: Dict[str, Any], participant_ids: Iterable[uuid.UUID]) -> None:
        for user_id in set(participant_ids):
            await self._emit("game_updated", game, user_room(user_id))
        await self._emit("game_updated", game, SocketConfig.LOBBY_ROOM)

    async def withdrawal_updated(self, user_id: uuid.UUID, withdrawal: Dict[str, Any]) -> None:
        await self._emit("withdrawal_updated", withdrawal, user_room(user_id))

    def asgi_app(self, other_asgi_app: Any) -> socketio.ASGIApp:
        """Crea la aplicación ASGI combinada (Socket.IO + API)."""
        return socketio.ASGIApp(self.sio, other_asgi_app=other_asgi_app)


class Outbox:
    """
    Acumula eventos dentro de una transacción y los entrega después del
    commit. Si la transacción hace rollback, simplemente no se llama a
    `deliver()`.
    """

    def __init__(self, hub: Optional[RealtimeHub]):
        self._hub = hub
        self._events: List[Tuple[str, tuple]] = []

    def balance(self, profile: Profile) -> None:
        self._events.append(
            ("balance", (profile.id, profile.balance, profile.available_balance))
        )

    def game(self, game: Dict[str, Any], participant_ids: Iterable[uuid.UUID]) -> None:
        self._events.append(("game", (game, list(participant_ids))))

    def withdrawal(self, user_id: uuid.UUID, withdrawal: Dict[str, Any]) -> None:
        self._events.append(("withdrawal", (user_id, withdrawal)))

    async def deliver(self) -> None:
        events, self._events = self._events, []
        if self._hub is None:
            return
        for kind, args in events:
            if kind == "balance":
                await self._hub.balance_updated(*args)
            elif kind == "game":
                await self._hub.game_updated(*args)
            elif kind == "withdrawal":
                await self._hub.withdrawal_updated(*args)


__all__ = ["Outbox", "RealtimeHub", "SocketConfig", "user_room"]
