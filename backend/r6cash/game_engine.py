"""
=============================================================================
R6CASH - Motor de Partidas y Escrow
=============================================================================
Máquina de estados por partida:

    waiting -> active -> finished
    waiting -> cancelled   (reembolsa todas las apuestas)

- create: debita la apuesta del creador e inserta la partida (waiting)
- join:   debita la apuesta del jugador; al llenar el cupo pasa a active
- settle: paga al ganador pot - comisión y registra el ingreso (una sola
          unidad atómica); el ajuste de ELO corre después, aparte
- cancel: sólo desde waiting; reembolsa cada apuesta en escrow

Cada transición de estado es un UPDATE condicional sobre el estado leído,
de modo que dos llamadas concurrentes no pueden aplicar la misma transición.
=============================================================================
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from .commission import calculate_game_commission, record_revenue
from .config import Settings
from .database import Database
from .errors import Conflict, Forbidden, InvalidInput, NotFound
from .ledger import apply_ledger_entry, has_role, to_money
from .models import (
    AppRole,
    Game,
    GameMode,
    GamePlayer,
    GameStatus,
    Profile,
    RevenueType,
    TransactionType,
    utcnow,
)
from .websocket_handler import Outbox, RealtimeHub

logger = logging.getLogger(__name__)


# =============================================================================
# ELO
# =============================================================================

def calculate_elo_change(player_elo: int, opponent_elo: int, player_won: bool, k_factor: int = 32) -> int:
    """
    Cambio de rating con la fórmula logística estándar.

    E = 1 / (1 + 10^((oponente - jugador) / 400))
    cambio = round(K × (S - E)), S = 1 si ganó, 0 si perdió
    """
    expected = 1 / (1 + 10 ** ((opponent_elo - player_elo) / 400))
    score = 1.0 if player_won else 0.0
    return round(k_factor * (score - expected))


def game_to_dict(game: Game) -> Dict[str, Any]:
    players = [p.user_id for p in game.players]
    return {
        "id": game.id,
        "creator_id": game.creator_id,
        "mode": GameMode(game.mode).value,
        "stake": game.stake,
        "status": GameStatus(game.status).value,
        "winner_id": game.winner_id,
        "capacity": game.capacity,
        "player_count": len(players),
        "players": players,
        "created_at": game.created_at,
        "started_at": game.started_at,
        "finished_at": game.finished_at,
    }


# =============================================================================
# GESTOR DE PARTIDAS
# =============================================================================

class GameManager:
    """Operaciones de partida sobre el ledger."""

    def __init__(self, database: Database, settings: Settings, hub: Optional[RealtimeHub] = None):
        self._db = database
        self._settings = settings
        self._hub = hub

    # -------------------------------------------------------------------------
    # Validación
    # -------------------------------------------------------------------------

    def parse_game_input(self, mode: Any, stake: Union[Decimal, int, str, float]) -> Tuple[GameMode, Decimal]:
        """
        Raises:
            InvalidInput: modo fuera del enumerado o apuesta fuera de rango
        """
        try:
            game_mode = GameMode(mode)
        except ValueError as exc:
            raise InvalidInput(f"Modo de juego inválido: {mode!r}") from exc

        amount = to_money(stake)
        if amount < self._settings.min_stake or amount > self._settings.max_stake:
            raise InvalidInput(
                f"La apuesta debe estar entre ${self._settings.min_stake} y ${self._settings.max_stake}"
            )
        return game_mode, amount

    def validate_game_input(self, mode: Any, stake: Any) -> Dict[str, Any]:
        """Valida modo y apuesta sin efectos secundarios."""
        try:
            self.parse_game_input(mode, stake)
        except InvalidInput as exc:
            return {"valid": False, "error": exc.message}
        return {"valid": True, "error": None}

    # -------------------------------------------------------------------------
    # Helpers internos
    # -------------------------------------------------------------------------

    async def _lock_game(self, session: AsyncSession, game_id: int) -> Game:
        result = await session.execute(
            select(Game)
            .where(Game.id == game_id)
            .options(selectinload(Game.players))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        game = result.scalar_one_or_none()
        if game is None:
            raise NotFound("Partida no encontrada")
        return game

    async def _transition(
        self,
        session: AsyncSession,
        game: Game,
        expected: GameStatus,
        **values: Any,
    ) -> None:
        """UPDATE condicional: sólo aplica si el estado sigue siendo `expected`."""
        result = await session.execute(
            update(Game)
            .where(Game.id == game.id, Game.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise Conflict("El estado de la partida cambió durante la operación")
        await session.refresh(game, attribute_names=[*values, "updated_at"])

    async def _profile(self, session: AsyncSession, user_id: uuid.UUID) -> Profile:
        profile = await session.get(Profile, user_id)
        if profile is None:
            raise NotFound("Perfil no encontrado")
        return profile

    # -------------------------------------------------------------------------
    # Operaciones
    # -------------------------------------------------------------------------

    async def create(self, creator_id: uuid.UUID, mode: Any, stake: Any) -> Dict[str, Any]:
        """
        Crea una partida en waiting y pone en escrow la apuesta del creador.

        Raises:
            InvalidInput: modo o apuesta inválidos (nada se escribe)
            InsufficientFunds: no se crea la partida
        """
        game_mode, amount = self.parse_game_input(mode, stake)
        outbox = Outbox(self._hub)

        async with self._db.transaction() as session:
            game = Game(creator_id=creator_id, mode=game_mode, stake=amount, status=GameStatus.WAITING)
            session.add(game)
            await session.flush()

            await apply_ledger_entry(
                session,
                creator_id,
                amount,
                TransactionType.GAME_STAKE,
                game_id=game.id,
                description=f"Apuesta partida #{game.id} ({game_mode.value})",
            )
            session.add(GamePlayer(game_id=game.id, user_id=creator_id))
            await session.flush()
            await session.refresh(game, attribute_names=["players"])

            data = game_to_dict(game)
            outbox.balance(await self._profile(session, creator_id))
            outbox.game(data, [creator_id])

        logger.info("[GAME] #%s created by %s (%s, stake %s)", data["id"], creator_id, game_mode.value, amount)
        await outbox.deliver()
        return data

    async def join(self, game_id: int, user_id: uuid.UUID) -> Dict[str, Any]:
        """
        Une al usuario a una partida en waiting.

        La partida se bloquea (FOR UPDATE en PostgreSQL, BEGIN IMMEDIATE en
        SQLite) antes de contar jugadores: dos uniones concurrentes al último
        cupo se serializan y la segunda ve la partida llena.

        Raises:
            NotFound: la partida no existe
            Conflict: la partida no está en waiting, está llena, o el
                usuario ya participa
            InsufficientFunds: no se agrega el jugador
        """
        outbox = Outbox(self._hub)

        async with self._db.transaction() as session:
            game = await self._lock_game(session, game_id)
            if game.status != GameStatus.WAITING:
                raise Conflict("La partida no acepta jugadores")

            player_ids = [p.user_id for p in game.players]
            if user_id in player_ids:
                raise Conflict("Ya estás en esta partida")
            if len(player_ids) >= game.capacity:
                raise Conflict("La partida está llena")

            await apply_ledger_entry(
                session,
                user_id,
                game.stake,
                TransactionType.GAME_STAKE,
                game_id=game.id,
                description=f"Apuesta partida #{game.id}",
            )
            session.add(GamePlayer(game_id=game.id, user_id=user_id))
            try:
                await session.flush()
            except IntegrityError as exc:
                raise Conflict("Ya estás en esta partida") from exc
            await session.refresh(game, attribute_names=["players"])

            if len(game.players) == game.capacity:
                await self._transition(
                    session, game, GameStatus.WAITING,
                    status=GameStatus.ACTIVE, started_at=utcnow(),
                )
                logger.info("[GAME] #%s is full, now active", game.id)

            data = game_to_dict(game)
            outbox.balance(await self._profile(session, user_id))
            outbox.game(data, data["players"])

        logger.info("[GAME] %s joined #%s (%d/%d)", user_id, game_id, data["player_count"], data["capacity"])
        await outbox.deliver()
        return data

    async def settle(self, game_id: int, winner_id: uuid.UUID) -> Dict[str, Any]:
        """
        Liquida una partida activa.

        PROCESO ATÓMICO:
        1. active -> finished con winner_id (UPDATE condicional)
        2. Crédito al ganador: pot - comisión (game_winnings)
        3. Fila en platform_revenue (game_commission)

        Una segunda liquidación encuentra la partida en finished y falla con
        Conflict; nunca paga dos veces. El ELO se ajusta después del commit.
        """
        outbox = Outbox(self._hub)

        async with self._db.transaction() as session:
            game = await self._lock_game(session, game_id)
            if game.status == GameStatus.FINISHED:
                raise Conflict("La partida ya fue liquidada")
            if game.status != GameStatus.ACTIVE:
                raise Conflict("La partida no está activa")

            player_ids = [p.user_id for p in game.players]
            if winner_id not in player_ids:
                raise InvalidInput("El ganador no participa en esta partida")

            split = calculate_game_commission(
                game.stake, len(player_ids), self._settings.game_commission_rate
            )

            await self._transition(
                session, game, GameStatus.ACTIVE,
                status=GameStatus.FINISHED, winner_id=winner_id, finished_at=utcnow(),
            )

            payout_tx = None
            if split["winner_payout"] > 0:
                payout_tx = await apply_ledger_entry(
                    session,
                    winner_id,
                    split["winner_payout"],
                    TransactionType.GAME_WINNINGS,
                    game_id=game.id,
                    description=f"Premio partida #{game.id}",
                )
            await record_revenue(
                session,
                split["commission"],
                RevenueType.GAME_COMMISSION,
                game_id=game.id,
                user_id=winner_id,
                source_transaction_id=payout_tx.id if payout_tx else None,
            )

            data = game_to_dict(game)
            outbox.balance(await self._profile(session, winner_id))
            outbox.game(data, player_ids)

        logger.info(
            "[SETTLE] #%s winner %s: pot %s, commission %s, payout %s",
            game_id, winner_id, split["total_pot"], split["commission"], split["winner_payout"],
        )
        await outbox.deliver()

        elo_changes = await self.apply_elo(game_id, winner_id)
        return {
            "success": True,
            "game": data,
            "total_pot": split["total_pot"],
            "commission": split["commission"],
            "winner_payout": split["winner_payout"],
            "elo_changes": elo_changes,
        }

    async def apply_elo(self, game_id: int, winner_id: uuid.UUID) -> Dict[str, int]:
        """
        Ajuste de ELO en su propia transacción. Es informativo: cualquier
        fallo se registra y se devuelve un dict vacío.
        """
        try:
            return await self._apply_elo(game_id, winner_id)
        except Exception:
            logger.exception("[ELO] Rating update failed for game #%s", game_id)
            return {}

    async def _apply_elo(self, game_id: int, winner_id: uuid.UUID) -> Dict[str, int]:
        k = self._settings.elo_k_factor
        async with self._db.transaction() as session:
            result = await session.execute(
                select(Profile)
                .join(GamePlayer, GamePlayer.user_id == Profile.id)
                .where(GamePlayer.game_id == game_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            profiles = {p.id: p for p in result.scalars().all()}
            winner = profiles.get(winner_id)
            others = [p for uid, p in profiles.items() if uid != winner_id]
            if winner is None or not others:
                return {}

            # En modos de equipo, el ganador se mide contra el promedio del resto
            winner_elo = winner.elo_rating
            opponents_elo = round(sum(p.elo_rating for p in others) / len(others))

            changes = {str(winner.id): calculate_elo_change(winner_elo, opponents_elo, True, k)}
            for profile in others:
                changes[str(profile.id)] = calculate_elo_change(profile.elo_rating, winner_elo, False, k)

            for profile in profiles.values():
                profile.elo_rating = max(0, profile.elo_rating + changes[str(profile.id)])
            try:
                await session.flush()
            except StaleDataError as exc:
                raise Conflict("Los perfiles cambiaron durante el ajuste de ELO") from exc

        logger.info("[ELO] Game #%s: %s", game_id, changes)
        return changes

    async def cancel(self, game_id: int, actor_id: uuid.UUID) -> Dict[str, Any]:
        """
        Cancela una partida en waiting y reembolsa cada apuesta en escrow.

        El creador sólo puede cancelar mientras es el único participante;
        un administrador (según user_roles) puede cancelar cualquier partida
        en waiting.
        """
        outbox = Outbox(self._hub)

        async with self._db.transaction() as session:
            game = await self._lock_game(session, game_id)
            if game.status != GameStatus.WAITING:
                raise Conflict("Sólo se pueden cancelar partidas en espera")

            player_ids = [p.user_id for p in game.players]
            if not await has_role(session, actor_id, AppRole.ADMIN):
                if game.creator_id != actor_id:
                    raise Forbidden("Sólo el creador puede cancelar la partida")
                if len(player_ids) > 1:
                    raise Conflict("La partida ya tiene otros jugadores")

            await self._transition(session, game, GameStatus.WAITING, status=GameStatus.CANCELLED)
            for player_id in player_ids:
                await apply_ledger_entry(
                    session,
                    player_id,
                    game.stake,
                    TransactionType.GAME_REFUND,
                    game_id=game.id,
                    description=f"Reembolso partida #{game.id} cancelada",
                )
                outbox.balance(await self._profile(session, player_id))

            data = game_to_dict(game)
            outbox.game(data, player_ids)

        logger.info("[GAME] #%s cancelled by %s (%d refunds)", game_id, actor_id, len(player_ids))
        await outbox.deliver()
        return data

    # -------------------------------------------------------------------------
    # Consultas
    # -------------------------------------------------------------------------

    async def get_game(self, game_id: int) -> Dict[str, Any]:
        async with self._db.session() as session:
            result = await session.execute(
                select(Game).where(Game.id == game_id).options(selectinload(Game.players))
            )
            game = result.scalar_one_or_none()
            if game is None:
                raise NotFound("Partida no encontrada")
            return game_to_dict(game)

    async def list_games(
        self,
        *,
        status: Optional[GameStatus] = GameStatus.WAITING,
        user_id: Optional[uuid.UUID] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        query = select(Game).options(selectinload(Game.players))
        if status is not None:
            query = query.where(Game.status == status)
        if user_id is not None:
            joined = select(GamePlayer.game_id).where(GamePlayer.user_id == user_id)
            query = query.where(or_(Game.creator_id == user_id, Game.id.in_(joined)))
        query = query.order_by(Game.created_at.desc(), Game.id.desc()).offset(offset).limit(limit)

        async with self._db.session() as session:
            result = await session.execute(query)
            return [game_to_dict(g) for g in result.scalars().all()]

    async def leaderboard(self, limit: int = 10) -> List[Dict[str, Any]]:
        async with self._db.session() as session:
            wins = (
                select(Game.winner_id, func.count(Game.id).label("wins"))
                .where(Game.status == GameStatus.FINISHED)
                .group_by(Game.winner_id)
                .subquery()
            )
            result = await session.execute(
                select(Profile.id, Profile.display_name, Profile.elo_rating, func.coalesce(wins.c.wins, 0))
                .outerjoin(wins, wins.c.winner_id == Profile.id)
                .order_by(Profile.elo_rating.desc(), Profile.created_at)
                .limit(limit)
            )
            return [
                {
                    "rank": rank,
                    "user_id": user_id,
                    "display_name": name,
                    "elo_rating": elo,
                    "wins": wins_count,
                }
                for rank, (user_id, name, elo, wins_count) in enumerate(result.all(), start=1)
            ]


__all__ = ["GameManager", "calculate_elo_change", "game_to_dict"]
