"""
=============================================================================
R6CASH - Procedimientos Remotos y Consultas de Partidas
=============================================================================
API pública que consume la interfaz:

    POST /rpc/create_game               POST /rpc/create_withdrawal_request
    POST /rpc/join_game                 POST /rpc/deposit_credit        (admin)
    POST /rpc/cancel_game               POST /rpc/detect_suspicious_activity (admin)
    POST /rpc/update_elo_ratings (admin) POST /rpc/system_health_check  (admin)
    POST /rpc/validate_game_input       POST /rpc/log_system_error
    POST /rpc/calculate_elo_change

    GET /games, GET /games/leaderboard, GET /games/{id}
=============================================================================
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from .audit import log_system_error
from .deps import get_current_admin, get_current_user, get_services, rate_limit
from .game_engine import calculate_elo_change
from .models import GameStatus
from .schemas import (
    CreateGameRequest,
    CreateGameResponse,
    DepositCreditRequest,
    EloChangeRequest,
    GameIdRequest,
    GameResponse,
    LogSystemErrorRequest,
    PaymentResponse,
    SettleGameRequest,
    SuspiciousActivity,
    ValidateGameInputRequest,
    WithdrawalCreateRequest,
    WithdrawalCreatedResponse,
    encode,
)
from .security import AuthenticatedUser
from .services import Services

logger = logging.getLogger(__name__)

rpc_router = APIRouter(prefix="/rpc", tags=["RPC"])
games_router = APIRouter(prefix="/games", tags=["Games"])


# =============================================================================
# PARTIDAS
# =============================================================================

@rpc_router.post("/create_game", response_model=CreateGameResponse)
async def create_game(
    body: CreateGameRequest,
    user: AuthenticatedUser = Depends(rate_limit("create_game")),
    services: Services = Depends(get_services),
):
    game = await services.games.create(user.user_id, body.mode, body.stake)
    return {"success": True, "game_id": game["id"], "game": game}


@rpc_router.post("/join_game")
async def join_game(
    body: GameIdRequest,
    user: AuthenticatedUser = Depends(rate_limit("join_game")),
    services: Services = Depends(get_services),
):
    game = await services.games.join(body.game_id, user.user_id)
    return {"ok": True, "game": GameResponse(**game)}


@rpc_router.post("/cancel_game")
async def cancel_game(
    body: GameIdRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    game = await services.games.cancel(body.game_id, user.user_id)
    return {"ok": True, "game": GameResponse(**game)}


@rpc_router.post("/update_elo_ratings")
async def update_elo_ratings(
    body: SettleGameRequest,
    admin: AuthenticatedUser = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    """
    Liquidación de la partida (resultado verificado por staff).
    El pago se confirma primero; el ELO se ajusta aparte.
    """
    result = await services.games.settle(body.game_id, body.winner_id)
    logger.info("Game #%s settled by admin %s", body.game_id, admin.user_id)
    return encode({"ok": True, **result})


@rpc_router.post("/validate_game_input")
async def validate_game_input(
    body: ValidateGameInputRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return services.games.validate_game_input(body.mode, body.stake)


@rpc_router.post("/calculate_elo_change")
async def elo_change(
    body: EloChangeRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    k = body.k_factor or services.settings.elo_k_factor
    return {"change": calculate_elo_change(body.player_elo, body.opponent_elo, body.player_won, k)}


# =============================================================================
# DINERO
# =============================================================================

@rpc_router.post("/create_withdrawal_request", response_model=WithdrawalCreatedResponse)
async def create_withdrawal_request(
    body: WithdrawalCreateRequest,
    user: AuthenticatedUser = Depends(rate_limit("withdraw")),
    services: Services = Depends(get_services),
):
    withdrawal = await services.withdrawals.request(
        user.user_id,
        body.amount,
        body.payment_method,
        body.payment_details,
        ip_address=user.ip_address,
    )
    return {"success": True, "withdrawal_id": withdrawal["id"], "withdrawal": withdrawal}


@rpc_router.post("/deposit_credit", response_model=PaymentResponse)
async def deposit_credit(
    body: DepositCreditRequest,
    admin: AuthenticatedUser = Depends(rate_limit("deposit_credit", admin=True)),
    services: Services = Depends(get_services),
):
    outcome = await services.payments.deposit_credit(
        body.user_id, body.amount, body.external_ref, admin_id=admin.user_id
    )
    return outcome.to_dict()


# =============================================================================
# MONITOREO
# =============================================================================

@rpc_router.post("/detect_suspicious_activity", response_model=List[SuspiciousActivity])
async def detect_suspicious_activity(
    admin: AuthenticatedUser = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    return await services.monitoring.detect_suspicious_activity()


@rpc_router.post("/system_health_check")
async def system_health_check(
    admin: AuthenticatedUser = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    return encode(await services.monitoring.system_health_check())


@rpc_router.post("/log_system_error")
async def report_system_error(
    body: LogSystemErrorRequest,
    user: AuthenticatedUser = Depends(rate_limit("log_system_error")),
    services: Services = Depends(get_services),
):
    async with services.database.transaction() as session:
        entry = await log_system_error(
            session,
            body.error_type,
            body.error_message,
            severity=body.severity,
            context=body.context,
            user_id=user.user_id,
        )
    return {"ok": True, "id": str(entry.id)}


# =============================================================================
# CONSULTAS DE PARTIDAS
# =============================================================================

@games_router.get("", response_model=List[GameResponse])
async def list_games(
    status: Optional[GameStatus] = Query(GameStatus.WAITING),
    mine: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Partidas abiertas por defecto; `mine=true` filtra las del usuario."""
    return await services.games.list_games(
        status=status,
        user_id=user.user_id if mine else None,
        limit=limit,
        offset=offset,
    )


@games_router.get("/leaderboard")
async def leaderboard(
    limit: int = Query(10, ge=1, le=100),
    services: Services = Depends(get_services),
):
    return encode(await services.games.leaderboard(limit))


@games_router.get("/{game_id}", response_model=GameResponse)
async def get_game(
    game_id: int,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.games.get_game(game_id)
