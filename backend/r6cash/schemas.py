"""
=============================================================================
R6CASH - Schemas de Request/Response (Pydantic)
=============================================================================
Cada endpoint recibe un modelo explícito. Campos desconocidos se rechazan
(extra="forbid") antes de llegar a la lógica de negocio.

Los montos se serializan como string ("23.97") para no perder precisión.
=============================================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ConfigDict, Field

from .models import GameMode, PaymentMethod


def encode(data: Any) -> Any:
    """Serializa respuestas sin modelo, con Decimal como string."""
    return jsonable_encoder(data, custom_encoder={Decimal: str})


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


# =============================================================================
# PARTIDAS
# =============================================================================

class CreateGameRequest(StrictModel):
    mode: GameMode
    stake: Decimal = Field(..., gt=0)


class GameIdRequest(StrictModel):
    game_id: int = Field(..., ge=1)


class SettleGameRequest(StrictModel):
    game_id: int = Field(..., ge=1)
    winner_id: UUID


class ValidateGameInputRequest(StrictModel):
    """Modo como string: un modo desconocido se informa como inválido, no 400."""
    mode: str = Field(..., max_length=16)
    stake: Decimal


class EloChangeRequest(StrictModel):
    player_elo: int = Field(..., ge=0, le=5000)
    opponent_elo: int = Field(..., ge=0, le=5000)
    player_won: bool
    k_factor: Optional[int] = Field(None, ge=1, le=100)


class GameResponse(BaseModel):
    id: int
    creator_id: UUID
    mode: str
    stake: Decimal
    status: str
    winner_id: Optional[UUID] = None
    capacity: int
    player_count: int
    players: List[UUID]
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class CreateGameResponse(BaseModel):
    success: bool = True
    game_id: int
    game: GameResponse


# =============================================================================
# WALLET
# =============================================================================

class BalanceResponse(BaseModel):
    user_id: UUID
    display_name: str
    balance: Decimal
    reserved_balance: Decimal
    available_balance: Decimal
    elo_rating: int


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    processor_fee: Optional[Decimal] = None
    external_ref: Optional[str] = None
    game_id: Optional[int] = None
    description: Optional[str] = None
    created_at: datetime


class CheckoutRequest(StrictModel):
    amount: Decimal = Field(..., gt=0)


class CheckoutResponse(BaseModel):
    url: str
    session_id: str


class VerifyPaymentRequest(StrictModel):
    session_id: str = Field(..., min_length=1, max_length=255)
    amount: Optional[Decimal] = None


class PaymentResponse(BaseModel):
    success: bool
    status: str
    session_id: str
    amount_credited: Decimal
    gross_amount: Optional[Decimal] = None
    processor_fee: Optional[Decimal] = None
    new_balance: Optional[Decimal] = None
    message: Optional[str] = None
    retryable: bool = False


class DepositCreditRequest(StrictModel):
    user_id: UUID
    amount: Decimal = Field(..., gt=0)
    external_ref: str = Field(..., min_length=1, max_length=255)


# =============================================================================
# RETIROS
# =============================================================================

class WithdrawalCreateRequest(StrictModel):
    amount: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod
    payment_details: Dict[str, str] = Field(default_factory=dict)


class WithdrawalActionRequest(StrictModel):
    notes: Optional[str] = Field(None, max_length=1000)


class WithdrawalResponse(BaseModel):
    id: UUID
    user_id: UUID
    amount: Decimal
    status: str
    payment_method: str
    payment_details: Dict[str, Any]
    admin_notes: Optional[str] = None
    processed_by: Optional[UUID] = None
    funds_reserved: bool
    transaction_id: Optional[UUID] = None
    created_at: datetime
    processed_at: Optional[datetime] = None


class WithdrawalCreatedResponse(BaseModel):
    success: bool = True
    withdrawal_id: UUID
    withdrawal: WithdrawalResponse


# =============================================================================
# ADMINISTRACIÓN
# =============================================================================

class CommissionSweepRequest(StrictModel):
    period: Literal["daily", "weekly", "monthly"] = "daily"


class LogSystemErrorRequest(StrictModel):
    error_type: str = Field(..., min_length=1, max_length=100)
    error_message: str = Field(..., min_length=1, max_length=2000)
    severity: Literal["info", "warning", "error", "critical"] = "error"
    context: Dict[str, Any] = Field(default_factory=dict)


class SuspiciousActivity(BaseModel):
    user_id: UUID
    reason: str
    count: int
