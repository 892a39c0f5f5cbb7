"""
=============================================================================
R6CASH - Modelos de Base de Datos (SQLAlchemy)
=============================================================================
Ledger de doble entrada para las apuestas entre jugadores.

Principios de Diseño:
- El dinero sólo entra por depósitos verificados y sale por retiros aprobados.
- Cada cambio de balance deja una fila inmutable en `transactions` con
  balance_before / balance_after capturados bajo el lock de la fila.
- El balance del perfil es igual a la suma de sus transacciones.
- Idempotencia de pagos mediante `payment_completions.session_id` UNIQUE.
=============================================================================
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Any, List, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Precisión monetaria: 2 decimales (centavos)
Money = Numeric(12, 2)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# =============================================================================
# ENUMERACIONES DEL SISTEMA
# =============================================================================

class AppRole(str, PyEnum):
    """Rol del usuario en la plataforma."""
    ADMIN = "admin"
    CLIENT = "client"


class GameMode(str, PyEnum):
    """Tamaño de equipo de la partida."""
    ONE_V_ONE = "1v1"
    TWO_V_TWO = "2v2"
    THREE_V_THREE = "3v3"
    FOUR_V_FOUR = "4v4"
    FIVE_V_FIVE = "5v5"

    @property
    def capacity(self) -> int:
        """Jugadores totales: N por equipo, dos equipos."""
        return int(self.value.split("v")[0]) * 2


class GameStatus(str, PyEnum):
    """
    Máquina de estados de la partida.
    waiting -> active -> finished, o waiting -> cancelled
    """
    WAITING = "waiting"
    ACTIVE = "active"
    FINISHED = "finished"
    CANCELLED = "cancelled"


class TransactionType(str, PyEnum):
    """Tipo de movimiento en el ledger. El tipo determina el signo."""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    GAME_STAKE = "game_stake"
    GAME_WINNINGS = "game_winnings"
    GAME_REFUND = "game_refund"
    COMMISSION = "commission"

    @property
    def is_debit(self) -> bool:
        return self in (TransactionType.WITHDRAWAL, TransactionType.GAME_STAKE, TransactionType.COMMISSION)


class WithdrawalStatus(str, PyEnum):
    """pending -> approved -> processed, o pending -> rejected"""
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSED = "processed"
    REJECTED = "rejected"


class PaymentMethod(str, PyEnum):
    BANK_TRANSFER = "bank_transfer"
    PAYPAL = "paypal"


class RevenueType(str, PyEnum):
    GAME_COMMISSION = "game_commission"
    DEPOSIT_COMMISSION = "deposit_commission"


class SweepStatus(str, PyEnum):
    """pending (filas reclamadas, transferencia en curso) -> completed"""
    PENDING = "pending"
    COMPLETED = "completed"


class PaymentSource(str, PyEnum):
    """Camino por el que se acreditó un pago."""
    WEBHOOK = "webhook"
    CLIENT = "client"
    MANUAL = "manual"


def _enum(enum_cls: type) -> Enum:
    # Se guardan los valores ("waiting"), no los nombres ("WAITING")
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


# =============================================================================
# BASE DECLARATIVA
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """Clase base para todos los modelos con soporte async."""
    pass


# =============================================================================
# TABLA: PROFILES (Identidad y Patrimonio)
# =============================================================================

class Profile(Base):
    """
    Un perfil por usuario. El id es el identificador del proveedor de auth.

    CONCURRENCIA: balance_version es el contador de concurrencia optimista.
    Toda escritura incluye `WHERE balance_version = :leida`; si otra
    transacción escribió antes, el flush falla con StaleDataError.
    """
    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)

    # ==========================================================================
    # SALDO
    # reserved_balance: fondos retenidos por retiros pendientes
    # ==========================================================================
    balance: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"), nullable=False)
    reserved_balance: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"), nullable=False)
    balance_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    elo_rating: Mapped[int] = mapped_column(Integer, default=1200, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )

    transactions: Mapped[List["Transaction"]] = relationship(back_populates="user")

    __table_args__ = (
        CheckConstraint("balance >= 0", name="check_positive_balance"),
        CheckConstraint("reserved_balance >= 0", name="check_positive_reserved"),
        CheckConstraint("reserved_balance <= balance", name="check_reserved_covered"),
    )
    __mapper_args__ = {"version_id_col": balance_version}

    @property
    def available_balance(self) -> Decimal:
        return self.balance - self.reserved_balance


# =============================================================================
# TABLA: USER_ROLES
# =============================================================================

class UserRole(Base):
    __tablename__ = "user_roles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)
    role: Mapped[AppRole] = mapped_column(_enum(AppRole), default=AppRole.CLIENT, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )


# =============================================================================
# TABLA: GAMES (Partidas con apuesta)
# =============================================================================

class Game(Base):
    """
    Partida con apuesta en escrow.

    INVARIANTE: mientras status ∈ {waiting, active}, el total en escrow es
    stake × cantidad de jugadores.
    """
    __tablename__ = "games"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    creator_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id", ondelete="RESTRICT"), nullable=False
    )
    mode: Mapped[GameMode] = mapped_column(_enum(GameMode), nullable=False)
    stake: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[GameStatus] = mapped_column(
        _enum(GameStatus), default=GameStatus.WAITING, nullable=False
    )
    winner_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("profiles.id", ondelete="RESTRICT"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    players: Mapped[List["GamePlayer"]] = relationship(
        back_populates="game",
        order_by="GamePlayer.id",
    )

    __table_args__ = (
        Index("idx_games_status", "status"),
        Index("idx_games_creator", "creator_id"),
        Index("idx_games_created_at", "created_at"),
        CheckConstraint("stake > 0", name="check_stake_positive"),
    )

    @property
    def capacity(self) -> int:
        return GameMode(self.mode).capacity


# =============================================================================
# TABLA: GAME_PLAYERS
# =============================================================================

class GamePlayer(Base):
    """Un usuario aparece como máximo una vez por partida."""
    __tablename__ = "game_players"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    game_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("games.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id", ondelete="RESTRICT"), nullable=False
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    game: Mapped["Game"] = relationship(back_populates="players")

    __table_args__ = (
        UniqueConstraint("game_id", "user_id", name="unique_game_player"),
        Index("idx_game_players_user", "user_id"),
    )


# =============================================================================
# TABLA: TRANSACTIONS (Ledger inmutable)
# =============================================================================

class Transaction(Base):
    """
    Libro Mayor (Ledger). Append-only.

    - amount con signo: negativo para débitos, positivo para créditos.
    - balance_after = balance_before + amount (CHECK en la BD).
    - Nunca se actualiza ni se borra después del INSERT.
    """
    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id", ondelete="RESTRICT"), nullable=False
    )
    type: Mapped[TransactionType] = mapped_column(_enum(TransactionType), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Money, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Money, nullable=False)

    # Fee del procesador (sólo depósitos)
    processor_fee: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)

    # Referencia externa (session id del procesador, id de retiro, etc.)
    external_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    game_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("games.id", ondelete="RESTRICT"), nullable=True
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    user: Mapped["Profile"] = relationship(back_populates="transactions")

    __table_args__ = (
        Index("idx_tx_user_id", "user_id"),
        Index("idx_tx_game_id", "game_id"),
        Index("idx_tx_type", "type"),
        Index("idx_tx_created_at", "created_at"),
        Index("idx_tx_external_ref", "external_ref"),
        CheckConstraint("amount <> 0", name="check_nonzero_amount"),
        # Tolerancia de medio centavo: SQLite guarda NUMERIC como REAL
        CheckConstraint(
            "ABS(balance_after - (balance_before + amount)) < 0.005",
            name="check_balance_equation",
        ),
    )


# =============================================================================
# TABLA: WITHDRAWAL_REQUESTS (Retiros con aprobación manual)
# =============================================================================

class WithdrawalRequest(Base):
    """
    Solicitud de retiro.

    FLUJO:
    1. Usuario solicita (pending). Con reserva activa, el monto queda retenido.
    2. Admin aprueba o rechaza (rechazo libera la reserva).
    3. Admin marca como processed: único paso con efecto monetario.
    """
    __tablename__ = "withdrawal_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id", ondelete="RESTRICT"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[WithdrawalStatus] = mapped_column(
        _enum(WithdrawalStatus), default=WithdrawalStatus.PENDING, nullable=False
    )
    payment_method: Mapped[PaymentMethod] = mapped_column(_enum(PaymentMethod), nullable=False)
    payment_details: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    funds_reserved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("transactions.id", ondelete="RESTRICT"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_withdrawals_user_id", "user_id"),
        Index("idx_withdrawals_status", "status"),
        CheckConstraint("amount > 0", name="check_positive_withdrawal_amount"),
    )


# =============================================================================
# TABLA: COMMISSION_SWEEPS (Barridos de comisiones)
# =============================================================================

class CommissionSweep(Base):
    """
    Un barrido reclama sus filas de platform_revenue antes de llamar al
    procesador. Su id es la llave de idempotencia de la transferencia, así
    un barrido interrumpido se retoma con la misma llave.
    """
    __tablename__ = "commission_sweeps"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    period: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[SweepStatus] = mapped_column(
        _enum(SweepStatus), default=SweepStatus.PENDING, nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    row_count: Mapped[int] = mapped_column(Integer, nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    requested_by: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id", ondelete="RESTRICT"), nullable=False
    )
    transfer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_sweeps_status", "status"),
        CheckConstraint("amount > 0", name="check_positive_sweep_amount"),
    )


# =============================================================================
# TABLA: PLATFORM_REVENUE (Ledger de comisiones)
# =============================================================================

class PlatformRevenue(Base):
    """
    Una fila por evento con comisión (liquidación de partida o depósito).
    sweep_id se asigna cuando un barrido reclama la fila; transfer_id cuando
    la transferencia a la cuenta del operador queda confirmada.
    """
    __tablename__ = "platform_revenue"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    transaction_type: Mapped[RevenueType] = mapped_column(_enum(RevenueType), nullable=False)
    game_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("games.id", ondelete="RESTRICT"), nullable=True
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("profiles.id", ondelete="RESTRICT"), nullable=True
    )
    source_transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("transactions.id", ondelete="RESTRICT"), nullable=True
    )
    external_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sweep_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("commission_sweeps.id", ondelete="RESTRICT"), nullable=True
    )
    transfer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_revenue_transfer", "transfer_id"),
        Index("idx_revenue_sweep", "sweep_id"),
        Index("idx_revenue_created_at", "created_at"),
        CheckConstraint("amount >= 0", name="check_positive_revenue"),
    )


# =============================================================================
# TABLA: PAYMENT_COMPLETIONS (Idempotencia de pagos)
# =============================================================================

class PaymentCompletion(Base):
    """
    Registro de que una sesión del procesador ya fue acreditada.
    El UNIQUE sobre session_id impide que webhook y verificación del cliente
    acrediten dos veces la misma sesión.
    """
    __tablename__ = "payment_completions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    session_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id", ondelete="RESTRICT"), nullable=False
    )
    gross_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    processor_fee: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"), nullable=False)
    amount_credited: Mapped[Decimal] = mapped_column(Money, nullable=False)
    source: Mapped[PaymentSource] = mapped_column(_enum(PaymentSource), nullable=False)
    transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("transactions.id", ondelete="RESTRICT"), nullable=True
    )
    completed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


# =============================================================================
# TABLA: AUDIT_LOG
# =============================================================================

class AuditLog(Base):
    """Bitácora de acciones administrativas y errores del sistema."""
    __tablename__ = "audit_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    table_name: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    record_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    old_values: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    new_values: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_audit_action", "action"),
        Index("idx_audit_created_at", "created_at"),
    )


# =============================================================================
# TABLA: RATE_LIMIT_COUNTERS (Contadores compartidos de rate limiting)
# =============================================================================

class RateLimitCounter(Base):
    """Ventanas fijas por llave (account:<id> / ip:<addr>)."""
    __tablename__ = "rate_limit_counters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    window_start: Mapped[int] = mapped_column(BigInteger, nullable=False)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("key", "window_start", name="unique_rate_limit_window"),
    )


# =============================================================================
# EVENT LISTENERS PARA INMUTABILIDAD DEL LEDGER
# =============================================================================

@event.listens_for(Transaction, "before_update")
def transaction_before_update(mapper, connection, target: Transaction):
    """El ledger es append-only."""
    raise RuntimeError(f"Transaction {target.id} is immutable")


@event.listens_for(Transaction, "before_delete")
def transaction_before_delete(mapper, connection, target: Transaction):
    raise RuntimeError(f"Transaction {target.id} is immutable")
