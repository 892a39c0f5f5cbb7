"""
=============================================================================
R6CASH - Ledger de Balances
=============================================================================
Única puerta de entrada para mover dinero en un perfil.

PROCESO ATÓMICO (dentro de la transacción del llamador):
1. Bloquea la fila del perfil (FOR UPDATE) y lee el balance
2. Rechaza si el débito deja el balance disponible en negativo
3. Escribe el nuevo balance (con control de versión optimista)
4. Inserta la fila inmutable en `transactions` con balance_before/after

Si cualquier paso falla, la transacción completa hace rollback.
=============================================================================
"""

import logging
import uuid
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import List, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from .errors import Conflict, InsufficientFunds, InvalidInput, NotFound
from .models import AppRole, Profile, Transaction, TransactionType, UserRole

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


# =============================================================================
# UTILIDADES MONETARIAS
# =============================================================================

def to_money(value: Union[Decimal, int, str, float]) -> Decimal:
    """
    Convierte a Decimal con precisión de centavos (ROUND_HALF_UP).
    Rechaza valores no finitos o no numéricos con InvalidInput.
    """
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidInput(f"Monto inválido: {value!r}") from exc
    if not amount.is_finite():
        raise InvalidInput(f"Monto inválido: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def to_cents(amount: Decimal) -> int:
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


# =============================================================================
# PERFILES Y ROLES
# =============================================================================

async def ensure_profile(
    session: AsyncSession,
    user_id: uuid.UUID,
    display_name: Optional[str] = None,
    *,
    default_elo: int = 1200,
) -> Profile:
    """
    Devuelve el perfil del usuario, creándolo con balance 0 si no existe.
    Idempotente ante carreras: si otra transacción lo creó primero, se relee.
    """
    profile = await session.get(Profile, user_id)
    if profile is not None:
        return profile

    name = (display_name or "").strip()[:100] or "Player"
    try:
        async with session.begin_nested():
            profile = Profile(
                id=user_id,
                display_name=name,
                balance=ZERO,
                reserved_balance=ZERO,
                elo_rating=default_elo,
            )
            session.add(profile)
    except IntegrityError:
        profile = await session.get(Profile, user_id, populate_existing=True)
        if profile is None:
            raise
    else:
        logger.info("Profile created for user %s", user_id)
    return profile


async def get_user_role(session: AsyncSession, user_id: uuid.UUID) -> AppRole:
    result = await session.execute(select(UserRole.role).where(UserRole.user_id == user_id))
    role = result.scalar_one_or_none()
    return AppRole(role) if role is not None else AppRole.CLIENT


async def has_role(session: AsyncSession, user_id: uuid.UUID, role: AppRole) -> bool:
    return await get_user_role(session, user_id) == role


async def lock_profile(session: AsyncSession, user_id: uuid.UUID) -> Profile:
    """Lee el perfil con lock de fila (no-op en SQLite, que ya serializa)."""
    result = await session.execute(
        select(Profile)
        .where(Profile.id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    profile = result.scalar_one_or_none()
    if profile is None:
        raise NotFound("Perfil no encontrado")
    return profile


# =============================================================================
# OPERACIÓN PRINCIPAL DEL LEDGER
# =============================================================================

async def apply_ledger_entry(
    session: AsyncSession,
    user_id: uuid.UUID,
    amount: Decimal,
    entry_type: TransactionType,
    *,
    game_id: Optional[int] = None,
    external_ref: Optional[str] = None,
    processor_fee: Optional[Decimal] = None,
    description: Optional[str] = None,
    release_reserved: Decimal = ZERO,
) -> Transaction:
    """
    Aplica un movimiento al balance del usuario y agrega la fila al ledger.

    Args:
        amount: Magnitud positiva; el tipo determina el signo
        entry_type: deposit | withdrawal | game_stake | game_winnings | ...
        release_reserved: Monto de reserva que este débito consume
            (sólo retiros procesados con fondos reservados)

    Raises:
        InvalidInput: monto no positivo o no finito
        InsufficientFunds: el débito excede el balance disponible
        Conflict: otra transacción escribió el perfil concurrentemente
    """
    amount = to_money(amount)
    if amount <= 0:
        raise InvalidInput("El monto debe ser positivo")
    release_reserved = to_money(release_reserved)

    profile = await lock_profile(session, user_id)
    if release_reserved:
        _check_reservation(profile, release_reserved)
    balance_before = profile.balance
    signed = -amount if entry_type.is_debit else amount
    balance_after = balance_before + signed

    if entry_type.is_debit:
        available = profile.available_balance + release_reserved
        if amount > available:
            logger.info(
                "Debit rejected for %s: %s %s > available %s",
                user_id, entry_type.value, amount, available,
            )
            raise InsufficientFunds()

    profile.balance = balance_after
    if release_reserved:
        profile.reserved_balance = profile.reserved_balance - release_reserved

    entry = Transaction(
        user_id=user_id,
        type=entry_type,
        amount=signed,
        balance_before=balance_before,
        balance_after=balance_after,
        processor_fee=processor_fee,
        external_ref=external_ref,
        game_id=game_id,
        description=description,
    )
    session.add(entry)
    try:
        await session.flush()
    except StaleDataError as exc:
        raise Conflict("El balance cambió durante la operación, reintente") from exc

    logger.info(
        "[LEDGER] %s %s %s: %s -> %s",
        user_id, entry_type.value, signed, balance_before, balance_after,
    )
    return entry


async def reserve_funds(session: AsyncSession, user_id: uuid.UUID, amount: Decimal) -> Profile:
    """Retiene fondos para un retiro pendiente sin moverlos del balance."""
    amount = to_money(amount)
    profile = await lock_profile(session, user_id)
    if amount > profile.available_balance:
        raise InsufficientFunds()
    profile.reserved_balance = profile.reserved_balance + amount
    try:
        await session.flush()
    except StaleDataError as exc:
        raise Conflict("El balance cambió durante la operación, reintente") from exc
    return profile


def _check_reservation(profile: Profile, amount: Decimal) -> None:
    # Liberar más de lo retenido indica un desfase entre retiros y reservas
    if amount > profile.reserved_balance:
        logger.error(
            "Reservation drift for %s: releasing %s but only %s reserved",
            profile.id, amount, profile.reserved_balance,
        )
        raise Conflict("La reserva del perfil no cubre el monto a liberar")


async def release_funds(session: AsyncSession, user_id: uuid.UUID, amount: Decimal) -> Profile:
    amount = to_money(amount)
    profile = await lock_profile(session, user_id)
    _check_reservation(profile, amount)
    profile.reserved_balance = profile.reserved_balance - amount
    try:
        await session.flush()
    except StaleDataError as exc:
        raise Conflict("El balance cambió durante la operación, reintente") from exc
    return profile


# =============================================================================
# CONSULTAS
# =============================================================================

async def list_transactions(
    session: AsyncSession,
    user_id: uuid.UUID,
    *,
    limit: int = 50,
    offset: int = 0,
) -> List[Transaction]:
    result = await session.execute(
        select(Transaction)
        .where(Transaction.user_id == user_id)
        .order_by(Transaction.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def ledger_drift(session: AsyncSession) -> List[dict]:
    """
    Verifica la integridad del ledger: para cada perfil, el balance debe ser
    igual a la suma de sus transacciones, y la reserva no puede superarlo.
    Retorna la lista de perfiles con diferencia (vacía = íntegro).
    """
    sums = (
        select(Transaction.user_id, func.coalesce(func.sum(Transaction.amount), 0).label("total"))
        .group_by(Transaction.user_id)
        .subquery()
    )
    result = await session.execute(
        select(Profile.id, Profile.balance, Profile.reserved_balance, sums.c.total)
        .outerjoin(sums, sums.c.user_id == Profile.id)
    )
    drift = []
    for user_id, balance, reserved, total in result.all():
        expected = to_money(total or 0)
        if to_money(balance) != expected or to_money(reserved) > to_money(balance):
            drift.append({
                "user_id": str(user_id),
                "balance": str(balance),
                "ledger_total": str(expected),
                "reserved": str(reserved),
            })
    return drift


__all__ = [
    "to_money",
    "to_cents",
    "from_cents",
    "ensure_profile",
    "get_user_role",
    "has_role",
    "lock_profile",
    "apply_ledger_entry",
    "reserve_funds",
    "release_funds",
    "list_transactions",
    "ledger_drift",
]
