"""
=============================================================================
R6CASH - Retiros con Aprobación Manual
=============================================================================
Máquina de estados:

    pending -> approved -> processed
    pending -> rejected

FLUJO (con reserva de fondos, configuración por defecto):
1. El usuario solicita: el monto queda retenido en reserved_balance, por lo
   que no puede gastarlo en apuestas ni pedirlo dos veces
2. Admin aprueba (sin efecto monetario) o rechaza (libera la reserva)
3. Admin marca processed: débito `withdrawal` en el ledger y liberación de
   la reserva en la misma transacción. Es el único paso con efecto monetario

Sin reserva (WITHDRAWAL_RESERVE_FUNDS=false) el balance se valida recién al
procesar; si ya no alcanza, el proceso falla y el retiro queda approved.
=============================================================================
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .audit import record_audit
from .config import Settings
from .database import Database
from .errors import Conflict, InsufficientFunds, InvalidInput, NotFound
from .ledger import ZERO, apply_ledger_entry, lock_profile, release_funds, reserve_funds, to_money
from .models import PaymentMethod, Profile, TransactionType, WithdrawalRequest, WithdrawalStatus, utcnow
from .websocket_handler import Outbox, RealtimeHub

logger = logging.getLogger(__name__)

ACTIONS = ("approve", "reject", "process")

# Campos obligatorios por método de pago
REQUIRED_DETAILS = {
    PaymentMethod.BANK_TRANSFER: ("account_number", "routing_number"),
    PaymentMethod.PAYPAL: ("email",),
}


def validate_payment_details(method: Any, details: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """
    Valida el método y los datos de pago y devuelve una copia normalizada.

    Raises:
        InvalidInput: método desconocido o faltan campos
    """
    try:
        payment_method = PaymentMethod(method)
    except ValueError as exc:
        raise InvalidInput(f"Método de pago inválido: {method!r}") from exc

    details = details or {}
    cleaned = {str(k): str(v).strip() for k, v in details.items() if v is not None}
    missing = [f for f in REQUIRED_DETAILS[payment_method] if not cleaned.get(f)]
    if missing:
        raise InvalidInput(f"Faltan datos de pago: {', '.join(missing)}")
    if payment_method == PaymentMethod.PAYPAL and "@" not in cleaned["email"]:
        raise InvalidInput("Email de PayPal inválido")
    return cleaned


def withdrawal_to_dict(request: WithdrawalRequest) -> Dict[str, Any]:
    return {
        "id": request.id,
        "user_id": request.user_id,
        "amount": request.amount,
        "status": WithdrawalStatus(request.status).value,
        "payment_method": PaymentMethod(request.payment_method).value,
        "payment_details": request.payment_details,
        "admin_notes": request.admin_notes,
        "processed_by": request.processed_by,
        "funds_reserved": request.funds_reserved,
        "transaction_id": request.transaction_id,
        "created_at": request.created_at,
        "processed_at": request.processed_at,
    }


class WithdrawalService:
    """Solicitudes de retiro y transiciones administrativas."""

    def __init__(self, database: Database, settings: Settings, hub: Optional[RealtimeHub] = None):
        self._db = database
        self._settings = settings
        self._hub = hub

    async def request(
        self,
        user_id: uuid.UUID,
        amount: Any,
        payment_method: Any,
        payment_details: Optional[Dict[str, Any]],
        *,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Crea una solicitud pending.

        Raises:
            InvalidInput: monto bajo el mínimo o datos de pago incompletos
                (no se crea ninguna fila)
            InsufficientFunds: el monto supera el balance disponible
        """
        amount = to_money(amount)
        if amount < self._settings.min_withdrawal:
            raise InvalidInput(f"El retiro mínimo es ${self._settings.min_withdrawal}")
        details = validate_payment_details(payment_method, payment_details)
        reserve = self._settings.withdrawal_reserve_funds
        outbox = Outbox(self._hub)

        async with self._db.transaction() as session:
            if reserve:
                profile = await reserve_funds(session, user_id, amount)
            else:
                profile = await lock_profile(session, user_id)
                if amount > profile.available_balance:
                    raise InsufficientFunds()

            withdrawal = WithdrawalRequest(
                user_id=user_id,
                amount=amount,
                status=WithdrawalStatus.PENDING,
                payment_method=PaymentMethod(payment_method),
                payment_details=details,
                funds_reserved=reserve,
            )
            session.add(withdrawal)
            await session.flush()
            await record_audit(
                session,
                "WITHDRAWAL_REQUESTED",
                user_id=user_id,
                table_name="withdrawal_requests",
                record_id=str(withdrawal.id),
                new_values={"amount": str(amount), "funds_reserved": reserve},
                ip_address=ip_address,
            )

            data = withdrawal_to_dict(withdrawal)
            if reserve:
                outbox.balance(profile)
            outbox.withdrawal(user_id, data)

        logger.info("[WITHDRAWAL] %s requested %s (reserved=%s) -> %s", user_id, amount, reserve, data["id"])
        await outbox.deliver()
        return data

    async def _lock_request(self, session: AsyncSession, request_id: uuid.UUID) -> WithdrawalRequest:
        result = await session.execute(
            select(WithdrawalRequest)
            .where(WithdrawalRequest.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        withdrawal = result.scalar_one_or_none()
        if withdrawal is None:
            raise NotFound("Solicitud de retiro no encontrada")
        return withdrawal

    async def _transition(
        self,
        session: AsyncSession,
        withdrawal: WithdrawalRequest,
        expected: WithdrawalStatus,
        **values: Any,
    ) -> None:
        result = await session.execute(
            update(WithdrawalRequest)
            .where(WithdrawalRequest.id == withdrawal.id, WithdrawalRequest.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise Conflict("El retiro cambió de estado durante la operación")
        await session.refresh(withdrawal, attribute_names=[*values, "updated_at"])

    async def admin_transition(
        self,
        request_id: uuid.UUID,
        action: str,
        admin_id: uuid.UUID,
        *,
        notes: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        approve / reject sólo desde pending; process sólo desde approved.

        Raises:
            InvalidInput: acción desconocida
            NotFound: la solicitud no existe
            Conflict: la solicitud no está en el estado requerido (incluye
                procesar dos veces)
            InsufficientFunds: sin reserva, el balance ya no cubre el retiro
        """
        if action not in ACTIONS:
            raise InvalidInput(f"Acción inválida: {action!r}")
        outbox = Outbox(self._hub)

        async with self._db.transaction() as session:
            withdrawal = await self._lock_request(session, request_id)
            old_status = WithdrawalStatus(withdrawal.status)
            now = utcnow()

            if action == "approve":
                if old_status != WithdrawalStatus.PENDING:
                    raise Conflict(f"No se puede aprobar un retiro en estado {old_status.value}")
                await self._transition(
                    session, withdrawal, WithdrawalStatus.PENDING,
                    status=WithdrawalStatus.APPROVED, processed_by=admin_id, admin_notes=notes,
                )

            elif action == "reject":
                if old_status != WithdrawalStatus.PENDING:
                    raise Conflict(f"No se puede rechazar un retiro en estado {old_status.value}")
                await self._transition(
                    session, withdrawal, WithdrawalStatus.PENDING,
                    status=WithdrawalStatus.REJECTED, processed_by=admin_id,
                    admin_notes=notes, processed_at=now,
                )
                if withdrawal.funds_reserved:
                    outbox.balance(await release_funds(session, withdrawal.user_id, withdrawal.amount))

            else:
                if old_status != WithdrawalStatus.APPROVED:
                    raise Conflict(f"No se puede procesar un retiro en estado {old_status.value}")
                entry = await apply_ledger_entry(
                    session,
                    withdrawal.user_id,
                    withdrawal.amount,
                    TransactionType.WITHDRAWAL,
                    external_ref=str(withdrawal.id),
                    description=f"Retiro {PaymentMethod(withdrawal.payment_method).value}",
                    release_reserved=withdrawal.amount if withdrawal.funds_reserved else ZERO,
                )
                await self._transition(
                    session, withdrawal, WithdrawalStatus.APPROVED,
                    status=WithdrawalStatus.PROCESSED, processed_by=admin_id,
                    admin_notes=notes if notes is not None else withdrawal.admin_notes,
                    processed_at=now, transaction_id=entry.id,
                )
                outbox.balance(await session.get(Profile, withdrawal.user_id))

            await record_audit(
                session,
                f"WITHDRAWAL_{WithdrawalStatus(withdrawal.status).value.upper()}",
                user_id=admin_id,
                table_name="withdrawal_requests",
                record_id=str(withdrawal.id),
                old_values={"status": old_status.value},
                new_values={"status": WithdrawalStatus(withdrawal.status).value, "notes": notes},
                ip_address=ip_address,
            )
            data = withdrawal_to_dict(withdrawal)
            outbox.withdrawal(withdrawal.user_id, data)

        logger.info("[WITHDRAWAL] %s %s by admin %s", request_id, data["status"], admin_id)
        await outbox.deliver()
        return data

    async def list_requests(
        self,
        *,
        status: Optional[WithdrawalStatus] = None,
        user_id: Optional[uuid.UUID] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        query = select(WithdrawalRequest)
        if status is not None:
            query = query.where(WithdrawalRequest.status == status)
        if user_id is not None:
            query = query.where(WithdrawalRequest.user_id == user_id)
        query = query.order_by(WithdrawalRequest.created_at.desc()).offset(offset).limit(limit)
        async with self._db.session() as session:
            result = await session.execute(query)
            return [withdrawal_to_dict(w) for w in result.scalars().all()]


async def pending_total(session: AsyncSession) -> Decimal:
    """Monto comprometido en retiros pendientes o aprobados sin procesar."""
    result = await session.execute(
        select(WithdrawalRequest.amount).where(
            WithdrawalRequest.status.in_([WithdrawalStatus.PENDING, WithdrawalStatus.APPROVED])
        )
    )
    return to_money(sum(result.scalars().all(), ZERO))


__all__ = ["WithdrawalService", "pending_total", "validate_payment_details", "withdrawal_to_dict", "ACTIONS"]
